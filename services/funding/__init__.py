"""
Funding Service

Deposits, withdrawals, account-to-account transfers and linked bank accounts.
"""

from .service import FundingService, bank_fingerprint, validate_amount
from .settlement import InstantSettlement, ManualSettlement, create_settlement_policy
from .models import (
    BankAccountView,
    DepositView,
    LinkBankAccountRequest,
    TransferView,
    WithdrawalView,
)

__all__ = [
    "FundingService",
    "bank_fingerprint",
    "validate_amount",
    "InstantSettlement",
    "ManualSettlement",
    "create_settlement_policy",
    "BankAccountView",
    "DepositView",
    "LinkBankAccountRequest",
    "TransferView",
    "WithdrawalView",
]
