from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from core.database.models import Deposit, LedgerTransaction, Transfer, Withdrawal
from core.trading.models import BankAccountType, FundingStatus, TransactionStatus


class LinkBankAccountRequest(BaseModel):
    """Bank details as entered by the account holder.

    Only the last four digits and a fingerprint of the account number are
    ever persisted.
    """
    bank_name: str = Field(min_length=1, max_length=100)
    holder_name: str = Field(min_length=1, max_length=200)
    account_type: BankAccountType = BankAccountType.CHECKING
    account_number: str
    routing_number: str


class BankAccountView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    bank_name: str
    account_type: BankAccountType
    holder_name: str
    last4: str
    is_verified: bool
    is_default: bool
    created_at: datetime
    verified_at: Optional[datetime] = None


class DepositView(BaseModel):
    """Deposit request with the status of its ledger row"""
    id: str
    account_id: str
    bank_account_id: str
    amount: Decimal
    status: FundingStatus
    transaction_id: str
    transaction_status: TransactionStatus
    failure_reason: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_records(cls, deposit: Deposit, txn: LedgerTransaction) -> "DepositView":
        return cls(
            id=deposit.id,
            account_id=deposit.account_id,
            bank_account_id=deposit.bank_account_id,
            amount=deposit.amount,
            status=deposit.status,
            transaction_id=txn.id,
            transaction_status=txn.status,
            failure_reason=deposit.failure_reason,
            created_at=deposit.created_at,
            completed_at=deposit.completed_at,
        )


class WithdrawalView(BaseModel):
    """Withdrawal request with the status of its ledger row"""
    id: str
    account_id: str
    bank_account_id: str
    amount: Decimal
    status: FundingStatus
    transaction_id: str
    transaction_status: TransactionStatus
    failure_reason: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_records(cls, withdrawal: Withdrawal, txn: LedgerTransaction) -> "WithdrawalView":
        return cls(
            id=withdrawal.id,
            account_id=withdrawal.account_id,
            bank_account_id=withdrawal.bank_account_id,
            amount=withdrawal.amount,
            status=withdrawal.status,
            transaction_id=txn.id,
            transaction_status=txn.status,
            failure_reason=withdrawal.failure_reason,
            created_at=withdrawal.created_at,
            completed_at=withdrawal.completed_at,
        )


class TransferView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    from_account_id: str
    to_account_id: str
    amount: Decimal
    status: FundingStatus
    memo: Optional[str] = None
    out_transaction_id: str
    in_transaction_id: str
    created_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_transfer(cls, transfer: Transfer) -> "TransferView":
        return cls.model_validate(transfer)
