from pydantic import BaseModel, ConfigDict
from typing import List, Optional
from datetime import datetime
from decimal import Decimal

from core.trading.models import (
    AccountStatus,
    AccountType,
    TransactionStatus,
    TransactionType,
)


class AccountView(BaseModel):
    """Account record as returned to callers"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    account_number: str
    account_type: AccountType
    account_name: Optional[str] = None
    status: AccountStatus
    cash_balance: Decimal
    buying_power: Decimal
    opening_balance: Decimal
    created_at: datetime
    closed_at: Optional[datetime] = None


class PositionView(BaseModel):
    """
    A live holding valued at the security's last known price.
    """
    account_id: str
    security_id: str
    symbol: str
    quantity: Decimal
    average_cost: Decimal
    last_price: Optional[Decimal] = None
    cost_basis: Decimal
    market_value: Decimal
    unrealized_pnl: Decimal
    realized_pnl: Decimal


class BalanceView(BaseModel):
    account_id: str
    cash_balance: Decimal
    positions_value: Decimal
    total_value: Decimal
    buying_power: Decimal


class TransactionView(BaseModel):
    """Ledger row as exposed to downstream consumers"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    account_id: str
    type: TransactionType
    amount: Decimal
    status: TransactionStatus
    description: Optional[str] = None
    order_id: Optional[str] = None
    reference_id: Optional[str] = None
    related_transaction_id: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class FillResult(BaseModel):
    """Effects of one applied fill"""
    fill_id: str
    execution_id: str
    transaction_id: str
    cash_balance: Decimal
    position_quantity: Decimal
    realized_pnl: Optional[Decimal] = None


class LedgerDiscrepancy(BaseModel):
    account_id: str
    check: str
    expected: Optional[Decimal] = None
    actual: Optional[Decimal] = None
    detail: Optional[str] = None


class LedgerAuditReport(BaseModel):
    accounts_checked: int
    discrepancies: List[LedgerDiscrepancy]

    @property
    def ok(self) -> bool:
        return not self.discrepancies
