"""
Shared trading and funding domain types.

Enumerations mirror the persisted status columns; request models describe
what the identity layer and callers hand to the mutation entry points.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class AccountStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CLOSED = "closed"


class AccountType(str, Enum):
    INDIVIDUAL = "individual"
    JOINT = "joint"
    IRA_TRADITIONAL = "ira_traditional"
    IRA_ROTH = "ira_roth"
    BUSINESS = "business"
    TRUST = "trust"


class KycStatus(str, Enum):
    NOT_STARTED = "not_started"
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    RESUBMIT_REQUIRED = "resubmit_required"


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"
    STOP_LIMIT = "stop_limit"


class OrderStatus(str, Enum):
    PENDING = "pending"
    OPEN = "open"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    EXPIRED = "expired"


class TimeInForce(str, Enum):
    DAY = "day"
    GTC = "gtc"
    IOC = "ioc"
    FOK = "fok"


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    BUY = "buy"
    SELL = "sell"
    FEE = "fee"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    ADJUSTMENT = "adjustment"


FUNDING_TRANSACTION_TYPES = (
    TransactionType.DEPOSIT,
    TransactionType.WITHDRAWAL,
    TransactionType.TRANSFER_IN,
    TransactionType.TRANSFER_OUT,
)


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REVERSED = "reversed"


OPEN_TRANSACTION_STATUSES = (TransactionStatus.PENDING, TransactionStatus.PROCESSING)


class FundingStatus(str, Enum):
    """Status of a deposit, withdrawal or transfer request"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


OPEN_FUNDING_STATUSES = (FundingStatus.PENDING, FundingStatus.PROCESSING)


class BankAccountType(str, Enum):
    CHECKING = "checking"
    SAVINGS = "savings"


class Quote(BaseModel):
    """Price oracle answer for one symbol"""
    symbol: str
    price: Decimal
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    name: Optional[str] = None


class CallerContext(BaseModel):
    """Validated identity handed over by the auth layer"""
    model_config = ConfigDict(frozen=True)

    caller_id: str
    kyc_status: KycStatus = KycStatus.NOT_STARTED


class OrderRequest(BaseModel):
    """Incoming trade instruction.

    Quantities and prices are validated by the order validator rather than
    here so that malformed values surface as ``InvalidArgumentError``.
    """
    symbol: str
    side: OrderSide
    order_type: OrderType = OrderType.MARKET
    quantity: Decimal
    limit_price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    time_in_force: Optional[TimeInForce] = None


class OrderModification(BaseModel):
    """Fields a caller may change on a pending or open order"""
    quantity: Optional[Decimal] = None
    limit_price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    time_in_force: Optional[TimeInForce] = None


class Fill(BaseModel):
    """One execution of all or part of an order.

    ``fill_id`` is the idempotency key: the same fill applied twice is a no-op.
    """
    fill_id: str
    quantity: Decimal
    price: Decimal
    executed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
