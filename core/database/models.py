# Database models for the account store
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    text,
)

from core.trading.models import (
    AccountStatus,
    AccountType,
    BankAccountType,
    FundingStatus,
    OrderSide,
    OrderStatus,
    OrderType,
    TimeInForce,
    TransactionStatus,
    TransactionType,
)
from core.trading.utils import utcnow
from core.utils.ids import generate_id
from .connection import Base

# DECIMAL(15,2) for cash, DECIMAL(15,4) for quantities and prices
Money = Numeric(15, 2)
Quantity = Numeric(15, 4)
Price = Numeric(15, 4)


def enum_column(enum_cls, **kwargs) -> Column:
    """String-backed enum column storing member values."""
    return Column(
        SAEnum(
            enum_cls,
            native_enum=False,
            length=24,
            values_callable=lambda members: [m.value for m in members],
            validate_strings=True,
        ),
        **kwargs,
    )


class AccountHolder(Base):
    """One row per user, locked to serialize per-user limits (open accounts, bank links)"""
    __tablename__ = "account_holders"

    user_id = Column(String(64), primary_key=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Account(Base):
    """Brokerage account holding cash; the unit of locking for every mutation"""
    __tablename__ = "accounts"

    id = Column(String(36), primary_key=True, default=generate_id)
    user_id = Column(String(64), nullable=False, index=True)
    account_number = Column(String(20), nullable=False, unique=True)
    account_type = enum_column(AccountType, nullable=False, default=AccountType.INDIVIDUAL)
    account_name = Column(String(100))
    status = enum_column(AccountStatus, nullable=False, default=AccountStatus.ACTIVE)
    cash_balance = Column(Money, nullable=False, default=0)
    opening_balance = Column(Money, nullable=False, default=0)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    closed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint("cash_balance >= 0", name="ck_accounts_cash_non_negative"),
        Index("idx_accounts_user_status", "user_id", "status"),
    )
    __mapper_args__ = {"version_id_col": version}

    @property
    def buying_power(self):
        """Cash available for purchases; no margin, so equal to cash."""
        return self.cash_balance


class Security(Base):
    """Tradable instrument; last_price is maintained by the oracle integration"""
    __tablename__ = "securities"

    id = Column(String(36), primary_key=True, default=generate_id)
    symbol = Column(String(20), nullable=False, unique=True)
    name = Column(String(255))
    last_price = Column(Price)
    last_price_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=generate_id)
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False)
    security_id = Column(String(36), ForeignKey("securities.id"), nullable=False)
    side = enum_column(OrderSide, nullable=False)
    order_type = enum_column(OrderType, nullable=False)
    quantity = Column(Quantity, nullable=False)
    limit_price = Column(Price)
    stop_price = Column(Price)
    time_in_force = enum_column(TimeInForce, nullable=False, default=TimeInForce.DAY)
    status = enum_column(OrderStatus, nullable=False, default=OrderStatus.PENDING)
    filled_quantity = Column(Quantity, nullable=False, default=0)
    average_fill_price = Column(Price)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    executed_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    expired_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_orders_account_status", "account_id", "status"),
        Index("idx_orders_status_tif", "status", "time_in_force"),
    )
    __mapper_args__ = {"version_id_col": version}


class Execution(Base):
    """One applied fill; fill_id makes fill application idempotent"""
    __tablename__ = "executions"

    id = Column(String(36), primary_key=True, default=generate_id)
    fill_id = Column(String(100), nullable=False, unique=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False)
    security_id = Column(String(36), ForeignKey("securities.id"), nullable=False)
    side = enum_column(OrderSide, nullable=False)
    quantity = Column(Quantity, nullable=False)
    price = Column(Price, nullable=False)
    value = Column(Money, nullable=False)
    executed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Position(Base):
    __tablename__ = "positions"

    id = Column(String(36), primary_key=True, default=generate_id)
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False)
    security_id = Column(String(36), ForeignKey("securities.id"), nullable=False)
    quantity = Column(Quantity, nullable=False)
    average_cost = Column(Price, nullable=False)
    realized_pnl = Column(Money, nullable=False, default=0)
    version = Column(Integer, nullable=False)
    opened_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("account_id", "security_id", name="uq_positions_account_security"),
        CheckConstraint("quantity >= 0", name="ck_positions_quantity_non_negative"),
    )
    __mapper_args__ = {"version_id_col": version}


class PositionHistory(Base):
    """Archive of fully closed positions with booked P&L"""
    __tablename__ = "position_history"

    id = Column(String(36), primary_key=True, default=generate_id)
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False, index=True)
    security_id = Column(String(36), ForeignKey("securities.id"), nullable=False)
    quantity = Column(Quantity, nullable=False)
    average_cost = Column(Price, nullable=False)
    close_price = Column(Price, nullable=False)
    realized_pl = Column(Money, nullable=False)
    realized_pl_percent = Column(Numeric(10, 4))
    opened_at = Column(DateTime(timezone=True), nullable=False)
    closed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    holding_period_days = Column(Integer, nullable=False, default=0)


class LedgerTransaction(Base):
    """Append-only ledger row; the canonical audit trail"""
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=generate_id)
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False)
    type = enum_column(TransactionType, nullable=False)
    amount = Column(Money, nullable=False)
    status = enum_column(TransactionStatus, nullable=False)
    description = Column(String(255))
    order_id = Column(String(36), ForeignKey("orders.id"))
    # deposit, withdrawal or transfer this row belongs to
    reference_id = Column(String(36))
    related_transaction_id = Column(String(36))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_transactions_account_created", "account_id", "created_at"),
        Index("idx_transactions_account_status", "account_id", "status"),
    )


class LinkedBankAccount(Base):
    """External bank account; only the last four digits and a fingerprint are stored"""
    __tablename__ = "bank_accounts"

    id = Column(String(36), primary_key=True, default=generate_id)
    user_id = Column(String(64), nullable=False)
    bank_name = Column(String(100), nullable=False)
    account_type = enum_column(BankAccountType, nullable=False)
    holder_name = Column(String(200), nullable=False)
    last4 = Column(String(4), nullable=False)
    fingerprint = Column(String(64), nullable=False)
    is_verified = Column(Boolean, nullable=False, default=False)
    is_default = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    verified_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    removed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        # one active link per (user, bank account)
        Index("uq_bank_accounts_user_fingerprint_active", "user_id", "fingerprint", unique=True,
              postgresql_where=text("is_active"), sqlite_where=text("is_active = 1")),
    )


class Deposit(Base):
    __tablename__ = "deposits"

    id = Column(String(36), primary_key=True, default=generate_id)
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False, index=True)
    bank_account_id = Column(String(36), ForeignKey("bank_accounts.id"), nullable=False)
    transaction_id = Column(String(36), ForeignKey("transactions.id"), nullable=False)
    amount = Column(Money, nullable=False)
    status = enum_column(FundingStatus, nullable=False, default=FundingStatus.PENDING)
    failure_reason = Column(String(255))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True))


class Withdrawal(Base):
    __tablename__ = "withdrawals"

    id = Column(String(36), primary_key=True, default=generate_id)
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False, index=True)
    bank_account_id = Column(String(36), ForeignKey("bank_accounts.id"), nullable=False)
    transaction_id = Column(String(36), ForeignKey("transactions.id"), nullable=False)
    amount = Column(Money, nullable=False)
    status = enum_column(FundingStatus, nullable=False, default=FundingStatus.PENDING)
    failure_reason = Column(String(255))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True))


class Transfer(Base):
    """Account-to-account move, backed by a transfer_out/transfer_in ledger pair"""
    __tablename__ = "transfers"

    id = Column(String(36), primary_key=True, default=generate_id)
    from_account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False, index=True)
    to_account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False, index=True)
    amount = Column(Money, nullable=False)
    status = enum_column(FundingStatus, nullable=False, default=FundingStatus.COMPLETED)
    memo = Column(String(255))
    out_transaction_id = Column(String(36), ForeignKey("transactions.id"), nullable=False)
    in_transaction_id = Column(String(36), ForeignKey("transactions.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True))
