"""
Pytest configuration and shared fixtures for the back-office tests.

Services come from the real DI container with three overrides: settings
pointing at a file-backed SQLite store under ``tmp_path``, a static price
oracle, and an in-memory event publisher.
"""
from decimal import Decimal
from typing import List, Optional

import pytest
from dependency_injector import providers
from sqlalchemy import select

from app.containers import AppContainer
from core.config.settings import (
    DatabaseSettings,
    LoggingSettings,
    OracleSettings,
    Settings,
    TradingSettings,
)
from core.database.models import Account, LedgerTransaction, Position
from core.streaming.publisher import InMemoryEventPublisher
from core.trading.models import AccountStatus, AccountType, CallerContext, KycStatus
from core.utils.ids import generate_account_number
from services.market_feed.price_oracle import StaticPriceOracle


@pytest.fixture
def test_settings(tmp_path):
    """Test settings configuration."""
    return Settings(
        environment="testing",
        database=DatabaseSettings(
            url=f"sqlite+aiosqlite:///{tmp_path / 'backoffice.db'}",
            sqlite_busy_timeout_seconds=30.0,
        ),
        logging=LoggingSettings(level="WARNING", json_format=False),
        trading=TradingSettings(
            oracle_timeout_seconds=0.5,
            max_conflict_retries=20,
            retry_base_delay_seconds=0.001,
            retry_max_delay_seconds=0.05,
        ),
        oracle=OracleSettings(failure_threshold=3, recovery_timeout_seconds=60),
    )


@pytest.fixture
def price_oracle():
    return StaticPriceOracle(
        prices={"AAPL": Decimal("150.00"), "MSFT": Decimal("300.00"), "TSLA": Decimal("200.00")},
        names={"AAPL": "Apple Inc.", "MSFT": "Microsoft Corp."},
    )


@pytest.fixture
def event_publisher():
    return InMemoryEventPublisher()


@pytest.fixture
async def container(test_settings, price_oracle, event_publisher):
    container = AppContainer()
    container.settings.override(providers.Object(test_settings))
    container.raw_price_oracle.override(providers.Object(price_oracle))
    container.event_publisher.override(providers.Object(event_publisher))

    db_manager = container.db_manager()
    await db_manager.init()
    yield container
    await container.event_emitter().drain()
    await db_manager.shutdown()


@pytest.fixture
def db_manager(container):
    return container.db_manager()


@pytest.fixture
def trading(container):
    return container.trading_engine_service()


@pytest.fixture
def funding(container):
    return container.funding_service()


@pytest.fixture
def accounts(container):
    return container.account_service()


@pytest.fixture
def caller():
    """Validated identity with approved KYC."""
    return CallerContext(caller_id="user-1", kyc_status=KycStatus.APPROVED)


@pytest.fixture
def other_caller():
    return CallerContext(caller_id="user-2", kyc_status=KycStatus.APPROVED)


@pytest.fixture
def make_account(db_manager):
    """Insert an account whose opening balance equals its starting cash."""

    async def _make(user_id: str = "user-1", cash: str = "10000.00",
                    status: AccountStatus = AccountStatus.ACTIVE) -> Account:
        async with db_manager.transaction("test_setup") as session:
            account = Account(
                user_id=user_id,
                account_number=generate_account_number(),
                account_type=AccountType.INDIVIDUAL,
                account_name="Test Account",
                status=status,
                cash_balance=Decimal(cash),
                opening_balance=Decimal(cash),
            )
            session.add(account)
        return account

    return _make


@pytest.fixture
def make_position(db_manager, container):
    """Insert a live position for ``symbol`` (registering the security first)."""

    async def _make(account_id: str, symbol: str, quantity: str, average_cost: str) -> Position:
        security = await container.security_registry().resolve(symbol)
        async with db_manager.transaction("test_setup") as session:
            position = Position(
                account_id=account_id,
                security_id=security.security_id,
                quantity=Decimal(quantity),
                average_cost=Decimal(average_cost),
                realized_pnl=Decimal("0"),
            )
            session.add(position)
        return position

    return _make


@pytest.fixture
def load_account(db_manager):
    async def _load(account_id: str) -> Account:
        async with db_manager.get_session() as session:
            return await session.get(Account, account_id)

    return _load


@pytest.fixture
def load_positions(db_manager):
    async def _load(account_id: str) -> List[Position]:
        async with db_manager.get_session() as session:
            result = await session.execute(select(Position).where(Position.account_id == account_id))
            return list(result.scalars().all())

    return _load


@pytest.fixture
def load_ledger(db_manager):
    async def _load(account_id: Optional[str] = None) -> List[LedgerTransaction]:
        async with db_manager.get_session() as session:
            stmt = select(LedgerTransaction).order_by(LedgerTransaction.created_at)
            if account_id:
                stmt = stmt.where(LedgerTransaction.account_id == account_id)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    return _load
