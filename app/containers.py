# DI container for the back-office mutation core
from dependency_injector import containers, providers

from core.config.settings import Settings
from core.database.connection import DatabaseManager
from core.database.unit_of_work import TransactionRunner
from core.streaming.publisher import EventEmitter, LoggingEventPublisher
from core.trading.models import TimeInForce
from core.utils.circuit_breaker import CircuitBreaker
from services.funding.service import FundingService
from services.funding.settlement import create_settlement_policy
from services.instrument_data.security_registry import SecurityRegistry
from services.market_feed.price_oracle import GuardedPriceOracle, StaticPriceOracle
from services.portfolio_manager.ledger_updater import LedgerUpdater
from services.portfolio_manager.service import AccountService
from services.trading_engine.execution.instant_engine import InstantExecutionEngine
from services.trading_engine.service import TradingEngineService
from services.trading_engine.validation.order_validator import OrderValidator


class AppContainer(containers.DeclarativeContainer):
    """Application dependency injection container"""

    # Configuration
    settings = providers.Singleton(Settings)

    # Database with environment awareness
    db_manager = providers.Singleton(
        DatabaseManager,
        db_url=settings.provided.database.url,
        environment=settings.provided.environment,
        schema_management=settings.provided.database.schema_management,
        echo=settings.provided.database.echo,
        pool_size=settings.provided.database.pool_size,
        max_overflow=settings.provided.database.max_overflow,
        pool_recycle=settings.provided.database.pool_recycle_seconds,
        sqlite_busy_timeout=settings.provided.database.sqlite_busy_timeout_seconds,
    )

    # --- Notification ---
    # Override with a real notifier (websocket fan-out, email, ...) in the host process
    event_publisher = providers.Singleton(LoggingEventPublisher)
    event_emitter = providers.Singleton(EventEmitter, publisher=event_publisher)

    transaction_runner = providers.Singleton(
        TransactionRunner,
        db_manager=db_manager,
        emitter=event_emitter,
        max_retries=settings.provided.trading.max_conflict_retries,
        base_delay=settings.provided.trading.retry_base_delay_seconds,
        max_delay=settings.provided.trading.retry_max_delay_seconds,
    )

    # --- Price oracle ---
    raw_price_oracle = providers.Singleton(
        StaticPriceOracle,
        prices=settings.provided.oracle.static_prices,
    )
    oracle_circuit_breaker = providers.Singleton(
        CircuitBreaker,
        name="price_oracle",
        failure_threshold=settings.provided.oracle.failure_threshold,
        recovery_timeout=settings.provided.oracle.recovery_timeout_seconds,
    )
    price_oracle = providers.Singleton(
        GuardedPriceOracle,
        oracle=raw_price_oracle,
        timeout_seconds=settings.provided.trading.oracle_timeout_seconds,
        breaker=oracle_circuit_breaker,
    )

    security_registry = providers.Singleton(
        SecurityRegistry,
        runner=transaction_runner,
        oracle=price_oracle,
    )

    ledger_updater = providers.Singleton(LedgerUpdater)

    # --- Trading ---
    default_time_in_force = providers.Callable(
        TimeInForce,
        settings.provided.trading.default_time_in_force,
    )
    order_validator = providers.Singleton(
        OrderValidator,
        db_manager=db_manager,
        securities=security_registry,
        default_time_in_force=default_time_in_force,
    )
    execution_engine = providers.Singleton(InstantExecutionEngine)

    trading_engine_service = providers.Singleton(
        TradingEngineService,
        db_manager=db_manager,
        runner=transaction_runner,
        validator=order_validator,
        securities=security_registry,
        engine=execution_engine,
        ledger=ledger_updater,
    )

    # --- Accounts and funding ---
    account_service = providers.Singleton(
        AccountService,
        settings=settings,
        db_manager=db_manager,
        runner=transaction_runner,
        ledger=ledger_updater,
    )

    settlement_policy = providers.Singleton(
        create_settlement_policy,
        settings.provided.funding.deposit_settlement,
    )
    funding_service = providers.Singleton(
        FundingService,
        settings=settings,
        db_manager=db_manager,
        runner=transaction_runner,
        ledger=ledger_updater,
        settlement=settlement_policy,
    )
