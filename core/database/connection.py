# Account store connection management
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import event, text
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm.exc import StaleDataError

from core.logging import (
    get_database_logger_safe,
    get_error_logger_safe,
    get_performance_logger_safe,
)
from core.utils.exceptions import (
    BackOfficeError,
    BalanceGuardViolation,
    ConflictError,
    InternalError,
)

# Initialize specialized loggers
db_logger = get_database_logger_safe("database_manager")
error_logger = get_error_logger_safe("database_manager")
perf_logger = get_performance_logger_safe("database_manager")

# The base class for all SQLAlchemy models
Base = declarative_base()

# SQLSTATEs that mean "another transaction got there first"
_RETRYABLE_SQLSTATES = {"40001", "40P01", "55P03"}
_UNIQUE_VIOLATION = "23505"
_CHECK_VIOLATION = "23514"

# Marks SQLite connections that must take the write lock when they begin
_SQLITE_WRITE = "sqlite_begin_immediate"


def _sqlstate(error: DBAPIError) -> Optional[str]:
    orig = getattr(error, "orig", None)
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def translate_db_error(error: SQLAlchemyError, operation: str = "transaction") -> BackOfficeError:
    """Map a driver/ORM failure onto the error taxonomy.

    Lost races (stale version, serialization failure, deadlock, SQLite busy,
    duplicate insert of a unique key) become ``ConflictError`` so the whole
    operation is retried; everything else is an ``InternalError``.
    """
    if isinstance(error, StaleDataError):
        return ConflictError("Concurrent update detected", reason="stale_version",
                             details={"operation": operation})

    if isinstance(error, DBAPIError):
        state = _sqlstate(error)
        message = str(getattr(error, "orig", error)).lower()
        if state in _RETRYABLE_SQLSTATES or (
            isinstance(error, OperationalError) and "database is locked" in message
        ):
            return ConflictError("Concurrent transaction conflict", reason="serialization_failure",
                                 details={"operation": operation, "sqlstate": state})
        if isinstance(error, IntegrityError):
            if state == _UNIQUE_VIOLATION or "unique constraint" in message:
                return ConflictError("Concurrent insert of a unique key", reason="duplicate_key",
                                     details={"operation": operation})
            if state == _CHECK_VIOLATION or "check constraint" in message:
                return BalanceGuardViolation("Store constraint rejected the mutation",
                                             reason="constraint_violation", entity="store",
                                             details={"operation": operation})

    return InternalError("Persistence failure", operation=operation, reason="persistence_failure",
                         details={"error_type": type(error).__name__})


class DatabaseManager:
    """Manages the connection to the account store"""

    def __init__(self, db_url: str, environment: str = "development",
                 schema_management: str = "create_all", echo: bool = False,
                 pool_size: int = 20, max_overflow: int = 30, pool_recycle: int = 3600,
                 sqlite_busy_timeout: float = 30.0):
        # Balance guard hooks into every flush of sessions created here
        from core.database.balance_guard import GuardedSession

        engine_kwargs = {"echo": echo, "pool_pre_ping": True}
        self._is_sqlite = db_url.startswith("sqlite")
        if self._is_sqlite:
            engine_kwargs["connect_args"] = {"timeout": sqlite_busy_timeout}
        else:
            engine_kwargs.update(
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_recycle=pool_recycle,
            )

        self._engine = create_async_engine(db_url, **engine_kwargs)
        self._session_factory = async_sessionmaker(
            self._engine,
            expire_on_commit=False,
            class_=AsyncSession,
            sync_session_class=GuardedSession,
        )
        self._environment = environment
        self._schema_management = schema_management
        self._setup_database_logging()
        if self._is_sqlite:
            self._setup_sqlite_transactions()

    @property
    def engine(self):
        return self._engine

    async def init(self):
        """Create missing tables unless schema is managed by migrations"""
        if self._schema_management == "create_all":
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            db_logger.info("Database initialized with create_all",
                           environment=self._environment)
        else:
            db_logger.info("Schema management disabled; expecting migrated schema",
                           environment=self._environment)

    async def verify_connection(self) -> bool:
        """Verify database connection is ready"""
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))
                return True
        except SQLAlchemyError as e:
            error_logger.error("Database connection verification failed", error=str(e))
            return False

    async def shutdown(self):
        """Closes the database connection pool"""
        await self._engine.dispose()
        db_logger.info("Database connection pool closed")

    def _setup_database_logging(self):
        """Setup SQLAlchemy event listeners for slow query logging"""

        @event.listens_for(self._engine.sync_engine, "before_cursor_execute")
        def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            context._query_start_time = time.time()

        @event.listens_for(self._engine.sync_engine, "after_cursor_execute")
        def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            if not hasattr(context, "_query_start_time"):
                return
            execution_time = (time.time() - context._query_start_time) * 1000
            if execution_time > 500:
                perf_logger.warning("Slow database query detected",
                                    execution_time_ms=execution_time,
                                    threshold_ms=500,
                                    query_type=statement.split()[0].upper() if statement else "UNKNOWN")

    def _setup_sqlite_transactions(self):
        """Take over BEGIN from the SQLite driver.

        The driver defers BEGIN until the first DML statement, so SELECT ...
        FOR UPDATE (ignored by SQLite) would read outside any transaction.
        Write transactions begin IMMEDIATE and hold the database write lock
        from their first read; read sessions get a deferred BEGIN.
        """

        @event.listens_for(self._engine.sync_engine, "connect")
        def disable_driver_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(self._engine.sync_engine, "begin")
        def emit_begin(conn):
            if conn.get_execution_options().get(_SQLITE_WRITE):
                conn.exec_driver_sql("BEGIN IMMEDIATE")
            else:
                conn.exec_driver_sql("BEGIN")

    @asynccontextmanager
    async def get_session(self) -> AsyncIterator[AsyncSession]:
        """Provides a read session WITHOUT auto-commit.

        Mutations go through ``transaction()``; this is for queries.
        """
        session_start_time = time.time()
        async with self._session_factory() as session:
            try:
                yield session
            except Exception as session_error:
                await session.rollback()
                error_logger.error("Database session error with rollback",
                                   error=str(session_error),
                                   session_duration_ms=(time.time() - session_start_time) * 1000)
                raise

    @asynccontextmanager
    async def transaction(self, operation: str = "transaction") -> AsyncIterator[AsyncSession]:
        """Scoped transaction: commit on success, rollback on every other exit.

        Driver and ORM errors, including those raised by the final flush at
        commit, are translated into the error taxonomy.
        """
        started = time.time()
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    if self._is_sqlite:
                        # first connection of the transaction; options apply before BEGIN
                        await session.connection(execution_options={_SQLITE_WRITE: True})
                    yield session
        except BackOfficeError:
            raise
        except SQLAlchemyError as e:
            translated = translate_db_error(e, operation)
            if isinstance(translated, ConflictError):
                db_logger.info("Transaction conflict", operation=operation, reason=translated.reason)
            else:
                error_logger.error("Transaction failed", operation=operation,
                                   error=str(e), error_kind=translated.kind.value)
            raise translated from e
        finally:
            duration_ms = (time.time() - started) * 1000
            if duration_ms > 5000:
                perf_logger.warning("Long-running transaction",
                                    operation=operation,
                                    duration_ms=duration_ms,
                                    threshold_ms=5000)

    async def close(self):
        """Alias for shutdown for compatibility"""
        await self.shutdown()
