"""
Transaction runner for mutating operations.

Each attempt opens a fresh scoped transaction and a fresh event buffer, so
every precondition is re-read and re-checked after a lost race. Only
``ConflictError`` is retried; every other error is terminal and leaves the
store untouched because the attempt's transaction is rolled back.
"""

import asyncio
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from core.logging import get_audit_logger_safe, get_database_logger_safe
from core.streaming.publisher import EventBuffer, EventEmitter
from core.utils.exceptions import ConflictError, get_retry_delay
from .connection import DatabaseManager

T = TypeVar("T")

Mutation = Callable[[AsyncSession, EventBuffer], Awaitable[T]]


class TransactionRunner:
    """Runs a mutation all-or-nothing with bounded retry on conflict"""

    def __init__(self, db_manager: DatabaseManager, emitter: EventEmitter,
                 max_retries: int = 5, base_delay: float = 0.01, max_delay: float = 1.0):
        self.db_manager = db_manager
        self.emitter = emitter
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.logger = get_database_logger_safe("transaction_runner")
        self.audit_logger = get_audit_logger_safe("transaction_runner")

    async def run(self, operation: str, mutation: Mutation, source: str = "backoffice") -> T:
        attempt = 0
        while True:
            events = EventBuffer(source)
            try:
                async with self.db_manager.transaction(operation) as session:
                    result = await mutation(session, events)
            except ConflictError as e:
                e.retry_count = attempt
                e.max_retries = self.max_retries
                if not e.retryable:
                    self.logger.warning("Conflict retries exhausted",
                                        operation=operation,
                                        attempts=attempt + 1,
                                        reason=e.reason)
                    raise
                delay = min(get_retry_delay(e, self.base_delay), self.max_delay)
                self.logger.info("Retrying after conflict",
                                 operation=operation,
                                 attempt=attempt + 1,
                                 delay_seconds=delay,
                                 reason=e.reason)
                attempt += 1
                await asyncio.sleep(delay)
                continue

            self.audit_logger.info("Mutation committed",
                                   operation=operation,
                                   source=source,
                                   attempts=attempt + 1,
                                   events=len(events))
            self.emitter.emit(events)
            return result
