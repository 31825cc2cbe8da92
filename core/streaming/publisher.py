"""
Post-commit event delivery.

Mutations record events into an ``EventBuffer`` while their transaction is
open. The unit-of-work runner hands the buffer to ``EventEmitter`` only after
a successful commit, so a rolled-back attempt never notifies anyone. The
emitter schedules delivery and returns immediately; a failing notifier is
logged and never fails the mutation that already committed.
"""

import asyncio
from typing import Iterator, List, Optional, Set

from pydantic import BaseModel

from core.logging import CorrelationIdManager, get_error_logger_safe, get_logger
from core.schemas.events import EVENT_PAYLOADS, EventEnvelope, EventType
from core.trading.interfaces import EventPublisher


class EventBuffer:
    """Events produced by one transaction attempt, in the order they happened."""

    def __init__(self, source: str):
        self.source = source
        self._events: List[EventEnvelope] = []

    def record(self, event_type: EventType, key: str, payload: BaseModel,
               causation_id: Optional[str] = None) -> EventEnvelope:
        expected = EVENT_PAYLOADS[event_type]
        if not isinstance(payload, expected):
            raise TypeError(f"{event_type.value} events carry {expected.__name__}, "
                            f"got {type(payload).__name__}")
        envelope = EventEnvelope(
            correlation_id=CorrelationIdManager.ensure_correlation_id(),
            causation_id=causation_id,
            type=event_type,
            key=key,
            source=self.source,
            data=payload.model_dump(mode="json"),
        )
        self._events.append(envelope)
        return envelope

    def __iter__(self) -> Iterator[EventEnvelope]:
        return iter(self._events)

    def __len__(self) -> int:
        return len(self._events)


class EventEmitter:
    """Fire-and-forget delivery of committed events to the notification layer."""

    def __init__(self, publisher: EventPublisher):
        self.publisher = publisher
        self._pending: Set[asyncio.Task] = set()
        self.logger = get_logger("event_emitter", component="streaming")
        self.error_logger = get_error_logger_safe("event_emitter")

    def emit(self, events: EventBuffer) -> None:
        for envelope in events:
            task = asyncio.create_task(self._deliver(envelope))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, envelope: EventEnvelope) -> None:
        try:
            await self.publisher.publish(envelope)
        except Exception as e:
            self.error_logger.error("Event delivery failed",
                                    event_id=envelope.id,
                                    event_type=envelope.type.value,
                                    key=envelope.key,
                                    error=str(e))

    async def drain(self) -> None:
        """Wait for in-flight deliveries; used on shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending))


class LoggingEventPublisher:
    """Publishes events to the application log channel."""

    def __init__(self):
        self.logger = get_logger("event_publisher", component="streaming")

    async def publish(self, envelope: EventEnvelope) -> None:
        self.logger.info("Event emitted",
                         event_id=envelope.id,
                         event_type=envelope.type.value,
                         key=envelope.key,
                         source=envelope.source,
                         data=envelope.data)


class InMemoryEventPublisher:
    """Collects published events; the notifier used in tests and local runs."""

    def __init__(self):
        self.events: List[EventEnvelope] = []

    async def publish(self, envelope: EventEnvelope) -> None:
        self.events.append(envelope)

    def of_type(self, event_type: EventType) -> List[EventEnvelope]:
        return [e for e in self.events if e.type == event_type]

    def clear(self) -> None:
        self.events.clear()
