"""
Unit tests for post-commit event buffering and delivery.
"""
from decimal import Decimal

import pytest

from core.logging import CorrelationIdManager
from core.schemas.events import BalanceChanged, EventType, PositionChanged
from core.streaming.publisher import EventBuffer, EventEmitter, InMemoryEventPublisher


class _FailingPublisher:
    def __init__(self):
        self.attempts = 0

    async def publish(self, envelope):
        self.attempts += 1
        raise ConnectionError("notifier down")


def _buffer(*account_ids):
    events = EventBuffer(source="test")
    for account_id in account_ids:
        events.record(EventType.BALANCE_CHANGED, account_id,
                      BalanceChanged(account_id=account_id, new_balance=Decimal("10.00")))
    return events


class TestEventBuffer:

    def test_records_in_order_with_shared_correlation(self):
        CorrelationIdManager.set_correlation_id("corr-1")
        events = _buffer("acc-1", "acc-2")

        assert len(events) == 2
        assert [e.key for e in events] == ["acc-1", "acc-2"]
        assert {e.correlation_id for e in events} == {"corr-1"}
        assert all(e.source == "test" for e in events)
        assert list(events)[0].data == {"account_id": "acc-1", "new_balance": "10.00"}

    def test_payload_must_match_event_type(self):
        events = EventBuffer(source="test")

        with pytest.raises(TypeError):
            events.record(EventType.BALANCE_CHANGED, "acc-1",
                          PositionChanged(account_id="acc-1", symbol="AAPL", new_quantity=Decimal("1")))
        assert len(events) == 0


class TestEventEmitter:

    async def test_delivers_every_event(self):
        publisher = InMemoryEventPublisher()
        emitter = EventEmitter(publisher)

        emitter.emit(_buffer("acc-1", "acc-2"))
        await emitter.drain()

        assert len(publisher.of_type(EventType.BALANCE_CHANGED)) == 2

    async def test_failing_publisher_does_not_raise(self):
        publisher = _FailingPublisher()
        emitter = EventEmitter(publisher)

        emitter.emit(_buffer("acc-1"))
        await emitter.drain()

        assert publisher.attempts == 1

    async def test_drain_without_pending_events(self):
        await EventEmitter(InMemoryEventPublisher()).drain()
