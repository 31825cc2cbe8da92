# Standardized event envelope and payload models
# Every notification emitted by the mutation core uses these schemas

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from core.trading.models import OrderSide
from core.utils.ids import generate_event_id


class EventType(str, Enum):
    ORDER_FILLED = "order_filled"
    BALANCE_CHANGED = "balance_changed"
    POSITION_CHANGED = "position_changed"


class EventEnvelope(BaseModel):
    """MANDATORY standardized envelope for ALL events"""
    id: str = Field(default_factory=generate_event_id, description="Globally unique event ID for deduplication")
    correlation_id: str = Field(..., description="Links the events of one request for tracing")
    causation_id: Optional[str] = Field(None, description="ID of the record whose change caused this event")
    type: EventType
    ts: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    key: str = Field(..., description="Ordering key, the account ID")
    source: str = Field(..., description="Service that generated this event")
    version: int = Field(default=1, description="Schema version for compatibility")
    data: Dict[str, Any] = Field(..., description="Actual event payload")


class OrderFilled(BaseModel):
    order_id: str
    account_id: str
    symbol: str
    side: OrderSide
    quantity: Decimal
    price: Decimal
    fill_id: Optional[str] = None


class BalanceChanged(BaseModel):
    account_id: str
    new_balance: Decimal


class PositionChanged(BaseModel):
    account_id: str
    symbol: str
    new_quantity: Decimal


EVENT_PAYLOADS = {
    EventType.ORDER_FILLED: OrderFilled,
    EventType.BALANCE_CHANGED: BalanceChanged,
    EventType.POSITION_CHANGED: PositionChanged,
}
