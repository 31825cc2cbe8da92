from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel

from core.database.models import Order
from core.trading.models import OrderSide, OrderStatus, OrderType, TimeInForce


class OrderView(BaseModel):
    """Order record as returned to callers"""
    id: str
    account_id: str
    security_id: str
    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: Decimal
    limit_price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    time_in_force: TimeInForce
    status: OrderStatus
    filled_quantity: Decimal
    average_fill_price: Optional[Decimal] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None

    @classmethod
    def from_order(cls, order: Order, symbol: str) -> "OrderView":
        return cls(
            id=order.id,
            account_id=order.account_id,
            security_id=order.security_id,
            symbol=symbol,
            side=order.side,
            order_type=order.order_type,
            quantity=order.quantity,
            limit_price=order.limit_price,
            stop_price=order.stop_price,
            time_in_force=order.time_in_force,
            status=order.status,
            filled_quantity=order.filled_quantity,
            average_fill_price=order.average_fill_price,
            created_at=order.created_at,
            updated_at=order.updated_at,
            executed_at=order.executed_at,
            cancelled_at=order.cancelled_at,
            expired_at=order.expired_at,
        )
