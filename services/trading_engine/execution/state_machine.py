"""
Order lifecycle.

    pending -> filled | open | rejected | cancelled
    open -> partially_filled | filled | cancelled | expired
    partially_filled -> partially_filled | filled

Only pending and open orders may be modified or cancelled.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, FrozenSet, Optional

from core.database.models import Order
from core.trading.models import OrderStatus
from core.trading.utils import to_price, to_quantity, utcnow
from core.utils.exceptions import FailedPreconditionError, InvalidArgumentError

ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({
        OrderStatus.FILLED, OrderStatus.OPEN, OrderStatus.REJECTED, OrderStatus.CANCELLED,
    }),
    OrderStatus.OPEN: frozenset({
        OrderStatus.PARTIALLY_FILLED, OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.EXPIRED,
    }),
    OrderStatus.PARTIALLY_FILLED: frozenset({
        OrderStatus.PARTIALLY_FILLED, OrderStatus.FILLED,
    }),
}

MODIFIABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.OPEN})
FILLABLE_STATUSES = frozenset({OrderStatus.OPEN, OrderStatus.PARTIALLY_FILLED})
TERMINAL_STATUSES = frozenset({
    OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.REJECTED, OrderStatus.EXPIRED,
})


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(order: Order, target: OrderStatus, at: Optional[datetime] = None) -> None:
    if not can_transition(order.status, target):
        raise FailedPreconditionError(
            f"Order cannot move from {order.status.value} to {target.value}",
            reason="invalid_order_transition",
            details={"order_id": order.id, "status": order.status.value, "target": target.value},
        )
    at = at or utcnow()
    order.status = target
    if target == OrderStatus.FILLED:
        order.executed_at = at
    elif target == OrderStatus.CANCELLED:
        order.cancelled_at = at
    elif target == OrderStatus.EXPIRED:
        order.expired_at = at


def ensure_modifiable(order: Order) -> None:
    if order.status not in MODIFIABLE_STATUSES:
        raise FailedPreconditionError(
            f"Order is {order.status.value} and can no longer be changed",
            reason="order_not_modifiable",
            details={"order_id": order.id, "status": order.status.value},
        )


def record_fill(order: Order, quantity: Decimal, price: Decimal,
                executed_at: Optional[datetime] = None) -> None:
    """Fold one fill into the order's filled quantity, average price and status."""
    quantity = to_quantity(quantity)
    previous = to_quantity(order.filled_quantity or 0)
    filled = previous + quantity
    if filled > order.quantity:
        raise InvalidArgumentError(
            "Fill exceeds the order's remaining quantity",
            reason="overfill",
            details={"order_id": order.id, "remaining": str(order.quantity - previous),
                     "fill_quantity": str(quantity)},
        )

    previous_average = order.average_fill_price or Decimal("0")
    order.average_fill_price = to_price((previous * previous_average + quantity * price) / filled)
    order.filled_quantity = filled

    target = OrderStatus.FILLED if filled == order.quantity else OrderStatus.PARTIALLY_FILLED
    transition(order, target, executed_at)
