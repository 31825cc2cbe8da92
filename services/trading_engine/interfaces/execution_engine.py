from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel

from core.database.models import Order
from core.trading.models import Fill, OrderStatus, Quote


class ExecutionDecision(BaseModel):
    """What to do with a freshly accepted order"""
    status: OrderStatus
    fill: Optional[Fill] = None


class ExecutionEngine(ABC):
    """Decides fill price and quantity for an accepted order.

    Implementations must be pure decisions: the trading engine applies the
    outcome inside the order's transaction.
    """

    @abstractmethod
    def decide(self, order: Order, quote: Quote) -> ExecutionDecision:
        """Return the order's next status and the fill to apply, if any."""
        pass

    @abstractmethod
    def get_execution_mode(self) -> str:
        """Return the execution mode identifier (e.g., 'instant')."""
        pass
