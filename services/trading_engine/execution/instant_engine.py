from core.database.models import Order
from core.logging import get_trading_logger_safe
from core.trading.models import Fill, OrderStatus, OrderType, Quote
from core.trading.utils import utcnow
from ..interfaces.execution_engine import ExecutionDecision, ExecutionEngine


def market_fill_id(order_id: str) -> str:
    return f"{order_id}:market"


class InstantExecutionEngine(ExecutionEngine):
    """
    Fills market orders in full at the current quote; every other order type
    rests as open. There is no matching engine behind the open orders: they
    fill only through externally reported fills.
    """

    def __init__(self):
        self.logger = get_trading_logger_safe("execution_engine")

    def get_execution_mode(self) -> str:
        return "instant"

    def decide(self, order: Order, quote: Quote) -> ExecutionDecision:
        if order.order_type == OrderType.MARKET:
            self.logger.debug("Market order filled at quote", order_id=order.id,
                              price=str(quote.price))
            return ExecutionDecision(
                status=OrderStatus.FILLED,
                fill=Fill(
                    fill_id=market_fill_id(order.id),
                    quantity=order.quantity,
                    price=quote.price,
                    executed_at=utcnow(),
                ),
            )
        return ExecutionDecision(status=OrderStatus.OPEN)
