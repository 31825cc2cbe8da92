"""
Trading Engine Service

Order validation, execution and the order lifecycle. The execution engine is
a strategy behind ``ExecutionEngine`` so a real matching or settlement
integration can replace the instant engine without touching the ledger.
"""

from .service import TradingEngineService
from .interfaces.execution_engine import ExecutionEngine, ExecutionDecision
from .execution.instant_engine import InstantExecutionEngine, market_fill_id
from .models import OrderView
from .validation.order_validator import OrderValidator, ValidatedOrder

__all__ = [
    "TradingEngineService",
    "ExecutionEngine",
    "ExecutionDecision",
    "InstantExecutionEngine",
    "market_fill_id",
    "OrderView",
    "OrderValidator",
    "ValidatedOrder",
]
