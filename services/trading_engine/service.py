from datetime import datetime
from typing import List, Optional

from core.database.connection import DatabaseManager
from core.database.models import Order, Security
from core.database.unit_of_work import TransactionRunner
from core.logging import get_audit_logger_safe, get_trading_logger_safe
from core.trading.models import (
    CallerContext,
    Fill,
    OrderModification,
    OrderRequest,
    OrderSide,
    OrderStatus,
    OrderType,
)
from core.trading.utils import start_of_utc_day, to_price, to_quantity
from core.utils.exceptions import (
    BackOfficeError,
    FailedPreconditionError,
    InvalidArgumentError,
    NotFoundError,
)
from services.instrument_data.security_registry import SecurityRegistry
from services.portfolio_manager.ledger_updater import LedgerUpdater
from services.portfolio_manager.repository import AccountRepository, check_account_access

from .execution.state_machine import FILLABLE_STATUSES, ensure_modifiable, record_fill, transition
from .interfaces.execution_engine import ExecutionEngine
from .models import OrderView
from .repository import OrderRepository
from .validation.order_validator import (
    OrderValidator,
    check_buying_power,
    check_kyc,
    check_shares,
    normalize_order_fields,
    reference_price,
)


class TradingEngineService:
    """
    Order entry and fill application.

    Every mutation reads and checks outside the transaction first, then
    locks the account row and repeats the balance-sensitive checks before
    writing. Oracle calls never happen inside a transaction.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        runner: TransactionRunner,
        validator: OrderValidator,
        securities: SecurityRegistry,
        engine: ExecutionEngine,
        ledger: LedgerUpdater,
    ):
        self.db_manager = db_manager
        self.runner = runner
        self.validator = validator
        self.securities = securities
        self.engine = engine
        self.ledger = ledger

        self.logger = get_trading_logger_safe("trading_engine")
        self.audit_logger = get_audit_logger_safe("trading_engine")

    async def place_order(self, caller: CallerContext, account_id: str,
                          request: OrderRequest) -> OrderView:
        try:
            validated = await self.validator.validate(caller, account_id, request)
        except BackOfficeError as e:
            self._log_rejection("place_order", e, account_id=account_id, symbol=request.symbol)
            raise

        fields = validated.fields
        quote = validated.security.quote

        async def _place(session, events):
            repo = AccountRepository(session)
            account = await repo.get_owned_account(account_id, caller, for_update=True)
            if fields.side == OrderSide.BUY:
                check_buying_power(account, fields.quantity, validated.reference_price)
            else:
                position = await repo.get_position(account_id, validated.security.security_id,
                                                   for_update=True)
                check_shares(position, fields.quantity)

            security = await session.get(Security, validated.security.security_id)
            order = Order(
                account_id=account_id,
                security_id=security.id,
                side=fields.side,
                order_type=fields.order_type,
                quantity=fields.quantity,
                limit_price=fields.limit_price,
                stop_price=fields.stop_price,
                time_in_force=fields.time_in_force,
                status=OrderStatus.PENDING,
                filled_quantity=0,
            )
            session.add(order)
            await session.flush()

            decision = self.engine.decide(order, quote)
            if decision.fill is not None:
                record_fill(order, decision.fill.quantity, decision.fill.price,
                            decision.fill.executed_at)
                await self.ledger.apply_fill(session, events, account, order, security, decision.fill)
            else:
                transition(order, decision.status)
            await session.flush()
            return OrderView.from_order(order, security.symbol)

        view = await self._run_logged("place_order", _place, account_id=account_id,
                                      symbol=validated.security.symbol)
        self.audit_logger.info("Order placed",
                               order_id=view.id,
                               account_id=account_id,
                               symbol=view.symbol,
                               side=view.side.value,
                               order_type=view.order_type.value,
                               quantity=str(view.quantity),
                               status=view.status.value,
                               estimated_value=str(validated.estimated_value),
                               execution_mode=self.engine.get_execution_mode())
        return view

    async def modify_order(self, caller: CallerContext, order_id: str,
                           changes: OrderModification) -> OrderView:
        if not changes.model_dump(exclude_none=True):
            raise InvalidArgumentError("No changes requested", reason="empty_modification")
        check_kyc(caller)

        async with self.db_manager.get_session() as session:
            order, security = await self._load_owned(session, caller, order_id)
            ensure_modifiable(order)
            side, order_type, symbol = order.side, order.order_type, security.symbol

        # Buys not valued at their limit price need a fresh quote before locking
        quote_price = None
        if side == OrderSide.BUY and order_type != OrderType.LIMIT:
            quote_price = (await self.securities.resolve(symbol)).quote.price

        async def _modify(session, events):
            repo = AccountRepository(session)
            order = await OrderRepository(session).require(order_id)
            account = await repo.get_owned_account(order.account_id, caller, for_update=True)
            order = await OrderRepository(session).require(order_id, for_update=True)
            ensure_modifiable(order)

            fields = normalize_order_fields(
                order.side,
                order.order_type,
                changes.quantity if changes.quantity is not None else order.quantity,
                limit_price=changes.limit_price if changes.limit_price is not None else order.limit_price,
                stop_price=changes.stop_price if changes.stop_price is not None else order.stop_price,
                time_in_force=changes.time_in_force or order.time_in_force,
            )
            if fields.side == OrderSide.BUY:
                check_buying_power(account, fields.quantity, reference_price(fields, quote_price))
            else:
                check_shares(await repo.get_position(account.id, order.security_id, for_update=True),
                             fields.quantity)

            order.quantity = fields.quantity
            order.limit_price = fields.limit_price
            order.stop_price = fields.stop_price
            order.time_in_force = fields.time_in_force
            await session.flush()
            return OrderView.from_order(order, symbol)

        view = await self._run_logged("modify_order", _modify, order_id=order_id)
        self.audit_logger.info("Order modified", order_id=order_id, account_id=view.account_id,
                               quantity=str(view.quantity),
                               limit_price=str(view.limit_price) if view.limit_price else None,
                               stop_price=str(view.stop_price) if view.stop_price else None)
        return view

    async def cancel_order(self, caller: CallerContext, order_id: str) -> OrderView:
        async def _cancel(session, events):
            order, security = await self._load_owned(session, caller, order_id)
            await AccountRepository(session).get(order.account_id, for_update=True)
            order = await OrderRepository(session).require(order_id, for_update=True)
            ensure_modifiable(order)
            transition(order, OrderStatus.CANCELLED)
            await session.flush()
            return OrderView.from_order(order, security.symbol)

        view = await self._run_logged("cancel_order", _cancel, order_id=order_id)
        self.audit_logger.info("Order cancelled", order_id=order_id, account_id=view.account_id)
        return view

    async def record_external_fill(self, order_id: str, fill: Fill) -> OrderView:
        """
        Apply a fill reported by an external venue to an open order.

        Replaying a fill_id that was already applied returns the order
        unchanged. Partial fills move the order to partially_filled.
        """
        quantity = to_quantity(fill.quantity)
        price = to_price(fill.price)
        if quantity <= 0 or price <= 0:
            raise InvalidArgumentError("Fill quantity and price must be positive", reason="invalid_fill",
                                       details={"quantity": str(fill.quantity), "price": str(fill.price)})

        async def _fill(session, events):
            orders = OrderRepository(session)
            repo = AccountRepository(session)
            order = await orders.require(order_id)
            account = await repo.get(order.account_id, for_update=True)
            order = await orders.require(order_id, for_update=True)
            security = await session.get(Security, order.security_id)

            if await repo.fill_exists(fill.fill_id):
                self.logger.info("Duplicate fill ignored", fill_id=fill.fill_id, order_id=order_id)
                return OrderView.from_order(order, security.symbol)

            if order.status not in FILLABLE_STATUSES:
                raise FailedPreconditionError(
                    f"Order is {order.status.value} and cannot be filled",
                    reason="order_not_fillable",
                    details={"order_id": order_id, "status": order.status.value},
                )
            if order.side == OrderSide.BUY:
                check_buying_power(account, quantity, price)
            else:
                check_shares(await repo.get_position(account.id, order.security_id, for_update=True),
                             quantity)

            record_fill(order, quantity, price, fill.executed_at)
            await self.ledger.apply_fill(session, events, account, order, security, fill)
            await session.flush()
            return OrderView.from_order(order, security.symbol)

        view = await self._run_logged("record_external_fill", _fill, order_id=order_id,
                                      fill_id=fill.fill_id)
        self.audit_logger.info("External fill recorded", order_id=order_id, fill_id=fill.fill_id,
                               status=view.status.value, filled_quantity=str(view.filled_quantity))
        return view

    async def expire_day_orders(self, cutoff: Optional[datetime] = None) -> List[str]:
        """Expire open day orders created before ``cutoff`` (default: start of today, UTC)."""
        cutoff = cutoff or start_of_utc_day()
        async with self.db_manager.get_session() as session:
            candidates = await OrderRepository(session).list_expirable_ids(cutoff)

        expired: List[str] = []
        for order_id in candidates:
            async def _expire(session, events, order_id=order_id):
                order = await OrderRepository(session).require(order_id, for_update=True)
                # a fill or cancel may have landed since the candidate scan
                if order.status != OrderStatus.OPEN:
                    return False
                transition(order, OrderStatus.EXPIRED)
                await session.flush()
                return True

            if await self.runner.run("expire_order", _expire, source="trading_engine"):
                expired.append(order_id)

        self.audit_logger.info("Day orders expired", cutoff=cutoff.isoformat(),
                               candidates=len(candidates), expired=len(expired))
        return expired

    async def get_order(self, caller: CallerContext, order_id: str) -> OrderView:
        async with self.db_manager.get_session() as session:
            order, security = await self._load_owned(session, caller, order_id)
            return OrderView.from_order(order, security.symbol)

    async def list_orders(self, caller: CallerContext, account_id: str,
                          status: Optional[OrderStatus] = None,
                          limit: int = 50, offset: int = 0) -> List[OrderView]:
        if limit <= 0 or offset < 0:
            raise InvalidArgumentError("limit must be positive and offset non-negative",
                                       reason="invalid_pagination")
        async with self.db_manager.get_session() as session:
            await AccountRepository(session).get_owned_account(account_id, caller, require_active=False)
            rows = await OrderRepository(session).list_for_account(
                account_id, statuses=[status] if status else None, limit=min(limit, 500), offset=offset)
            return [OrderView.from_order(order, security.symbol) for order, security in rows]

    async def _load_owned(self, session, caller: CallerContext, order_id: str):
        row = await OrderRepository(session).get_with_security(order_id)
        if row is None:
            raise NotFoundError("Order not found", reason="order_not_found",
                                details={"order_id": order_id})
        order, security = row
        account = await AccountRepository(session).get(order.account_id)
        check_account_access(account, caller, require_active=False)
        return order, security

    async def _run_logged(self, operation: str, mutation, **context):
        try:
            return await self.runner.run(operation, mutation, source="trading_engine")
        except BackOfficeError as e:
            self._log_rejection(operation, e, **context)
            raise

    def _log_rejection(self, operation: str, error: BackOfficeError, **context) -> None:
        self.logger.warning("Order mutation rejected", operation=operation,
                            error_kind=error.kind.value, reason=error.reason, **context)
