"""
Ledger updater: the single choke point for balance and position mutations.

Every function here runs inside the caller's transaction. Cash, position and
the ledger row change together or not at all; the caller's scoped
transaction commits them or rolls all of them back.
"""

from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from core.database.balance_guard import check_account, check_position
from core.database.models import (
    Account,
    Execution,
    LedgerTransaction,
    Order,
    Position,
    PositionHistory,
    Security,
)
from core.logging import get_trading_logger_safe
from core.schemas.events import BalanceChanged, EventType, OrderFilled, PositionChanged
from core.streaming.publisher import EventBuffer
from core.trading.models import Fill, OrderSide, TransactionStatus, TransactionType
from core.trading.utils import (
    ensure_utc,
    format_money,
    format_quantity,
    to_money,
    to_price,
    to_quantity,
    utcnow,
)
from core.utils.exceptions import ConflictError, InvalidArgumentError
from core.utils.ids import generate_id
from .models import FillResult
from .repository import AccountRepository

_ZERO = Decimal("0")


def fill_description(side: OrderSide, quantity: Decimal, symbol: str, price: Decimal) -> str:
    """e.g. ``BUY 10 AAPL @ $150.00``"""
    return f"{side.value.upper()} {format_quantity(quantity)} {symbol} @ {format_money(price)}"


def weighted_average_cost(old_quantity: Decimal, old_average: Decimal,
                          quantity: Decimal, price: Decimal) -> Decimal:
    total_quantity = old_quantity + quantity
    return to_price((old_quantity * old_average + quantity * price) / total_quantity)


class LedgerUpdater:
    """Applies fills and cash movements to accounts, positions and the ledger"""

    def __init__(self):
        self.logger = get_trading_logger_safe("ledger_updater")

    async def apply_fill(self, session: AsyncSession, events: EventBuffer, account: Account,
                         order: Order, security: Security, fill: Fill) -> Optional[FillResult]:
        """Apply one fill of ``order``.

        Returns ``None`` without touching anything when ``fill.fill_id`` was
        already applied.
        """
        repo = AccountRepository(session)
        if await repo.fill_exists(fill.fill_id):
            self.logger.info("Duplicate fill ignored", fill_id=fill.fill_id, order_id=order.id)
            return None

        quantity = to_quantity(fill.quantity)
        price = to_price(fill.price)
        if quantity <= _ZERO or price <= _ZERO:
            raise InvalidArgumentError("Fill quantity and price must be positive",
                                       reason="invalid_fill",
                                       details={"quantity": str(fill.quantity), "price": str(fill.price)})

        executed_value = to_money(quantity * price)
        position = await repo.get_position(account.id, security.id, for_update=True)
        realized_pnl: Optional[Decimal] = None

        if order.side == OrderSide.BUY:
            account.cash_balance = to_money(account.cash_balance - executed_value)
            check_account(account)
            # Surface a lost race on the account row before touching anything else
            await session.flush()

            if position is None:
                position = Position(
                    account_id=account.id,
                    security_id=security.id,
                    quantity=quantity,
                    average_cost=price,
                    realized_pnl=_ZERO,
                    opened_at=fill.executed_at,
                )
                session.add(position)
            else:
                position.average_cost = weighted_average_cost(
                    position.quantity, position.average_cost, quantity, price
                )
                position.quantity = to_quantity(position.quantity + quantity)
            new_quantity = position.quantity
        else:
            held = position.quantity if position is not None else _ZERO
            new_quantity = to_quantity(held - quantity)
            if position is None or new_quantity < _ZERO:
                # Shares were checked earlier in this attempt; another sell got there first
                raise ConflictError(
                    "Position changed since the share check",
                    reason="position_changed",
                    details={"held": str(held), "sell_quantity": str(quantity)},
                )

            account.cash_balance = to_money(account.cash_balance + executed_value)
            check_account(account)
            await session.flush()

            realized_pnl = to_money((price - position.average_cost) * quantity)
            if new_quantity == _ZERO:
                await self._archive_position(session, position, quantity, price, realized_pnl,
                                             fill.executed_at)
            else:
                position.quantity = new_quantity
                position.realized_pnl = to_money(position.realized_pnl + realized_pnl)
                check_position(position)

        execution = Execution(
            id=generate_id(),
            fill_id=fill.fill_id,
            order_id=order.id,
            account_id=account.id,
            security_id=security.id,
            side=order.side,
            quantity=quantity,
            price=price,
            value=executed_value,
            executed_at=fill.executed_at,
        )
        amount = -executed_value if order.side == OrderSide.BUY else executed_value
        txn = LedgerTransaction(
            id=generate_id(),
            account_id=account.id,
            type=TransactionType.BUY if order.side == OrderSide.BUY else TransactionType.SELL,
            amount=amount,
            status=TransactionStatus.COMPLETED,
            description=fill_description(order.side, quantity, security.symbol, price),
            order_id=order.id,
            reference_id=execution.id,
            created_at=fill.executed_at,
            completed_at=fill.executed_at,
        )
        session.add_all([execution, txn])
        await session.flush()

        events.record(EventType.ORDER_FILLED, account.id, OrderFilled(
            order_id=order.id,
            account_id=account.id,
            symbol=security.symbol,
            side=order.side,
            quantity=quantity,
            price=price,
            fill_id=fill.fill_id,
        ), causation_id=execution.id)
        events.record(EventType.BALANCE_CHANGED, account.id, BalanceChanged(
            account_id=account.id, new_balance=account.cash_balance,
        ), causation_id=txn.id)
        events.record(EventType.POSITION_CHANGED, account.id, PositionChanged(
            account_id=account.id, symbol=security.symbol, new_quantity=new_quantity,
        ), causation_id=execution.id)

        self.logger.info("Fill applied",
                         fill_id=fill.fill_id,
                         order_id=order.id,
                         account_id=account.id,
                         symbol=security.symbol,
                         side=order.side.value,
                         quantity=str(quantity),
                         price=str(price),
                         cash_balance=str(account.cash_balance),
                         position_quantity=str(new_quantity))

        return FillResult(
            fill_id=fill.fill_id,
            execution_id=execution.id,
            transaction_id=txn.id,
            cash_balance=account.cash_balance,
            position_quantity=new_quantity,
            realized_pnl=realized_pnl,
        )

    async def _archive_position(self, session: AsyncSession, position: Position, quantity: Decimal,
                                price: Decimal, realized_pnl: Decimal, closed_at) -> PositionHistory:
        opened_at = ensure_utc(position.opened_at)
        closed_at = ensure_utc(closed_at) or utcnow()
        cost = position.average_cost * quantity
        history = PositionHistory(
            account_id=position.account_id,
            security_id=position.security_id,
            quantity=quantity,
            average_cost=position.average_cost,
            close_price=price,
            realized_pl=realized_pnl,
            realized_pl_percent=(realized_pnl / cost * 100).quantize(Decimal("0.0001")) if cost else None,
            opened_at=opened_at,
            closed_at=closed_at,
            holding_period_days=max((closed_at - opened_at).days, 0),
        )
        session.add(history)
        await session.delete(position)
        return history

    async def apply_cash_movement(self, session: AsyncSession, events: EventBuffer, account: Account,
                                  txn_type: TransactionType, amount: Decimal, description: str,
                                  status: TransactionStatus = TransactionStatus.COMPLETED,
                                  move_cash: Optional[bool] = None,
                                  reference_id: Optional[str] = None,
                                  related_transaction_id: Optional[str] = None,
                                  txn_id: Optional[str] = None) -> LedgerTransaction:
        """Append a ledger row and, for completed rows or holds, move cash with it.

        ``move_cash`` defaults to True only for completed rows. Withdrawals
        pass True with a pending row: the funds are held immediately.
        """
        amount = to_money(amount)
        if move_cash is None:
            move_cash = status == TransactionStatus.COMPLETED

        if move_cash and amount != _ZERO:
            await self._move_cash(session, events, account, amount)

        now = utcnow()
        txn = LedgerTransaction(
            id=txn_id or generate_id(),
            account_id=account.id,
            type=txn_type,
            amount=amount,
            status=status,
            description=description,
            reference_id=reference_id,
            related_transaction_id=related_transaction_id,
            created_at=now,
            completed_at=now if status == TransactionStatus.COMPLETED else None,
        )
        session.add(txn)
        await session.flush()
        return txn

    async def settle_transaction(self, session: AsyncSession, events: EventBuffer, account: Account,
                                 txn: LedgerTransaction, final_status: TransactionStatus,
                                 cash_delta: Decimal = _ZERO) -> LedgerTransaction:
        """Move a pending ledger row to its final status, optionally moving cash."""
        cash_delta = to_money(cash_delta)
        if cash_delta != _ZERO:
            await self._move_cash(session, events, account, cash_delta)

        txn.status = final_status
        if final_status == TransactionStatus.COMPLETED:
            txn.completed_at = utcnow()
        await session.flush()
        return txn

    async def _move_cash(self, session: AsyncSession, events: EventBuffer, account: Account,
                         delta: Decimal) -> None:
        account.cash_balance = to_money(account.cash_balance + delta)
        check_account(account)
        await session.flush()
        events.record(EventType.BALANCE_CHANGED, account.id, BalanceChanged(
            account_id=account.id, new_balance=account.cash_balance,
        ))
