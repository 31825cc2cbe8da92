"""
Balance guard: last line of defense for the store invariants.

Every session created by ``DatabaseManager`` is a ``GuardedSession``; its
``before_flush`` hook inspects each new or changed account, position and
ledger row and aborts the flush (and so the transaction) on a violation.
Mutation code also calls the explicit checks right after computing new
values so the failure names the operation that caused it.
"""

from decimal import Decimal

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from core.logging import get_database_logger_safe
from core.trading.models import TransactionStatus
from core.utils.exceptions import BalanceGuardViolation
from .models import Account, LedgerTransaction, Position

logger = get_database_logger_safe("balance_guard")

_ZERO = Decimal("0")

# Columns a non-final ledger row may still change, and the statuses that allow it
_MUTABLE_LEDGER_COLUMNS = {"status", "completed_at"}
_MUTABLE_LEDGER_STATUSES = {TransactionStatus.PENDING, TransactionStatus.PROCESSING}


class GuardedSession(Session):
    """Sync session class backing every AsyncSession of the account store"""
    pass


def check_account(account: Account) -> None:
    if account.cash_balance is not None and Decimal(account.cash_balance) < _ZERO:
        logger.error("Balance guard violation", entity="account", entity_id=account.id,
                     cash_balance=str(account.cash_balance))
        raise BalanceGuardViolation(
            "Cash balance would become negative",
            reason="negative_cash_balance",
            entity="account",
            entity_id=account.id,
            details={"cash_balance": str(account.cash_balance)},
        )


def check_position(position: Position) -> None:
    if position.quantity is not None and Decimal(position.quantity) < _ZERO:
        logger.error("Balance guard violation", entity="position", entity_id=position.id,
                     quantity=str(position.quantity))
        raise BalanceGuardViolation(
            "Position quantity would become negative",
            reason="negative_position_quantity",
            entity="position",
            entity_id=position.id,
            details={"quantity": str(position.quantity)},
        )


def check_ledger_update(txn: LedgerTransaction) -> None:
    """Completed ledger rows are immutable; pending ones may only settle."""
    state = inspect(txn)
    changed = {attr.key for attr in state.attrs if attr.history.has_changes()}
    if not changed:
        return

    status_history = state.attrs.status.history
    original_status = status_history.deleted[0] if status_history.deleted else txn.status
    if original_status in _MUTABLE_LEDGER_STATUSES and changed <= _MUTABLE_LEDGER_COLUMNS:
        return

    raise BalanceGuardViolation(
        "Ledger rows cannot be modified once final",
        reason="ledger_row_immutable",
        entity="transaction",
        entity_id=txn.id,
        details={"status": getattr(original_status, "value", original_status),
                 "changed": sorted(changed)},
    )


@event.listens_for(GuardedSession, "before_flush")
def _guard_before_flush(session, flush_context, instances):
    for obj in session.new:
        if isinstance(obj, Account):
            check_account(obj)
        elif isinstance(obj, Position):
            check_position(obj)

    for obj in session.dirty:
        if isinstance(obj, Account):
            check_account(obj)
        elif isinstance(obj, Position):
            check_position(obj)
        elif isinstance(obj, LedgerTransaction):
            check_ledger_update(obj)

    for obj in session.deleted:
        if isinstance(obj, LedgerTransaction):
            raise BalanceGuardViolation(
                "Ledger rows cannot be deleted",
                reason="ledger_row_immutable",
                entity="transaction",
                entity_id=obj.id,
            )
