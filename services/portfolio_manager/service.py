from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select

from core.config.settings import Settings
from core.database.connection import DatabaseManager
from core.database.models import Account, LedgerTransaction, Position, Withdrawal
from core.database.unit_of_work import TransactionRunner
from core.logging import get_audit_logger_safe, get_trading_logger_safe
from core.trading.models import (
    AccountStatus,
    AccountType,
    CallerContext,
    FundingStatus,
    KycStatus,
    OrderStatus,
    TransactionStatus,
    TransactionType,
)
from core.trading.utils import to_money, utcnow
from core.utils.exceptions import (
    BackOfficeError,
    FailedPreconditionError,
    ForbiddenError,
    InvalidArgumentError,
    NotFoundError,
)
from core.utils.ids import generate_account_number
from .ledger_updater import LedgerUpdater
from .models import (
    AccountView,
    BalanceView,
    LedgerAuditReport,
    LedgerDiscrepancy,
    PositionView,
    TransactionView,
)
from .repository import AccountRepository

_ZERO = Decimal("0")


class AccountService:
    """Account lifecycle, balances and the ledger audit."""

    def __init__(self, settings: Settings, db_manager: DatabaseManager,
                 runner: TransactionRunner, ledger: LedgerUpdater):
        self.settings = settings
        self.db_manager = db_manager
        self.runner = runner
        self.ledger = ledger
        self.logger = get_trading_logger_safe("account_service")
        self.audit_logger = get_audit_logger_safe("account_service")

    async def open_account(self, caller: CallerContext,
                           account_type: AccountType = AccountType.INDIVIDUAL,
                           account_name: Optional[str] = None) -> AccountView:
        if caller.kyc_status != KycStatus.APPROVED:
            raise ForbiddenError("KYC verification required to open an account", reason="kyc_required")

        limit = self.settings.accounts.max_open_accounts_per_user

        async def _open(session, events):
            repo = AccountRepository(session)
            await repo.lock_holder(caller.caller_id)
            if await repo.count_open_accounts(caller.caller_id) >= limit:
                raise FailedPreconditionError(f"Maximum of {limit} open accounts reached",
                                              reason="account_limit_reached",
                                              details={"limit": limit})
            account = Account(
                user_id=caller.caller_id,
                account_number=generate_account_number(),
                account_type=account_type,
                account_name=account_name or f"{account_type.value.replace('_', ' ').title()} Account",
                status=AccountStatus.ACTIVE,
                cash_balance=_ZERO,
                opening_balance=_ZERO,
            )
            session.add(account)
            await session.flush()
            await self.ledger.apply_cash_movement(
                session, events, account, TransactionType.ADJUSTMENT, _ZERO, "Account opened",
            )
            return AccountView.model_validate(account)

        view = await self.runner.run("open_account", _open, source="account_service")
        self.audit_logger.info("Account opened", account_id=view.id, user_id=caller.caller_id,
                               account_type=view.account_type.value)
        return view

    async def close_account(self, caller: CallerContext, account_id: str) -> AccountView:
        async def _close(session, events):
            repo = AccountRepository(session)
            account = await repo.get_owned_account(account_id, caller, for_update=True,
                                                   require_active=False)
            if account.status == AccountStatus.CLOSED:
                raise FailedPreconditionError("Account is already closed", reason="account_closed")
            positions = [p for p, _ in await repo.list_positions(account.id) if p.quantity > _ZERO]
            if positions:
                raise FailedPreconditionError("Cannot close account with open positions",
                                              reason="open_positions",
                                              details={"positions": len(positions)})
            if account.cash_balance != _ZERO:
                raise FailedPreconditionError("Cannot close account with a non-zero cash balance",
                                              reason="non_zero_balance",
                                              details={"cash_balance": str(account.cash_balance)})
            if await repo.count_orders(account.id, [OrderStatus.PENDING, OrderStatus.OPEN,
                                                    OrderStatus.PARTIALLY_FILLED]):
                raise FailedPreconditionError("Cannot close account with open orders",
                                              reason="open_orders")
            pending = await repo.list_transactions(account.id, statuses=[TransactionStatus.PENDING,
                                                                         TransactionStatus.PROCESSING])
            if pending:
                raise FailedPreconditionError("Cannot close account with pending funding",
                                              reason="pending_funding")
            account.status = AccountStatus.CLOSED
            account.closed_at = utcnow()
            await session.flush()
            return AccountView.model_validate(account)

        view = await self._run_logged("close_account", _close, account_id=account_id)
        self.audit_logger.info("Account closed", account_id=account_id, user_id=caller.caller_id)
        return view

    async def update_account_name(self, caller: CallerContext, account_id: str,
                                  account_name: str) -> AccountView:
        name = (account_name or "").strip()
        if not name or len(name) > 100:
            raise InvalidArgumentError("Account name must be 1 to 100 characters",
                                       reason="invalid_account_name")

        async def _rename(session, events):
            account = await AccountRepository(session).get_owned_account(
                account_id, caller, for_update=True, require_active=False)
            if account.status == AccountStatus.CLOSED:
                raise FailedPreconditionError("Account is closed", reason="account_closed")
            account.account_name = name
            await session.flush()
            return AccountView.model_validate(account)

        view = await self._run_logged("update_account_name", _rename, account_id=account_id)
        self.audit_logger.info("Account renamed", account_id=account_id, user_id=caller.caller_id)
        return view

    async def get_account(self, caller: CallerContext, account_id: str) -> AccountView:
        async with self.db_manager.get_session() as session:
            account = await AccountRepository(session).get_owned_account(
                account_id, caller, require_active=False)
            return AccountView.model_validate(account)

    async def list_accounts(self, caller: CallerContext) -> List[AccountView]:
        async with self.db_manager.get_session() as session:
            accounts = await AccountRepository(session).list_for_user(caller.caller_id)
            return [AccountView.model_validate(a) for a in accounts]

    async def get_positions(self, caller: CallerContext, account_id: str) -> List[PositionView]:
        async with self.db_manager.get_session() as session:
            repo = AccountRepository(session)
            await repo.get_owned_account(account_id, caller, require_active=False)
            return [self._position_view(p, s) for p, s in await repo.list_positions(account_id)]

    async def get_balance(self, caller: CallerContext, account_id: str) -> BalanceView:
        async with self.db_manager.get_session() as session:
            repo = AccountRepository(session)
            account = await repo.get_owned_account(account_id, caller, require_active=False)
            positions = [self._position_view(p, s) for p, s in await repo.list_positions(account_id)]
            positions_value = to_money(sum((p.market_value for p in positions), _ZERO))
            return BalanceView(
                account_id=account.id,
                cash_balance=account.cash_balance,
                positions_value=positions_value,
                total_value=to_money(account.cash_balance + positions_value),
                buying_power=account.buying_power,
            )

    async def get_activity(self, caller: CallerContext, account_id: str,
                           txn_type: Optional[TransactionType] = None,
                           status: Optional[TransactionStatus] = None,
                           limit: int = 50, offset: int = 0) -> List[TransactionView]:
        if limit <= 0 or offset < 0:
            raise InvalidArgumentError("limit must be positive and offset non-negative",
                                       reason="invalid_pagination")
        async with self.db_manager.get_session() as session:
            repo = AccountRepository(session)
            await repo.get_owned_account(account_id, caller, require_active=False)
            rows = await repo.list_transactions(
                account_id,
                types=[txn_type] if txn_type else None,
                statuses=[status] if status else None,
                limit=min(limit, 500),
                offset=offset,
            )
            return [TransactionView.model_validate(r) for r in rows]

    async def adjust_balance(self, account_id: str, amount: Decimal, description: str,
                             admin_id: str) -> TransactionView:
        """Administrative credit (positive) or debit (negative) as a completed adjustment."""
        amount = to_money(amount)
        if amount == _ZERO:
            raise InvalidArgumentError("Adjustment amount must be non-zero", reason="invalid_amount")

        async def _adjust(session, events):
            repo = AccountRepository(session)
            account = await repo.get(account_id, for_update=True)
            if account is None:
                raise NotFoundError("Account not found", reason="account_not_found")
            if account.status == AccountStatus.CLOSED:
                raise FailedPreconditionError("Account is closed", reason="account_closed")
            if account.cash_balance + amount < _ZERO:
                raise FailedPreconditionError("Insufficient balance", reason="insufficient_funds",
                                              details={"cash_balance": str(account.cash_balance),
                                                       "amount": str(amount)})
            txn = await self.ledger.apply_cash_movement(
                session, events, account, TransactionType.ADJUSTMENT, amount,
                description or ("Admin credit" if amount > 0 else "Admin debit"),
            )
            return TransactionView.model_validate(txn)

        view = await self._run_logged("adjust_balance", _adjust, account_id=account_id)
        self.audit_logger.info("Balance adjusted", account_id=account_id, amount=str(amount),
                               admin_id=admin_id, transaction_id=view.id)
        return view

    async def set_status(self, account_id: str, status: AccountStatus) -> AccountView:
        """Activate or suspend an account; closing goes through close_account."""
        if status not in (AccountStatus.ACTIVE, AccountStatus.SUSPENDED):
            raise InvalidArgumentError("Status must be active or suspended", reason="invalid_status")

        async def _set(session, events):
            account = await AccountRepository(session).get(account_id, for_update=True)
            if account is None:
                raise NotFoundError("Account not found", reason="account_not_found")
            if account.status == AccountStatus.CLOSED:
                raise FailedPreconditionError("Account is closed", reason="account_closed")
            account.status = status
            await session.flush()
            return AccountView.model_validate(account)

        view = await self._run_logged("set_account_status", _set, account_id=account_id)
        self.audit_logger.info("Account status changed", account_id=account_id, status=status.value)
        return view

    async def audit_ledger(self, account_id: Optional[str] = None) -> LedgerAuditReport:
        """Recompute every balance from the ledger and report mismatches.

        Expected cash is the opening balance plus completed rows plus the
        holds of withdrawals that are still pending.
        """
        discrepancies: List[LedgerDiscrepancy] = []
        async with self.db_manager.get_session() as session:
            repo = AccountRepository(session)
            account_ids = [account_id] if account_id else await repo.list_account_ids()
            for acc_id in account_ids:
                account = await repo.get(acc_id)
                if account is None:
                    raise NotFoundError("Account not found", reason="account_not_found")
                discrepancies.extend(await self._audit_account(session, account))

        report = LedgerAuditReport(accounts_checked=len(account_ids), discrepancies=discrepancies)
        if report.ok:
            self.audit_logger.info("Ledger audit passed", accounts_checked=report.accounts_checked)
        else:
            self.audit_logger.error("Ledger audit found discrepancies",
                                    accounts_checked=report.accounts_checked,
                                    discrepancies=[d.model_dump(mode="json") for d in discrepancies])
        return report

    async def _audit_account(self, session, account: Account) -> List[LedgerDiscrepancy]:
        found: List[LedgerDiscrepancy] = []
        completed = await session.execute(
            select(LedgerTransaction.amount).where(
                LedgerTransaction.account_id == account.id,
                LedgerTransaction.status == TransactionStatus.COMPLETED,
            )
        )
        held = await session.execute(
            select(LedgerTransaction.amount)
            .join(Withdrawal, Withdrawal.transaction_id == LedgerTransaction.id)
            .where(
                LedgerTransaction.account_id == account.id,
                Withdrawal.status.in_([FundingStatus.PENDING, FundingStatus.PROCESSING]),
                LedgerTransaction.status.in_([TransactionStatus.PENDING, TransactionStatus.PROCESSING]),
            )
        )
        expected = to_money(
            account.opening_balance
            + sum((Decimal(a) for a in completed.scalars()), _ZERO)
            + sum((Decimal(a) for a in held.scalars()), _ZERO)
        )
        if expected != to_money(account.cash_balance):
            found.append(LedgerDiscrepancy(account_id=account.id, check="cash_balance",
                                           expected=expected, actual=account.cash_balance))
        if account.cash_balance < _ZERO:
            found.append(LedgerDiscrepancy(account_id=account.id, check="negative_cash",
                                           actual=account.cash_balance))

        positions = await session.execute(select(Position).where(Position.account_id == account.id))
        for position in positions.scalars():
            if position.quantity < _ZERO:
                found.append(LedgerDiscrepancy(account_id=account.id, check="negative_position",
                                               actual=position.quantity,
                                               detail=position.security_id))
        return found

    def _position_view(self, position: Position, security) -> PositionView:
        last_price = security.last_price
        mark = last_price if last_price is not None else position.average_cost
        market_value = to_money(position.quantity * mark)
        cost_basis = to_money(position.quantity * position.average_cost)
        return PositionView(
            account_id=position.account_id,
            security_id=position.security_id,
            symbol=security.symbol,
            quantity=position.quantity,
            average_cost=position.average_cost,
            last_price=last_price,
            cost_basis=cost_basis,
            market_value=market_value,
            unrealized_pnl=to_money(market_value - cost_basis),
            realized_pnl=position.realized_pnl,
        )

    async def _run_logged(self, operation: str, mutation, **context):
        try:
            return await self.runner.run(operation, mutation, source="account_service")
        except BackOfficeError as e:
            self.logger.warning("Account mutation rejected", operation=operation,
                                error_kind=e.kind.value, reason=e.reason, **context)
            raise
