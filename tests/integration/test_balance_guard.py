"""
Balance guard and unit-of-work behaviour against a real SQLite store.
"""
from decimal import Decimal

import pytest
from sqlalchemy import text

from core.database.models import Account, LedgerTransaction
from core.database.unit_of_work import TransactionRunner
from core.trading.models import TransactionStatus, TransactionType
from core.utils.exceptions import BalanceGuardViolation, ConflictError, InvalidArgumentError


async def _add_row(container, account_id, amount, status=TransactionStatus.COMPLETED, move_cash=None):
    ledger = container.ledger_updater()

    async def _m(session, events):
        account = await session.get(Account, account_id)
        txn = await ledger.apply_cash_movement(session, events, account, TransactionType.ADJUSTMENT,
                                               Decimal(amount), "test row", status=status,
                                               move_cash=move_cash)
        return txn.id

    return await container.transaction_runner().run("test_row", _m)


class TestBalanceGuard:

    async def test_negative_cash_rejected_and_rolled_back(self, container, make_account, load_account,
                                                          load_ledger):
        account = await make_account(cash="100.00")

        with pytest.raises(BalanceGuardViolation) as exc:
            await _add_row(container, account.id, "-100.01")
        assert exc.value.reason == "negative_cash_balance"
        assert exc.value.entity == "account"

        assert (await load_account(account.id)).cash_balance == Decimal("100.00")
        assert await load_ledger(account.id) == []

    async def test_direct_negative_assignment_caught_at_flush(self, db_manager, make_account, load_account):
        account = await make_account(cash="10.00")

        with pytest.raises(BalanceGuardViolation):
            async with db_manager.transaction("tamper") as session:
                stored = await session.get(Account, account.id)
                stored.cash_balance = Decimal("-5.00")

        assert (await load_account(account.id)).cash_balance == Decimal("10.00")

    async def test_store_check_constraint_backs_the_guard(self, db_manager, make_account, load_account):
        account = await make_account(cash="10.00")

        with pytest.raises(BalanceGuardViolation) as exc:
            async with db_manager.transaction("raw_update") as session:
                await session.execute(
                    text("UPDATE accounts SET cash_balance = -1 WHERE id = :id"), {"id": account.id}
                )
        assert exc.value.reason == "constraint_violation"
        assert (await load_account(account.id)).cash_balance == Decimal("10.00")


class TestLedgerImmutability:

    async def test_completed_row_cannot_change(self, container, db_manager, make_account, load_ledger):
        account = await make_account(cash="100.00")
        txn_id = await _add_row(container, account.id, "25.00")

        with pytest.raises(BalanceGuardViolation) as exc:
            async with db_manager.transaction("tamper") as session:
                txn = await session.get(LedgerTransaction, txn_id)
                txn.amount = Decimal("9999.00")
        assert exc.value.reason == "ledger_row_immutable"

        rows = await load_ledger(account.id)
        assert [r.amount for r in rows] == [Decimal("25.00")]

    async def test_completed_row_status_cannot_change(self, container, db_manager, make_account):
        account = await make_account(cash="100.00")
        txn_id = await _add_row(container, account.id, "25.00")

        with pytest.raises(BalanceGuardViolation):
            async with db_manager.transaction("tamper") as session:
                txn = await session.get(LedgerTransaction, txn_id)
                txn.status = TransactionStatus.REVERSED

    async def test_rows_cannot_be_deleted(self, container, db_manager, make_account, load_ledger):
        account = await make_account(cash="100.00")
        txn_id = await _add_row(container, account.id, "25.00")

        with pytest.raises(BalanceGuardViolation):
            async with db_manager.transaction("tamper") as session:
                await session.delete(await session.get(LedgerTransaction, txn_id))

        assert len(await load_ledger(account.id)) == 1

    async def test_pending_row_may_settle_but_not_change_amount(self, container, db_manager, make_account,
                                                                load_account):
        account = await make_account(cash="100.00")
        txn_id = await _add_row(container, account.id, "40.00", status=TransactionStatus.PENDING)
        assert (await load_account(account.id)).cash_balance == Decimal("100.00")

        with pytest.raises(BalanceGuardViolation):
            async with db_manager.transaction("tamper") as session:
                txn = await session.get(LedgerTransaction, txn_id)
                txn.amount = Decimal("41.00")

        ledger = container.ledger_updater()

        async def _settle(session, events):
            stored = await session.get(Account, account.id)
            txn = await session.get(LedgerTransaction, txn_id)
            await ledger.settle_transaction(session, events, stored, txn, TransactionStatus.COMPLETED,
                                            cash_delta=txn.amount)
            return txn.status

        assert await container.transaction_runner().run("settle", _settle) == TransactionStatus.COMPLETED
        assert (await load_account(account.id)).cash_balance == Decimal("140.00")


class TestTransactionRunner:

    async def test_failure_mid_mutation_leaves_no_trace(self, container, make_account, load_account,
                                                        load_ledger, event_publisher):
        account = await make_account(cash="100.00")
        ledger = container.ledger_updater()

        async def _m(session, events):
            stored = await session.get(Account, account.id)
            await ledger.apply_cash_movement(session, events, stored, TransactionType.ADJUSTMENT,
                                             Decimal("-30.00"), "partial")
            raise InvalidArgumentError("late validation failure", reason="late_failure")

        with pytest.raises(InvalidArgumentError):
            await container.transaction_runner().run("half_done", _m)

        await container.event_emitter().drain()
        assert (await load_account(account.id)).cash_balance == Decimal("100.00")
        assert await load_ledger(account.id) == []
        assert event_publisher.events == []

    async def test_conflict_retried_then_committed(self, container, make_account, load_account):
        account = await make_account(cash="100.00")
        ledger = container.ledger_updater()
        attempts = []

        async def _m(session, events):
            attempts.append(len(attempts) + 1)
            stored = await session.get(Account, account.id)
            await ledger.apply_cash_movement(session, events, stored, TransactionType.ADJUSTMENT,
                                             Decimal("5.00"), "credit")
            if len(attempts) < 3:
                raise ConflictError("simulated race")
            return len(attempts)

        assert await container.transaction_runner().run("retry", _m) == 3
        # only the committed attempt moved cash
        assert (await load_account(account.id)).cash_balance == Decimal("105.00")

    async def test_conflict_retries_are_bounded(self, container, db_manager):
        runner = TransactionRunner(db_manager, container.event_emitter(), max_retries=2, base_delay=0)
        calls = []

        async def _m(session, events):
            calls.append(1)
            raise ConflictError("always losing")

        with pytest.raises(ConflictError):
            await runner.run("hopeless", _m)
        assert len(calls) == runner.max_retries + 1

    async def test_version_mismatch_becomes_conflict(self, db_manager, make_account):
        account = await make_account(cash="100.00")

        with pytest.raises(ConflictError) as exc:
            async with db_manager.transaction("stale") as session:
                stored = await session.get(Account, account.id)
                # another writer commits first
                async with db_manager.transaction("winner") as other:
                    winner = await other.get(Account, account.id)
                    winner.cash_balance = Decimal("90.00")
                stored.cash_balance = Decimal("80.00")
        assert exc.value.reason == "stale_version"
