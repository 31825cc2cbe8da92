"""
Account lifecycle, balances, activity and the ledger audit.
"""
from decimal import Decimal

import pytest
from sqlalchemy import text

from core.trading.models import (
    AccountStatus,
    AccountType,
    CallerContext,
    KycStatus,
    OrderRequest,
    OrderSide,
    OrderType,
    TransactionType,
)
from core.utils.exceptions import (
    FailedPreconditionError,
    ForbiddenError,
    InvalidArgumentError,
    NotFoundError,
)
from services.funding import LinkBankAccountRequest


class TestOpenAndClose:

    async def test_open_account(self, accounts, caller, load_ledger):
        view = await accounts.open_account(caller, AccountType.IRA_ROTH)

        assert view.user_id == caller.caller_id
        assert view.status == AccountStatus.ACTIVE
        assert view.cash_balance == Decimal("0")
        assert view.account_name == "Ira Roth Account"
        assert len(view.account_number) == 10

        [row] = await load_ledger(view.id)
        assert row.description == "Account opened"
        assert row.amount == Decimal("0")

    async def test_open_requires_kyc(self, accounts):
        with pytest.raises(ForbiddenError) as exc:
            await accounts.open_account(CallerContext(caller_id="user-9", kyc_status=KycStatus.REJECTED))
        assert exc.value.reason == "kyc_required"

    async def test_open_account_limit(self, accounts, caller):
        for _ in range(5):
            await accounts.open_account(caller)

        with pytest.raises(FailedPreconditionError) as exc:
            await accounts.open_account(caller)
        assert exc.value.reason == "account_limit_reached"

    async def test_closed_accounts_free_a_slot(self, accounts, caller):
        opened = [await accounts.open_account(caller) for _ in range(5)]
        await accounts.close_account(caller, opened[0].id)

        await accounts.open_account(caller)
        assert len(await accounts.list_accounts(caller)) == 6

    async def test_rename_account(self, accounts, caller):
        view = await accounts.open_account(caller)

        renamed = await accounts.update_account_name(caller, view.id, "  Retirement  ")

        assert renamed.account_name == "Retirement"
        assert (await accounts.get_account(caller, view.id)).account_name == "Retirement"

    @pytest.mark.parametrize("name", ["", "   ", "x" * 101])
    async def test_rename_rejects_bad_names(self, accounts, caller, name):
        view = await accounts.open_account(caller)

        with pytest.raises(InvalidArgumentError) as exc:
            await accounts.update_account_name(caller, view.id, name)
        assert exc.value.reason == "invalid_account_name"

    async def test_rename_requires_ownership_and_open_account(self, accounts, caller, other_caller):
        view = await accounts.open_account(caller)

        with pytest.raises(ForbiddenError):
            await accounts.update_account_name(other_caller, view.id, "Mine now")

        await accounts.close_account(caller, view.id)
        with pytest.raises(FailedPreconditionError) as exc:
            await accounts.update_account_name(caller, view.id, "Closed")
        assert exc.value.reason == "account_closed"

    async def test_close_empty_account(self, accounts, caller):
        view = await accounts.open_account(caller)

        closed = await accounts.close_account(caller, view.id)
        assert closed.status == AccountStatus.CLOSED
        assert closed.closed_at is not None

        with pytest.raises(FailedPreconditionError) as exc:
            await accounts.close_account(caller, view.id)
        assert exc.value.reason == "account_closed"

    async def test_close_with_cash_rejected(self, accounts, caller, make_account):
        account = await make_account(cash="0.01")

        with pytest.raises(FailedPreconditionError) as exc:
            await accounts.close_account(caller, account.id)
        assert exc.value.reason == "non_zero_balance"

    async def test_close_with_positions_rejected(self, accounts, caller, make_account, make_position):
        account = await make_account(cash="0.00")
        await make_position(account.id, "AAPL", "1", "150.00")

        with pytest.raises(FailedPreconditionError) as exc:
            await accounts.close_account(caller, account.id)
        assert exc.value.reason == "open_positions"

    async def test_close_with_open_order_rejected(self, accounts, trading, caller, make_account):
        account = await make_account(cash="1000.00")
        order = await trading.place_order(caller, account.id, OrderRequest(
            symbol="AAPL", side=OrderSide.BUY, order_type=OrderType.LIMIT,
            quantity=Decimal("1"), limit_price=Decimal("100")))
        await accounts.adjust_balance(account.id, Decimal("-1000.00"), "sweep", admin_id="admin-1")

        with pytest.raises(FailedPreconditionError) as exc:
            await accounts.close_account(caller, account.id)
        assert exc.value.reason == "open_orders"

        await trading.cancel_order(caller, order.id)
        assert (await accounts.close_account(caller, account.id)).status == AccountStatus.CLOSED

    async def test_close_with_pending_withdrawal_rejected(self, accounts, funding, caller, make_account):
        account = await make_account(cash="100.00")
        bank = await funding.link_bank_account(caller, LinkBankAccountRequest(
            bank_name="First Bank", holder_name="Jane Holder",
            account_number="123456789", routing_number="021000021"))
        await funding.verify_bank_account(caller, bank.id)
        await funding.request_withdrawal(caller, account.id, bank.id, "100.00")

        with pytest.raises(FailedPreconditionError) as exc:
            await accounts.close_account(caller, account.id)
        assert exc.value.reason == "pending_funding"

    async def test_close_foreign_account(self, accounts, other_caller, make_account):
        account = await make_account(user_id="user-1", cash="0.00")

        with pytest.raises(ForbiddenError) as exc:
            await accounts.close_account(other_caller, account.id)
        assert exc.value.reason == "account_not_owned"


class TestAdministration:

    async def test_adjust_balance(self, accounts, make_account, load_account, load_ledger):
        account = await make_account(cash="100.00")

        credit = await accounts.adjust_balance(account.id, Decimal("25.00"), "goodwill credit",
                                               admin_id="admin-1")
        assert credit.type == TransactionType.ADJUSTMENT
        assert credit.amount == Decimal("25.00")
        await accounts.adjust_balance(account.id, Decimal("-5.00"), "", admin_id="admin-1")

        assert (await load_account(account.id)).cash_balance == Decimal("120.00")
        assert [r.description for r in await load_ledger(account.id)] == ["goodwill credit", "Admin debit"]
        assert (await accounts.audit_ledger(account.id)).ok

    async def test_adjust_balance_rules(self, accounts, make_account):
        account = await make_account(cash="10.00")

        with pytest.raises(FailedPreconditionError) as exc:
            await accounts.adjust_balance(account.id, Decimal("-10.01"), "too much", admin_id="admin-1")
        assert exc.value.reason == "insufficient_funds"

        with pytest.raises(InvalidArgumentError) as exc:
            await accounts.adjust_balance(account.id, Decimal("0"), "nothing", admin_id="admin-1")
        assert exc.value.reason == "invalid_amount"

        with pytest.raises(NotFoundError):
            await accounts.adjust_balance("no-such-account", Decimal("1"), "x", admin_id="admin-1")

    async def test_suspension_blocks_trading_until_reactivated(self, accounts, trading, caller,
                                                               make_account):
        account = await make_account()
        order = OrderRequest(symbol="AAPL", side=OrderSide.BUY, quantity=Decimal("1"))

        suspended = await accounts.set_status(account.id, AccountStatus.SUSPENDED)
        assert suspended.status == AccountStatus.SUSPENDED
        with pytest.raises(ForbiddenError) as exc:
            await trading.place_order(caller, account.id, order)
        assert exc.value.reason == "account_not_active"

        await accounts.set_status(account.id, AccountStatus.ACTIVE)
        assert (await trading.place_order(caller, account.id, order)).filled_quantity == Decimal("1")

    async def test_set_status_cannot_close(self, accounts, make_account):
        account = await make_account()

        with pytest.raises(InvalidArgumentError) as exc:
            await accounts.set_status(account.id, AccountStatus.CLOSED)
        assert exc.value.reason == "invalid_status"


class TestReads:

    async def test_balance_and_positions(self, accounts, caller, make_account, make_position):
        account = await make_account(cash="1000.00")
        await make_position(account.id, "AAPL", "10", "140.00")

        balance = await accounts.get_balance(caller, account.id)
        assert balance.cash_balance == Decimal("1000.00")
        assert balance.positions_value == Decimal("1500.00")
        assert balance.total_value == Decimal("2500.00")
        assert balance.buying_power == Decimal("1000.00")

        [position] = await accounts.get_positions(caller, account.id)
        assert position.symbol == "AAPL"
        assert position.cost_basis == Decimal("1400.00")
        assert position.unrealized_pnl == Decimal("100.00")

    async def test_reads_are_owner_only(self, accounts, other_caller, make_account):
        account = await make_account(user_id="user-1")

        for read in (accounts.get_account, accounts.get_balance, accounts.get_positions,
                     accounts.get_activity):
            with pytest.raises(ForbiddenError):
                await read(other_caller, account.id)

        with pytest.raises(NotFoundError):
            await accounts.get_account(other_caller, "no-such-account")

    async def test_activity_filters_and_pages(self, accounts, trading, caller, make_account):
        account = await make_account(cash="1000.00")
        await accounts.adjust_balance(account.id, Decimal("10.00"), "credit", admin_id="admin-1")
        await trading.place_order(caller, account.id,
                                  OrderRequest(symbol="AAPL", side=OrderSide.BUY, quantity=Decimal("1")))

        everything = await accounts.get_activity(caller, account.id)
        assert len(everything) == 2

        buys = await accounts.get_activity(caller, account.id, txn_type=TransactionType.BUY)
        assert [r.amount for r in buys] == [Decimal("-150.00")]

        assert len(await accounts.get_activity(caller, account.id, limit=1)) == 1
        assert len(await accounts.get_activity(caller, account.id, limit=1, offset=1)) == 1

        with pytest.raises(InvalidArgumentError):
            await accounts.get_activity(caller, account.id, offset=-1)


class TestLedgerAudit:

    async def test_clean_books_pass(self, accounts, trading, caller, make_account):
        account = await make_account(cash="1000.00")
        await trading.place_order(caller, account.id,
                                  OrderRequest(symbol="AAPL", side=OrderSide.BUY, quantity=Decimal("2")))
        await trading.place_order(caller, account.id,
                                  OrderRequest(symbol="AAPL", side=OrderSide.SELL, quantity=Decimal("1")))

        report = await accounts.audit_ledger()
        assert report.ok
        assert report.accounts_checked == 1

    async def test_tampered_balance_detected(self, accounts, db_manager, make_account):
        account = await make_account(cash="100.00")
        async with db_manager.transaction("tamper") as session:
            await session.execute(text("UPDATE accounts SET cash_balance = 999 WHERE id = :id"),
                                  {"id": account.id})

        report = await accounts.audit_ledger(account.id)

        assert not report.ok
        [discrepancy] = report.discrepancies
        assert discrepancy.check == "cash_balance"
        assert discrepancy.expected == Decimal("100.00")
        assert discrepancy.actual == Decimal("999")

    async def test_unknown_account(self, accounts):
        with pytest.raises(NotFoundError):
            await accounts.audit_ledger("no-such-account")
