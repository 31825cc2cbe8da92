"""
Concurrent mutations against one account must never overdraw it or lose an update.
"""
import asyncio
from decimal import Decimal

import pytest

from core.trading.models import OrderRequest, OrderSide, OrderStatus
from core.utils.exceptions import FailedPreconditionError
from services.funding import LinkBankAccountRequest


def _split(results):
    successes = [r for r in results if not isinstance(r, BaseException)]
    failures = [r for r in results if isinstance(r, BaseException)]
    return successes, failures


@pytest.mark.slow
class TestConcurrentMutations:

    async def test_parallel_buys_cannot_overspend(self, container, trading, accounts, caller,
                                                  make_account, load_account, load_positions):
        account = await make_account(cash="1000.00")
        await container.security_registry().resolve("AAPL")
        buy = OrderRequest(symbol="AAPL", side=OrderSide.BUY, quantity=Decimal("2"))

        results = await asyncio.gather(
            *(trading.place_order(caller, account.id, buy) for _ in range(5)),
            return_exceptions=True,
        )

        filled, rejected = _split(results)
        assert len(filled) == 3
        assert all(o.status == OrderStatus.FILLED for o in filled)
        assert len(rejected) == 2
        for error in rejected:
            assert isinstance(error, FailedPreconditionError)
            assert error.reason == "insufficient_buying_power"

        assert (await load_account(account.id)).cash_balance == Decimal("100.00")
        [position] = await load_positions(account.id)
        assert position.quantity == Decimal("6")
        assert (await accounts.audit_ledger(account.id)).ok

    async def test_parallel_sells_cannot_oversell(self, container, trading, accounts, caller,
                                                  make_account, make_position, load_account,
                                                  load_positions):
        account = await make_account(cash="0.00")
        await make_position(account.id, "AAPL", "5", "100.00")
        sell = OrderRequest(symbol="AAPL", side=OrderSide.SELL, quantity=Decimal("2"))

        results = await asyncio.gather(
            *(trading.place_order(caller, account.id, sell) for _ in range(4)),
            return_exceptions=True,
        )

        filled, rejected = _split(results)
        assert len(filled) == 2
        assert len(rejected) == 2
        for error in rejected:
            assert isinstance(error, FailedPreconditionError)
            assert error.reason == "insufficient_shares"
        assert (await load_account(account.id)).cash_balance == Decimal("600.00")
        [position] = await load_positions(account.id)
        assert position.quantity == Decimal("1")

    async def test_parallel_withdrawals_respect_cash(self, funding, accounts, caller, make_account,
                                                     load_account):
        account = await make_account(cash="100.00")
        bank = await funding.link_bank_account(caller, LinkBankAccountRequest(
            bank_name="First Bank", holder_name="Jane Holder",
            account_number="123456789", routing_number="021000021"))
        await funding.verify_bank_account(caller, bank.id)

        results = await asyncio.gather(
            *(funding.request_withdrawal(caller, account.id, bank.id, "40.00") for _ in range(4)),
            return_exceptions=True,
        )

        accepted, rejected = _split(results)
        assert len(accepted) == 2
        assert all(e.reason == "insufficient_funds" for e in rejected)
        assert (await load_account(account.id)).cash_balance == Decimal("20.00")
        assert (await accounts.audit_ledger(account.id)).ok

    async def test_crossed_transfers_conserve_cash(self, funding, accounts, caller, make_account,
                                                   load_account):
        first = await make_account(cash="1000.00")
        second = await make_account(cash="1000.00")

        transfers = [funding.internal_transfer(caller, first.id, second.id, "50.00") for _ in range(5)]
        transfers += [funding.internal_transfer(caller, second.id, first.id, "30.00") for _ in range(5)]
        results = await asyncio.gather(*transfers, return_exceptions=True)

        completed, failed = _split(results)
        assert failed == []
        assert len(completed) == 10

        first_cash = (await load_account(first.id)).cash_balance
        second_cash = (await load_account(second.id)).cash_balance
        assert first_cash == Decimal("900.00")
        assert second_cash == Decimal("1100.00")
        assert first_cash + second_cash == Decimal("2000.00")
        assert (await accounts.audit_ledger()).ok

    async def test_parallel_opens_respect_account_limit(self, accounts, caller):
        for _ in range(4):
            await accounts.open_account(caller)

        results = await asyncio.gather(
            *(accounts.open_account(caller) for _ in range(4)),
            return_exceptions=True,
        )

        opened, rejected = _split(results)
        assert len(opened) == 1
        assert len(rejected) == 3
        for error in rejected:
            assert isinstance(error, FailedPreconditionError)
            assert error.reason == "account_limit_reached"
        assert len(await accounts.list_accounts(caller)) == 5

    async def test_parallel_links_of_one_bank_account(self, funding, caller):
        request = LinkBankAccountRequest(bank_name="First Bank", holder_name="Jane Holder",
                                         account_number="123456789", routing_number="021000021")

        results = await asyncio.gather(
            *(funding.link_bank_account(caller, request) for _ in range(3)),
            return_exceptions=True,
        )

        linked, rejected = _split(results)
        assert len(linked) == 1
        assert linked[0].is_default
        assert all(e.reason == "bank_account_already_linked" for e in rejected)
        assert len(await funding.list_bank_accounts(caller)) == 1
