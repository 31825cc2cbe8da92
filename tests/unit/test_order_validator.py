"""
Unit tests for the pure order checks.
"""
from decimal import Decimal

import pytest

from core.database.models import Account, Position
from core.trading.models import CallerContext, KycStatus, OrderSide, OrderType, Quote, TimeInForce
from core.utils.exceptions import (
    ErrorKind,
    FailedPreconditionError,
    ForbiddenError,
    InvalidArgumentError,
)
from services.instrument_data.security_registry import ResolvedSecurity
from services.trading_engine.validation.order_validator import (
    ValidatedOrder,
    check_buying_power,
    check_kyc,
    check_shares,
    normalize_order_fields,
    reference_price,
)


class TestNormalizeOrderFields:

    def test_market_order_drops_unused_prices_and_defaults_time_in_force(self):
        fields = normalize_order_fields(OrderSide.BUY, OrderType.MARKET, Decimal("10"),
                                        limit_price=Decimal("1"), stop_price=Decimal("2"))
        assert fields.quantity == Decimal("10")
        assert fields.limit_price is None
        assert fields.stop_price is None
        assert fields.time_in_force == TimeInForce.DAY

    @pytest.mark.parametrize("quantity", [Decimal("0"), Decimal("-5"), Decimal("0.00001"), "abc"])
    def test_non_positive_quantity_rejected(self, quantity):
        with pytest.raises(InvalidArgumentError) as exc:
            normalize_order_fields(OrderSide.BUY, OrderType.MARKET, quantity)
        assert exc.value.reason == "invalid_quantity"

    def test_limit_order_requires_limit_price(self):
        with pytest.raises(InvalidArgumentError) as exc:
            normalize_order_fields(OrderSide.BUY, OrderType.LIMIT, Decimal("1"))
        assert exc.value.reason == "limit_price_required"

    def test_stop_order_requires_stop_price(self):
        with pytest.raises(InvalidArgumentError) as exc:
            normalize_order_fields(OrderSide.SELL, OrderType.STOP, Decimal("1"))
        assert exc.value.reason == "stop_price_required"

    def test_stop_limit_requires_both_prices(self):
        with pytest.raises(InvalidArgumentError) as exc:
            normalize_order_fields(OrderSide.BUY, OrderType.STOP_LIMIT, Decimal("1"),
                                   limit_price=Decimal("100"))
        assert exc.value.reason == "stop_price_required"

        fields = normalize_order_fields(OrderSide.BUY, OrderType.STOP_LIMIT, Decimal("1"),
                                        limit_price=Decimal("100"), stop_price=Decimal("99"),
                                        time_in_force=TimeInForce.GTC)
        assert fields.limit_price == Decimal("100")
        assert fields.stop_price == Decimal("99")
        assert fields.time_in_force == TimeInForce.GTC

    def test_non_positive_limit_price_rejected(self):
        with pytest.raises(InvalidArgumentError) as exc:
            normalize_order_fields(OrderSide.BUY, OrderType.LIMIT, Decimal("1"),
                                   limit_price=Decimal("-1"))
        assert exc.value.reason == "invalid_price"
        assert exc.value.kind == ErrorKind.INVALID_ARGUMENT


class TestReferencePrice:

    def test_limit_orders_use_limit_price(self):
        fields = normalize_order_fields(OrderSide.BUY, OrderType.LIMIT, Decimal("1"),
                                        limit_price=Decimal("140"))
        assert reference_price(fields, Decimal("150")) == Decimal("140")

    def test_stop_limit_orders_use_quote(self):
        fields = normalize_order_fields(OrderSide.BUY, OrderType.STOP_LIMIT, Decimal("1"),
                                        limit_price=Decimal("140"), stop_price=Decimal("145"))
        assert reference_price(fields, Decimal("150")) == Decimal("150")

    def test_estimated_value_uses_reference_price(self):
        fields = normalize_order_fields(OrderSide.BUY, OrderType.LIMIT, Decimal("3"),
                                        limit_price=Decimal("140.005"))
        security = ResolvedSecurity(security_id="sec-1", symbol="AAPL", name="Apple Inc.",
                                    quote=Quote(symbol="AAPL", price=Decimal("150")))
        order = ValidatedOrder(account_id="acc-1", security=security, fields=fields,
                               reference_price=reference_price(fields, security.quote.price))
        assert order.estimated_value == Decimal("420.02")


class TestBalanceChecks:

    def test_buying_power_equal_to_cost_is_enough(self):
        account = Account(cash_balance=Decimal("1500.00"))
        check_buying_power(account, Decimal("10"), Decimal("150.00"))

    def test_buying_power_short_by_a_cent(self):
        account = Account(cash_balance=Decimal("1499.99"))
        with pytest.raises(FailedPreconditionError) as exc:
            check_buying_power(account, Decimal("10"), Decimal("150.00"))
        assert exc.value.reason == "insufficient_buying_power"
        assert exc.value.details["required"] == "1500.00"

    def test_missing_position_means_no_shares(self):
        with pytest.raises(FailedPreconditionError) as exc:
            check_shares(None, Decimal("1"))
        assert exc.value.reason == "insufficient_shares"

    def test_shares_checked_against_held_quantity(self):
        position = Position(quantity=Decimal("5"))
        check_shares(position, Decimal("5"))
        with pytest.raises(FailedPreconditionError):
            check_shares(position, Decimal("5.0001"))


class TestKyc:

    @pytest.mark.parametrize("status", [KycStatus.NOT_STARTED, KycStatus.PENDING, KycStatus.REJECTED])
    def test_unapproved_kyc_forbidden(self, status):
        with pytest.raises(ForbiddenError) as exc:
            check_kyc(CallerContext(caller_id="u", kyc_status=status))
        assert exc.value.reason == "kyc_required"

    def test_approved_kyc_passes(self):
        check_kyc(CallerContext(caller_id="u", kyc_status=KycStatus.APPROVED))
