"""
Order validation.

Checks run in a fixed order and stop at the first failure:

1. account exists, belongs to the caller and is active
2. caller's KYC is approved
3. symbol resolves through the price oracle
4. quantity and prices fit the order type
5. buys: quantity * reference price <= buying power
6. sells: held quantity >= order quantity

``OrderValidator.validate`` only reads. The affordability and share checks
are repeated under lock by the trading engine; that second pass is binding.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from core.database.connection import DatabaseManager
from core.database.models import Account, Position
from core.trading.models import (
    CallerContext,
    KycStatus,
    OrderRequest,
    OrderSide,
    OrderType,
    TimeInForce,
)
from core.trading.utils import to_money, to_price, to_quantity
from core.utils.exceptions import FailedPreconditionError, ForbiddenError, InvalidArgumentError
from services.instrument_data.security_registry import ResolvedSecurity, SecurityRegistry
from services.portfolio_manager.repository import AccountRepository

_ZERO = Decimal("0")

PRICE_REQUIRED = {
    OrderType.MARKET: (False, False),
    OrderType.LIMIT: (True, False),
    OrderType.STOP: (False, True),
    OrderType.STOP_LIMIT: (True, True),
}


@dataclass(frozen=True)
class OrderFields:
    """Quantity, prices and time-in-force after normalization"""
    side: OrderSide
    order_type: OrderType
    quantity: Decimal
    limit_price: Optional[Decimal]
    stop_price: Optional[Decimal]
    time_in_force: TimeInForce


@dataclass(frozen=True)
class ValidatedOrder:
    account_id: str
    security: ResolvedSecurity
    fields: OrderFields
    reference_price: Decimal

    @property
    def estimated_value(self) -> Decimal:
        return to_money(self.fields.quantity * self.reference_price)


def check_kyc(caller: CallerContext) -> None:
    if caller.kyc_status != KycStatus.APPROVED:
        raise ForbiddenError("KYC verification required for trading", reason="kyc_required",
                             details={"kyc_status": caller.kyc_status.value})


def _positive_price(value, field: str) -> Decimal:
    try:
        price = to_price(value)
    except (ArithmeticError, TypeError, ValueError):
        price = None
    if price is None or not price.is_finite() or price <= _ZERO:
        raise InvalidArgumentError(f"{field} must be greater than zero", reason="invalid_price",
                                   details={field: str(value)})
    return price


def normalize_order_fields(side: OrderSide, order_type: OrderType, quantity,
                           limit_price=None, stop_price=None,
                           time_in_force: Optional[TimeInForce] = None,
                           default_time_in_force: TimeInForce = TimeInForce.DAY) -> OrderFields:
    """Validate quantity and prices against the order type.

    Prices the order type does not use are dropped.
    """
    try:
        qty = to_quantity(quantity)
    except (ArithmeticError, TypeError, ValueError):
        qty = None
    if qty is None or not qty.is_finite() or qty <= _ZERO:
        raise InvalidArgumentError("Quantity must be greater than zero", reason="invalid_quantity",
                                   details={"quantity": str(quantity)})

    needs_limit, needs_stop = PRICE_REQUIRED[order_type]
    if needs_limit and limit_price is None:
        raise InvalidArgumentError(f"{order_type.value} orders require a limit price",
                                   reason="limit_price_required")
    if needs_stop and stop_price is None:
        raise InvalidArgumentError(f"{order_type.value} orders require a stop price",
                                   reason="stop_price_required")

    return OrderFields(
        side=side,
        order_type=order_type,
        quantity=qty,
        limit_price=_positive_price(limit_price, "limit_price") if needs_limit else None,
        stop_price=_positive_price(stop_price, "stop_price") if needs_stop else None,
        time_in_force=time_in_force or default_time_in_force,
    )


def reference_price(fields: OrderFields, quote_price: Decimal) -> Decimal:
    """Limit orders are valued at their limit price, everything else at the quote."""
    if fields.order_type == OrderType.LIMIT:
        return fields.limit_price
    return to_price(quote_price)


def check_buying_power(account: Account, quantity: Decimal, price: Decimal) -> None:
    required = to_money(quantity * price)
    if required > account.buying_power:
        raise FailedPreconditionError(
            "Insufficient buying power",
            reason="insufficient_buying_power",
            details={"required": str(required), "buying_power": str(account.buying_power)},
        )


def check_shares(position: Optional[Position], quantity: Decimal) -> None:
    held = position.quantity if position is not None else _ZERO
    if held < quantity:
        raise FailedPreconditionError(
            "Insufficient shares",
            reason="insufficient_shares",
            details={"held": str(held), "requested": str(quantity)},
        )


class OrderValidator:
    """Read-only pre-trade checks"""

    def __init__(self, db_manager: DatabaseManager, securities: SecurityRegistry,
                 default_time_in_force: TimeInForce = TimeInForce.DAY):
        self.db_manager = db_manager
        self.securities = securities
        self.default_time_in_force = default_time_in_force

    async def validate(self, caller: CallerContext, account_id: str,
                       request: OrderRequest) -> ValidatedOrder:
        async with self.db_manager.get_session() as session:
            await AccountRepository(session).get_owned_account(account_id, caller)

        check_kyc(caller)

        security = await self.securities.resolve(request.symbol)

        fields = normalize_order_fields(
            request.side,
            request.order_type,
            request.quantity,
            limit_price=request.limit_price,
            stop_price=request.stop_price,
            time_in_force=request.time_in_force,
            default_time_in_force=self.default_time_in_force,
        )
        price = reference_price(fields, security.quote.price)

        # Fresh read: the account row may have changed while the oracle was called
        async with self.db_manager.get_session() as session:
            repo = AccountRepository(session)
            account = await repo.get_owned_account(account_id, caller)
            if fields.side == OrderSide.BUY:
                check_buying_power(account, fields.quantity, price)
            else:
                check_shares(await repo.get_position(account_id, security.security_id), fields.quantity)

        return ValidatedOrder(
            account_id=account_id,
            security=security,
            fields=fields,
            reference_price=price,
        )
