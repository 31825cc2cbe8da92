from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

MONEY_STEP = Decimal("0.01")
QUANTITY_STEP = Decimal("0.0001")
PRICE_STEP = Decimal("0.0001")

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # floats go through str() so 0.1 stays 0.1
        return Decimal(str(value))
    return Decimal(value)


def to_money(value: Number) -> Decimal:
    """Round a cash amount to cents, half up."""
    return to_decimal(value).quantize(MONEY_STEP, rounding=ROUND_HALF_UP)


def to_quantity(value: Number) -> Decimal:
    return to_decimal(value).quantize(QUANTITY_STEP, rounding=ROUND_HALF_UP)


def to_price(value: Number) -> Decimal:
    return to_decimal(value).quantize(PRICE_STEP, rounding=ROUND_HALF_UP)


def format_quantity(value: Decimal) -> str:
    """Render a quantity without trailing zeros: 10.0000 -> '10', 2.5000 -> '2.5'."""
    return format(to_decimal(value).normalize(), "f")


def format_money(value: Decimal) -> str:
    return f"${to_money(value):.2f}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from stores without timezone support."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def start_of_utc_day(moment: Optional[datetime] = None) -> datetime:
    moment = ensure_utc(moment) if moment else utcnow()
    return moment.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
