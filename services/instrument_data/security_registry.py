"""
Security registry: resolves a symbol to a persisted security and a fresh quote.
"""

from dataclasses import dataclass

from core.database.models import Security
from core.database.unit_of_work import TransactionRunner
from core.logging import get_trading_logger_safe
from core.trading.models import Quote
from core.trading.utils import utcnow
from core.utils.exceptions import InvalidArgumentError
from services.market_feed.price_oracle import GuardedPriceOracle
from .security_repository import SecurityRepository


@dataclass(frozen=True)
class ResolvedSecurity:
    security_id: str
    symbol: str
    name: str
    quote: Quote


def normalize_symbol(symbol: str) -> str:
    return (symbol or "").strip().upper()


class SecurityRegistry:
    """
    Looks symbols up through the guarded oracle and lazily registers new ones.

    Registration and last-price refresh commit in their own short transaction
    before any order mutation starts: they are reference data, not part of an
    order's atomic effect.
    """

    def __init__(self, runner: TransactionRunner, oracle: GuardedPriceOracle):
        self.runner = runner
        self.oracle = oracle
        self.logger = get_trading_logger_safe("security_registry")

    async def resolve(self, symbol: str) -> ResolvedSecurity:
        symbol = normalize_symbol(symbol)
        if not symbol:
            raise InvalidArgumentError("Symbol is required", reason="unknown_symbol")

        quote = await self.oracle.get_quote(symbol)

        async def _upsert(session, events):
            repo = SecurityRepository(session)
            security = await repo.get_by_symbol(symbol)
            if security is None:
                security = await repo.create(Security(
                    symbol=symbol,
                    name=quote.name or symbol,
                    last_price=quote.price,
                    last_price_at=quote.timestamp,
                ))
                self.logger.info("Registered security", symbol=symbol, security_id=security.id)
            elif security.last_price != quote.price:
                security.last_price = quote.price
                security.last_price_at = quote.timestamp or utcnow()
            return ResolvedSecurity(
                security_id=security.id,
                symbol=security.symbol,
                name=security.name or symbol,
                quote=quote,
            )

        return await self.runner.run("resolve_security", _upsert, source="security_registry")
