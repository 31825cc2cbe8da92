"""
Price oracle adapters.

``GuardedPriceOracle`` is the only way the mutation core reaches an oracle:
it bounds each call with a timeout, trips a circuit breaker on repeated
failures, and maps every failure onto the error taxonomy so an order is
rejected before any mutation begins.
"""

import asyncio
from decimal import Decimal
from typing import Dict, Optional

from core.logging import get_error_logger_safe, get_trading_logger_safe
from core.trading.interfaces import PriceOracle
from core.trading.models import Quote
from core.trading.utils import to_price, utcnow
from core.utils.circuit_breaker import CircuitBreaker, CircuitOpenError
from core.utils.exceptions import InvalidArgumentError, UpstreamUnavailableError


class StaticPriceOracle:
    """Serves quotes from a fixed symbol -> price table."""

    def __init__(self, prices: Optional[Dict[str, Decimal]] = None,
                 names: Optional[Dict[str, str]] = None):
        self._prices = {symbol.upper(): Decimal(price) for symbol, price in (prices or {}).items()}
        self._names = {symbol.upper(): name for symbol, name in (names or {}).items()}

    def set_price(self, symbol: str, price: Decimal, name: Optional[str] = None) -> None:
        self._prices[symbol.upper()] = Decimal(price)
        if name:
            self._names[symbol.upper()] = name

    async def get_quote(self, symbol: str) -> Optional[Quote]:
        price = self._prices.get(symbol.upper())
        if price is None:
            return None
        return Quote(symbol=symbol.upper(), price=price, timestamp=utcnow(),
                     name=self._names.get(symbol.upper()))


class GuardedPriceOracle:
    """Timeout and circuit breaker around an untrusted price oracle"""

    def __init__(self, oracle: PriceOracle, timeout_seconds: float = 2.0,
                 breaker: Optional[CircuitBreaker] = None):
        self._oracle = oracle
        self.timeout_seconds = timeout_seconds
        self.breaker = breaker or CircuitBreaker(name="price_oracle")
        self.logger = get_trading_logger_safe("price_oracle")
        self.error_logger = get_error_logger_safe("price_oracle")

    async def get_quote(self, symbol: str) -> Quote:
        """Return a usable quote or raise.

        Raises:
            InvalidArgumentError: the oracle does not know the symbol
            UpstreamUnavailableError: timeout, oracle failure, open circuit
                or an unusable price
        """
        try:
            quote = await self.breaker.call(
                lambda: asyncio.wait_for(self._oracle.get_quote(symbol), self.timeout_seconds)
            )
        except CircuitOpenError as e:
            raise UpstreamUnavailableError("Price oracle circuit is open", reason="oracle_circuit_open",
                                           details={"symbol": symbol}) from e
        except asyncio.TimeoutError as e:
            self.error_logger.error("Price oracle timed out", symbol=symbol,
                                    timeout_seconds=self.timeout_seconds)
            raise UpstreamUnavailableError("Price oracle timed out", reason="oracle_timeout",
                                           details={"symbol": symbol,
                                                    "timeout_seconds": self.timeout_seconds}) from e
        except Exception as e:
            self.error_logger.error("Price oracle failed", symbol=symbol, error=str(e))
            raise UpstreamUnavailableError("Price oracle unavailable", reason="oracle_error",
                                           details={"symbol": symbol, "error": str(e)}) from e

        if quote is None:
            raise InvalidArgumentError(f"Unknown symbol {symbol}", reason="unknown_symbol",
                                       details={"symbol": symbol})
        if quote.price is None or quote.price <= 0:
            raise UpstreamUnavailableError("Price oracle returned an unusable price",
                                           reason="invalid_quote",
                                           details={"symbol": symbol, "price": str(quote.price)})

        return quote.model_copy(update={"price": to_price(quote.price)})
