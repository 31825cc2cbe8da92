from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional, Protocol, runtime_checkable

from .models import Quote


@runtime_checkable
class PriceOracle(Protocol):
    """Source of current quotes.

    Returns ``None`` for a symbol it does not know and raises for any
    failure to answer. Callers must treat it as slow and unreliable.
    """

    async def get_quote(self, symbol: str) -> Optional[Quote]:
        ...


@runtime_checkable
class EventPublisher(Protocol):
    """Outbound notifier for committed state transitions."""

    async def publish(self, envelope: Any) -> None:
        ...


class SettlementPolicy(ABC):
    """Decides whether a newly created funding request settles on the spot.

    Real settlement integrations replace this without touching the
    invariant-enforcing mutation code.
    """

    @abstractmethod
    def settles_deposit_immediately(self, deposit: Any) -> bool:
        ...

    @abstractmethod
    def get_name(self) -> str:
        ...
