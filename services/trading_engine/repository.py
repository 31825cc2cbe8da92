from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.database.models import Order, Security
from core.trading.models import OrderStatus, TimeInForce
from core.utils.exceptions import NotFoundError


class OrderRepository:
    """Order queries; ``for_update`` reads lock the order row."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        if for_update:
            return await self.session.get(Order, order_id, with_for_update=True,
                                          populate_existing=True)
        return await self.session.get(Order, order_id)

    async def require(self, order_id: str, for_update: bool = False) -> Order:
        order = await self.get(order_id, for_update=for_update)
        if order is None:
            raise NotFoundError("Order not found", reason="order_not_found",
                                details={"order_id": order_id})
        return order

    async def get_with_security(self, order_id: str) -> Optional[Tuple[Order, Security]]:
        result = await self.session.execute(
            select(Order, Security)
            .join(Security, Security.id == Order.security_id)
            .where(Order.id == order_id)
        )
        row = result.first()
        return (row[0], row[1]) if row else None

    async def list_for_account(self, account_id: str,
                               statuses: Optional[Sequence[OrderStatus]] = None,
                               limit: Optional[int] = None,
                               offset: int = 0) -> List[Tuple[Order, Security]]:
        stmt = (
            select(Order, Security)
            .join(Security, Security.id == Order.security_id)
            .where(Order.account_id == account_id)
        )
        if statuses:
            stmt = stmt.where(Order.status.in_(list(statuses)))
        stmt = stmt.order_by(Order.created_at.desc(), Order.id).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return [(order, security) for order, security in result.all()]

    async def list_expirable_ids(self, cutoff: datetime) -> List[str]:
        """Open day orders created before ``cutoff``."""
        result = await self.session.execute(
            select(Order.id).where(
                Order.status == OrderStatus.OPEN,
                Order.time_in_force == TimeInForce.DAY,
                Order.created_at < cutoff,
            ).order_by(Order.created_at)
        )
        return list(result.scalars().all())
