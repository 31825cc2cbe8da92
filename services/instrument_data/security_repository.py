"""
Repository pattern for security reference data.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.database.models import Security
from core.logging import get_database_logger_safe

logger = get_database_logger_safe("services.instrument_data.security_repository")


class SecurityRepository:
    """
    Async database operations for securities.

    Flushes but never commits; the caller owns the transaction boundary.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_symbol(self, symbol: str) -> Optional[Security]:
        result = await self.session.execute(select(Security).where(Security.symbol == symbol))
        return result.scalar_one_or_none()

    async def get(self, security_id: str) -> Optional[Security]:
        return await self.session.get(Security, security_id)

    async def create(self, security: Security) -> Security:
        self.session.add(security)
        await self.session.flush()  # Get ID without committing
        logger.debug("Created security", symbol=security.symbol, security_id=security.id)
        return security
