"""
Repository for accounts, positions and ledger rows.
"""

from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.database.models import (
    Account,
    AccountHolder,
    Execution,
    LedgerTransaction,
    Order,
    Position,
    Security,
)
from core.trading.models import (
    AccountStatus,
    CallerContext,
    OrderStatus,
    TransactionStatus,
    TransactionType,
)
from core.utils.exceptions import ForbiddenError, NotFoundError


class AccountRepository:
    """
    Async queries over the account store.

    ``for_update`` reads take a row lock (``SELECT ... FOR UPDATE``) held
    until the surrounding transaction ends. Nothing here commits.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, account_id: str, for_update: bool = False) -> Optional[Account]:
        if for_update:
            return await self.session.get(Account, account_id, with_for_update=True,
                                          populate_existing=True)
        return await self.session.get(Account, account_id)

    async def get_by_number(self, account_number: str) -> Optional[Account]:
        result = await self.session.execute(
            select(Account).where(Account.account_number == account_number)
        )
        return result.scalar_one_or_none()

    async def lock_accounts(self, account_ids: Iterable[str]) -> Dict[str, Account]:
        """Lock several accounts in ascending id order so two transfers cannot deadlock."""
        locked: Dict[str, Account] = {}
        for account_id in sorted(set(account_ids)):
            account = await self.get(account_id, for_update=True)
            if account is None:
                raise NotFoundError("Account not found", reason="account_not_found",
                                    details={"account_id": account_id})
            locked[account_id] = account
        return locked

    async def get_owned_account(self, account_id: str, caller: CallerContext,
                                for_update: bool = False, require_active: bool = True) -> Account:
        """Load an account the caller owns, raising NotFound or Forbidden otherwise."""
        account = await self.get(account_id, for_update=for_update)
        if account is None:
            raise NotFoundError("Account not found", reason="account_not_found",
                                details={"account_id": account_id})
        check_account_access(account, caller, require_active=require_active)
        return account

    async def lock_holder(self, user_id: str) -> AccountHolder:
        """Lock the user's holder row, creating it on first use.

        Two first-time creators collide on the primary key; the loser's
        flush fails as a duplicate key and the operation is retried.
        """
        holder = await self.session.get(AccountHolder, user_id, with_for_update=True,
                                        populate_existing=True)
        if holder is None:
            holder = AccountHolder(user_id=user_id)
            self.session.add(holder)
            await self.session.flush()
        return holder

    async def list_for_user(self, user_id: str) -> List[Account]:
        result = await self.session.execute(
            select(Account).where(Account.user_id == user_id).order_by(Account.created_at)
        )
        return list(result.scalars().all())

    async def count_open_accounts(self, user_id: str) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(Account).where(
                Account.user_id == user_id, Account.status != AccountStatus.CLOSED
            )
        )
        return int(result.scalar_one())

    async def list_account_ids(self) -> List[str]:
        result = await self.session.execute(select(Account.id).order_by(Account.created_at))
        return list(result.scalars().all())

    async def get_position(self, account_id: str, security_id: str,
                           for_update: bool = False) -> Optional[Position]:
        stmt = select(Position).where(
            Position.account_id == account_id, Position.security_id == security_id
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_positions(self, account_id: str) -> List[Tuple[Position, Security]]:
        result = await self.session.execute(
            select(Position, Security)
            .join(Security, Security.id == Position.security_id)
            .where(Position.account_id == account_id)
            .order_by(Security.symbol)
        )
        return [(position, security) for position, security in result.all()]

    async def fill_exists(self, fill_id: str) -> bool:
        result = await self.session.execute(
            select(Execution.id).where(Execution.fill_id == fill_id)
        )
        return result.first() is not None

    async def list_transactions(self, account_id: str,
                                types: Optional[Sequence[TransactionType]] = None,
                                statuses: Optional[Sequence[TransactionStatus]] = None,
                                limit: Optional[int] = None,
                                offset: int = 0) -> List[LedgerTransaction]:
        stmt = select(LedgerTransaction).where(LedgerTransaction.account_id == account_id)
        if types:
            stmt = stmt.where(LedgerTransaction.type.in_(list(types)))
        if statuses:
            stmt = stmt.where(LedgerTransaction.status.in_(list(statuses)))
        stmt = stmt.order_by(LedgerTransaction.created_at.desc(), LedgerTransaction.id).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_orders(self, account_id: str, statuses: Sequence[OrderStatus]) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(Order).where(
                Order.account_id == account_id, Order.status.in_(list(statuses))
            )
        )
        return int(result.scalar_one())


def check_account_access(account: Account, caller: CallerContext, require_active: bool = True) -> None:
    if account.user_id != caller.caller_id:
        raise ForbiddenError("Account does not belong to caller", reason="account_not_owned",
                             details={"account_id": account.id})
    if require_active and account.status != AccountStatus.ACTIVE:
        raise ForbiddenError(f"Account is {account.status.value}", reason="account_not_active",
                             details={"account_id": account.id, "status": account.status.value})
