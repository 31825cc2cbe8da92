from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.database.models import Deposit, LedgerTransaction, LinkedBankAccount, Withdrawal
from core.trading.models import OPEN_FUNDING_STATUSES


class FundingRepository:
    """Bank accounts and funding requests. Nothing here commits."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_bank_account(self, bank_account_id: str, user_id: str) -> Optional[LinkedBankAccount]:
        """Active bank account owned by ``user_id``."""
        result = await self.session.execute(
            select(LinkedBankAccount).where(
                LinkedBankAccount.id == bank_account_id,
                LinkedBankAccount.user_id == user_id,
                LinkedBankAccount.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def find_by_fingerprint(self, user_id: str, fingerprint: str) -> Optional[LinkedBankAccount]:
        result = await self.session.execute(
            select(LinkedBankAccount).where(
                LinkedBankAccount.user_id == user_id,
                LinkedBankAccount.fingerprint == fingerprint,
                LinkedBankAccount.is_active.is_(True),
            )
        )
        return result.scalars().first()

    async def list_bank_accounts(self, user_id: str) -> List[LinkedBankAccount]:
        result = await self.session.execute(
            select(LinkedBankAccount).where(
                LinkedBankAccount.user_id == user_id,
                LinkedBankAccount.is_active.is_(True),
            ).order_by(LinkedBankAccount.is_default.desc(), LinkedBankAccount.created_at.desc())
        )
        return list(result.scalars().all())

    async def count_pending_for_bank_account(self, bank_account_id: str) -> int:
        deposits = await self.session.execute(
            select(func.count()).select_from(Deposit).where(
                Deposit.bank_account_id == bank_account_id,
                Deposit.status.in_(OPEN_FUNDING_STATUSES),
            )
        )
        withdrawals = await self.session.execute(
            select(func.count()).select_from(Withdrawal).where(
                Withdrawal.bank_account_id == bank_account_id,
                Withdrawal.status.in_(OPEN_FUNDING_STATUSES),
            )
        )
        return int(deposits.scalar_one()) + int(withdrawals.scalar_one())

    async def count_pending_withdrawals(self, account_id: str) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(Withdrawal).where(
                Withdrawal.account_id == account_id,
                Withdrawal.status.in_(OPEN_FUNDING_STATUSES),
            )
        )
        return int(result.scalar_one())

    async def get_deposit(self, deposit_id: str, for_update: bool = False) -> Optional[Deposit]:
        if for_update:
            return await self.session.get(Deposit, deposit_id, with_for_update=True,
                                          populate_existing=True)
        return await self.session.get(Deposit, deposit_id)

    async def get_withdrawal(self, withdrawal_id: str, for_update: bool = False) -> Optional[Withdrawal]:
        if for_update:
            return await self.session.get(Withdrawal, withdrawal_id, with_for_update=True,
                                          populate_existing=True)
        return await self.session.get(Withdrawal, withdrawal_id)

    async def get_transaction(self, transaction_id: str, for_update: bool = False) -> Optional[LedgerTransaction]:
        if for_update:
            return await self.session.get(LedgerTransaction, transaction_id, with_for_update=True,
                                          populate_existing=True)
        return await self.session.get(LedgerTransaction, transaction_id)
