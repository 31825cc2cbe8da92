import hashlib
import re
from decimal import Decimal
from typing import List, Optional

from core.config.settings import Settings
from core.database.connection import DatabaseManager
from core.database.models import Account, Deposit, LinkedBankAccount, Transfer, Withdrawal
from core.database.unit_of_work import TransactionRunner
from core.logging import get_audit_logger_safe, get_funding_logger_safe
from core.trading.interfaces import SettlementPolicy
from core.trading.models import (
    FUNDING_TRANSACTION_TYPES,
    AccountStatus,
    CallerContext,
    FundingStatus,
    TransactionStatus,
    TransactionType,
)
from core.trading.utils import to_decimal, to_money, utcnow
from core.utils.exceptions import (
    BackOfficeError,
    FailedPreconditionError,
    InvalidArgumentError,
    NotFoundError,
)
from core.utils.ids import generate_id
from services.portfolio_manager.ledger_updater import LedgerUpdater
from services.portfolio_manager.models import TransactionView
from services.portfolio_manager.repository import AccountRepository, check_account_access

from .models import (
    BankAccountView,
    DepositView,
    LinkBankAccountRequest,
    TransferView,
    WithdrawalView,
)
from .repository import FundingRepository

_ZERO = Decimal("0")
_ROUTING_NUMBER = re.compile(r"^\d{9}$")
_ACCOUNT_NUMBER = re.compile(r"^\d{4,17}$")


def bank_fingerprint(routing_number: str, account_number: str) -> str:
    return hashlib.sha256(f"{routing_number}:{account_number}".encode()).hexdigest()


def validate_amount(amount, ceiling: Optional[Decimal] = None) -> Decimal:
    """Round to cents and require 0 < amount <= ceiling."""
    try:
        value = to_money(to_decimal(amount))
    except (ArithmeticError, TypeError, ValueError):
        value = None
    if value is None or not value.is_finite() or value <= _ZERO:
        raise InvalidArgumentError("Amount must be greater than zero", reason="invalid_amount",
                                   details={"amount": str(amount)})
    if ceiling is not None and value > ceiling:
        raise InvalidArgumentError(f"Amount exceeds the limit of {ceiling}", reason="amount_exceeds_limit",
                                   details={"amount": str(value), "limit": str(ceiling)})
    return value


def _with_memo(text: str, memo: Optional[str]) -> str:
    return f"{text}: {memo}" if memo else text


class FundingService:
    """
    Deposits, withdrawals, transfers and linked bank accounts.

    Shares the ledger updater with the trading engine, so cash moves, the
    balance guard and ledger rows follow the same rules on both paths.
    Withdrawals hold funds on request: cash drops immediately while the
    withdrawal and its ledger row stay pending until settlement.
    """

    def __init__(self, settings: Settings, db_manager: DatabaseManager, runner: TransactionRunner,
                 ledger: LedgerUpdater, settlement: SettlementPolicy):
        self.settings = settings
        self.db_manager = db_manager
        self.runner = runner
        self.ledger = ledger
        self.settlement = settlement
        self.logger = get_funding_logger_safe("funding_service")
        self.audit_logger = get_audit_logger_safe("funding_service")

    # Bank accounts

    async def link_bank_account(self, caller: CallerContext,
                                request: LinkBankAccountRequest) -> BankAccountView:
        routing = request.routing_number.strip()
        number = request.account_number.strip().replace(" ", "")
        if not _ROUTING_NUMBER.match(routing):
            raise InvalidArgumentError("Routing number must be 9 digits", reason="invalid_routing_number")
        if not _ACCOUNT_NUMBER.match(number):
            raise InvalidArgumentError("Account number must be 4 to 17 digits",
                                       reason="invalid_bank_account_number")
        fingerprint = bank_fingerprint(routing, number)

        async def _link(session, events):
            await AccountRepository(session).lock_holder(caller.caller_id)
            repo = FundingRepository(session)
            if await repo.find_by_fingerprint(caller.caller_id, fingerprint) is not None:
                raise FailedPreconditionError("Bank account already linked",
                                              reason="bank_account_already_linked")
            bank_account = LinkedBankAccount(
                user_id=caller.caller_id,
                bank_name=request.bank_name,
                account_type=request.account_type,
                holder_name=request.holder_name,
                last4=number[-4:],
                fingerprint=fingerprint,
                is_verified=False,
                is_default=not await repo.list_bank_accounts(caller.caller_id),
                is_active=True,
            )
            session.add(bank_account)
            await session.flush()
            return BankAccountView.model_validate(bank_account)

        view = await self._run_logged("link_bank_account", _link, user_id=caller.caller_id)
        self.audit_logger.info("Bank account linked", bank_account_id=view.id,
                               user_id=caller.caller_id, last4=view.last4, is_default=view.is_default)
        return view

    async def verify_bank_account(self, caller: CallerContext, bank_account_id: str) -> BankAccountView:
        """Mark a linked account verified once the external verification step succeeded."""
        async def _verify(session, events):
            bank_account = await self._require_bank_account(session, bank_account_id, caller)
            if not bank_account.is_verified:
                bank_account.is_verified = True
                bank_account.verified_at = utcnow()
                await session.flush()
            return BankAccountView.model_validate(bank_account)

        view = await self._run_logged("verify_bank_account", _verify, bank_account_id=bank_account_id)
        self.audit_logger.info("Bank account verified", bank_account_id=bank_account_id,
                               user_id=caller.caller_id)
        return view

    async def remove_bank_account(self, caller: CallerContext, bank_account_id: str) -> None:
        async def _remove(session, events):
            repo = FundingRepository(session)
            bank_account = await self._require_bank_account(session, bank_account_id, caller)
            if await repo.count_pending_for_bank_account(bank_account.id):
                raise FailedPreconditionError("Cannot remove bank account with pending transactions",
                                              reason="bank_account_in_use")
            was_default = bank_account.is_default
            bank_account.is_active = False
            bank_account.is_default = False
            bank_account.removed_at = utcnow()
            await session.flush()
            if was_default:
                remaining = await repo.list_bank_accounts(caller.caller_id)
                if remaining:
                    remaining[-1].is_default = True
                    await session.flush()

        await self._run_logged("remove_bank_account", _remove, bank_account_id=bank_account_id)
        self.audit_logger.info("Bank account removed", bank_account_id=bank_account_id,
                               user_id=caller.caller_id)

    async def list_bank_accounts(self, caller: CallerContext) -> List[BankAccountView]:
        async with self.db_manager.get_session() as session:
            accounts = await FundingRepository(session).list_bank_accounts(caller.caller_id)
            return [BankAccountView.model_validate(a) for a in accounts]

    # Deposits

    async def initiate_deposit(self, caller: CallerContext, account_id: str, bank_account_id: str,
                               amount) -> DepositView:
        amount = validate_amount(amount, self.settings.funding.max_deposit_amount)

        async def _deposit(session, events):
            account = await AccountRepository(session).get_owned_account(account_id, caller, for_update=True)
            bank_account = await self._require_verified(session, bank_account_id, caller, "deposits")

            deposit_id = generate_id()
            txn = await self.ledger.apply_cash_movement(
                session, events, account, TransactionType.DEPOSIT, amount,
                f"Deposit from {bank_account.bank_name} (****{bank_account.last4})",
                status=TransactionStatus.PENDING,
                reference_id=deposit_id,
            )
            deposit = Deposit(
                id=deposit_id,
                account_id=account.id,
                bank_account_id=bank_account.id,
                transaction_id=txn.id,
                amount=amount,
                status=FundingStatus.PENDING,
            )
            session.add(deposit)
            await session.flush()

            if self.settlement.settles_deposit_immediately(deposit):
                await self._complete_deposit(session, events, account, deposit, txn)
            return DepositView.from_records(deposit, txn)

        view = await self._run_logged("initiate_deposit", _deposit, account_id=account_id,
                                      amount=str(amount))
        self.audit_logger.info("Deposit initiated", deposit_id=view.id, account_id=account_id,
                               amount=str(amount), status=view.status.value,
                               settlement=self.settlement.get_name())
        return view

    async def settle_deposit(self, deposit_id: str, succeeded: bool = True,
                             failure_reason: Optional[str] = None) -> DepositView:
        """Complete (credit) or fail a pending deposit on the settlement callback."""
        async def _settle(session, events):
            repo = FundingRepository(session)
            deposit = await repo.get_deposit(deposit_id)
            if deposit is None:
                raise NotFoundError("Deposit not found", reason="deposit_not_found",
                                    details={"deposit_id": deposit_id})
            account = await AccountRepository(session).get(deposit.account_id, for_update=True)
            deposit = await repo.get_deposit(deposit_id, for_update=True)
            if deposit.status not in (FundingStatus.PENDING, FundingStatus.PROCESSING):
                raise FailedPreconditionError(f"Deposit is {deposit.status.value}",
                                              reason="deposit_not_pending",
                                              details={"deposit_id": deposit_id})
            txn = await repo.get_transaction(deposit.transaction_id, for_update=True)
            if succeeded:
                await self._complete_deposit(session, events, account, deposit, txn)
            else:
                await self.ledger.settle_transaction(session, events, account, txn, TransactionStatus.FAILED)
                deposit.status = FundingStatus.FAILED
                deposit.failure_reason = failure_reason or "settlement_failed"
                await session.flush()
            return DepositView.from_records(deposit, txn)

        view = await self._run_logged("settle_deposit", _settle, deposit_id=deposit_id)
        self.audit_logger.info("Deposit settled", deposit_id=deposit_id, account_id=view.account_id,
                               status=view.status.value, amount=str(view.amount))
        return view

    async def _complete_deposit(self, session, events, account: Account, deposit: Deposit, txn) -> None:
        await self.ledger.settle_transaction(session, events, account, txn, TransactionStatus.COMPLETED,
                                             cash_delta=deposit.amount)
        deposit.status = FundingStatus.COMPLETED
        deposit.completed_at = txn.completed_at
        await session.flush()

    # Withdrawals

    async def request_withdrawal(self, caller: CallerContext, account_id: str, bank_account_id: str,
                                 amount) -> WithdrawalView:
        amount = validate_amount(amount, self.settings.funding.max_withdrawal_amount)
        max_pending = self.settings.funding.max_pending_withdrawals

        async def _withdraw(session, events):
            repo = FundingRepository(session)
            account = await AccountRepository(session).get_owned_account(account_id, caller, for_update=True)
            bank_account = await self._require_verified(session, bank_account_id, caller, "withdrawals")
            if account.cash_balance < amount:
                raise FailedPreconditionError("Insufficient cash balance", reason="insufficient_funds",
                                              details={"cash_balance": str(account.cash_balance),
                                                       "amount": str(amount)})
            if await repo.count_pending_withdrawals(account.id) >= max_pending:
                raise FailedPreconditionError(f"Maximum pending withdrawals limit reached ({max_pending})",
                                              reason="pending_withdrawal_limit",
                                              details={"limit": max_pending})

            withdrawal_id = generate_id()
            # held now, the ledger row stays pending until settlement
            txn = await self.ledger.apply_cash_movement(
                session, events, account, TransactionType.WITHDRAWAL, -amount,
                f"Withdrawal to {bank_account.bank_name} (****{bank_account.last4})",
                status=TransactionStatus.PENDING,
                move_cash=True,
                reference_id=withdrawal_id,
            )
            withdrawal = Withdrawal(
                id=withdrawal_id,
                account_id=account.id,
                bank_account_id=bank_account.id,
                transaction_id=txn.id,
                amount=amount,
                status=FundingStatus.PENDING,
            )
            session.add(withdrawal)
            await session.flush()
            return WithdrawalView.from_records(withdrawal, txn)

        view = await self._run_logged("request_withdrawal", _withdraw, account_id=account_id,
                                      amount=str(amount))
        self.audit_logger.info("Withdrawal requested", withdrawal_id=view.id, account_id=account_id,
                               amount=str(amount))
        return view

    async def confirm_withdrawal(self, withdrawal_id: str) -> WithdrawalView:
        """Settlement succeeded: the held cash has left the account for good."""
        return await self._finish_withdrawal(withdrawal_id, succeeded=True)

    async def reverse_withdrawal(self, withdrawal_id: str, failure_reason: Optional[str] = None) -> WithdrawalView:
        """Settlement failed: release the hold back to cash."""
        return await self._finish_withdrawal(withdrawal_id, succeeded=False, failure_reason=failure_reason)

    async def _finish_withdrawal(self, withdrawal_id: str, succeeded: bool,
                                 failure_reason: Optional[str] = None) -> WithdrawalView:
        async def _finish(session, events):
            repo = FundingRepository(session)
            withdrawal = await repo.get_withdrawal(withdrawal_id)
            if withdrawal is None:
                raise NotFoundError("Withdrawal not found", reason="withdrawal_not_found",
                                    details={"withdrawal_id": withdrawal_id})
            account = await AccountRepository(session).get(withdrawal.account_id, for_update=True)
            withdrawal = await repo.get_withdrawal(withdrawal_id, for_update=True)
            if withdrawal.status not in (FundingStatus.PENDING, FundingStatus.PROCESSING):
                raise FailedPreconditionError(f"Withdrawal is {withdrawal.status.value}",
                                              reason="withdrawal_not_pending",
                                              details={"withdrawal_id": withdrawal_id})
            txn = await repo.get_transaction(withdrawal.transaction_id, for_update=True)
            if succeeded:
                await self.ledger.settle_transaction(session, events, account, txn,
                                                     TransactionStatus.COMPLETED)
                withdrawal.status = FundingStatus.COMPLETED
                withdrawal.completed_at = txn.completed_at
            else:
                await self.ledger.settle_transaction(session, events, account, txn,
                                                     TransactionStatus.FAILED,
                                                     cash_delta=withdrawal.amount)
                withdrawal.status = FundingStatus.FAILED
                withdrawal.failure_reason = failure_reason or "settlement_failed"
            await session.flush()
            return WithdrawalView.from_records(withdrawal, txn)

        operation = "confirm_withdrawal" if succeeded else "reverse_withdrawal"
        view = await self._run_logged(operation, _finish, withdrawal_id=withdrawal_id)
        self.audit_logger.info("Withdrawal settled", withdrawal_id=withdrawal_id,
                               account_id=view.account_id, status=view.status.value,
                               amount=str(view.amount))
        return view

    # Transfers

    async def internal_transfer(self, caller: CallerContext, from_account_id: str, to_account_id: str,
                                amount, memo: Optional[str] = None) -> TransferView:
        """Move cash between two accounts the caller owns."""
        amount = validate_amount(amount)
        if from_account_id == to_account_id:
            raise InvalidArgumentError("Cannot transfer to the same account", reason="same_account")

        async def _transfer(session, events):
            locked = await AccountRepository(session).lock_accounts([from_account_id, to_account_id])
            source, destination = locked[from_account_id], locked[to_account_id]
            check_account_access(source, caller)
            check_account_access(destination, caller)
            return await self._move_between(session, events, source, destination, amount, memo)

        return await self._run_transfer("internal_transfer", _transfer, from_account_id, amount)

    async def external_transfer(self, caller: CallerContext, from_account_id: str, to_account_number: str,
                                amount, memo: Optional[str] = None) -> TransferView:
        """Move cash to any active account by account number; only the source must be the caller's."""
        amount = validate_amount(amount)

        async def _transfer(session, events):
            repo = AccountRepository(session)
            target = await repo.get_by_number(to_account_number.strip())
            if target is None:
                raise NotFoundError("Recipient account not found", reason="destination_not_found")
            if target.id == from_account_id:
                raise InvalidArgumentError("Cannot transfer to the same account", reason="same_account")

            locked = await repo.lock_accounts([from_account_id, target.id])
            source, destination = locked[from_account_id], locked[target.id]
            check_account_access(source, caller)
            if destination.status != AccountStatus.ACTIVE:
                raise FailedPreconditionError("Recipient account is not active",
                                              reason="destination_not_active")
            return await self._move_between(session, events, source, destination, amount, memo)

        return await self._run_transfer("external_transfer", _transfer, from_account_id, amount)

    async def _move_between(self, session, events, source: Account, destination: Account,
                            amount: Decimal, memo: Optional[str]) -> TransferView:
        if source.cash_balance < amount:
            raise FailedPreconditionError("Insufficient balance in source account",
                                          reason="insufficient_funds",
                                          details={"cash_balance": str(source.cash_balance),
                                                   "amount": str(amount)})

        transfer_id, out_id, in_id = generate_id(), generate_id(), generate_id()
        out_txn = await self.ledger.apply_cash_movement(
            session, events, source, TransactionType.TRANSFER_OUT, -amount,
            _with_memo(f"Transfer to account {destination.account_number}", memo),
            reference_id=transfer_id, related_transaction_id=in_id, txn_id=out_id,
        )
        in_txn = await self.ledger.apply_cash_movement(
            session, events, destination, TransactionType.TRANSFER_IN, amount,
            _with_memo(f"Transfer from account {source.account_number}", memo),
            reference_id=transfer_id, related_transaction_id=out_id, txn_id=in_id,
        )
        transfer = Transfer(
            id=transfer_id,
            from_account_id=source.id,
            to_account_id=destination.id,
            amount=amount,
            status=FundingStatus.COMPLETED,
            memo=memo,
            out_transaction_id=out_txn.id,
            in_transaction_id=in_txn.id,
            completed_at=out_txn.completed_at,
        )
        session.add(transfer)
        await session.flush()
        return TransferView.from_transfer(transfer)

    async def _run_transfer(self, operation: str, mutation, from_account_id: str,
                            amount: Decimal) -> TransferView:
        view = await self._run_logged(operation, mutation, account_id=from_account_id, amount=str(amount))
        self.audit_logger.info("Transfer completed", operation=operation, transfer_id=view.id,
                               from_account_id=view.from_account_id, to_account_id=view.to_account_id,
                               amount=str(amount))
        return view

    async def list_funding_transactions(self, caller: CallerContext, account_id: str,
                                        txn_type: Optional[TransactionType] = None,
                                        limit: int = 50, offset: int = 0) -> List[TransactionView]:
        if txn_type is not None and txn_type not in FUNDING_TRANSACTION_TYPES:
            raise InvalidArgumentError(f"{txn_type.value} is not a funding transaction type",
                                       reason="invalid_transaction_type")
        if limit <= 0 or offset < 0:
            raise InvalidArgumentError("limit must be positive and offset non-negative",
                                       reason="invalid_pagination")
        async with self.db_manager.get_session() as session:
            repo = AccountRepository(session)
            await repo.get_owned_account(account_id, caller, require_active=False)
            rows = await repo.list_transactions(
                account_id,
                types=[txn_type] if txn_type else FUNDING_TRANSACTION_TYPES,
                limit=min(limit, 500),
                offset=offset,
            )
            return [TransactionView.model_validate(r) for r in rows]

    async def _require_bank_account(self, session, bank_account_id: str,
                                    caller: CallerContext) -> LinkedBankAccount:
        bank_account = await FundingRepository(session).get_bank_account(bank_account_id, caller.caller_id)
        if bank_account is None:
            raise NotFoundError("Bank account not found", reason="bank_account_not_found",
                                details={"bank_account_id": bank_account_id})
        return bank_account

    async def _require_verified(self, session, bank_account_id: str, caller: CallerContext,
                                purpose: str) -> LinkedBankAccount:
        bank_account = await self._require_bank_account(session, bank_account_id, caller)
        if not bank_account.is_verified:
            raise FailedPreconditionError(f"Bank account must be verified before {purpose}",
                                          reason="bank_account_unverified")
        return bank_account

    async def _run_logged(self, operation: str, mutation, **context):
        try:
            return await self.runner.run(operation, mutation, source="funding_service")
        except BackOfficeError as e:
            self.logger.warning("Funding mutation rejected", operation=operation,
                                error_kind=e.kind.value, reason=e.reason, **context)
            raise
