"""
Credit Manager

Owns account balances and the atomic add/subtract primitives:
- credit: single UPDATE incrementing balance and total_earned
- debit: single UPDATE guarded by ``balance >= amount``
- idempotent account opening with an optional initial grant

Balances are never read, modified and written back from Python; every
mutation is one conditional statement so concurrent callers can't lose
updates or drive the balance negative.
"""

import logging
from typing import Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from topup_backend.app.billing.model import CreditAccountRecord
from topup_backend.database.db import session_scope
from topup_backend.src.billing.domain.credit_account import CreditAccount
from topup_backend.src.billing.shared.exceptions import (
    AccountNotFoundError,
    InsufficientBalanceError,
    StoreUnavailableError,
)
from topup_backend.utils.timezone import timezone

logger = logging.getLogger(__name__)


def _validate_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError("Credit amount must be an integer")
    if amount <= 0:
        raise ValueError("Credit amount must be positive")
    return amount


class CreditManager:
    """
    Manages credit operations for user accounts.

    Invariants:
    - balance >= 0
    - balance == total_earned - total_spent

    Usage:
        credit_manager = CreditManager(session_factory)

        new_balance = await credit_manager.credit("acct-1", 1000)
        new_balance = await credit_manager.debit("acct-1", 25)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        initial_credits: int = 0,
    ):
        """
        Args:
            session_factory: Async session factory
            initial_credits: Credits granted when an account is opened
        """
        self.session_factory = session_factory
        self.initial_credits = initial_credits

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    async def open_account(self, account_ref: str, initial_credits: Optional[int] = None) -> CreditAccount:
        """
        Get or create the credit account for ``account_ref``.

        The initial grant is booked in total_earned so the audit counters
        keep matching the balance.
        """
        if not account_ref:
            raise ValueError("account_ref is required")

        existing = await self.get_account(account_ref)
        if existing:
            return existing

        grant = self.initial_credits if initial_credits is None else initial_credits
        if grant < 0:
            raise ValueError("Initial credits can't be negative")

        try:
            async with self.session_factory() as session:
                record = CreditAccountRecord(
                    account_ref=account_ref,
                    balance=grant,
                    total_earned=grant,
                    total_spent=0,
                )
                session.add(record)
                await session.commit()
                logger.info(f"[CREDITS] Opened account {account_ref} with {grant} credits")
                return CreditAccount.from_row(record)
        except IntegrityError:
            # Concurrent open for the same account won the insert
            logger.debug(f"[CREDITS] Account {account_ref} opened concurrently")
        except SQLAlchemyError as e:
            logger.error(f"[CREDITS] Database error opening account {account_ref}: {e}", exc_info=True)
            raise StoreUnavailableError(f"Failed to open account {account_ref}") from e

        account = await self.get_account(account_ref)
        if account is None:
            raise AccountNotFoundError(account_ref)
        return account

    async def get_account(self, account_ref: str, session: Optional[AsyncSession] = None) -> Optional[CreditAccount]:
        """Load an account, or None if it doesn't exist."""
        try:
            async with session_scope(self.session_factory, session) as db:
                result = await db.execute(
                    select(CreditAccountRecord).where(CreditAccountRecord.account_ref == account_ref)
                )
                record = result.scalar_one_or_none()
                return CreditAccount.from_row(record) if record else None
        except SQLAlchemyError as e:
            logger.error(f"[CREDITS] Database error loading account {account_ref}: {e}", exc_info=True)
            raise StoreUnavailableError(f"Failed to load account {account_ref}") from e

    # =========================================================================
    # ADD / SUBTRACT
    # =========================================================================

    async def credit(self, account_ref: str, amount: int, session: Optional[AsyncSession] = None) -> int:
        """
        Atomically add credits.

        Args:
            account_ref: Account to credit
            amount: Positive integer number of credits
            session: Join this transaction instead of committing our own

        Returns:
            New balance

        Raises:
            ValueError: If amount isn't a positive integer
            AccountNotFoundError: If the account doesn't exist
        """
        amount = _validate_amount(amount)

        async with session_scope(self.session_factory, session) as db:
            result = await db.execute(
                update(CreditAccountRecord)
                .where(CreditAccountRecord.account_ref == account_ref)
                .values(
                    balance=CreditAccountRecord.balance + amount,
                    total_earned=CreditAccountRecord.total_earned + amount,
                    updated_time=timezone.now(),
                )
                .returning(CreditAccountRecord.balance)
                .execution_options(synchronize_session=False)
            )
            row = result.first()
            if row is None:
                logger.error(f"[CREDITS] Cannot credit {amount} - account {account_ref} not found")
                raise AccountNotFoundError(account_ref)

        logger.info(f"[CREDITS] Added {amount} credits to {account_ref}. New balance: {row.balance}")
        return int(row.balance)

    async def debit(self, account_ref: str, amount: int, session: Optional[AsyncSession] = None) -> int:
        """
        Atomically subtract credits.

        The guard ``balance >= amount`` lives in the UPDATE itself, so two
        concurrent debits can never overdraw the account.

        Returns:
            New balance

        Raises:
            ValueError: If amount isn't a positive integer
            InsufficientBalanceError: If the balance doesn't cover the amount
            AccountNotFoundError: If the account doesn't exist
        """
        amount = _validate_amount(amount)

        async with session_scope(self.session_factory, session) as db:
            result = await db.execute(
                update(CreditAccountRecord)
                .where(
                    (CreditAccountRecord.account_ref == account_ref)
                    & (CreditAccountRecord.balance >= amount)
                )
                .values(
                    balance=CreditAccountRecord.balance - amount,
                    total_spent=CreditAccountRecord.total_spent + amount,
                    updated_time=timezone.now(),
                )
                .returning(CreditAccountRecord.balance)
                .execution_options(synchronize_session=False)
            )
            row = result.first()
            if row is None:
                # Either account not found or insufficient credits
                check = await db.execute(
                    select(CreditAccountRecord.balance).where(CreditAccountRecord.account_ref == account_ref)
                )
                available = check.scalar_one_or_none()
                if available is None:
                    logger.error(f"[CREDITS] Cannot debit {amount} - account {account_ref} not found")
                    raise AccountNotFoundError(account_ref)
                logger.warning(
                    f"[CREDITS] Insufficient credits for {account_ref}: "
                    f"requested {amount}, available {available}"
                )
                raise InsufficientBalanceError(required=amount, available=int(available))

        logger.info(f"[CREDITS] Deducted {amount} credits from {account_ref}. New balance: {row.balance}")
        return int(row.balance)

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def has_credits(self, account_ref: str, amount: int) -> bool:
        """Check if an account can cover ``amount`` right now."""
        account = await self.get_account(account_ref)
        return bool(account) and account.can_afford(amount)

    async def get_stats(self, account_ref: str) -> Dict[str, int]:
        """
        Balance summary for an account.

        Returns:
            Dict with current_balance, total_earned, total_spent, net_credits
        """
        account = await self.get_account(account_ref)
        if account is None:
            raise AccountNotFoundError(account_ref)
        return {
            'current_balance': account.balance,
            'total_earned': account.total_earned,
            'total_spent': account.total_spent,
            'net_credits': account.net_credits,
        }

    async def list_accounts(self, limit: int = 1000, offset: int = 0) -> list:
        """Page through all accounts, oldest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(CreditAccountRecord)
                .order_by(CreditAccountRecord.id)
                .limit(limit)
                .offset(offset)
            )
            return [CreditAccount.from_row(record) for record in result.scalars()]
