"""
Payment Ledger

Single point of truth for "has this payment been credited". Owns the
``topup_payments`` table and drives the payment state machine through
compare-and-swap updates:

    UPDATE topup_payments SET status = :target
    WHERE id = :id AND status IN (<allowed sources>)
    RETURNING id

Exactly one of any number of concurrent writers racing on the same
transition sees its row come back; the others get ALREADY_DONE/CONFLICT.
"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from topup_backend.app.billing.model import PaymentRecord
from topup_backend.database.db import session_scope
from topup_backend.src.billing.domain.payment import (
    Payment,
    PaymentStatus,
    TransitionOutcome,
    derive_external_reference,
    sources_for,
)
from topup_backend.src.billing.shared.config import MAX_NOTE_LENGTH
from topup_backend.src.billing.shared.exceptions import DuplicateIdempotencyKeyError
from topup_backend.utils.timezone import timezone

logger = logging.getLogger(__name__)


def validate_topup_amounts(amount: Any, credits: Any) -> tuple:
    """
    Normalize and check a top-up's amount and credits.

    Both must be positive and numerically equal (1 credit per currency unit).

    Returns:
        ``(Decimal amount, int credits)``

    Raises:
        ValueError: On invalid values
    """
    if isinstance(credits, bool) or not isinstance(credits, int):
        raise ValueError("Credits must be an integer")
    try:
        amount = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid amount: {amount!r}")
    if not amount.is_finite() or amount <= 0 or credits <= 0:
        raise ValueError("Amount and credits must be positive")
    if amount != Decimal(credits):
        raise ValueError(f"Amount {amount} must equal credits {credits}")
    return amount.quantize(Decimal('0.01')), credits


class PaymentLedger:
    """
    Persistence and state transitions for top-up payments.

    Usage:
        ledger = PaymentLedger(session_factory)

        payment = await ledger.create("acct-1", Decimal("1000"), 1000, "k1")
        outcome = await ledger.try_transition_to_approved(payment)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # =========================================================================
    # CREATE / READ
    # =========================================================================

    async def insert(
        self,
        account_ref: str,
        amount: Decimal,
        credits: int,
        idempotency_key: str,
        note: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        """
        Insert a new payment in ``new``.

        Raises:
            ValueError: On invalid amounts, missing key or note too long
            DuplicateIdempotencyKeyError: If the key already exists; carries the stored payment
        """
        if not account_ref:
            raise ValueError("account_ref is required")
        if not idempotency_key:
            raise ValueError("idempotency_key is required")
        if note and len(note) > MAX_NOTE_LENGTH:
            raise ValueError(f"Note exceeds {MAX_NOTE_LENGTH} characters")
        amount, credits = validate_topup_amounts(amount, credits)

        try:
            async with self.session_factory() as session:
                record = PaymentRecord(
                    account_ref=account_ref,
                    amount=amount,
                    credits=credits,
                    idempotency_key=idempotency_key,
                    external_reference=derive_external_reference(idempotency_key),
                    note=note,
                    extra=dict(metadata or {}),
                )
                session.add(record)
                await session.commit()
        except IntegrityError:
            existing = await self.get_by_idempotency_key(idempotency_key)
            if existing is None:
                raise
            logger.info(f"[LEDGER] Duplicate idempotency key {idempotency_key}, payment {existing.id} exists")
            raise DuplicateIdempotencyKeyError(idempotency_key, existing=existing)

        payment = Payment.from_row(record)
        logger.info(
            f"[LEDGER] Created payment {payment.id} for {account_ref}: "
            f"credits={credits} ref={payment.external_reference}"
        )
        return payment

    async def create(
        self,
        account_ref: str,
        amount: Decimal,
        credits: int,
        idempotency_key: str,
        note: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        """
        Create a payment, or return the existing one for the same key.

        A retried client request with the same idempotency key never creates
        a second record.
        """
        try:
            return await self.insert(account_ref, amount, credits, idempotency_key, note, metadata)
        except DuplicateIdempotencyKeyError as e:
            return e.existing

    async def get(self, payment_id: str) -> Optional[Payment]:
        return await self._get_one(PaymentRecord.id == payment_id)

    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[Payment]:
        return await self._get_one(PaymentRecord.idempotency_key == idempotency_key)

    async def locate_by_external_reference(self, external_reference: str) -> Optional[Payment]:
        """The sole lookup path used by webhook processing."""
        if not external_reference:
            return None
        return await self._get_one(PaymentRecord.external_reference == external_reference)

    async def list_by_status(
        self,
        status: PaymentStatus,
        created_after: Optional[datetime] = None,
        approved_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Payment]:
        """Payments in ``status``, oldest first."""
        stmt = select(PaymentRecord).where(PaymentRecord.status == PaymentStatus(status).value)
        if created_after is not None:
            stmt = stmt.where(PaymentRecord.created_time >= created_after)
        if approved_before is not None:
            stmt = stmt.where(PaymentRecord.approved_at <= approved_before)
        stmt = stmt.order_by(PaymentRecord.created_time).limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [Payment.from_row(record) for record in result.scalars()]

    async def list_for_account(self, account_ref: str, limit: int = 10) -> List[Payment]:
        """Most recent payments of an account."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentRecord)
                .where(PaymentRecord.account_ref == account_ref)
                .order_by(PaymentRecord.created_time.desc())
                .limit(limit)
            )
            return [Payment.from_row(record) for record in result.scalars()]

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def attach_gateway_ids(
        self,
        payment: Payment,
        gateway_payment_id: Optional[str] = None,
        gateway_preference_id: Optional[str] = None,
        checkout_url: Optional[str] = None,
    ) -> Payment:
        """
        Record provider ids. Attaching a preference moves ``new`` to ``pending``.

        Returns:
            The payment as stored after the update
        """
        values: Dict[str, Any] = {'updated_time': timezone.now()}
        if gateway_payment_id:
            values['gateway_payment_id'] = str(gateway_payment_id)
        if gateway_preference_id:
            values['gateway_preference_id'] = str(gateway_preference_id)
            values['status'] = case(
                (PaymentRecord.status == PaymentStatus.NEW.value, PaymentStatus.PENDING.value),
                else_=PaymentRecord.status,
            )
        if checkout_url:
            values['checkout_url'] = checkout_url

        async with self.session_factory.begin() as session:
            await session.execute(
                update(PaymentRecord)
                .where(PaymentRecord.id == payment.id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

        stored = await self.get(payment.id)
        logger.info(
            f"[LEDGER] Attached gateway ids to {payment.id}: "
            f"preference={gateway_preference_id} payment={gateway_payment_id} status={stored.status.value}"
        )
        return stored

    async def record_gateway_status(
        self,
        payment: Payment,
        gateway_payment_id: str,
        status_detail: Optional[str] = None,
    ) -> bool:
        """
        Bookkeeping for non-final provider statuses (pending, in_process, ...).

        A gateway payment existing means the checkout link was used, so a
        ``new`` payment moves to ``pending``. Terminal payments are untouched.
        """
        return await self._compare_and_swap(
            payment,
            sources=(PaymentStatus.NEW, PaymentStatus.PENDING),
            values={
                'status': PaymentStatus.PENDING.value,
                'gateway_payment_id': str(gateway_payment_id),
                'status_detail': status_detail,
            },
        )

    async def try_transition_to_approved(
        self,
        payment: Payment,
        gateway_payment_id: Optional[str] = None,
        status_detail: Optional[str] = None,
    ) -> TransitionOutcome:
        """
        Compare-and-swap to ``approved``.

        Returns:
            APPLIED if this call moved the payment, ALREADY_DONE if it is
            already approved or credited, CONFLICT if it went elsewhere
        """
        values: Dict[str, Any] = {
            'status': PaymentStatus.APPROVED.value,
            'approved_at': timezone.now(),
            'status_detail': status_detail,
        }
        if gateway_payment_id:
            values['gateway_payment_id'] = str(gateway_payment_id)

        applied = await self._compare_and_swap(
            payment, sources=sources_for(PaymentStatus.APPROVED), values=values
        )
        if applied:
            logger.info(f"[LEDGER] Payment {payment.id} approved")
            return TransitionOutcome.APPLIED

        current = await self.get(payment.id)
        if current and current.status in (PaymentStatus.APPROVED, PaymentStatus.CREDITED):
            logger.info(f"[LEDGER] Payment {payment.id} already {current.status.value}")
            return TransitionOutcome.ALREADY_DONE
        logger.warning(
            f"[LEDGER] Approve conflict on {payment.id}: status is "
            f"{current.status.value if current else 'missing'}"
        )
        return TransitionOutcome.CONFLICT

    async def mark_credited(self, payment: Payment, session: Optional[AsyncSession] = None) -> bool:
        """
        Compare-and-swap ``approved`` to ``credited``.

        Pass the session that applies the balance increment so both commit
        or roll back together.

        Returns:
            True if this call moved the payment
        """
        credited = await self._compare_and_swap(
            payment,
            sources=sources_for(PaymentStatus.CREDITED),
            values={
                'status': PaymentStatus.CREDITED.value,
                'credited_at': timezone.now(),
            },
            session=session,
        )
        if credited:
            logger.info(f"[LEDGER] Payment {payment.id} marked credited")
        return credited

    async def mark_rejected(
        self,
        payment: Payment,
        reason: Optional[str] = None,
        gateway_payment_id: Optional[str] = None,
    ) -> bool:
        """
        Terminal transition from ``new``/``pending``.

        Returns:
            True if this call moved the payment
        """
        values: Dict[str, Any] = {
            'status': PaymentStatus.REJECTED.value,
            'status_detail': (reason or '')[:255] or None,
        }
        if gateway_payment_id:
            values['gateway_payment_id'] = str(gateway_payment_id)

        rejected = await self._compare_and_swap(
            payment, sources=sources_for(PaymentStatus.REJECTED), values=values
        )
        if rejected:
            logger.info(f"[LEDGER] Payment {payment.id} rejected: {reason}")
        return rejected

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _compare_and_swap(
        self,
        payment: Payment,
        sources,
        values: Dict[str, Any],
        session: Optional[AsyncSession] = None,
    ) -> bool:
        """Run one conditional UPDATE; True when the row matched."""
        allowed = [PaymentStatus(status).value for status in sources]
        async with session_scope(self.session_factory, session) as db:
            result = await db.execute(
                update(PaymentRecord)
                .where(
                    (PaymentRecord.id == payment.id)
                    & (PaymentRecord.status.in_(allowed))
                )
                .values(updated_time=timezone.now(), **values)
                .returning(PaymentRecord.id)
                .execution_options(synchronize_session=False)
            )
            return result.first() is not None

    async def _get_one(self, condition) -> Optional[Payment]:
        async with self.session_factory() as session:
            result = await session.execute(select(PaymentRecord).where(condition))
            record = result.scalar_one_or_none()
            return Payment.from_row(record) if record else None
