"""
Top-up Service

Start-top-up flow invoked by the chat tool layer.

Flow:
1. Validate amount/credits (1:1, positive) and the note
2. Open the credit account if needed
3. Reuse the payment already stored for the idempotency key, if any
4. Create the payment (new) and the MercadoPago preference
5. Attach the preference and move the payment to pending
6. Webhook credits the account later
"""

import logging
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from topup_backend.src.billing.credits.manager import CreditManager
from topup_backend.src.billing.domain.payment import Payment, PaymentStatus
from topup_backend.src.billing.external.mercadopago.client import MercadoPagoClient
from topup_backend.src.billing.shared.config import MAX_NOTE_LENGTH
from topup_backend.src.billing.shared.exceptions import (
    DuplicateIdempotencyKeyError,
    GatewayRequestError,
    GatewayUnavailableError,
    PaymentError,
    StoreUnavailableError,
)
from .interfaces import TopupProcessorInterface
from .ledger import PaymentLedger, validate_topup_amounts

logger = logging.getLogger(__name__)


class TopupService(TopupProcessorInterface):
    """
    Creates checkout links for credit top-ups.

    Usage:
        result = await topup_service.create_topup_link(
            account_ref="5491122334455",
            amount=Decimal("1000"),
            credits=1000,
            idempotency_key="3f0b...",
        )
        # {'payment_id': ..., 'checkout_url': 'https://www.mercadopago.com.ar/...', ...}
    """

    def __init__(
        self,
        ledger: PaymentLedger,
        gateway: MercadoPagoClient,
        credit_manager: CreditManager,
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.credit_manager = credit_manager

    async def create_topup_link(
        self,
        account_ref: str,
        amount: Decimal,
        credits: int,
        idempotency_key: str,
        note: Optional[str] = None
    ) -> Dict:
        """
        Create a checkout link for a credit top-up.

        Args:
            account_ref: Account to credit
            amount: Amount to charge, equal to credits
            credits: Credits to grant
            idempotency_key: Caller supplied key; retries return the same link
            note: Optional note (max 200 characters)

        Returns:
            Dict with payment_id, checkout_url, external_reference, status, duplicate

        Raises:
            PaymentError: Invalid request or MercadoPago rejected the preference
            GatewayUnavailableError: Retryable; the same key can be retried
        """
        if not account_ref:
            raise PaymentError(code="INVALID_ACCOUNT", message="An account reference is required")
        if not idempotency_key:
            raise PaymentError(code="INVALID_IDEMPOTENCY_KEY", message="An idempotency key is required")
        if note and len(note) > MAX_NOTE_LENGTH:
            raise PaymentError(code="NOTE_TOO_LONG", message=f"Note exceeds {MAX_NOTE_LENGTH} characters")
        try:
            amount, credits = validate_topup_amounts(amount, credits)
        except ValueError as e:
            raise PaymentError(code="INVALID_AMOUNT", message=str(e))

        try:
            await self.credit_manager.open_account(account_ref)
            payment = await self.ledger.insert(account_ref, amount, credits, idempotency_key, note=note)
        except DuplicateIdempotencyKeyError as e:
            return await self._resume_existing(e.existing)
        except SQLAlchemyError as e:
            logger.error(f"[TOPUP] Database error creating payment for {account_ref}: {e}", exc_info=True)
            raise StoreUnavailableError() from e

        return await self._create_preference(payment, note)

    async def _resume_existing(self, payment: Payment) -> Dict:
        """Idempotent retry: hand back the stored link, or finish a payment whose preference failed."""
        logger.info(f"[TOPUP] Idempotent retry for {payment.idempotency_key} (payment {payment.id}, {payment.status.value})")
        if payment.status == PaymentStatus.NEW and not payment.checkout_url:
            return await self._create_preference(payment, payment.note, duplicate=True)
        if payment.status == PaymentStatus.REJECTED and not payment.checkout_url:
            raise PaymentError(
                code="PREFERENCE_REJECTED",
                message="Payment link could not be created",
                payment_id=payment.id,
            )
        return self._to_response(payment, duplicate=True)

    async def _create_preference(self, payment: Payment, note: Optional[str], duplicate: bool = False) -> Dict:
        try:
            preference = await self.gateway.create_topup(
                amount=payment.amount,
                credits=payment.credits,
                idempotency_key=payment.idempotency_key,
                account_ref=payment.account_ref,
                note=note,
            )
        except GatewayUnavailableError:
            # Payment stays new; retrying with the same key picks it up
            logger.warning(f"[TOPUP] Gateway unavailable creating preference for payment {payment.id}")
            raise
        except GatewayRequestError as e:
            await self.ledger.mark_rejected(payment, reason=f"preference_rejected:{e.status_code}")
            raise PaymentError(
                code="PREFERENCE_REJECTED",
                message="Payment link could not be created",
                payment_id=payment.id,
                gateway_error=e.message,
            )

        payment = await self.ledger.attach_gateway_ids(
            payment,
            gateway_preference_id=preference.preference_id,
            checkout_url=preference.checkout_url,
        )
        logger.info(f"[TOPUP] Checkout link ready for payment {payment.id} ({payment.account_ref})")
        return self._to_response(payment, duplicate=duplicate)

    @staticmethod
    def _to_response(payment: Payment, duplicate: bool) -> Dict:
        return {
            'payment_id': payment.id,
            'checkout_url': payment.checkout_url,
            'external_reference': payment.external_reference,
            'preference_id': payment.gateway_preference_id,
            'amount': payment.amount,
            'credits': payment.credits,
            'status': payment.status.value,
            'duplicate': duplicate,
        }
