"""
Webhook Processor

Turns one MercadoPago notification into at most one credit application.

Flow:
1. Verify X-Signature (fail closed, no other side effect)
2. Ignore non-payment notification types
3. Fetch the authoritative payment status from MercadoPago
4. Locate the local payment by external reference
5. Short-circuit payments that already moved on
6. approved → CAS to approved, then settle (CAS to credited + balance
   increment in one transaction)
7. rejected/cancelled → mark rejected

Deliveries may arrive any number of times, concurrently and out of order;
the compare-and-swap transitions make the whole flow idempotent.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from topup_backend.src.billing.credits.manager import CreditManager
from topup_backend.src.billing.domain.payment import (
    Payment,
    PaymentStatus,
    TransitionOutcome,
    is_topup_reference,
)
from topup_backend.src.billing.domain.webhook import WebhookOutcome, WebhookResult
from topup_backend.src.billing.external.mercadopago.client import MercadoPagoClient, ProviderPaymentView
from topup_backend.src.billing.external.mercadopago.signature import SignatureValidator
from topup_backend.src.billing.shared.alerts import AlertHook, log_alert
from topup_backend.src.billing.shared.config import (
    DEFAULT_NOTIFICATION_TYPE,
    is_payment_event,
    is_provider_approved,
    is_provider_rejected,
)
from topup_backend.src.billing.shared.exceptions import (
    AlreadyProcessedError,
    BillingError,
    CreditApplicationError,
    InvalidSignatureError,
    LedgerEntryMissingError,
    MalformedNotificationError,
    StoreUnavailableError,
    TransitionConflictError,
    UnknownGatewayPaymentError,
    UnsupportedNotificationTypeError,
)
from .ledger import PaymentLedger

logger = logging.getLogger(__name__)

ResultListener = Callable[[WebhookResult], Awaitable[None]]

# Errors operators must see
_ALERTED_ERRORS = (LedgerEntryMissingError, UnknownGatewayPaymentError)


def extract_data_id(notification: Dict[str, Any]) -> Optional[str]:
    """``data.id`` of a notification, as a string."""
    data = notification.get('data')
    if isinstance(data, dict) and data.get('id') not in (None, ''):
        return str(data['id'])
    return None


def extract_type(notification: Dict[str, Any]) -> str:
    """Notification type: ``type`` (webhooks) or ``topic`` (IPN)."""
    return notification.get('type') or notification.get('topic') or DEFAULT_NOTIFICATION_TYPE


class WebhookProcessor:
    """
    Orchestrates signature check, gateway lookup, ledger transition and crediting.

    Usage:
        processor = WebhookProcessor(validator, gateway, ledger, credit_manager, session_factory)
        result = await processor.process(body, request.headers.get('x-signature'), request_id)
    """

    def __init__(
        self,
        validator: SignatureValidator,
        gateway: MercadoPagoClient,
        ledger: PaymentLedger,
        credit_manager: CreditManager,
        session_factory: async_sessionmaker[AsyncSession],
        alert: AlertHook = log_alert,
        listeners: Optional[List[ResultListener]] = None,
    ):
        self.validator = validator
        self.gateway = gateway
        self.ledger = ledger
        self.credit_manager = credit_manager
        self.session_factory = session_factory
        self.alert = alert
        self._listeners: List[ResultListener] = list(listeners or [])

    def add_listener(self, listener: ResultListener) -> None:
        """Register a coroutine called after credited/rejected results."""
        self._listeners.append(listener)

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def process(
        self,
        notification: Dict[str, Any],
        signature_header: Optional[str],
        request_id: Optional[str],
    ) -> WebhookResult:
        """
        Process one notification.

        Args:
            notification: Parsed notification (``type``/``topic`` and ``data.id``)
            signature_header: Raw X-Signature header
            request_id: Raw X-Request-Id header

        Returns:
            WebhookResult describing the action taken

        Raises:
            GatewayUnavailableError: MercadoPago unreachable; let it retry the delivery
            CreditApplicationError: Crediting failed after approval
            StoreUnavailableError: Database failure
        """
        data_id = extract_data_id(notification)
        return await self._guarded(
            self._process(notification, signature_header, request_id, data_id), data_id
        )

    async def apply_provider_status(self, view: ProviderPaymentView) -> WebhookResult:
        """
        Apply an authoritative gateway status to the local payment.

        Used by the reconciliation sweep for payments whose webhook never
        arrived; same transitions and results as ``process``.
        """
        return await self._guarded(self._apply(view), view.id)

    async def resume(self, payment: Payment) -> WebhookResult:
        """Settle a payment left in ``approved``."""
        return await self._guarded(self.settle(payment), payment.gateway_payment_id)

    async def _guarded(self, operation: Awaitable[WebhookResult], data_id: Optional[str]) -> WebhookResult:
        """Await an operation, turning non-retryable billing errors into results."""
        try:
            result = await operation
        except BillingError as e:
            if e.retryable or e.outcome is None:
                raise
            result = self._result_from_error(e, data_id)
        except SQLAlchemyError as e:
            logger.error(f"[WEBHOOK] Database error processing payment {data_id}: {e}", exc_info=True)
            raise StoreUnavailableError() from e

        logger.info(
            f"[WEBHOOK] Payment {data_id}: {result.outcome.value}"
            + (f" ({result.reason})" if result.reason else "")
        )
        if result.outcome in (WebhookOutcome.CREDITED, WebhookOutcome.REJECTED):
            await self._notify_listeners(result)
        return result

    async def _process(
        self,
        notification: Dict[str, Any],
        signature_header: Optional[str],
        request_id: Optional[str],
        data_id: Optional[str],
    ) -> WebhookResult:
        if not self.validator.is_valid(signature_header, request_id, data_id):
            logger.warning(f"[WEBHOOK] Invalid signature for request {request_id}")
            raise InvalidSignatureError()

        notification_type = extract_type(notification)
        if not is_payment_event(notification_type):
            raise UnsupportedNotificationTypeError(notification_type)

        if not data_id:
            raise MalformedNotificationError()

        view = await self.gateway.fetch_status(data_id)
        if view is None:
            raise UnknownGatewayPaymentError(data_id)

        return await self._apply(view)

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def _apply(self, view: ProviderPaymentView) -> WebhookResult:
        payment = await self._locate(view.external_reference)

        if payment.status in (PaymentStatus.CREDITED, PaymentStatus.REJECTED, PaymentStatus.APPROVED):
            if payment.status == PaymentStatus.APPROVED or payment.status.value != view.status:
                logger.info(
                    f"[WEBHOOK] Payment {payment.id} is {payment.status.value}, "
                    f"gateway reports {view.status} - no transition"
                )
            raise AlreadyProcessedError(payment.id, payment.status.value)

        if is_provider_approved(view.status):
            if view.transaction_amount is not None and view.transaction_amount != payment.amount:
                logger.warning(
                    f"[WEBHOOK] Amount mismatch on {payment.id}: "
                    f"gateway {view.transaction_amount}, ledger {payment.amount}"
                )
            outcome = await self.ledger.try_transition_to_approved(
                payment, gateway_payment_id=view.id, status_detail=view.status_detail
            )
            if outcome != TransitionOutcome.APPLIED:
                raise TransitionConflictError(payment.id, outcome.value)
            return await self.settle(payment, gateway_payment_id=view.id)

        if is_provider_rejected(view.status):
            reason = view.status_detail or view.status
            if not await self.ledger.mark_rejected(payment, reason, gateway_payment_id=view.id):
                raise TransitionConflictError(payment.id, PaymentStatus.REJECTED.value)
            return WebhookResult(
                outcome=WebhookOutcome.REJECTED,
                payment_id=payment.id,
                gateway_payment_id=view.id,
                account_ref=payment.account_ref,
                amount=payment.amount,
                reason=reason,
            )

        await self.ledger.record_gateway_status(payment, view.id, view.status_detail or view.status)
        return WebhookResult(
            outcome=WebhookOutcome.STATUS_UPDATED,
            payment_id=payment.id,
            gateway_payment_id=view.id,
            account_ref=payment.account_ref,
            amount=payment.amount,
            reason=view.status,
        )

    async def settle(self, payment: Payment, gateway_payment_id: Optional[str] = None) -> WebhookResult:
        """
        Credit an approved payment.

        The approved→credited CAS and the balance increment share one
        transaction, so a settle is either fully applied or not at all and
        running it again is a no-op.

        Raises:
            CreditApplicationError: Crediting failed; the payment stays approved
        """
        try:
            await self.credit_manager.open_account(payment.account_ref)
            async with self.session_factory.begin() as session:
                new_balance = None
                if await self.ledger.mark_credited(payment, session=session):
                    new_balance = await self.credit_manager.credit(
                        payment.account_ref, payment.credits, session=session
                    )
        except (BillingError, SQLAlchemyError) as e:
            logger.error(f"[WEBHOOK] Failed to credit approved payment {payment.id}: {e}", exc_info=True)
            self.alert('credit_application_failed', {
                'payment_id': payment.id,
                'account_ref': payment.account_ref,
                'credits': payment.credits,
                'error': f"{type(e).__name__}: {str(e)[:500]}",
            })
            raise CreditApplicationError(payment.id) from e

        if new_balance is None:
            raise AlreadyProcessedError(payment.id, PaymentStatus.CREDITED.value)

        return WebhookResult(
            outcome=WebhookOutcome.CREDITED,
            payment_id=payment.id,
            gateway_payment_id=gateway_payment_id or payment.gateway_payment_id,
            account_ref=payment.account_ref,
            credits_added=payment.credits,
            amount=payment.amount,
            new_balance=new_balance,
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _locate(self, external_reference: Optional[str]) -> Payment:
        """Find the local payment, treating any doubtful reference as missing."""
        if not is_topup_reference(external_reference):
            raise LedgerEntryMissingError(external_reference, reason="not a top-up reference")

        payment = await self.ledger.locate_by_external_reference(external_reference)
        if payment is None:
            raise LedgerEntryMissingError(external_reference)
        if not payment.matches_reference(external_reference):
            raise LedgerEntryMissingError(external_reference, reason="reference does not match idempotency key")
        return payment

    def _result_from_error(self, error: BillingError, data_id: Optional[str]) -> WebhookResult:
        if isinstance(error, _ALERTED_ERRORS):
            logger.error(f"[WEBHOOK] {error.message}")
            self.alert(error.code.lower(), {'gateway_payment_id': data_id, **error.details})

        result = WebhookResult(outcome=error.outcome, gateway_payment_id=data_id)
        if isinstance(error, AlreadyProcessedError):
            result.payment_id = error.payment_id
            result.reason = error.status
        elif isinstance(error, InvalidSignatureError):
            result.reason = None
        else:
            result.reason = error.code.lower()
        return result

    async def _notify_listeners(self, result: WebhookResult) -> None:
        for listener in self._listeners:
            try:
                await listener(result)
            except Exception as e:
                # Messaging failures never fail the webhook
                logger.error(f"[WEBHOOK] Result listener failed for payment {result.payment_id}: {e}", exc_info=True)
