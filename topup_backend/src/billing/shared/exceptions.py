"""
Billing Exceptions

Custom exception classes for top-up and webhook errors.
These provide structured error handling across the billing module.

Every exception knows whether the failure is retryable. Retryable failures
are surfaced to the HTTP boundary so MercadoPago's own retry mechanism drives
eventual consistency; the rest are resolved locally.
"""

from typing import Optional

from topup_backend.src.billing.domain.webhook import WebhookOutcome


class BillingError(Exception):
    """
    Base exception for all billing-related errors.

    All billing exceptions inherit from this class, allowing for
    broad exception handling when needed.
    """

    retryable = False
    outcome: Optional[WebhookOutcome] = None

    def __init__(self, message: str, code: str = "BILLING_ERROR", details: dict = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses."""
        return {
            'error': self.code,
            'message': self.message,
            'details': self.details
        }


# =============================================================================
# WEBHOOK CLASSIFICATION
# =============================================================================

class InvalidSignatureError(BillingError):
    """
    Raised when a notification fails X-Signature verification.

    The reason is kept for local logs only and is never sent to the caller.
    """

    outcome = WebhookOutcome.INVALID_SIGNATURE

    def __init__(self, reason: str = "signature mismatch"):
        super().__init__(
            message="Invalid webhook signature",
            code="INVALID_SIGNATURE",
        )
        self.reason = reason


class UnsupportedNotificationTypeError(BillingError):
    """Raised for notification types with no financial effect (merchant_order, ...)."""

    outcome = WebhookOutcome.IGNORED

    def __init__(self, notification_type: str = None):
        super().__init__(
            message=f"Unsupported notification type: {notification_type}",
            code="UNSUPPORTED_NOTIFICATION_TYPE",
            details={'type': notification_type} if notification_type else {}
        )
        self.notification_type = notification_type


class MalformedNotificationError(BillingError):
    """Raised when a payment notification carries no payment id."""

    outcome = WebhookOutcome.MISSING_PAYMENT_ID

    def __init__(self, message: str = "Notification has no payment id"):
        super().__init__(message=message, code="MALFORMED_NOTIFICATION")


# =============================================================================
# GATEWAY
# =============================================================================

class GatewayUnavailableError(BillingError):
    """
    Raised on timeouts, transport errors, 5xx and 429 from MercadoPago.

    Retryable: never interpret this as a rejected payment.
    """

    retryable = True

    def __init__(
        self,
        message: str = "Payment gateway unavailable",
        status_code: int = None,
        code: str = "GATEWAY_UNAVAILABLE"
    ):
        super().__init__(
            message=message,
            code=code,
            details={'status_code': status_code} if status_code else {}
        )
        self.status_code = status_code


class CircuitBreakerOpenError(GatewayUnavailableError):
    """Raised when the gateway circuit is open and calls fail fast."""

    def __init__(self, circuit_name: str = "mercadopago_api"):
        super().__init__(
            message=f"Circuit breaker is open for {circuit_name}",
            code="CIRCUIT_OPEN"
        )
        self.circuit_name = circuit_name


class GatewayRequestError(BillingError):
    """Raised when MercadoPago rejects a request with a non-retryable 4xx."""

    def __init__(self, message: str = "Payment gateway rejected the request", status_code: int = None):
        super().__init__(
            message=message,
            code="GATEWAY_REQUEST_ERROR",
            details={'status_code': status_code} if status_code else {}
        )
        self.status_code = status_code


class UnknownGatewayPaymentError(BillingError):
    """Raised when MercadoPago has no payment for the notified id."""

    outcome = WebhookOutcome.PAYMENT_NOT_FOUND

    def __init__(self, gateway_payment_id: str = None):
        super().__init__(
            message=f"Payment {gateway_payment_id} not found at gateway",
            code="UNKNOWN_GATEWAY_PAYMENT",
            details={'gateway_payment_id': gateway_payment_id}
        )
        self.gateway_payment_id = gateway_payment_id


# =============================================================================
# LEDGER
# =============================================================================

class LedgerEntryMissingError(BillingError):
    """
    Raised when a gateway payment has no matching local payment.

    This is a data-integrity gap: it is alerted on and never retried into a
    crediting action.
    """

    outcome = WebhookOutcome.INTERNAL_PAYMENT_NOT_FOUND

    def __init__(self, external_reference: str = None, reason: str = "no matching payment"):
        super().__init__(
            message=f"No local payment for external reference {external_reference!r}: {reason}",
            code="LEDGER_ENTRY_MISSING",
            details={'external_reference': external_reference, 'reason': reason}
        )
        self.external_reference = external_reference
        self.reason = reason


class AlreadyProcessedError(BillingError):
    """Raised when a payment already reached the state a notification asks for."""

    outcome = WebhookOutcome.ALREADY_PROCESSED

    def __init__(self, payment_id: str = None, status: str = None, code: str = "ALREADY_PROCESSED"):
        super().__init__(
            message=f"Payment {payment_id} already processed (status={status})",
            code=code,
            details={'payment_id': payment_id, 'status': status}
        )
        self.payment_id = payment_id
        self.status = status


class TransitionConflictError(AlreadyProcessedError):
    """Raised when a concurrent delivery won the compare-and-swap race."""

    def __init__(self, payment_id: str = None, status: str = None):
        super().__init__(payment_id=payment_id, status=status, code="TRANSITION_CONFLICT")


class DuplicateIdempotencyKeyError(BillingError):
    """
    Raised when a payment already exists for an idempotency key.

    Attributes:
        existing: The payment already stored for the key, when loaded
    """

    def __init__(self, idempotency_key: str = None, existing=None):
        super().__init__(
            message=f"Payment already exists for idempotency key {idempotency_key!r}",
            code="DUPLICATE_IDEMPOTENCY_KEY",
            details={'idempotency_key': idempotency_key}
        )
        self.idempotency_key = idempotency_key
        self.existing = existing


class StoreUnavailableError(BillingError):
    """Raised when the database fails mid-operation. Retryable."""

    retryable = True

    def __init__(self, message: str = "Payment store unavailable"):
        super().__init__(message=message, code="STORE_UNAVAILABLE")


class CreditApplicationError(BillingError):
    """
    Raised when crediting fails after a payment was approved.

    The payment stays ``approved`` and the reconciliation sweep settles it.
    """

    retryable = True

    def __init__(self, payment_id: str = None, message: str = "Failed to apply credits"):
        super().__init__(
            message=message,
            code="CREDIT_APPLICATION_FAILED",
            details={'payment_id': payment_id}
        )
        self.payment_id = payment_id


# =============================================================================
# CREDITS & PAYMENTS
# =============================================================================

class InsufficientBalanceError(BillingError):
    """
    Raised when a debit exceeds the available balance.

    Attributes:
        required: Credits required for the operation
        available: Credits currently available
    """

    def __init__(
        self,
        message: str = "Insufficient credits for this operation",
        required: int = 0,
        available: int = 0
    ):
        super().__init__(
            message=message,
            code="INSUFFICIENT_BALANCE",
            details={
                'required': required,
                'available': available,
                'shortfall': max(0, required - available)
            }
        )
        self.required = required
        self.available = available


class AccountNotFoundError(BillingError):
    """Raised when a credit account doesn't exist."""

    def __init__(self, account_ref: str = None):
        super().__init__(
            message=f"Credit account not found: {account_ref}",
            code="ACCOUNT_NOT_FOUND",
            details={'account_ref': account_ref}
        )
        self.account_ref = account_ref


class PaymentError(BillingError):
    """
    Raised when there's an issue with top-up payment processing.

    Examples:
        - Invalid amount or credits
        - Checkout preference creation rejected
    """

    def __init__(
        self,
        message: str = "Payment processing error",
        code: str = "PAYMENT_ERROR",
        payment_id: str = None,
        gateway_error: str = None
    ):
        details = {}
        if payment_id:
            details['payment_id'] = payment_id
        if gateway_error:
            details['gateway_error'] = gateway_error

        super().__init__(
            message=message,
            code=code,
            details=details
        )
        self.payment_id = payment_id
        self.gateway_error = gateway_error
