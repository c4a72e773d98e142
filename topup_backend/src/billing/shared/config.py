"""
Billing Configuration

Constants shared by the top-up payment flow: the external reference format,
the MercadoPago notification types we act on and how provider statuses map
onto our own payment lifecycle.
"""

# External reference sent to MercadoPago: "topup_<idempotency_key>"
EXTERNAL_REFERENCE_PREFIX = "topup_"

# Notification types that carry a payment id
PAYMENT_EVENT_TYPES = frozenset({"payment"})
DEFAULT_NOTIFICATION_TYPE = "payment"

# MercadoPago payment statuses
PROVIDER_APPROVED_STATUSES = frozenset({"approved"})
PROVIDER_REJECTED_STATUSES = frozenset({"rejected", "cancelled"})
# Anything else (pending, in_process, authorized, in_mediation, ...) is still open

# Longest status note stored on a payment
MAX_NOTE_LENGTH = 200

# Return pages configured as checkout back_urls
RETURN_PAGE_SUCCESS = "payment-success"
RETURN_PAGE_FAILURE = "payment-failure"
RETURN_PAGE_PENDING = "payment-pending"


def is_payment_event(notification_type: str) -> bool:
    """Check if a notification type carries a payment we should reconcile."""
    return (notification_type or "").lower() in PAYMENT_EVENT_TYPES


def is_provider_approved(status: str) -> bool:
    return (status or "").lower() in PROVIDER_APPROVED_STATUSES


def is_provider_rejected(status: str) -> bool:
    return (status or "").lower() in PROVIDER_REJECTED_STATUSES
