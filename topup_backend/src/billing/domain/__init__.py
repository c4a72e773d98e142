"""
Billing Domain

Core entities and the payment state machine.
"""

from .credit_account import CreditAccount
from .payment import (
    ALLOWED_TRANSITIONS,
    Payment,
    PaymentStatus,
    TransitionOutcome,
    derive_external_reference,
    is_topup_reference,
    sources_for,
)
from .webhook import WebhookOutcome, WebhookResult

__all__ = [
    'ALLOWED_TRANSITIONS',
    'CreditAccount',
    'Payment',
    'PaymentStatus',
    'TransitionOutcome',
    'WebhookOutcome',
    'WebhookResult',
    'derive_external_reference',
    'is_topup_reference',
    'sources_for',
]
