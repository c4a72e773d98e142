"""
Webhook Result Domain Types

Structured outcome of processing one MercadoPago notification.
"""

from dataclasses import asdict, dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class WebhookOutcome(str, Enum):
    """What a webhook delivery did."""
    CREDITED = "credited"
    REJECTED = "rejected"
    ALREADY_PROCESSED = "already_processed"
    IGNORED = "ignored"
    INVALID_SIGNATURE = "invalid_signature"
    PAYMENT_NOT_FOUND = "payment_not_found"
    INTERNAL_PAYMENT_NOT_FOUND = "internal_payment_not_found"
    MISSING_PAYMENT_ID = "missing_payment_id"
    STATUS_UPDATED = "status_updated"


@dataclass
class WebhookResult:
    """
    Result of a processed notification, used for logging, alerting and the
    HTTP response.

    Attributes:
        outcome: Action taken
        payment_id: Internal payment id, when one was located
        gateway_payment_id: MercadoPago payment id from the notification
        account_ref: Owning account, when one was located
        credits_added: Credits applied by this delivery (0 unless credited)
        amount: Payment amount
        new_balance: Account balance after crediting
        reason: Short diagnostic for operators, never shown to end users
    """
    outcome: WebhookOutcome
    payment_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    account_ref: Optional[str] = None
    credits_added: int = 0
    amount: Optional[Decimal] = None
    new_balance: Optional[int] = None
    reason: Optional[str] = None

    @property
    def is_success(self) -> bool:
        """Accepted deliveries, including idempotent no-ops."""
        return self.outcome not in (
            WebhookOutcome.INVALID_SIGNATURE,
            WebhookOutcome.MISSING_PAYMENT_ID,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        if self.amount is not None:
            data["amount"] = str(self.amount)
        return data
