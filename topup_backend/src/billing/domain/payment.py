"""
Payment Domain Entity

Top-up payment and its state machine. The ledger never mutates status from
application code: every transition is a conditional update whose allowed
source states come from ``ALLOWED_TRANSITIONS``.

    new ──► pending ──► approved ──► credited
     │         │
     └─────────┴──────► rejected
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from topup_backend.src.billing.shared.config import EXTERNAL_REFERENCE_PREFIX


class PaymentStatus(str, Enum):
    """Payment lifecycle states."""
    NEW = "new"
    PENDING = "pending"
    APPROVED = "approved"  # transient: credited in the same webhook call
    REJECTED = "rejected"
    CREDITED = "credited"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.CREDITED, PaymentStatus.REJECTED)


ALLOWED_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.NEW: frozenset({PaymentStatus.PENDING, PaymentStatus.APPROVED, PaymentStatus.REJECTED}),
    PaymentStatus.PENDING: frozenset({PaymentStatus.APPROVED, PaymentStatus.REJECTED}),
    PaymentStatus.APPROVED: frozenset({PaymentStatus.CREDITED}),
    PaymentStatus.CREDITED: frozenset(),
    PaymentStatus.REJECTED: frozenset(),
}


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[PaymentStatus(current)]


def sources_for(target: PaymentStatus) -> FrozenSet[PaymentStatus]:
    """States from which ``target`` may be entered."""
    return frozenset(
        source for source, targets in ALLOWED_TRANSITIONS.items()
        if target in targets
    )


def derive_external_reference(idempotency_key: str) -> str:
    """Deterministic gateway correlation token for an idempotency key."""
    if not idempotency_key:
        raise ValueError("idempotency_key is required")
    return f"{EXTERNAL_REFERENCE_PREFIX}{idempotency_key}"


def is_topup_reference(external_reference: Optional[str]) -> bool:
    return bool(external_reference) and external_reference.startswith(EXTERNAL_REFERENCE_PREFIX) \
        and len(external_reference) > len(EXTERNAL_REFERENCE_PREFIX)


class TransitionOutcome(str, Enum):
    """Result of a compare-and-swap on payment status."""
    APPLIED = "applied"
    ALREADY_DONE = "already_done"  # target (or a later state on the same path) already reached
    CONFLICT = "conflict"  # moved elsewhere by another writer


@dataclass
class Payment:
    """
    A single credit top-up intent.

    Attributes:
        id: Opaque identifier, immutable
        account_ref: Owning credit account
        amount: Charged amount, equal to ``credits``
        credits: Credits granted once the payment is credited
        status: Current lifecycle state
        idempotency_key: Caller supplied unique token
        external_reference: ``topup_<idempotency_key>``
        gateway_payment_id: MercadoPago payment id
        gateway_preference_id: MercadoPago checkout preference id
        checkout_url: Checkout link shown to the user
        status_detail: Last provider status detail or rejection reason
        approved_at: When the gateway approval was recorded
        credited_at: When the account was credited
        note: Free-form note
        metadata: Diagnostic payload, never used for control flow
    """
    id: str
    account_ref: str
    amount: Decimal
    credits: int
    status: PaymentStatus
    idempotency_key: str
    external_reference: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    gateway_payment_id: Optional[str] = None
    gateway_preference_id: Optional[str] = None
    checkout_url: Optional[str] = None
    status_detail: Optional[str] = None
    approved_at: Optional[datetime] = None
    credited_at: Optional[datetime] = None
    note: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def matches_reference(self, external_reference: str) -> bool:
        """Check a gateway-echoed reference against our own derivation."""
        return derive_external_reference(self.idempotency_key) == external_reference

    @classmethod
    def from_row(cls, row) -> 'Payment':
        """Create a Payment from a ``PaymentRecord`` row."""
        return cls(
            id=row.id,
            account_ref=row.account_ref,
            amount=Decimal(str(row.amount)),
            credits=int(row.credits),
            status=PaymentStatus(row.status),
            idempotency_key=row.idempotency_key,
            external_reference=row.external_reference,
            created_at=row.created_time,
            updated_at=row.updated_time,
            gateway_payment_id=row.gateway_payment_id,
            gateway_preference_id=row.gateway_preference_id,
            checkout_url=row.checkout_url,
            status_detail=row.status_detail,
            approved_at=row.approved_at,
            credited_at=row.credited_at,
            note=row.note,
            metadata=dict(row.extra or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'account_ref': self.account_ref,
            'amount': str(self.amount),
            'credits': self.credits,
            'status': self.status.value,
            'idempotency_key': self.idempotency_key,
            'external_reference': self.external_reference,
            'gateway_payment_id': self.gateway_payment_id,
            'gateway_preference_id': self.gateway_preference_id,
            'checkout_url': self.checkout_url,
            'status_detail': self.status_detail,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'approved_at': self.approved_at.isoformat() if self.approved_at else None,
            'credited_at': self.credited_at.isoformat() if self.credited_at else None,
            'note': self.note,
        }
