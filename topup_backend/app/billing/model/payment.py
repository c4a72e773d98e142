"""Top-up payment table."""

from datetime import datetime
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from topup_backend.common.model import Base, TimeZone
from topup_backend.database.db import uuid4_str


class PaymentRecord(Base):
    """Credit top-up payment"""

    __tablename__ = 'topup_payments'
    __table_args__ = (
        sa.Index('ix_topup_payments_account_status', 'account_ref', 'status'),
        sa.Index('ix_topup_payments_status_approved', 'status', 'approved_at'),
        {'comment': 'Credit top-up payments'},
    )

    account_ref: Mapped[str] = mapped_column(sa.String(64), index=True, comment='Owning credit account')
    amount: Mapped[Decimal] = mapped_column(sa.Numeric(12, 2), comment='Charged amount')
    credits: Mapped[int] = mapped_column(sa.Integer, comment='Credits granted on approval')
    idempotency_key: Mapped[str] = mapped_column(
        sa.String(128), unique=True, comment='Caller supplied idempotency key'
    )
    external_reference: Mapped[str] = mapped_column(
        sa.String(160), unique=True, comment='Gateway correlation token'
    )
    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default_factory=uuid4_str)
    status: Mapped[str] = mapped_column(sa.String(16), default='new', index=True, comment='Payment status')
    gateway_payment_id: Mapped[str | None] = mapped_column(
        sa.String(64), default=None, index=True, comment='Gateway payment ID'
    )
    gateway_preference_id: Mapped[str | None] = mapped_column(
        sa.String(128), default=None, index=True, comment='Gateway checkout preference ID'
    )
    checkout_url: Mapped[str | None] = mapped_column(sa.String(512), default=None, comment='Checkout link')
    status_detail: Mapped[str | None] = mapped_column(sa.String(255), default=None, comment='Gateway status detail')
    note: Mapped[str | None] = mapped_column(sa.String(200), default=None)
    extra: Mapped[dict] = mapped_column('metadata', sa.JSON, default_factory=dict, comment='Diagnostic payload')
    approved_at: Mapped[datetime | None] = mapped_column(TimeZone, default=None)
    credited_at: Mapped[datetime | None] = mapped_column(TimeZone, default=None)
