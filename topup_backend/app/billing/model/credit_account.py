"""Credit account table."""

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from topup_backend.common.model import Base, id_key


class CreditAccountRecord(Base):
    """User credit balance"""

    __tablename__ = 'credit_accounts'
    __table_args__ = (
        sa.CheckConstraint('balance >= 0', name='ck_credit_accounts_balance_non_negative'),
        {'comment': 'User credit balances'},
    )

    id: Mapped[id_key] = mapped_column(init=False)
    account_ref: Mapped[str] = mapped_column(sa.String(64), unique=True, index=True, comment='Account reference')
    balance: Mapped[int] = mapped_column(sa.BigInteger, default=0, comment='Available credits')
    total_earned: Mapped[int] = mapped_column(sa.BigInteger, default=0, comment='Credits ever added')
    total_spent: Mapped[int] = mapped_column(sa.BigInteger, default=0, comment='Credits ever spent')
