"""
Credit Account Domain Entity

Represents a user's credit account with balance tracking.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class CreditAccount:
    """
    Represents a user's credit account.

    Invariants:
    - balance >= 0
    - balance == total_earned - total_spent

    Attributes:
        id: Unique identifier for the credit account
        account_ref: Account reference used by payments
        balance: Total current balance
        total_earned: Credits ever added (top-ups, initial grant)
        total_spent: Credits ever consumed
        created_at: When the account was created
        updated_at: Last modification time
    """
    id: int
    account_ref: str
    balance: int
    total_earned: int
    total_spent: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def can_afford(self, cost: int) -> bool:
        """Check if there are enough credits for an operation."""
        return self.balance >= cost

    @property
    def net_credits(self) -> int:
        return self.total_earned - self.total_spent

    def is_consistent(self) -> bool:
        """Check the balance against the audit counters."""
        return self.balance >= 0 and self.balance == self.net_credits

    @classmethod
    def from_row(cls, row) -> 'CreditAccount':
        """Create a CreditAccount from a ``CreditAccountRecord`` row."""
        return cls(
            id=row.id,
            account_ref=row.account_ref,
            balance=int(row.balance),
            total_earned=int(row.total_earned),
            total_spent=int(row.total_spent),
            created_at=row.created_time,
            updated_at=row.updated_time,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            'id': self.id,
            'account_ref': self.account_ref,
            'balance': self.balance,
            'total_earned': self.total_earned,
            'total_spent': self.total_spent,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }
