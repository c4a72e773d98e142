"""
Payment Interfaces

Protocol definitions for top-up and reconciliation services.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, Optional


class TopupProcessorInterface(ABC):
    """Interface for the start-top-up flow."""

    @abstractmethod
    async def create_topup_link(
        self,
        account_ref: str,
        amount: Decimal,
        credits: int,
        idempotency_key: str,
        note: Optional[str] = None
    ) -> Dict:
        """Create (or return the existing) checkout link for a top-up."""
        pass


class ReconciliationManagerInterface(ABC):
    """Interface for payment reconciliation services."""

    @abstractmethod
    async def resume_approved(self, grace_seconds: Optional[int] = None, limit: Optional[int] = None) -> Dict:
        """Settle payments left in approved."""
        pass

    @abstractmethod
    async def reconcile_pending(self, hours: Optional[int] = None, limit: Optional[int] = None) -> Dict:
        """Recover payments whose webhooks never arrived."""
        pass

    @abstractmethod
    async def verify_balance_consistency(self) -> Dict:
        """Verify credit balances are consistent."""
        pass
