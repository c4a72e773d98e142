"""
Payments Module

Top-up payments: ledger, webhook processing, checkout links and reconciliation.
"""

from .ledger import PaymentLedger
from .notifications import build_user_notice
from .processor import WebhookProcessor
from .reconciliation import ReconciliationService
from .service import TopupService

__all__ = [
    'PaymentLedger',
    'ReconciliationService',
    'TopupService',
    'WebhookProcessor',
    'build_user_notice',
]
