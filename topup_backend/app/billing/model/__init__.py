"""Billing models package."""

from topup_backend.app.billing.model.credit_account import CreditAccountRecord
from topup_backend.app.billing.model.payment import PaymentRecord

__all__ = ['CreditAccountRecord', 'PaymentRecord']
