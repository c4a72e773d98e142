"""
Billing Endpoints Module

API routes for billing operations.

Routers:
- webhooks: MercadoPago webhook processing
- returns: Checkout return pages

Usage:
    from topup_backend.src.billing.endpoints import billing_router

    app.include_router(billing_router, prefix="/billing")
"""

from fastapi import APIRouter

from .dependencies import get_billing
from .returns import router as returns_router
from .webhooks import router as webhooks_router

# Create main billing router
billing_router = APIRouter()

# Include all sub-routers
billing_router.include_router(webhooks_router)
billing_router.include_router(returns_router)

__all__ = ['billing_router', 'get_billing']
