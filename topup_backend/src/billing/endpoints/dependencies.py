"""
Endpoint Dependencies

Shared dependencies for billing API endpoints.
"""

import logging

from fastapi import HTTPException, Request

from topup_backend.src.billing.container import BillingServices

logger = logging.getLogger(__name__)


async def get_billing(request: Request) -> BillingServices:
    """
    Billing services built at startup.

    This is a dependency that can be overridden in tests.
    """
    billing = getattr(request.app.state, 'billing', None)
    if billing is None:
        logger.error("[WEBHOOK] Billing services not initialized")
        raise HTTPException(status_code=503, detail="Billing not configured")
    return billing
