"""
Webhook Endpoints

MercadoPago webhook endpoint for top-up payment notifications.
"""

import logging

from fastapi import APIRouter, Depends, Request

from topup_backend.src.billing.container import BillingServices
from .dependencies import get_billing

logger = logging.getLogger(__name__)

router = APIRouter(tags=["billing-webhooks"])


@router.post("/webhook")
async def mercadopago_webhook(request: Request, billing: BillingServices = Depends(get_billing)):
    """
    Process MercadoPago notifications.

    Handles:
    - payment (webhooks ``type`` and IPN ``topic``)

    Other types (merchant_order, ...) are acknowledged and ignored.
    """
    return await billing.webhook_service.process_mercadopago_webhook(request)
