"""
Billing Service Container

Builds every billing component once at startup from explicit settings and
wires them together. Nothing in the billing module reads global settings or
keeps a module-level client; the FastAPI app stores the container on
``app.state.billing``.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from topup_backend.core.conf import Settings
from topup_backend.src.billing.credits.manager import CreditManager
from topup_backend.src.billing.external.mercadopago.client import MercadoPagoClient
from topup_backend.src.billing.external.mercadopago.signature import SignatureValidator
from topup_backend.src.billing.external.mercadopago.webhooks import WebhookService
from topup_backend.src.billing.payments.ledger import PaymentLedger
from topup_backend.src.billing.payments.processor import WebhookProcessor
from topup_backend.src.billing.payments.reconciliation import ReconciliationService
from topup_backend.src.billing.payments.service import TopupService
from topup_backend.src.billing.shared.alerts import AlertHook, log_alert

logger = logging.getLogger(__name__)


@dataclass
class BillingServices:
    """All billing components sharing one gateway client and session factory."""
    gateway: MercadoPagoClient
    validator: SignatureValidator
    ledger: PaymentLedger
    credit_manager: CreditManager
    processor: WebhookProcessor
    topup_service: TopupService
    reconciliation: ReconciliationService
    webhook_service: WebhookService

    async def aclose(self) -> None:
        """Release the gateway connection pool."""
        await self.gateway.aclose()


def build_billing_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: Optional[httpx.AsyncClient] = None,
    alert: Optional[AlertHook] = None,
) -> BillingServices:
    """
    Construct the billing services.

    Args:
        settings: Application settings
        session_factory: Async session factory for the payment store
        http_client: Shared httpx client; one is created when omitted
        alert: Operator alert hook, defaults to a CRITICAL log line

    Raises:
        ValueError: If MercadoPago credentials are missing
    """
    alert = alert or log_alert

    gateway = MercadoPagoClient.from_settings(settings, http_client=http_client)
    validator = SignatureValidator(
        secret=settings.MP_SECRET_KEY,
        tolerance_seconds=settings.MP_SIGNATURE_TOLERANCE_SECONDS,
    )
    ledger = PaymentLedger(session_factory)
    credit_manager = CreditManager(session_factory, initial_credits=settings.CREDITS_INITIAL_BALANCE)
    processor = WebhookProcessor(
        validator=validator,
        gateway=gateway,
        ledger=ledger,
        credit_manager=credit_manager,
        session_factory=session_factory,
        alert=alert,
    )
    reconciliation = ReconciliationService(
        ledger=ledger,
        processor=processor,
        gateway=gateway,
        credit_manager=credit_manager,
        approved_grace_seconds=settings.RECONCILIATION_APPROVED_GRACE_SECONDS,
        pending_lookback_hours=settings.RECONCILIATION_PENDING_LOOKBACK_HOURS,
        batch_limit=settings.RECONCILIATION_BATCH_LIMIT,
        alert=alert,
    )

    logger.info(f"[TOPUP] Billing services ready (gateway {settings.MP_BASE_URL})")
    return BillingServices(
        gateway=gateway,
        validator=validator,
        ledger=ledger,
        credit_manager=credit_manager,
        processor=processor,
        topup_service=TopupService(ledger, gateway, credit_manager),
        reconciliation=reconciliation,
        webhook_service=WebhookService(processor),
    )
