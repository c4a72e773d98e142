"""Shared fixtures for billing tests.

Ledger, credit and processor tests run against a throwaway SQLite file so
the conditional UPDATEs and unique constraints are exercised for real.
"""

import hashlib
import hmac
import time
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from topup_backend.database.db import create_async_engine_and_session, create_tables
from topup_backend.src.billing.credits.manager import CreditManager
from topup_backend.src.billing.external.mercadopago.client import MercadoPagoClient, ProviderPaymentView
from topup_backend.src.billing.external.mercadopago.signature import SignatureValidator
from topup_backend.src.billing.payments.ledger import PaymentLedger
from topup_backend.src.billing.payments.processor import WebhookProcessor

WEBHOOK_SECRET = "test-webhook-secret"


@pytest.fixture
async def session_factory(tmp_path):
    """Fresh database per test."""
    engine, factory = create_async_engine_and_session(f"sqlite+aiosqlite:///{tmp_path / 'topup.db'}")
    await create_tables(engine)
    yield factory
    await engine.dispose()


@pytest.fixture
def ledger(session_factory):
    return PaymentLedger(session_factory)


@pytest.fixture
def credit_manager(session_factory):
    return CreditManager(session_factory)


@pytest.fixture
def webhook_secret():
    return WEBHOOK_SECRET


@pytest.fixture
def validator(webhook_secret):
    return SignatureValidator(secret=webhook_secret)


@pytest.fixture
def alerts():
    """Alert hook that records (event, details) pairs."""
    recorded = []

    def hook(event, details=None):
        recorded.append((event, details or {}))

    hook.events = recorded
    return hook


@pytest.fixture
def gateway():
    """MercadoPago client double."""
    client = MagicMock(spec=MercadoPagoClient)
    client.fetch_status = AsyncMock(return_value=None)
    client.search_by_external_reference = AsyncMock(return_value=[])
    client.create_topup = AsyncMock()
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def processor(validator, gateway, ledger, credit_manager, session_factory, alerts):
    return WebhookProcessor(
        validator=validator,
        gateway=gateway,
        ledger=ledger,
        credit_manager=credit_manager,
        session_factory=session_factory,
        alert=alerts,
    )


@pytest.fixture
def sign():
    """Build an X-Signature header the way MercadoPago does."""

    def _sign(request_id, data_id=None, ts=None, secret=WEBHOOK_SECRET):
        ts = str(ts if ts is not None else int(time.time()))
        if data_id:
            manifest = f"id:{data_id};request-id:{request_id};ts:{ts};"
        else:
            manifest = f"request-id:{request_id};ts:{ts};"
        v1 = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
        return f"ts={ts},v1={v1}"

    return _sign


@pytest.fixture
def provider_view():
    """Factory for gateway payment views."""

    def _view(payment_id="9001", status="approved", external_reference="topup_k1", amount="1000", detail=None):
        return ProviderPaymentView(
            id=payment_id,
            status=status,
            status_detail=detail or ("accredited" if status == "approved" else None),
            external_reference=external_reference,
            transaction_amount=Decimal(amount),
        )

    return _view


@pytest.fixture
def pending_payment(ledger, credit_manager):
    """Factory creating an account plus a payment already in pending."""

    async def _create(key="k1", credits=1000, account_ref="acct-1"):
        await credit_manager.open_account(account_ref)
        payment = await ledger.create(account_ref, Decimal(credits), credits, key)
        return await ledger.attach_gateway_ids(payment, gateway_preference_id=f"pref-{key}")

    return _create
