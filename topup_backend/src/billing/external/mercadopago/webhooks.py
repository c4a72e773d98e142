"""
MercadoPago Webhook Service

HTTP-facing side of webhook processing: reads the raw request, normalizes
the notification, hands it to the WebhookProcessor and maps the result to
an HTTP status.

- 2xx for every accepted delivery, idempotent no-ops included, so
  MercadoPago stops retrying permanent conditions
- 401 (generic body) for invalid signatures
- 400 for malformed payloads or a missing payment id
- 503 for retryable failures so MercadoPago delivers again later
"""

import json
import logging
from typing import Any, Dict

from fastapi import HTTPException, Request

from topup_backend.src.billing.domain.webhook import WebhookOutcome
from topup_backend.src.billing.shared.exceptions import BillingError

logger = logging.getLogger(__name__)


def build_notification(body: Dict[str, Any], query: Dict[str, str]) -> Dict[str, Any]:
    """
    Merge body and query string into one notification dict.

    MercadoPago sends ``data.id`` in the query string (and signs that value),
    repeats it in the body for webhooks, and uses ``id``/``topic`` query
    parameters for legacy IPN deliveries.
    """
    data = body.get('data') if isinstance(body.get('data'), dict) else {}
    data_id = query.get('data.id') or data.get('id') or query.get('id')
    notification_type = (
        body.get('type') or body.get('topic') or query.get('type') or query.get('topic')
    )

    notification: Dict[str, Any] = {'data': {'id': str(data_id)} if data_id not in (None, '') else {}}
    if notification_type:
        notification['type'] = notification_type
    if body.get('action'):
        notification['action'] = body['action']
    return notification


class WebhookService:
    """
    Central service for MercadoPago webhook requests.

    Usage:
        webhook_service = WebhookService(processor)
        result = await webhook_service.process_mercadopago_webhook(request)
    """

    def __init__(self, processor):
        self.processor = processor

    async def process_mercadopago_webhook(self, request: Request) -> Dict[str, Any]:
        """
        Process an incoming MercadoPago webhook.

        Args:
            request: FastAPI Request object

        Returns:
            Dict with processing status

        Raises:
            HTTPException: 401 invalid signature, 400 malformed input, 503 retryable failure
        """
        request_id = request.headers.get('x-request-id')
        signature = request.headers.get('x-signature')

        payload = await request.body()
        try:
            body = json.loads(payload) if payload.strip() else {}
        except (ValueError, UnicodeDecodeError):
            logger.warning(f"[WEBHOOK] Invalid JSON payload (request {request_id})")
            raise HTTPException(status_code=400, detail="Invalid payload")
        if not isinstance(body, dict):
            logger.warning(f"[WEBHOOK] Payload is not an object (request {request_id})")
            raise HTTPException(status_code=400, detail="Invalid payload")

        notification = build_notification(body, dict(request.query_params))
        logger.info(
            f"[WEBHOOK] Received {notification.get('type', 'payment')} notification "
            f"data.id={notification['data'].get('id')} (request {request_id})"
        )

        try:
            result = await self.processor.process(notification, signature, request_id)
        except BillingError as e:
            if not e.retryable:
                raise
            logger.error(f"[WEBHOOK] Retryable failure (request {request_id}): {e.code} {e.message}")
            raise HTTPException(status_code=503, detail="Temporarily unavailable")

        if result.outcome == WebhookOutcome.INVALID_SIGNATURE:
            raise HTTPException(status_code=401, detail="Unauthorized")
        if result.outcome == WebhookOutcome.MISSING_PAYMENT_ID:
            raise HTTPException(status_code=400, detail="Missing payment id")

        return {'status': 'success', 'result': result.outcome.value}
