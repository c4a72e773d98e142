"""
MercadoPago API Client

The only component that talks to MercadoPago. Creates Checkout Pro
preferences for credit top-ups and fetches authoritative payment status.

Failure semantics:
- timeouts, transport errors, 5xx and 429 → GatewayUnavailableError (retryable)
- other 4xx on lookups → None (unknown payment)
- other 4xx on preference creation → GatewayRequestError

Built once from settings by the container; the underlying httpx.AsyncClient
is the process-wide connection pool and is released with ``aclose()``.
"""

import logging
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from topup_backend.core.conf import Settings
from topup_backend.src.billing.domain.payment import derive_external_reference
from topup_backend.src.billing.shared.config import (
    RETURN_PAGE_FAILURE,
    RETURN_PAGE_PENDING,
    RETURN_PAGE_SUCCESS,
)
from topup_backend.src.billing.shared.exceptions import (
    GatewayRequestError,
    GatewayUnavailableError,
)
from .circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)


class ProviderPaymentView(BaseModel):
    """Authoritative payment state as reported by MercadoPago."""

    model_config = ConfigDict(extra='ignore')

    id: str
    status: str
    status_detail: Optional[str] = None
    external_reference: Optional[str] = None
    transaction_amount: Optional[Decimal] = None
    currency_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('id', mode='before')
    @classmethod
    def coerce_id(cls, value: Any) -> str:
        # MercadoPago sends numeric payment ids
        return str(value)

    @field_validator('metadata', mode='before')
    @classmethod
    def default_metadata(cls, value: Any) -> Dict[str, Any]:
        return value or {}


class TopupPreference(BaseModel):
    """Checkout preference created for a top-up."""

    preference_id: str
    checkout_url: str
    external_reference: str


class MercadoPagoClient:
    """
    Async MercadoPago REST client with circuit breaker protection.

    Usage:
        client = MercadoPagoClient.from_settings(settings)
        preference = await client.create_topup(amount, credits, key, account_ref)
        view = await client.fetch_status("123456789")
        await client.aclose()
    """

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://api.mercadopago.com",
        notification_url: Optional[str] = None,
        return_base_url: Optional[str] = None,
        timeout: float = 10.0,
        currency_id: str = "ARS",
        item_title: str = "Recarga de créditos",
        max_installments: int = 12,
        circuit_breaker: Optional[CircuitBreaker] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not access_token:
            raise ValueError("MP_ACCESS_TOKEN not configured")

        self.base_url = base_url.rstrip('/')
        self.notification_url = notification_url
        self.return_base_url = return_base_url.rstrip('/') if return_base_url else None
        self.currency_id = currency_id
        self.item_title = item_title
        self.max_installments = max_installments
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._headers = {
            'Authorization': f'Bearer {access_token}',
            'Content-Type': 'application/json',
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> 'MercadoPagoClient':
        """Build a client from application settings."""
        return cls(
            access_token=settings.MP_ACCESS_TOKEN,
            base_url=settings.MP_BASE_URL,
            notification_url=settings.mp_notification_url,
            return_base_url=settings.billing_base_url,
            timeout=settings.MP_TIMEOUT_SECONDS,
            currency_id=settings.TOPUP_CURRENCY_ID,
            item_title=settings.TOPUP_ITEM_TITLE,
            max_installments=settings.TOPUP_MAX_INSTALLMENTS,
            circuit_breaker=CircuitBreaker(
                failure_threshold=settings.MP_CIRCUIT_FAILURE_THRESHOLD,
                recovery_timeout=settings.MP_CIRCUIT_RECOVERY_SECONDS,
            ),
            http_client=http_client,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    # -------------------------------------------------------------------------
    # Preferences
    # -------------------------------------------------------------------------

    def build_preference_payload(
        self,
        amount: Decimal,
        credits: int,
        idempotency_key: str,
        account_ref: str,
        note: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Checkout Pro preference body for a credit top-up."""
        payload: Dict[str, Any] = {
            'items': [{
                'title': self.item_title,
                'quantity': 1,
                'unit_price': float(amount),
                'currency_id': self.currency_id,
            }],
            'external_reference': derive_external_reference(idempotency_key),
            'metadata': {
                'account_ref': account_ref,
                'credits': credits,
                'idempotency_key': idempotency_key,
            },
            'auto_return': 'approved',
            'expires': False,
            'binary_mode': False,  # allow pending states
            'payment_methods': {
                'excluded_payment_types': [{'id': 'ticket'}],
                'installments': self.max_installments,
                'default_installments': 1,
            },
        }
        if self.notification_url:
            payload['notification_url'] = self.notification_url
        if self.return_base_url:
            payload['back_urls'] = {
                'success': f'{self.return_base_url}/{RETURN_PAGE_SUCCESS}',
                'failure': f'{self.return_base_url}/{RETURN_PAGE_FAILURE}',
                'pending': f'{self.return_base_url}/{RETURN_PAGE_PENDING}',
            }
        if note:
            payload['additional_info'] = note
        return payload

    async def create_topup(
        self,
        amount: Decimal,
        credits: int,
        idempotency_key: str,
        account_ref: str,
        note: Optional[str] = None,
    ) -> TopupPreference:
        """
        Create a Checkout Pro preference for a credit top-up.

        Args:
            amount: Amount to charge
            credits: Credits granted on approval
            idempotency_key: Caller supplied key, also sent as X-Idempotency-Key
            account_ref: Owning credit account
            note: Optional note shown on the checkout

        Returns:
            TopupPreference with the checkout link

        Raises:
            GatewayUnavailableError: Retryable gateway failure
            GatewayRequestError: MercadoPago rejected the preference
        """
        payload = self.build_preference_payload(amount, credits, idempotency_key, account_ref, note)
        logger.info(
            f"[MERCADOPAGO] Creating preference for {account_ref}: "
            f"amount={amount} credits={credits} ref={payload['external_reference']}"
        )

        response = await self.circuit_breaker.safe_call(
            self._request,
            'POST',
            '/checkout/preferences',
            json=payload,
            headers={'X-Idempotency-Key': idempotency_key},
        )
        if response.status_code >= 400:
            logger.error(f"[MERCADOPAGO] Preference rejected ({response.status_code}): {response.text[:500]}")
            raise GatewayRequestError(
                f"Preference creation rejected with status {response.status_code}",
                status_code=response.status_code,
            )

        preference = self._decode(
            response,
            lambda data: TopupPreference(
                preference_id=str(data['id']),
                checkout_url=data['init_point'],
                external_reference=payload['external_reference'],
            ),
        )
        logger.info(f"[MERCADOPAGO] Preference {preference.preference_id} created for {preference.external_reference}")
        return preference

    # -------------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------------

    async def fetch_status(self, gateway_payment_id: str) -> Optional[ProviderPaymentView]:
        """
        Fetch the authoritative status of a payment.

        Returns:
            ProviderPaymentView, or None when MercadoPago doesn't know the id

        Raises:
            GatewayUnavailableError: Retryable gateway failure
        """
        response = await self.circuit_breaker.safe_call(
            self._request, 'GET', f'/v1/payments/{gateway_payment_id}'
        )
        if response.status_code >= 400:
            logger.warning(f"[MERCADOPAGO] Payment {gateway_payment_id} lookup returned {response.status_code}")
            return None

        view = self._decode(response, ProviderPaymentView.model_validate)
        logger.info(
            f"[MERCADOPAGO] Payment {view.id}: status={view.status} "
            f"detail={view.status_detail} ref={view.external_reference}"
        )
        return view

    async def search_by_external_reference(self, external_reference: str) -> List[ProviderPaymentView]:
        """
        Find gateway payments for an external reference, newest first.

        Used by reconciliation to recover payments whose webhooks never arrived.
        """
        response = await self.circuit_breaker.safe_call(
            self._request,
            'GET',
            '/v1/payments/search',
            params={
                'external_reference': external_reference,
                'sort': 'date_created',
                'criteria': 'desc',
            },
        )
        if response.status_code >= 400:
            logger.warning(f"[MERCADOPAGO] Search for {external_reference} returned {response.status_code}")
            return []

        return self._decode(
            response,
            lambda data: [ProviderPaymentView.model_validate(item) for item in data.get('results') or []],
        )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """
        Send a request, translating retryable failures.

        Non-retryable 4xx responses are returned to the caller untouched so
        they don't count against the circuit.
        """
        headers = {**self._headers, **kwargs.pop('headers', {})}
        try:
            response = await self._http.request(method, f'{self.base_url}{path}', headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"[MERCADOPAGO] Timeout on {method} {path}: {e}")
            raise GatewayUnavailableError(f"MercadoPago timeout on {method} {path}") from e
        except httpx.TransportError as e:
            logger.warning(f"[MERCADOPAGO] Transport error on {method} {path}: {e}")
            raise GatewayUnavailableError(f"MercadoPago unreachable: {type(e).__name__}") from e

        if response.status_code >= 500 or response.status_code == 429:
            logger.warning(f"[MERCADOPAGO] {method} {path} returned {response.status_code}")
            raise GatewayUnavailableError(
                f"MercadoPago returned {response.status_code}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _decode(response: httpx.Response, parse: Callable[[Any], Any]) -> Any:
        """
        Parse a successful response body.

        A body that isn't the JSON we expect (proxy error pages, truncated
        payloads) is treated as a retryable gateway failure.
        """
        try:
            return parse(response.json())
        except (ValidationError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"[MERCADOPAGO] Malformed response ({response.status_code}): {type(e).__name__}: {e}")
            raise GatewayUnavailableError("Malformed MercadoPago response", status_code=response.status_code) from e
