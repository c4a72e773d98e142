"""
MercadoPago Integration

Client, circuit breaker, webhook signature validation and webhook service.
"""

from .circuit_breaker import CircuitBreaker, CircuitState
from .client import MercadoPagoClient, ProviderPaymentView, TopupPreference
from .signature import SignatureValidator, build_manifest, parse_signature_header
from .webhooks import WebhookService, build_notification

__all__ = [
    'CircuitBreaker',
    'CircuitState',
    'MercadoPagoClient',
    'ProviderPaymentView',
    'SignatureValidator',
    'TopupPreference',
    'WebhookService',
    'build_manifest',
    'build_notification',
    'parse_signature_header',
]
