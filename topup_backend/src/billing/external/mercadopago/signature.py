"""
MercadoPago Webhook Signature Validation

Verifies the ``X-Signature`` header MercadoPago attaches to notifications:

    X-Signature: ts=1704908010,v1=618c8534...

The v1 value is the hex HMAC-SHA256, keyed by the webhook secret, of the
manifest ``id:<data.id>;request-id:<x-request-id>;ts:<ts>;`` (the ``id:``
part is omitted when the notification carries no data id).

Validation fails closed: anything that cannot be parsed is invalid, and the
reason never leaves this process.
"""

import hashlib
import hmac
import logging
import string
import time
from typing import Callable, Optional, Tuple

logger = logging.getLogger(__name__)

_HEX_DIGITS = frozenset(string.hexdigits)
# Millisecond unix timestamps have 13 digits
_MAX_TS_LENGTH = 13


def build_manifest(request_id: str, ts: str, data_id: Optional[str] = None) -> str:
    """Canonical string MercadoPago signs."""
    if data_id:
        return f"id:{data_id};request-id:{request_id};ts:{ts};"
    return f"request-id:{request_id};ts:{ts};"


def parse_signature_header(header: Optional[str]) -> Optional[Tuple[str, str]]:
    """
    Split ``ts=...,v1=...`` into its parts.

    Returns:
        ``(ts, v1)`` or None when either part is missing or empty
    """
    if not header:
        return None

    parts = {}
    for chunk in header.split(','):
        key, sep, value = chunk.partition('=')
        if not sep:
            continue
        parts[key.strip().lower()] = value.strip()

    ts = parts.get('ts')
    v1 = parts.get('v1')
    if not ts or not v1:
        return None
    return ts, v1


class SignatureValidator:
    """
    HMAC validator for MercadoPago notifications.

    Usage:
        validator = SignatureValidator(secret=settings.MP_SECRET_KEY)
        if not validator.is_valid(request.headers.get('x-signature'), request_id, data_id):
            ...
    """

    def __init__(
        self,
        secret: str,
        tolerance_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            secret: Webhook secret from the MercadoPago dashboard
            tolerance_seconds: Max distance between ``ts`` and now; None disables the check
            clock: Wall clock returning unix seconds
        """
        if not secret:
            raise ValueError("MercadoPago webhook secret not configured")
        self._secret = secret.encode('utf-8')
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock

    def sign(self, request_id: str, ts: str, data_id: Optional[str] = None) -> str:
        """Compute the v1 digest for a manifest."""
        manifest = build_manifest(request_id, ts, data_id)
        return hmac.new(self._secret, manifest.encode('utf-8'), hashlib.sha256).hexdigest()

    def is_valid(
        self,
        signature_header: Optional[str],
        request_id: Optional[str],
        data_id: Optional[str] = None,
    ) -> bool:
        """
        Check a notification signature.

        Args:
            signature_header: Raw ``X-Signature`` header
            request_id: Raw ``X-Request-Id`` header
            data_id: ``data.id`` of the notification, if any

        Returns:
            True only when the header parses and the digest matches
        """
        parsed = parse_signature_header(signature_header)
        if parsed is None:
            logger.debug("[WEBHOOK] Signature rejected: malformed header")
            return False
        if not request_id:
            logger.debug("[WEBHOOK] Signature rejected: missing request id")
            return False

        ts, received = parsed
        if not (ts.isascii() and ts.isdigit()) or len(ts) > _MAX_TS_LENGTH:
            logger.debug("[WEBHOOK] Signature rejected: non-numeric ts")
            return False
        if not set(received) <= _HEX_DIGITS:
            logger.debug("[WEBHOOK] Signature rejected: non-hex v1")
            return False

        if self.tolerance_seconds is not None:
            # MercadoPago sends ts in seconds; some integrations see milliseconds
            try:
                ts_seconds = int(ts) / 1000 if len(ts) > 11 else int(ts)
            except ValueError:
                logger.debug("[WEBHOOK] Signature rejected: unparseable ts")
                return False
            if abs(self._clock() - ts_seconds) > self.tolerance_seconds:
                logger.debug("[WEBHOOK] Signature rejected: ts outside tolerance")
                return False

        expected = self.sign(request_id, ts, data_id)
        if not hmac.compare_digest(expected, received.lower()):
            logger.debug("[WEBHOOK] Signature rejected: digest mismatch")
            return False
        return True
