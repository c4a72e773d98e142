"""Tests for MercadoPago webhook signature validation.

Tests cover:
- Manifest construction with and without data id
- Valid signatures
- Tampered, malformed and missing headers (fail closed)
- Optional timestamp tolerance
"""

import pytest

from topup_backend.src.billing.external.mercadopago.signature import (
    SignatureValidator,
    build_manifest,
    parse_signature_header,
)

SECRET = "test-webhook-secret"


def _flip_last_hex_digit(header: str) -> str:
    prefix, v1 = header.rsplit("v1=", 1)
    last = v1[-1]
    replacement = "0" if last != "0" else "1"
    return f"{prefix}v1={v1[:-1]}{replacement}"


class TestManifest:
    """Tests for the signed manifest format."""

    def test_manifest_with_data_id(self):
        """Test manifest includes the id part when a data id is present."""
        assert build_manifest("req-1", "1704908010", "123") == "id:123;request-id:req-1;ts:1704908010;"

    def test_manifest_without_data_id(self):
        """Test manifest omits the id part when there is no data id."""
        assert build_manifest("req-1", "1704908010") == "request-id:req-1;ts:1704908010;"

    def test_parse_header(self):
        """Test ts and v1 are extracted regardless of spacing."""
        assert parse_signature_header("ts=1704908010, v1=abcdef") == ("1704908010", "abcdef")

    @pytest.mark.parametrize("header", [None, "", "ts=1704908010", "v1=abcdef", "ts=,v1=abc", "garbage"])
    def test_parse_header_rejects_incomplete(self, header):
        """Test headers missing ts or v1 don't parse."""
        assert parse_signature_header(header) is None


class TestSignatureValidator:
    """Tests for HMAC verification."""

    def test_valid_signature(self, sign):
        """Test a correctly signed notification is accepted."""
        validator = SignatureValidator(SECRET)
        header = sign("req-1", data_id="123")

        assert validator.is_valid(header, "req-1", "123") is True

    def test_valid_signature_without_data_id(self, sign):
        """Test notifications without data id validate against the short manifest."""
        validator = SignatureValidator(SECRET)
        header = sign("req-1")

        assert validator.is_valid(header, "req-1", None) is True

    def test_v1_off_by_one_hex_digit(self, sign):
        """Test a single altered hex digit is rejected."""
        validator = SignatureValidator(SECRET)
        header = _flip_last_hex_digit(sign("req-1", data_id="123"))

        assert validator.is_valid(header, "req-1", "123") is False

    def test_wrong_ts(self, sign):
        """Test changing ts invalidates the signature."""
        validator = SignatureValidator(SECRET)
        header = sign("req-1", data_id="123", ts=1704908010)
        tampered = header.replace("ts=1704908010", "ts=1704908011")

        assert validator.is_valid(tampered, "req-1", "123") is False

    def test_wrong_request_id(self, sign):
        """Test the request id is part of the signed manifest."""
        validator = SignatureValidator(SECRET)
        header = sign("req-1", data_id="123")

        assert validator.is_valid(header, "req-2", "123") is False

    def test_wrong_data_id(self, sign):
        """Test the data id is part of the signed manifest."""
        validator = SignatureValidator(SECRET)
        header = sign("req-1", data_id="123")

        assert validator.is_valid(header, "req-1", "124") is False

    def test_wrong_secret(self, sign):
        """Test signatures made with another secret are rejected."""
        validator = SignatureValidator(SECRET)
        header = sign("req-1", data_id="123", secret="someone-else")

        assert validator.is_valid(header, "req-1", "123") is False

    @pytest.mark.parametrize("header", [
        None,
        "",
        "v1=abcdef",
        "ts=1704908010",
        "ts=abc,v1=abcdef",
        "ts=1704908010,v1=not-hex",
    ])
    def test_malformed_headers_fail_closed(self, header):
        """Test malformed headers are invalid."""
        validator = SignatureValidator(SECRET)

        assert validator.is_valid(header, "req-1", "123") is False

    def test_missing_request_id(self, sign):
        """Test a missing X-Request-Id is invalid."""
        validator = SignatureValidator(SECRET)
        header = sign("req-1", data_id="123")

        assert validator.is_valid(header, None, "123") is False

    def test_empty_secret_is_configuration_error(self):
        """Test a validator can't be built without a secret."""
        with pytest.raises(ValueError):
            SignatureValidator("")


class TestTolerance:
    """Tests for the optional replay window."""

    def test_ts_within_tolerance(self, sign):
        """Test recent timestamps pass."""
        validator = SignatureValidator(SECRET, tolerance_seconds=300, clock=lambda: 1_704_908_100)
        header = sign("req-1", data_id="123", ts=1704908010)

        assert validator.is_valid(header, "req-1", "123") is True

    def test_ts_outside_tolerance(self, sign):
        """Test stale timestamps are rejected even with a valid digest."""
        validator = SignatureValidator(SECRET, tolerance_seconds=300, clock=lambda: 1_704_909_000)
        header = sign("req-1", data_id="123", ts=1704908010)

        assert validator.is_valid(header, "req-1", "123") is False

    def test_tolerance_disabled_by_default(self, sign):
        """Test old timestamps pass when no window is configured."""
        validator = SignatureValidator(SECRET)
        header = sign("req-1", data_id="123", ts=1000000000)

        assert validator.is_valid(header, "req-1", "123") is True

    @pytest.mark.parametrize("ts", ["²", "٣٤٥", "9" * 5000, "12345678901234"])
    def test_unparseable_ts_fails_closed(self, ts):
        """Test non-ASCII digits and oversized timestamps are invalid, not errors."""
        validator = SignatureValidator(SECRET, tolerance_seconds=300, clock=lambda: 1_704_908_100)

        assert validator.is_valid(f"ts={ts},v1=abcdef", "req-1", "9001") is False

    def test_unparseable_ts_without_tolerance(self):
        validator = SignatureValidator(SECRET)

        assert validator.is_valid("ts=²,v1=abcdef", "req-1", "9001") is False
