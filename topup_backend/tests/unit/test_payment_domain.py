"""Tests for the payment state machine and reference derivation."""

import pytest

from topup_backend.src.billing.domain.payment import (
    ALLOWED_TRANSITIONS,
    PaymentStatus,
    can_transition,
    derive_external_reference,
    is_topup_reference,
    sources_for,
)


class TestStateMachine:
    """Tests for allowed transitions."""

    def test_terminal_states_have_no_exits(self):
        """Test credited and rejected can't move anywhere."""
        assert ALLOWED_TRANSITIONS[PaymentStatus.CREDITED] == frozenset()
        assert ALLOWED_TRANSITIONS[PaymentStatus.REJECTED] == frozenset()
        assert PaymentStatus.CREDITED.is_terminal
        assert PaymentStatus.REJECTED.is_terminal
        assert not PaymentStatus.APPROVED.is_terminal

    def test_credited_only_from_approved(self):
        """Test crediting requires a prior approval."""
        assert sources_for(PaymentStatus.CREDITED) == {PaymentStatus.APPROVED}

    def test_approved_sources(self):
        """Test approval comes from open states only."""
        assert sources_for(PaymentStatus.APPROVED) == {PaymentStatus.NEW, PaymentStatus.PENDING}

    def test_rejected_sources(self):
        """Test an approved payment can't be rejected."""
        assert sources_for(PaymentStatus.REJECTED) == {PaymentStatus.NEW, PaymentStatus.PENDING}
        assert not can_transition(PaymentStatus.APPROVED, PaymentStatus.REJECTED)

    def test_pending_from_new(self):
        assert can_transition(PaymentStatus.NEW, PaymentStatus.PENDING)
        assert not can_transition(PaymentStatus.PENDING, PaymentStatus.NEW)


class TestExternalReference:
    """Tests for the deterministic reference."""

    def test_derivation(self):
        assert derive_external_reference("k1") == "topup_k1"

    def test_empty_key_rejected(self):
        with pytest.raises(ValueError):
            derive_external_reference("")

    @pytest.mark.parametrize("reference,expected", [
        ("topup_k1", True),
        ("topup_", False),
        ("order_k1", False),
        ("", False),
        (None, False),
    ])
    def test_is_topup_reference(self, reference, expected):
        assert is_topup_reference(reference) is expected
