"""Tests for the payment ledger.

Tests cover:
- Idempotent creation and amount validation
- Gateway id bookkeeping (new → pending)
- Compare-and-swap transitions under concurrency
- Terminal stability
"""

import asyncio
from decimal import Decimal

import pytest

from topup_backend.src.billing.domain.payment import PaymentStatus, TransitionOutcome
from topup_backend.src.billing.shared.exceptions import DuplicateIdempotencyKeyError


class TestCreate:
    """Tests for payment creation."""

    @pytest.mark.asyncio
    async def test_create_payment(self, ledger):
        """Test a new payment starts in new with the derived reference."""
        payment = await ledger.create("acct-1", Decimal("1000"), 1000, "k1", note="first top-up")

        assert payment.status == PaymentStatus.NEW
        assert payment.external_reference == "topup_k1"
        assert payment.amount == Decimal("1000.00")
        assert payment.credits == 1000
        assert payment.created_at is not None

    @pytest.mark.asyncio
    async def test_create_is_idempotent(self, ledger):
        """Test the same key returns the same payment and no second record."""
        first = await ledger.create("acct-1", Decimal("1000"), 1000, "k1")
        second = await ledger.create("acct-1", Decimal("1000"), 1000, "k1")

        assert second.id == first.id
        assert len(await ledger.list_for_account("acct-1")) == 1

    @pytest.mark.asyncio
    async def test_insert_duplicate_raises_with_existing(self, ledger):
        """Test insert reports the duplicate and carries the stored payment."""
        first = await ledger.insert("acct-1", Decimal("500"), 500, "k1")

        with pytest.raises(DuplicateIdempotencyKeyError) as exc_info:
            await ledger.insert("acct-1", Decimal("500"), 500, "k1")
        assert exc_info.value.existing.id == first.id

    @pytest.mark.asyncio
    async def test_concurrent_creates_yield_one_payment(self, ledger):
        """Test concurrent retries of one request create a single payment."""
        payments = await asyncio.gather(*[
            ledger.create("acct-1", Decimal("1000"), 1000, "k1") for _ in range(5)
        ])

        assert len({payment.id for payment in payments}) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount,credits", [
        (Decimal("1000"), 999),
        (Decimal("0"), 0),
        (Decimal("-5"), -5),
        (Decimal("10.5"), 10),
        ("abc", 10),
    ])
    async def test_invalid_amounts(self, ledger, amount, credits):
        """Test amount and credits must be positive and equal."""
        with pytest.raises(ValueError):
            await ledger.create("acct-1", amount, credits, "k-invalid")

    @pytest.mark.asyncio
    async def test_note_too_long(self, ledger):
        with pytest.raises(ValueError):
            await ledger.create("acct-1", Decimal("10"), 10, "k1", note="x" * 201)


class TestLookup:
    """Tests for ledger reads."""

    @pytest.mark.asyncio
    async def test_locate_by_external_reference(self, ledger):
        payment = await ledger.create("acct-1", Decimal("10"), 10, "k1")

        located = await ledger.locate_by_external_reference("topup_k1")

        assert located.id == payment.id
        assert await ledger.locate_by_external_reference("topup_missing") is None

    @pytest.mark.asyncio
    async def test_get_by_idempotency_key(self, ledger):
        payment = await ledger.create("acct-1", Decimal("10"), 10, "k1")

        assert (await ledger.get_by_idempotency_key("k1")).id == payment.id
        assert (await ledger.get(payment.id)).idempotency_key == "k1"


class TestTransitions:
    """Tests for compare-and-swap transitions."""

    @pytest.mark.asyncio
    async def test_attach_preference_moves_to_pending(self, ledger):
        """Test attaching a preference id moves new to pending."""
        payment = await ledger.create("acct-1", Decimal("10"), 10, "k1")

        updated = await ledger.attach_gateway_ids(
            payment, gateway_preference_id="pref-1", checkout_url="https://mp.test/pref-1"
        )

        assert updated.status == PaymentStatus.PENDING
        assert updated.gateway_preference_id == "pref-1"
        assert updated.checkout_url == "https://mp.test/pref-1"

    @pytest.mark.asyncio
    async def test_approve_then_credit(self, ledger, pending_payment):
        """Test the happy path sets both timestamps."""
        payment = await pending_payment()

        assert await ledger.try_transition_to_approved(payment, gateway_payment_id="9001") == TransitionOutcome.APPLIED
        assert await ledger.mark_credited(payment) is True

        stored = await ledger.get(payment.id)
        assert stored.status == PaymentStatus.CREDITED
        assert stored.gateway_payment_id == "9001"
        assert stored.approved_at is not None
        assert stored.credited_at >= stored.approved_at >= stored.created_at

    @pytest.mark.asyncio
    async def test_second_approve_is_already_done(self, ledger, pending_payment):
        payment = await pending_payment()
        await ledger.try_transition_to_approved(payment)

        assert await ledger.try_transition_to_approved(payment) == TransitionOutcome.ALREADY_DONE

    @pytest.mark.asyncio
    async def test_approve_after_reject_is_conflict(self, ledger, pending_payment):
        payment = await pending_payment()
        await ledger.mark_rejected(payment, "cc_rejected_insufficient_amount")

        assert await ledger.try_transition_to_approved(payment) == TransitionOutcome.CONFLICT

    @pytest.mark.asyncio
    async def test_concurrent_approve_single_winner(self, ledger, pending_payment):
        """Test exactly one of many concurrent approvals applies."""
        payment = await pending_payment()

        outcomes = await asyncio.gather(*[ledger.try_transition_to_approved(payment) for _ in range(8)])

        assert outcomes.count(TransitionOutcome.APPLIED) == 1
        assert outcomes.count(TransitionOutcome.ALREADY_DONE) == 7

    @pytest.mark.asyncio
    async def test_mark_credited_requires_approved(self, ledger, pending_payment):
        """Test a pending payment can't skip approval."""
        payment = await pending_payment()

        assert await ledger.mark_credited(payment) is False
        assert (await ledger.get(payment.id)).status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_mark_rejected_records_reason(self, ledger, pending_payment):
        payment = await pending_payment()

        assert await ledger.mark_rejected(payment, "cc_rejected_bad_filled_security_code", gateway_payment_id="9002")

        stored = await ledger.get(payment.id)
        assert stored.status == PaymentStatus.REJECTED
        assert stored.status_detail == "cc_rejected_bad_filled_security_code"
        assert stored.gateway_payment_id == "9002"

    @pytest.mark.asyncio
    async def test_terminal_states_are_stable(self, ledger, pending_payment):
        """Test no event moves a credited or rejected payment."""
        credited = await pending_payment(key="k-credited")
        await ledger.try_transition_to_approved(credited)
        await ledger.mark_credited(credited)

        rejected = await pending_payment(key="k-rejected")
        await ledger.mark_rejected(rejected, "cancelled")

        for payment in (credited, rejected):
            assert await ledger.try_transition_to_approved(payment) != TransitionOutcome.APPLIED
            assert await ledger.mark_rejected(payment, "late event") is False
            assert await ledger.mark_credited(payment) is False
            assert await ledger.record_gateway_status(payment, "9999") is False
            await ledger.attach_gateway_ids(payment, gateway_preference_id="pref-late")

        assert (await ledger.get(credited.id)).status == PaymentStatus.CREDITED
        assert (await ledger.get(rejected.id)).status == PaymentStatus.REJECTED

    @pytest.mark.asyncio
    async def test_list_by_status(self, ledger, pending_payment):
        first = await pending_payment(key="k1")
        await pending_payment(key="k2")
        await ledger.try_transition_to_approved(first)

        approved = await ledger.list_by_status(PaymentStatus.APPROVED)
        pending = await ledger.list_by_status(PaymentStatus.PENDING)

        assert [payment.id for payment in approved] == [first.id]
        assert len(pending) == 1
