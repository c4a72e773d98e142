"""Tests for reconciliation sweeps.

Tests cover:
- Settling payments left in approved
- Recovering payments whose webhook never arrived
- Balance consistency verification
"""

import pytest
from sqlalchemy import update

from topup_backend.app.billing.model import CreditAccountRecord
from topup_backend.src.billing.domain.payment import PaymentStatus
from topup_backend.src.billing.payments.reconciliation import ReconciliationService
from topup_backend.src.billing.shared.exceptions import CircuitBreakerOpenError


@pytest.fixture
def reconciliation(ledger, processor, gateway, credit_manager, alerts):
    return ReconciliationService(
        ledger=ledger,
        processor=processor,
        gateway=gateway,
        credit_manager=credit_manager,
        alert=alerts,
    )


class TestResumeApproved:
    """Tests for the approved-without-credit sweep."""

    @pytest.mark.asyncio
    async def test_credits_stuck_payment_once(self, reconciliation, ledger, credit_manager, pending_payment):
        """Test a stuck approved payment is credited and a rerun changes nothing."""
        payment = await pending_payment()
        await ledger.try_transition_to_approved(payment, gateway_payment_id="9001")

        first = await reconciliation.resume_approved(grace_seconds=0)
        second = await reconciliation.resume_approved(grace_seconds=0)

        assert first['checked'] == 1
        assert first['fixed'] == 1
        assert second['checked'] == 0
        assert (await ledger.get(payment.id)).status == PaymentStatus.CREDITED
        assert (await credit_manager.get_account("acct-1")).balance == 1000

    @pytest.mark.asyncio
    async def test_grace_period_skips_recent_approvals(self, reconciliation, ledger, credit_manager, pending_payment):
        """Test freshly approved payments are left to their webhook."""
        payment = await pending_payment()
        await ledger.try_transition_to_approved(payment)

        results = await reconciliation.resume_approved(grace_seconds=3600)

        assert results['checked'] == 0
        assert (await ledger.get(payment.id)).status == PaymentStatus.APPROVED
        assert (await credit_manager.get_account("acct-1")).balance == 0


class TestReconcilePending:
    """Tests for the missed-webhook sweep."""

    @pytest.mark.asyncio
    async def test_recovers_missed_approval(self, reconciliation, gateway, ledger, credit_manager, provider_view, pending_payment):
        payment = await pending_payment()
        gateway.search_by_external_reference.return_value = [
            provider_view(payment_id="9002", status="rejected"),
            provider_view(payment_id="9001", status="approved"),
        ]

        results = await reconciliation.reconcile_pending()

        assert results['checked'] == 1
        assert results['fixed'] == 1
        gateway.search_by_external_reference.assert_awaited_once_with("topup_k1")
        stored = await ledger.get(payment.id)
        assert stored.status == PaymentStatus.CREDITED
        assert stored.gateway_payment_id == "9001"
        assert (await credit_manager.get_account("acct-1")).balance == 1000

    @pytest.mark.asyncio
    async def test_recovers_missed_rejection(self, reconciliation, gateway, ledger, provider_view, pending_payment):
        payment = await pending_payment()
        gateway.search_by_external_reference.return_value = [provider_view(status="rejected")]

        results = await reconciliation.reconcile_pending()

        assert results['rejected'] == 1
        assert (await ledger.get(payment.id)).status == PaymentStatus.REJECTED

    @pytest.mark.asyncio
    async def test_no_gateway_payment_leaves_payment_open(self, reconciliation, ledger, pending_payment):
        """Test an unused checkout link stays pending."""
        payment = await pending_payment()

        results = await reconciliation.reconcile_pending()

        assert results['checked'] == 1
        assert results['fixed'] == 0
        assert (await ledger.get(payment.id)).status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_open_circuit_stops_sweep(self, reconciliation, gateway, pending_payment):
        """Test the sweep stops once the gateway circuit is open."""
        await pending_payment(key="k1")
        await pending_payment(key="k2")
        gateway.search_by_external_reference.side_effect = CircuitBreakerOpenError()

        results = await reconciliation.reconcile_pending()

        assert results['failed'] == 1
        assert gateway.search_by_external_reference.await_count == 1


class TestBalanceConsistency:
    """Tests for balance verification."""

    @pytest.mark.asyncio
    async def test_consistent_balances(self, reconciliation, credit_manager, alerts):
        await credit_manager.open_account("acct-1")
        await credit_manager.credit("acct-1", 100)
        await credit_manager.debit("acct-1", 40)

        results = await reconciliation.verify_balance_consistency()

        assert results['checked'] == 1
        assert results['discrepancies_found'] == []
        assert alerts.events == []

    @pytest.mark.asyncio
    async def test_discrepancy_is_reported_not_fixed(self, reconciliation, credit_manager, session_factory, alerts):
        """Test a drifted balance is alerted on and left untouched."""
        await credit_manager.open_account("acct-1")
        await credit_manager.open_account("acct-2")
        async with session_factory.begin() as session:
            await session.execute(
                update(CreditAccountRecord)
                .where(CreditAccountRecord.account_ref == "acct-2")
                .values(balance=75)
            )

        results = await reconciliation.verify_balance_consistency(page_size=1)

        assert results['checked'] == 2
        assert 'fixed' not in results
        assert results['discrepancies_found'] == [{
            'account_ref': 'acct-2',
            'balance': 75,
            'total_earned': 0,
            'total_spent': 0,
            'expected_balance': 0,
        }]
        assert alerts.events[0][0] == "balance_discrepancy"
        assert (await credit_manager.get_account("acct-2")).balance == 75
