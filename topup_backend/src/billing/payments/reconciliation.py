"""
Reconciliation Service

Periodic sweeps that close the gaps webhooks leave open:
- Settle payments left in ``approved`` (crash or store failure mid-credit)
- Recover payments whose webhook never arrived by searching MercadoPago
- Verify credit balances against their audit counters

Every sweep goes through the same compare-and-swap transitions as webhook
processing, so running a sweep concurrently with live deliveries, or twice
in a row, never credits a payment twice.
"""

import logging
from datetime import timedelta
from typing import Dict, List, Optional

from topup_backend.src.billing.credits.manager import CreditManager
from topup_backend.src.billing.domain.payment import PaymentStatus
from topup_backend.src.billing.domain.webhook import WebhookOutcome
from topup_backend.src.billing.external.mercadopago.client import MercadoPagoClient, ProviderPaymentView
from topup_backend.src.billing.shared.alerts import AlertHook, log_alert
from topup_backend.src.billing.shared.config import is_provider_approved
from topup_backend.src.billing.shared.exceptions import BillingError, CircuitBreakerOpenError
from topup_backend.utils.timezone import timezone
from .interfaces import ReconciliationManagerInterface
from .ledger import PaymentLedger
from .processor import WebhookProcessor

logger = logging.getLogger(__name__)


def _pick_view(views: List[ProviderPaymentView]) -> ProviderPaymentView:
    """Prefer an approved gateway payment; otherwise the newest attempt."""
    for view in views:
        if is_provider_approved(view.status):
            return view
    return views[0]


class ReconciliationService(ReconciliationManagerInterface):
    """
    Handles payment and credit reconciliation.

    Should be run periodically (e.g., every few minutes via cron/scheduler)
    to catch and fix any discrepancies.

    Usage:
        results = await reconciliation_service.resume_approved()
        results = await reconciliation_service.reconcile_pending(hours=24)
        balance_check = await reconciliation_service.verify_balance_consistency()
    """

    def __init__(
        self,
        ledger: PaymentLedger,
        processor: WebhookProcessor,
        gateway: MercadoPagoClient,
        credit_manager: CreditManager,
        approved_grace_seconds: int = 300,
        pending_lookback_hours: int = 24,
        batch_limit: int = 100,
        alert: AlertHook = log_alert,
    ):
        self.ledger = ledger
        self.processor = processor
        self.gateway = gateway
        self.credit_manager = credit_manager
        self.approved_grace_seconds = approved_grace_seconds
        self.pending_lookback_hours = pending_lookback_hours
        self.batch_limit = batch_limit
        self.alert = alert

    async def resume_approved(self, grace_seconds: Optional[int] = None, limit: Optional[int] = None) -> Dict:
        """
        Settle payments stuck in ``approved``.

        Payments approved less than ``grace_seconds`` ago are left alone;
        their webhook is most likely still crediting them.

        Returns:
            Dict with checked, fixed, failed counts and errors
        """
        results = {
            'checked': 0,
            'fixed': 0,
            'failed': 0,
            'errors': []
        }

        grace = self.approved_grace_seconds if grace_seconds is None else grace_seconds
        cutoff = timezone.now() - timedelta(seconds=grace)
        stuck = await self.ledger.list_by_status(PaymentStatus.APPROVED, approved_before=cutoff, limit=limit or self.batch_limit)

        if not stuck:
            logger.info("[RECONCILIATION] No approved payments awaiting credit")
            return results

        results['checked'] = len(stuck)
        logger.warning(f"[RECONCILIATION] Found {len(stuck)} approved payments without credit")

        for payment in stuck:
            try:
                result = await self.processor.resume(payment)
            except BillingError as e:
                logger.error(f"[RECONCILIATION] Error settling payment {payment.id}: {e.message}")
                results['failed'] += 1
                results['errors'].append(f"{payment.id}: {e.code}")
                continue

            if result.outcome == WebhookOutcome.CREDITED:
                results['fixed'] += 1
                logger.info(
                    f"[RECONCILIATION] Credited {payment.credits} to {payment.account_ref} "
                    f"for payment {payment.id}"
                )

        logger.info(
            f"[RECONCILIATION] Resume complete: checked={results['checked']}, "
            f"fixed={results['fixed']}, failed={results['failed']}"
        )
        return results

    async def reconcile_pending(self, hours: Optional[int] = None, limit: Optional[int] = None) -> Dict:
        """
        Recover recent ``new``/``pending`` payments whose webhook never arrived.

        Searches MercadoPago by external reference and applies the
        authoritative status exactly as a webhook would.

        Returns:
            Dict with checked, fixed, rejected, updated, failed counts and errors
        """
        results = {
            'checked': 0,
            'fixed': 0,
            'rejected': 0,
            'updated': 0,
            'failed': 0,
            'errors': []
        }

        lookback = self.pending_lookback_hours if hours is None else hours
        limit = limit or self.batch_limit
        since = timezone.now() - timedelta(hours=lookback)
        candidates = await self.ledger.list_by_status(PaymentStatus.PENDING, created_after=since, limit=limit)
        candidates += await self.ledger.list_by_status(PaymentStatus.NEW, created_after=since, limit=limit)

        if not candidates:
            logger.info("[RECONCILIATION] No open payments to reconcile")
            return results

        logger.info(f"[RECONCILIATION] Checking {len(candidates)} open payments")

        for payment in candidates:
            results['checked'] += 1
            try:
                views = await self.gateway.search_by_external_reference(payment.external_reference)
                if not views:
                    continue
                result = await self.processor.apply_provider_status(_pick_view(views))
            except CircuitBreakerOpenError as e:
                logger.warning("[RECONCILIATION] Gateway circuit open, stopping sweep")
                results['failed'] += 1
                results['errors'].append(f"{payment.id}: {e.code}")
                break
            except BillingError as e:
                logger.error(f"[RECONCILIATION] Error reconciling payment {payment.id}: {e.message}")
                results['failed'] += 1
                results['errors'].append(f"{payment.id}: {e.code}")
                continue

            if result.outcome == WebhookOutcome.CREDITED:
                results['fixed'] += 1
            elif result.outcome == WebhookOutcome.REJECTED:
                results['rejected'] += 1
            elif result.outcome == WebhookOutcome.STATUS_UPDATED:
                results['updated'] += 1

        logger.info(
            f"[RECONCILIATION] Pending sweep complete: checked={results['checked']}, "
            f"fixed={results['fixed']}, rejected={results['rejected']}, failed={results['failed']}"
        )
        return results

    async def verify_balance_consistency(self, page_size: int = 500) -> Dict:
        """
        Verify credit account balances are consistent.

        Checks: balance >= 0 and balance == total_earned - total_spent.
        Discrepancies are reported and alerted on, never auto-fixed.

        Returns:
            Dict with the checked count and discrepancies
        """
        results = {
            'checked': 0,
            'discrepancies_found': []
        }

        offset = 0
        while True:
            accounts = await self.credit_manager.list_accounts(limit=page_size, offset=offset)
            if not accounts:
                break
            for account in accounts:
                results['checked'] += 1
                if not account.is_consistent():
                    results['discrepancies_found'].append({
                        'account_ref': account.account_ref,
                        'balance': account.balance,
                        'total_earned': account.total_earned,
                        'total_spent': account.total_spent,
                        'expected_balance': account.net_credits,
                    })
            offset += page_size

        if results['discrepancies_found']:
            logger.error(
                f"[RECONCILIATION] Found {len(results['discrepancies_found'])} balance discrepancies"
            )
            self.alert('balance_discrepancy', {
                'count': len(results['discrepancies_found']),
                'accounts': [d['account_ref'] for d in results['discrepancies_found']],
            })
        else:
            logger.info(f"[RECONCILIATION] All {results['checked']} balances consistent")

        return results

    async def run(self) -> Dict:
        """Run every sweep once."""
        return {
            'approved': await self.resume_approved(),
            'pending': await self.reconcile_pending(),
            'balances': await self.verify_balance_consistency(),
        }
