import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List

from django.db import transaction
from django.utils import timezone

from orders.models import PaymentMethod
from storefront.errors import StoreError

from .emails import send_payment_confirmation
from .gateways import Outcome
from .models import Payment, PaymentStatus

logger = logging.getLogger(__name__)

STATUS_OUTCOMES = {
    PaymentStatus.SUCCESS: Outcome.COMPLETED,
    PaymentStatus.REFUNDED: Outcome.COMPLETED,
    PaymentStatus.FAILED: Outcome.FAILED,
    PaymentStatus.PENDING: Outcome.PENDING,
}


@dataclass
class ReconcileResult:
    payment: Payment
    outcome: Outcome
    changed: bool = False


class ReconciliationService:
    """Settles payments from a trusted server-to-server lookup, never from callback data."""

    def __init__(self, ledger, gateways, notifier):
        self.ledger = ledger
        self.gateways = gateways
        self.notifier = notifier

    def reconcile(self, correlation_id: str) -> ReconcileResult:
        payment = self.ledger.get_by_external_id(correlation_id)
        if payment.is_terminal:
            return ReconcileResult(payment, STATUS_OUTCOMES[payment.status], changed=False)

        verification = self.gateways.get(payment.method).verify(payment)
        changed = False
        if verification.outcome in (Outcome.COMPLETED, Outcome.FAILED):
            new_status = PaymentStatus.SUCCESS if verification.outcome == Outcome.COMPLETED else PaymentStatus.FAILED
            try:
                updated = self.ledger.update_status(
                    payment.pk,
                    new_status,
                    transaction_id=verification.transaction_id,
                    gateway_response=verification.response,
                    failure_reason=verification.reason,
                )
                changed = updated.status != payment.status
                payment = updated
            except StoreError as e:
                logger.error("Reconcile of %s could not apply %s: %s", correlation_id, new_status, e.message)
                payment = self.ledger.get(payment.pk)
        else:
            logger.info("Payment %s still pending (%s)", correlation_id, verification.reason or "no reason")

        outcome = STATUS_OUTCOMES[payment.status]
        transaction.on_commit(lambda: self.notifier.payment_updated(payment))
        if changed and payment.status == PaymentStatus.SUCCESS:
            self._send_receipt(payment)
        return ReconcileResult(payment, outcome, changed)

    def handle_callback(self, method, payload) -> ReconcileResult:
        correlation_id = self.gateways.get(method).parse_callback(payload)
        return self.reconcile(correlation_id)

    def pending_correlation_ids(self, older_than_minutes: int = 1, limit: int = 50) -> List[str]:
        """Wallet payments still open after ``older_than_minutes``, oldest first. Cash is settled by hand."""
        cutoff = timezone.now() - timedelta(minutes=older_than_minutes)
        qs = (
            Payment.objects.filter(status=PaymentStatus.PENDING, external_id__isnull=False, updated_at__lt=cutoff)
            .exclude(method=PaymentMethod.COD)
            .order_by("updated_at")
        )
        return list(qs.values_list("external_id", flat=True)[:limit])

    def reconcile_pending(self, older_than_minutes: int = 1, limit: int = 50) -> List[ReconcileResult]:
        results = []
        for external_id in self.pending_correlation_ids(older_than_minutes, limit):
            try:
                results.append(self.reconcile(external_id))
            except StoreError as e:
                logger.warning("Reconcile sweep skipped %s: %s", external_id, e.message)
        return results

    def _send_receipt(self, payment):
        if not self.ledger.claim_receipt(payment.pk):
            return
        payment = self.ledger.get(payment.pk)
        transaction.on_commit(lambda: send_payment_confirmation(payment=payment))
