import logging
from decimal import Decimal
from typing import Optional

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.utils import timezone

from storefront.errors import InvalidState, NotFound, StoreError

from .models import PAYMENT_TRANSITIONS, Payment, PaymentStatus

logger = logging.getLogger(__name__)


class PaymentLedger:
    """Owns every write to ``Payment`` rows and cascades settled states to the order."""

    def __init__(self, orders):
        self.orders = orders

    def create_payment(self, *, user, method, amount, order=None, currency=None, metadata=None) -> Payment:
        return Payment.objects.create(
            user=user,
            order=order,
            method=method,
            amount=Decimal(str(amount)),
            currency=currency or getattr(settings, "DEFAULT_CURRENCY", "NPR"),
            status=PaymentStatus.PENDING,
            metadata=metadata or {},
        )

    def get(self, payment_id) -> Payment:
        return self._get(payment_id, Payment.objects.select_related("order", "user"))

    def get_by_external_id(self, external_id) -> Payment:
        payment = Payment.objects.select_related("order", "user").filter(external_id=external_id).first()
        if payment is None:
            raise NotFound("Payment not found", correlation_id=external_id)
        return payment

    def record_initiation(self, payment_id, initiation) -> Payment:
        with transaction.atomic():
            payment = self._get(payment_id, Payment.objects.select_for_update())
            payment.external_id = initiation.correlation_id
            payment.gateway_response = initiation.response
            payment.initiated_at = timezone.now()
            meta = dict(payment.metadata or {})
            if initiation.expires_at:
                meta["expires_at"] = initiation.expires_at
            payment.metadata = meta
            payment.save(update_fields=["external_id", "gateway_response", "initiated_at", "metadata", "updated_at"])
            if payment.order_id:
                self.orders.set_payment_reference(payment.order_id, initiation.correlation_id)
        return payment

    def mark_initiation_failed(self, payment_id, reason: str, response: Optional[dict] = None) -> Payment:
        """The provider never accepted the attempt. The order is left alone so a retry can start."""
        with transaction.atomic():
            payment = self._get(payment_id, Payment.objects.select_for_update())
            if payment.status != PaymentStatus.PENDING:
                return payment
            payment.status = PaymentStatus.FAILED
            payment.failure_reason = (reason or "")[:255]
            payment.failed_at = timezone.now()
            if response:
                payment.gateway_response = response
            payment.save(update_fields=["status", "failure_reason", "failed_at", "gateway_response", "updated_at"])
        logger.warning("Payment %s initiation failed: %s", payment.pk, reason)
        return payment

    def update_status(
        self,
        payment_id,
        new_status,
        *,
        transaction_id: str = "",
        gateway_response: Optional[dict] = None,
        failure_reason: str = "",
        metadata: Optional[dict] = None,
    ) -> Payment:
        """Move a payment to ``new_status`` and cascade to its order.

        Re-applying the current status is a no-op. A second successful payment
        for an order that is already paid raises ``InvalidState`` and the
        attempt stays ``PENDING``.
        """
        with transaction.atomic():
            payment = self._get(payment_id, Payment.objects.select_for_update())
            current = payment.status
            if current == new_status:
                return payment
            if new_status not in PAYMENT_TRANSITIONS.get(current, set()):
                raise InvalidState(f"Cannot move payment from {current} to {new_status}", current=current)

            if new_status == PaymentStatus.SUCCESS and payment.order_id is None and (payment.metadata or {}).get("draft"):
                if not self._materialize_draft(payment):
                    new_status = PaymentStatus.FAILED
                    failure_reason = "Order could not be created after payment"

            now = timezone.now()
            payment.status = new_status
            if transaction_id:
                payment.transaction_id = transaction_id
            if gateway_response is not None:
                payment.gateway_response = gateway_response
            if metadata:
                payment.metadata = {**(payment.metadata or {}), **metadata}
            if new_status == PaymentStatus.SUCCESS:
                payment.completed_at = now
            elif new_status == PaymentStatus.FAILED:
                payment.failed_at = now
                payment.failure_reason = (failure_reason or "")[:255]
            elif new_status == PaymentStatus.REFUNDED:
                payment.refunded_at = now

            try:
                with transaction.atomic():
                    payment.save()
                    if payment.order_id:
                        self._cascade(payment, new_status)
            except IntegrityError:
                # the partial unique index caught a second success for the order
                raise InvalidState("Order already has a successful payment", order_id=str(payment.order_id))

        logger.info("Payment %s %s -> %s", payment.pk, current, new_status)
        return payment

    def _cascade(self, payment, new_status):
        if new_status == PaymentStatus.SUCCESS:
            self.orders.mark_paid(payment.order_id, payment.external_id or str(payment.pk))
        elif new_status == PaymentStatus.FAILED:
            self.orders.mark_payment_failed(payment.order_id)
        elif new_status == PaymentStatus.REFUNDED:
            self.orders.mark_refunded(payment.order_id)

    def _materialize_draft(self, payment) -> bool:
        """Create the order a deferred payment was paying for. Runs under the payment row lock."""
        draft = payment.metadata["draft"]
        try:
            with transaction.atomic():
                order = self.orders.create_order(
                    user=payment.user,
                    items=draft.get("items"),
                    shipping_address=draft.get("shipping_address"),
                    payment_method=payment.method,
                    shipping_cost=draft.get("shipping_cost", 0),
                    discount_amount=draft.get("discount_amount", 0),
                    notes=draft.get("notes", ""),
                )
        except StoreError as e:
            logger.error(
                "Paid draft for payment %s could not become an order (%s); refund required", payment.pk, e.message
            )
            payment.metadata = {**payment.metadata, "requires_refund": True, "draft_error": e.message}
            return False

        payment.order = order
        meta = {**payment.metadata, "repriced_total": str(order.total_amount)}
        if order.total_amount != payment.amount:
            logger.warning("Draft for payment %s repriced from %s to %s", payment.pk, payment.amount, order.total_amount)
        payment.metadata = meta
        return True

    def claim_receipt(self, payment_id) -> bool:
        """Set the once-only receipt flag. Returns True for the caller that should send it."""
        with transaction.atomic():
            payment = self._get(payment_id, Payment.objects.select_for_update())
            meta = dict(payment.metadata or {})
            if meta.get("receipt_sent"):
                return False
            meta["receipt_sent"] = True
            payment.metadata = meta
            payment.save(update_fields=["metadata", "updated_at"])
        return True

    @staticmethod
    def _get(payment_id, qs) -> Payment:
        try:
            return qs.get(pk=payment_id)
        except (Payment.DoesNotExist, ValidationError, ValueError):
            raise NotFound("Payment not found", payment_id=str(payment_id))
