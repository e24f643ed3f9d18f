import logging
from typing import Optional

from django.db import transaction

from orders.models import OrderPaymentStatus, OrderStatus, PaymentMethod
from orders.services import parse_amount, parse_lines
from storefront.errors import Forbidden, GatewayError, InvalidState, ValidationFailed

from .models import Payment, PaymentStatus

logger = logging.getLogger(__name__)


def _customer(user) -> dict:
    name = (user.get_full_name() or "").strip() if hasattr(user, "get_full_name") else ""
    return {"name": name or user.get_username(), "email": getattr(user, "email", "") or ""}


class PaymentService:
    """Client-facing payment flows on top of the ledgers and gateway adapters.

    Gateway calls are made outside any database transaction so no row lock is
    held while waiting on a provider.
    """

    def __init__(self, ledger, orders, gateways, notifier):
        self.ledger = ledger
        self.orders = orders
        self.gateways = gateways
        self.notifier = notifier

    def initiate(self, *, user, order_id, method, return_url: str = "", requester_is_admin: bool = False):
        """Start a new payment attempt for an existing order.

        Returns ``(payment, initiation)``. When the provider call fails the
        attempt is closed as FAILED and the gateway error is re-raised.
        """
        gateway = self.gateways.get(method)
        order = self.orders.get_order(order_id, user.pk, requester_is_admin)
        if order.payment_status == OrderPaymentStatus.PAID:
            raise InvalidState("Order already paid", order_id=str(order.pk))
        if order.status == OrderStatus.CANCELLED:
            raise InvalidState("Order is cancelled", order_id=str(order.pk))
        if method == PaymentMethod.COD:
            raise ValidationFailed("Use the cash-on-delivery endpoint for COD orders", field="method")

        payment = self.ledger.create_payment(user=order.user, method=method, amount=order.total_amount, order=order,
                                             currency=order.currency)
        initiation = self._call_gateway(gateway, payment, return_url, user)
        payment = self.ledger.record_initiation(payment.pk, initiation)
        logger.info("Payment %s initiated via %s for order %s (%s)", payment.pk, method, order.pk, payment.external_id)
        return payment, initiation

    def initiate_with_draft(self, *, user, method, draft: dict, return_url: str = ""):
        """Deferred path: charge for an order that is only created once the payment succeeds."""
        if method == PaymentMethod.COD:
            raise ValidationFailed("Cash on delivery needs a placed order", field="method")
        gateway = self.gateways.get(method)
        if not isinstance(draft, dict):
            raise ValidationFailed("order must be an object", field="order")
        if not isinstance(draft.get("shipping_address"), dict) or not draft.get("shipping_address"):
            raise ValidationFailed("shipping_address must be an object", field="shipping_address")
        parse_lines(draft.get("items"))
        quote = self.orders.quote(
            draft.get("items"), draft.get("shipping_cost", 0), draft.get("discount_amount", 0)
        )
        stored = {
            "items": draft.get("items"),
            "shipping_address": draft.get("shipping_address"),
            "shipping_cost": str(quote["shipping_cost"]),
            "discount_amount": str(quote["discount_amount"]),
            "notes": str(draft.get("notes") or ""),
        }
        payment = self.ledger.create_payment(
            user=user, method=method, amount=quote["total_amount"], metadata={"draft": stored}
        )
        initiation = self._call_gateway(gateway, payment, return_url, user)
        payment = self.ledger.record_initiation(payment.pk, initiation)
        logger.info("Deferred payment %s initiated via %s for %s", payment.pk, method, quote["total_amount"])
        return payment, initiation

    def process_cash_on_delivery(self, *, user, order_id, requester_is_admin: bool = False):
        gateway = self.gateways.get(PaymentMethod.COD)
        with transaction.atomic():
            # concurrent confirmations queue on the order row
            order = self.orders.lock_order(order_id, user.pk, requester_is_admin)
            existing = order.payments.filter(method=PaymentMethod.COD, status=PaymentStatus.PENDING).first()
            if existing is not None:
                # confirming twice keeps the same collection record
                return existing, None
            if order.payment_status == OrderPaymentStatus.PAID:
                raise InvalidState("Order already paid", order_id=str(order.pk))

            payment = self.ledger.create_payment(user=order.user, method=PaymentMethod.COD,
                                                 amount=order.total_amount, order=order, currency=order.currency)
            initiation = gateway.initiate(payment)
            payment = self.ledger.record_initiation(payment.pk, initiation)
            self.orders.confirm_cash_on_delivery(order.pk, initiation.correlation_id)
            confirmed = self.orders.get_order(order.pk, requester_is_admin=True)
            transaction.on_commit(lambda: self.notifier.order_updated(confirmed, previous_status=order.status))
            transaction.on_commit(lambda: self.notifier.payment_updated(payment))
        logger.info("Order %s confirmed for cash on delivery (%s)", order.pk, payment.external_id)
        return payment, initiation

    def collect_cash(self, *, payment_id, requester_is_admin: bool) -> Payment:
        if not requester_is_admin:
            raise Forbidden("Only admins can record cash collection")
        payment = self.ledger.get(payment_id)
        if payment.method != PaymentMethod.COD:
            raise InvalidState("Only cash-on-delivery payments are collected", method=payment.method)
        payment = self.ledger.update_status(payment.pk, PaymentStatus.SUCCESS, metadata={"collected": True})
        transaction.on_commit(lambda: self.notifier.payment_updated(payment))
        return payment

    def refund(self, *, payment_id, requester_is_admin: bool, reason: str = "", amount: Optional[str] = None) -> Payment:
        """Record a refund locally. The provider refund is handled outside this system."""
        if not requester_is_admin:
            raise Forbidden("Only admins can refund payments")
        payment = self.ledger.get(payment_id)
        if payment.status != PaymentStatus.SUCCESS:
            raise InvalidState(f"Cannot refund a payment that is {payment.status}", current=payment.status)
        refund_amount = payment.amount if amount in (None, "") else parse_amount(amount, "amount")
        if refund_amount <= 0 or refund_amount > payment.amount:
            raise ValidationFailed(
                f"Refund amount must be between 0.01 and {payment.amount}", field="amount", paid=str(payment.amount)
            )
        refund = {"reason": str(reason or ""), "amount": str(refund_amount)}
        payment = self.ledger.update_status(payment.pk, PaymentStatus.REFUNDED, metadata={"refund": refund})
        transaction.on_commit(lambda: self.notifier.payment_updated(payment))
        logger.info("Payment %s refunded (%s)", payment.pk, refund["amount"])
        return payment

    def payments_for_order(self, *, user, order_id, requester_is_admin: bool = False):
        order = self.orders.get_order(order_id, user.pk, requester_is_admin)
        return order, list(order.payments.order_by("-created_at"))

    def _call_gateway(self, gateway, payment, return_url, user):
        try:
            return gateway.initiate(payment, return_url=return_url, customer=_customer(user))
        except GatewayError as e:
            self.ledger.mark_initiation_failed(payment.pk, e.message, e.details.get("response"))
            raise
