import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import Count, Sum

from storefront.errors import Forbidden, InvalidState, NotFound, ValidationFailed

from .models import (
    ORDER_TRANSITIONS,
    Order,
    OrderItem,
    OrderPaymentStatus,
    OrderStatus,
    PaymentMethod,
    can_transition,
)

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")
# money columns are max_digits=12, decimal_places=2
MAX_AMOUNT = Decimal("1e10")


def parse_amount(value, field: str) -> Decimal:
    if value in (None, ""):
        return Decimal("0.00")
    if isinstance(value, bool):
        raise ValidationFailed(f"{field} must be a number", field=field)
    try:
        amount = Decimal(str(value))
        if not amount.is_finite() or amount < 0:
            raise ValidationFailed(f"{field} must be a non-negative number", field=field)
        amount = amount.quantize(TWO_PLACES)
    except (InvalidOperation, ValueError):
        raise ValidationFailed(f"{field} must be a number", field=field)
    if amount >= MAX_AMOUNT:
        raise ValidationFailed(f"{field} is too large", field=field, limit=str(MAX_AMOUNT))
    return amount


def check_total(subtotal: Decimal, total: Decimal) -> None:
    if total < 0:
        raise ValidationFailed("Discount exceeds order value", field="discount_amount")
    if subtotal >= MAX_AMOUNT or total >= MAX_AMOUNT:
        raise ValidationFailed("Order total is too large", field="items", limit=str(MAX_AMOUNT))


def parse_lines(items) -> List[Dict[str, Any]]:
    """Validate raw order lines: product id, quantity and optional size/color."""
    if not isinstance(items, list) or not items:
        raise ValidationFailed("Order must contain at least one item", field="items")
    lines = []
    for idx, raw in enumerate(items):
        if not isinstance(raw, dict):
            raise ValidationFailed(f"items[{idx}] must be an object", field="items")
        product_id = raw.get("product_id", raw.get("product"))
        quantity = raw.get("quantity")
        if isinstance(product_id, bool) or not isinstance(product_id, int):
            raise ValidationFailed(f"items[{idx}].product_id must be an integer", field="items")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationFailed(f"items[{idx}].quantity must be an integer >= 1", field="items")
        lines.append({
            "product_id": product_id,
            "quantity": quantity,
            "size": str(raw.get("size") or "")[:16],
            "color": str(raw.get("color") or "")[:32],
        })
    return lines


def parse_payment_method(value) -> str:
    if value not in PaymentMethod.values:
        raise ValidationFailed(
            f"payment_method must be one of {', '.join(PaymentMethod.values)}", field="payment_method"
        )
    return value


class OrderLedger:
    """Creates orders and owns every write to an order's status fields."""

    def __init__(self, inventory, notifier):
        self.inventory = inventory
        self.notifier = notifier

    # ---- placement ----------------------------------------------------

    def quote(self, items, shipping_cost=0, discount_amount=0) -> Dict[str, Decimal]:
        lines = parse_lines(items)
        shipping = parse_amount(shipping_cost, "shipping_cost")
        discount = parse_amount(discount_amount, "discount_amount")
        products = self.inventory.check((l["product_id"], l["quantity"]) for l in lines)
        subtotal = sum(
            (products[l["product_id"]].current_price * l["quantity"] for l in lines), Decimal("0.00")
        )
        total = subtotal + shipping - discount
        check_total(subtotal, total)
        return {"subtotal": subtotal, "shipping_cost": shipping, "discount_amount": discount, "total_amount": total}

    def create_order(
        self,
        *,
        user,
        items,
        shipping_address,
        payment_method,
        shipping_cost=0,
        discount_amount=0,
        notes="",
    ) -> Order:
        lines = parse_lines(items)
        method = parse_payment_method(payment_method)
        if not isinstance(shipping_address, dict) or not shipping_address:
            raise ValidationFailed("shipping_address must be an object", field="shipping_address")
        shipping = parse_amount(shipping_cost, "shipping_cost")
        discount = parse_amount(discount_amount, "discount_amount")

        with transaction.atomic():
            products = self.inventory.reserve((l["product_id"], l["quantity"]) for l in lines)

            subtotal = Decimal("0.00")
            snapshots = []
            for line in lines:
                product = products[line["product_id"]]
                unit_price = product.current_price
                subtotal += unit_price * line["quantity"]
                snapshots.append((product, unit_price, line))

            total = subtotal + shipping - discount
            # rolls back the reservation too
            check_total(subtotal, total)

            order = Order.objects.create(
                user=user,
                subtotal=subtotal,
                shipping_cost=shipping,
                discount_amount=discount,
                total_amount=total,
                currency=getattr(settings, "DEFAULT_CURRENCY", "NPR"),
                shipping_address=shipping_address,
                notes=str(notes or ""),
                payment_method=method,
            )
            OrderItem.objects.bulk_create([
                OrderItem(
                    order=order,
                    product=product,
                    product_name=product.name,
                    quantity=line["quantity"],
                    unit_price=unit_price,
                    size=line["size"],
                    color=line["color"],
                )
                for product, unit_price, line in snapshots
            ])
            transaction.on_commit(lambda: self.notifier.order_created(order))

        logger.info("Order %s placed by user=%s total=%s %s", order.pk, user.pk, total, order.currency)
        return order

    # ---- reads --------------------------------------------------------

    def get_order(self, order_id, requester_id=None, requester_is_admin=False) -> Order:
        order = self._get(order_id, Order.objects.select_related("user").prefetch_related("items"))
        if not requester_is_admin and order.user_id != requester_id:
            raise Forbidden("You do not have access to this order")
        return order

    def list_orders(self, requester_id, requester_is_admin=False, filters=None, page=1, page_size=10):
        filters = filters or {}
        qs = Order.objects.select_related("user").prefetch_related("items").order_by("-created_at")
        if not requester_is_admin:
            qs = qs.filter(user_id=requester_id)
        elif filters.get("user"):
            qs = qs.filter(user_id=filters["user"])
        for field in ("status", "payment_status", "payment_method"):
            if filters.get(field):
                qs = qs.filter(**{field: filters[field]})

        start = (page - 1) * page_size
        end = start + page_size
        total = qs.count()
        return {
            "results": list(qs[start:end]),
            "page": page,
            "page_size": page_size,
            "count": total,
            "has_next": end < total,
            "has_prev": start > 0,
        }

    def statistics(self) -> Dict[str, Any]:
        by_status = {row["status"]: row["n"] for row in Order.objects.order_by().values("status").annotate(n=Count("id"))}
        revenue = (
            Order.objects.filter(payment_status=OrderPaymentStatus.PAID).aggregate(s=Sum("total_amount"))["s"]
            or Decimal("0.00")
        )
        return {
            "total_orders": sum(by_status.values()),
            "by_status": {s: by_status.get(s, 0) for s in OrderStatus.values},
            "revenue": revenue,
            "awaiting_payment": Order.objects.filter(payment_status=OrderPaymentStatus.PENDING)
            .exclude(status=OrderStatus.CANCELLED)
            .count(),
        }

    # ---- admin writes ---------------------------------------------------

    def update_status(
        self,
        order_id,
        new_status,
        *,
        requester_is_admin: bool,
        admin_notes: Optional[str] = None,
        tracking_number: Optional[str] = None,
    ) -> Order:
        if not requester_is_admin:
            raise Forbidden("Only admins can change order status")
        if new_status not in OrderStatus.values:
            raise ValidationFailed(f"Unknown order status '{new_status}'", field="status")

        with transaction.atomic():
            order = self._get(order_id, Order.objects.select_for_update())
            previous = order.status
            if not can_transition(previous, new_status):
                allowed = sorted(str(s) for s in ORDER_TRANSITIONS.get(previous, set()))
                raise InvalidState(
                    f"Cannot move order from {previous} to {new_status}", current=previous, allowed=allowed
                )
            order.status = new_status
            fields = ["status", "updated_at"]
            if admin_notes is not None:
                order.admin_notes = admin_notes
                fields.append("admin_notes")
            if tracking_number is not None:
                order.tracking_number = tracking_number
                fields.append("tracking_number")
            order.save(update_fields=fields)
            transaction.on_commit(lambda: self.notifier.order_updated(order, previous_status=previous))

        logger.info("Order %s status %s -> %s", order.pk, previous, new_status)
        return order

    def delete_order(self, order_id, requester_id, requester_is_admin=False) -> None:
        with transaction.atomic():
            order = self._get(order_id, Order.objects.select_for_update())
            if not requester_is_admin:
                if order.user_id != requester_id:
                    raise Forbidden("You do not have access to this order")
                if order.payment_status != OrderPaymentStatus.PENDING:
                    raise InvalidState(
                        "Only orders awaiting payment can be deleted", payment_status=order.payment_status
                    )
            snapshot = {"id": str(order.pk), "user_id": order.user_id}
            # items and payments cascade
            order.delete()
            transaction.on_commit(lambda: self.notifier.order_deleted(snapshot["id"], snapshot["user_id"]))
        logger.info("Order %s deleted by user=%s admin=%s", snapshot["id"], requester_id, requester_is_admin)

    # ---- payment-driven writes -----------------------------------------
    # Only the payment ledger calls these, inside its own transaction.

    def lock_order(self, order_id, requester_id=None, requester_is_admin=False) -> Order:
        """Row-lock an order for the rest of the caller's transaction."""
        if not transaction.get_connection().in_atomic_block:
            raise RuntimeError("lock_order must run inside transaction.atomic()")
        order = self._get(order_id, Order.objects.select_for_update())
        if not requester_is_admin and order.user_id != requester_id:
            raise Forbidden("You do not have access to this order")
        return order

    def mark_paid(self, order_id, payment_ref: str) -> Order:
        order = self._get(order_id, Order.objects.select_for_update())
        if order.payment_status == OrderPaymentStatus.PAID:
            raise InvalidState("Order is already paid", payment_ref=order.payment_ref)
        previous = order.status
        order.payment_status = OrderPaymentStatus.PAID
        order.payment_ref = payment_ref or order.payment_ref
        if order.status == OrderStatus.PENDING:
            order.status = OrderStatus.CONFIRMED
        order.save(update_fields=["payment_status", "payment_ref", "status", "updated_at"])
        self._announce(order, previous)
        return order

    def mark_payment_failed(self, order_id) -> Order:
        order = self._get(order_id, Order.objects.select_for_update())
        # A paid order keeps its state when a stray attempt fails
        if order.payment_status == OrderPaymentStatus.PENDING:
            order.payment_status = OrderPaymentStatus.FAILED
            order.save(update_fields=["payment_status", "updated_at"])
            self._announce(order, order.status)
        return order

    def mark_refunded(self, order_id) -> Order:
        order = self._get(order_id, Order.objects.select_for_update())
        previous = order.status
        order.payment_status = OrderPaymentStatus.REFUNDED
        if can_transition(order.status, OrderStatus.CANCELLED):
            order.status = OrderStatus.CANCELLED
        order.save(update_fields=["payment_status", "status", "updated_at"])
        self._announce(order, previous)
        return order

    def set_payment_reference(self, order_id, payment_ref: str) -> Order:
        order = self._get(order_id, Order.objects.select_for_update())
        order.payment_ref = payment_ref
        # A fresh attempt re-opens a previously failed payment
        if order.payment_status == OrderPaymentStatus.FAILED:
            order.payment_status = OrderPaymentStatus.PENDING
        order.save(update_fields=["payment_ref", "payment_status", "updated_at"])
        return order

    def confirm_cash_on_delivery(self, order_id, payment_ref: str) -> Order:
        order = self._get(order_id, Order.objects.select_for_update())
        if order.payment_method != PaymentMethod.COD:
            raise InvalidState("Order was not placed for cash on delivery", payment_method=order.payment_method)
        if order.status not in (OrderStatus.PENDING, OrderStatus.CONFIRMED):
            raise InvalidState(f"Cannot confirm an order that is {order.status}", current=order.status)
        order.status = OrderStatus.CONFIRMED
        order.payment_ref = payment_ref
        order.save(update_fields=["status", "payment_ref", "updated_at"])
        return order

    def _announce(self, order, previous_status):
        # dropped with the enclosing savepoint if the payment write rolls back
        transaction.on_commit(lambda: self.notifier.order_updated(order, previous_status=previous_status))

    @staticmethod
    def _get(order_id, qs=None) -> Order:
        qs = qs if qs is not None else Order.objects.all()
        try:
            return qs.get(pk=order_id)
        except (Order.DoesNotExist, ValidationError, ValueError, TypeError):
            # malformed ids are reported as unknown
            raise NotFound("Order not found", order_id=str(order_id))
