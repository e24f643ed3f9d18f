"""Plain-dict renderers for API responses. Decimals, ids and timestamps are strings."""


def _iso(dt):
    return dt.isoformat() if dt else None


def serialize_item(item) -> dict:
    return {
        "id": item.pk,
        "product_id": item.product_id,
        "product_name": item.product_name,
        "quantity": item.quantity,
        "unit_price": str(item.unit_price),
        "line_total": str(item.line_total),
        "size": item.size,
        "color": item.color,
    }


def serialize_order(order, *, include_items=True, payments=None) -> dict:
    data = {
        "id": str(order.pk),
        "user_id": order.user_id,
        "status": order.status,
        "payment_method": order.payment_method,
        "payment_status": order.payment_status,
        "payment_ref": order.payment_ref,
        "subtotal": str(order.subtotal),
        "shipping_cost": str(order.shipping_cost),
        "discount_amount": str(order.discount_amount),
        "total_amount": str(order.total_amount),
        "currency": order.currency,
        "shipping_address": order.shipping_address,
        "notes": order.notes,
        "tracking_number": order.tracking_number,
        "created_at": _iso(order.created_at),
        "updated_at": _iso(order.updated_at),
    }
    if include_items:
        data["items"] = [serialize_item(i) for i in order.items.all()]
    if payments is not None:
        from payments.serializers import serialize_payment

        data["payments"] = [serialize_payment(p) for p in payments]
    return data
