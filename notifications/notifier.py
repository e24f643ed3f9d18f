import logging

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer

logger = logging.getLogger(__name__)

ADMIN_GROUP = "admins"
EVENT_TYPE = "order.event"  # dispatched to OrderEventsConsumer.order_event


def user_group(user_id) -> str:
    return f"user.{user_id}"


def order_group(order_id) -> str:
    return f"order.{order_id}"


def _iso(dt):
    return dt.isoformat() if dt else None


def order_payload(order, previous_status=None) -> dict:
    data = {
        "order_id": str(order.pk),
        "user_id": order.user_id,
        "status": order.status,
        "payment_status": order.payment_status,
        "payment_method": order.payment_method,
        "total_amount": str(order.total_amount),
        "currency": order.currency,
        "tracking_number": order.tracking_number,
        "updated_at": _iso(order.updated_at),
    }
    if previous_status:
        data["previous_status"] = previous_status
    return data


def payment_payload(payment) -> dict:
    return {
        "payment_id": str(payment.pk),
        "order_id": str(payment.order_id) if payment.order_id else None,
        "user_id": payment.user_id,
        "method": payment.method,
        "status": payment.status,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "correlation_id": payment.external_id,
        "updated_at": _iso(payment.updated_at),
    }


class EventNotifier:
    """Best-effort realtime fan-out over the channel layer.

    Delivery is at most once with no replay. Failures are logged and
    swallowed so a broken layer never fails an order or payment write.
    Callers schedule these with ``transaction.on_commit``.
    """

    def __init__(self, channel_layer=None):
        self._channel_layer = channel_layer

    @property
    def channel_layer(self):
        return self._channel_layer or get_channel_layer()

    def send(self, group: str, event: str, data: dict) -> bool:
        layer = self.channel_layer
        if layer is None:
            logger.debug("No channel layer configured; dropping %s for %s", event, group)
            return False
        try:
            async_to_sync(layer.group_send)(group, {"type": EVENT_TYPE, "event": event, "data": data})
            return True
        except Exception:
            logger.exception("Failed to publish %s to %s", event, group)
            return False

    def order_created(self, order):
        data = order_payload(order)
        self.send(user_group(order.user_id), "order_created", data)
        self.send(ADMIN_GROUP, "new_order", data)

    def order_updated(self, order, previous_status=None):
        data = order_payload(order, previous_status)
        self.send(user_group(order.user_id), "order_updated", data)
        self.send(ADMIN_GROUP, "order_updated", data)
        self.send(order_group(order.pk), "order_status_changed", data)

    def order_deleted(self, order_id, user_id):
        data = {"order_id": str(order_id), "user_id": user_id}
        self.send(user_group(user_id), "order_deleted", data)
        self.send(ADMIN_GROUP, "order_deleted", data)
        self.send(order_group(order_id), "order_deleted", data)

    def payment_updated(self, payment):
        data = payment_payload(payment)
        self.send(user_group(payment.user_id), "payment_updated", data)
        self.send(ADMIN_GROUP, "payment_updated", data)
        if payment.order_id:
            self.send(order_group(payment.order_id), "payment_updated", data)
