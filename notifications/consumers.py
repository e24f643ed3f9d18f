import logging

from asgiref.sync import async_to_sync
from channels.generic.websocket import JsonWebsocketConsumer
from django.core.exceptions import ValidationError

from orders.models import Order

from .notifier import ADMIN_GROUP, order_group, user_group

logger = logging.getLogger(__name__)


class OrderEventsConsumer(JsonWebsocketConsumer):
    """Per-user socket: own events, admin broadcasts for staff, and opt-in order rooms."""

    def connect(self):
        user = self.scope.get("user")
        if user is None or not user.is_authenticated:
            self.close()
            return
        self.joined = set()
        self._join(user_group(user.pk))
        if user.is_staff:
            self._join(ADMIN_GROUP)
        self.accept()

    def disconnect(self, code):
        for group in list(getattr(self, "joined", ())):
            async_to_sync(self.channel_layer.group_discard)(group, self.channel_name)
        self.joined = set()

    def receive_json(self, content, **kwargs):
        action = content.get("action") if isinstance(content, dict) else None
        order_id = content.get("order_id") if isinstance(content, dict) else None
        if action == "join_order":
            if not self._may_view(order_id):
                self.send_json({"type": "error", "error": "forbidden", "order_id": order_id})
                return
            self._join(order_group(order_id))
            self.send_json({"type": "joined", "order_id": order_id})
        elif action == "leave_order":
            group = order_group(order_id)
            if group in self.joined:
                async_to_sync(self.channel_layer.group_discard)(group, self.channel_name)
                self.joined.discard(group)
            self.send_json({"type": "left", "order_id": order_id})
        elif action == "ping":
            self.send_json({"type": "pong"})
        else:
            self.send_json({"type": "error", "error": "unknown action"})

    def order_event(self, event):
        self.send_json({"type": event["event"], "data": event["data"]})

    def _join(self, group):
        async_to_sync(self.channel_layer.group_add)(group, self.channel_name)
        self.joined.add(group)

    def _may_view(self, order_id) -> bool:
        user = self.scope["user"]
        if not order_id:
            return False
        try:
            owner_id = Order.objects.filter(pk=order_id).values_list("user_id", flat=True).first()
        except (ValidationError, ValueError):
            return False
        if owner_id is None:
            return False
        return user.is_staff or owner_id == user.pk
