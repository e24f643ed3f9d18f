from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import jwt
from asgiref.sync import async_to_sync
from channels.layers import InMemoryChannelLayer, get_channel_layer
from channels.testing import WebsocketCommunicator
from django.conf import settings
from django.test import SimpleTestCase, TestCase
from django.urls import reverse

from orders.models import OrderStatus
from orders.tests import ADDRESS, StoreFixtures

from .auth import issue_token, user_for_token
from .consumers import OrderEventsConsumer
from .notifier import ADMIN_GROUP, EVENT_TYPE, EventNotifier, order_group, user_group


def fake_order(**extra):
    data = dict(
        pk="0b7c4c1e-0000-4000-8000-000000000001", user_id=7, status=OrderStatus.CONFIRMED,
        payment_status="PAID", payment_method="KHALTI", total_amount="1200.00", currency="NPR",
        tracking_number="", updated_at=None,
    )
    data.update(extra)
    return SimpleNamespace(**data)


class EventNotifierTests(SimpleTestCase):
    def test_order_update_fans_out_to_user_admins_and_room(self):
        layer = Mock(group_send=AsyncMock())
        EventNotifier(layer).order_updated(fake_order(), previous_status=OrderStatus.PENDING)

        groups = [c.args[0] for c in layer.group_send.call_args_list]
        self.assertEqual(groups, [user_group(7), ADMIN_GROUP, order_group(fake_order().pk)])
        message = layer.group_send.call_args_list[2].args[1]
        self.assertEqual(message["type"], EVENT_TYPE)
        self.assertEqual(message["event"], "order_status_changed")
        self.assertEqual(message["data"]["previous_status"], OrderStatus.PENDING)

    def test_new_order_reaches_subscribed_channel(self):
        layer = InMemoryChannelLayer()
        channel = async_to_sync(layer.new_channel)()
        async_to_sync(layer.group_add)(ADMIN_GROUP, channel)

        EventNotifier(layer).order_created(fake_order())

        message = async_to_sync(layer.receive)(channel)
        self.assertEqual(message["event"], "new_order")
        self.assertEqual(message["data"]["total_amount"], "1200.00")

    def test_broken_layer_is_logged_not_raised(self):
        layer = Mock(group_send=AsyncMock(side_effect=ConnectionError("redis down")))
        with self.assertLogs("notifications.notifier", level="ERROR"):
            self.assertFalse(EventNotifier(layer).send(ADMIN_GROUP, "new_order", {}))


class SocketTokenTests(StoreFixtures, TestCase):
    def setUp(self):
        self.user = self.make_user("alice")

    def test_token_round_trip(self):
        self.assertEqual(user_for_token(issue_token(self.user)), self.user)

    def test_rejected_tokens_are_anonymous(self):
        wrong_type = jwt.encode({"sub": str(self.user.pk), "typ": "access"}, settings.SECRET_KEY, algorithm="HS256")
        for token in (issue_token(self.user, ttl_seconds=-10), "garbage", wrong_type):
            with self.subTest(token=token):
                self.assertFalse(user_for_token(token).is_authenticated)

    def test_inactive_user(self):
        token = issue_token(self.user)
        self.user.is_active = False
        self.user.save()
        self.assertFalse(user_for_token(token).is_authenticated)

    def test_token_view(self):
        resp = self.client.get(reverse("notifications:token"))
        self.assertEqual(resp.status_code, 401)

        self.client.force_login(self.user)
        body = self.client.get(reverse("notifications:token")).json()
        self.assertEqual(body["path"], "/ws/orders/")
        self.assertEqual(user_for_token(body["token"]), self.user)


class OrderRoomAccessTests(StoreFixtures, TestCase):
    def test_owner_and_staff_may_join(self):
        alice = self.make_user("alice")
        product = self.make_product()
        order = self.make_ledger().create_order(
            user=alice, items=[{"product_id": product.pk, "quantity": 1}],
            shipping_address=ADDRESS, payment_method="KHALTI",
        )
        consumer = OrderEventsConsumer()
        for user, allowed in ((alice, True), (self.make_user("bob"), False), (self.make_user("ops", is_staff=True), True)):
            with self.subTest(user=user.username):
                consumer.scope = {"user": user}
                self.assertEqual(consumer._may_view(str(order.pk)), allowed)
        consumer.scope = {"user": alice}
        self.assertFalse(consumer._may_view("not-a-uuid"))
        self.assertFalse(consumer._may_view(None))


class OrderEventsConsumerTests(SimpleTestCase):
    # channels calls close_old_connections() around each sync consumer handler
    databases = {"default"}

    def communicator(self, user):
        communicator = WebsocketCommunicator(OrderEventsConsumer.as_asgi(), "/ws/orders/")
        communicator.scope["user"] = user
        return communicator

    async def test_anonymous_socket_is_closed(self):
        communicator = self.communicator(SimpleNamespace(is_authenticated=False))
        connected, _ = await communicator.connect()
        self.assertFalse(connected)

    async def test_staff_socket_receives_admin_broadcasts(self):
        communicator = self.communicator(SimpleNamespace(pk=7, is_authenticated=True, is_staff=True))
        connected, _ = await communicator.connect()
        self.assertTrue(connected)

        await get_channel_layer().group_send(
            ADMIN_GROUP, {"type": EVENT_TYPE, "event": "new_order", "data": {"order_id": "abc"}}
        )
        self.assertEqual(await communicator.receive_json_from(), {"type": "new_order", "data": {"order_id": "abc"}})

        await communicator.send_json_to({"action": "ping"})
        self.assertEqual(await communicator.receive_json_from(), {"type": "pong"})
        await communicator.send_json_to({"action": "dance"})
        self.assertEqual((await communicator.receive_json_from())["error"], "unknown action")
        await communicator.disconnect()

    async def test_customer_socket_gets_own_events(self):
        communicator = self.communicator(SimpleNamespace(pk=8, is_authenticated=True, is_staff=False))
        await communicator.connect()
        await get_channel_layer().group_send(
            user_group(8), {"type": EVENT_TYPE, "event": "payment_updated", "data": {"status": "SUCCESS"}}
        )
        self.assertEqual((await communicator.receive_json_from())["type"], "payment_updated")
        await communicator.disconnect()
