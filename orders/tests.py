import threading
import unittest
from decimal import Decimal
from unittest.mock import Mock, patch

from django.contrib.auth import get_user_model
from django.db import connection, transaction
from django.test import SimpleTestCase, TestCase, TransactionTestCase

from catalog.models import Product
from storefront.errors import Forbidden, InsufficientStock, InvalidState, NotFound, ValidationFailed

from .inventory import InventoryGuard
from .models import Order, OrderItem, OrderPaymentStatus, OrderStatus, PaymentMethod
from .services import OrderLedger

User = get_user_model()

ADDRESS = {"name": "Alice", "line1": "Thamel Marg", "city": "Kathmandu", "phone": "9800000000"}


class StoreFixtures:
    def make_user(self, username="alice", **extra):
        return User.objects.create_user(username, email=f"{username}@example.com", password="pw", **extra)

    def make_product(self, name="Home Jersey", price="500.00", stock=10, **extra):
        extra.setdefault("sku", f"SKU-{name.upper().replace(' ', '-')}")
        return Product.objects.create(name=name, price=Decimal(price), stock=stock, **extra)

    def make_ledger(self):
        self.notifier = Mock()
        return OrderLedger(inventory=InventoryGuard(), notifier=self.notifier)

    def place(self, ledger, user, items, **kwargs):
        kwargs.setdefault("payment_method", PaymentMethod.KHALTI)
        kwargs.setdefault("shipping_address", ADDRESS)
        return ledger.create_order(user=user, items=items, **kwargs)


class CreateOrderTests(StoreFixtures, TestCase):
    def setUp(self):
        self.user = self.make_user()
        self.ledger = self.make_ledger()
        self.jersey = self.make_product("Home Jersey", "500.00", stock=5)
        self.shorts = self.make_product("Training Shorts", "300.00", stock=5)

    def test_two_item_order_totals_1200(self):
        order = self.place(
            self.ledger, self.user,
            [{"product_id": self.jersey.pk, "quantity": 1}, {"product_id": self.shorts.pk, "quantity": 2, "size": "M"}],
            shipping_cost=100,
        )
        self.assertEqual(order.subtotal, Decimal("1100.00"))
        self.assertEqual(order.total_amount, Decimal("1200.00"))
        self.assertEqual(order.status, OrderStatus.PENDING)
        self.assertEqual(order.payment_status, OrderPaymentStatus.PENDING)
        self.assertEqual(order.currency, "NPR")
        self.assertEqual(order.items.count(), 2)
        shorts_line = order.items.get(product=self.shorts)
        self.assertEqual(shorts_line.line_total, Decimal("600.00"))
        self.assertEqual(shorts_line.size, "M")

    def test_total_matches_components(self):
        order = self.place(
            self.ledger, self.user, [{"product_id": self.jersey.pk, "quantity": 3}],
            shipping_cost="150.50", discount_amount="200",
        )
        order.refresh_from_db()
        self.assertEqual(order.total_amount, order.subtotal + order.shipping_cost - order.discount_amount)
        self.assertEqual(order.total_amount, Decimal("1450.50"))

    def test_stock_is_decremented(self):
        self.place(self.ledger, self.user, [{"product_id": self.jersey.pk, "quantity": 2}])
        self.jersey.refresh_from_db()
        self.assertEqual(self.jersey.stock, 3)

    def test_sale_price_snapshot(self):
        self.jersey.sale_price = Decimal("450.00")
        self.jersey.save()
        order = self.place(self.ledger, self.user, [{"product_id": self.jersey.pk, "quantity": 1}])
        item = order.items.get()
        self.assertEqual(item.unit_price, Decimal("450.00"))
        self.assertEqual(item.product_name, "Home Jersey")

        # later catalog changes do not touch the placed order
        Product.objects.filter(pk=self.jersey.pk).update(price=Decimal("900.00"), sale_price=None)
        item.refresh_from_db()
        self.assertEqual(item.unit_price, Decimal("450.00"))

    def test_sale_price_ignored_when_not_lower(self):
        self.jersey.sale_price = Decimal("550.00")
        self.jersey.save()
        order = self.place(self.ledger, self.user, [{"product_id": self.jersey.pk, "quantity": 1}])
        self.assertEqual(order.subtotal, Decimal("500.00"))

    def test_discount_above_value_is_rejected_without_reserving(self):
        with self.assertRaises(ValidationFailed):
            self.place(self.ledger, self.user, [{"product_id": self.jersey.pk, "quantity": 1}], discount_amount=1000)
        self.jersey.refresh_from_db()
        self.assertEqual(self.jersey.stock, 5)
        self.assertFalse(Order.objects.exists())

    def test_unknown_product_rolls_back_other_lines(self):
        with self.assertRaises(NotFound):
            self.place(self.ledger, self.user, [
                {"product_id": self.jersey.pk, "quantity": 1},
                {"product_id": 999999, "quantity": 1},
            ])
        self.jersey.refresh_from_db()
        self.assertEqual(self.jersey.stock, 5)
        self.assertFalse(Order.objects.exists())
        self.assertFalse(OrderItem.objects.exists())

    def test_inactive_product_is_not_found(self):
        Product.objects.filter(pk=self.jersey.pk).update(is_active=False)
        with self.assertRaises(NotFound):
            self.place(self.ledger, self.user, [{"product_id": self.jersey.pk, "quantity": 1}])

    def test_insufficient_stock_leaves_no_partial_decrement(self):
        with self.assertRaises(InsufficientStock) as ctx:
            self.place(self.ledger, self.user, [
                {"product_id": self.jersey.pk, "quantity": 1},
                {"product_id": self.shorts.pk, "quantity": 6},
            ])
        self.assertEqual(ctx.exception.details["available"], 5)
        self.jersey.refresh_from_db()
        self.shorts.refresh_from_db()
        self.assertEqual((self.jersey.stock, self.shorts.stock), (5, 5))
        self.assertFalse(Order.objects.exists())

    def test_repeated_lines_are_checked_together(self):
        with self.assertRaises(InsufficientStock):
            self.place(self.ledger, self.user, [
                {"product_id": self.jersey.pk, "quantity": 3},
                {"product_id": self.jersey.pk, "quantity": 3},
            ])
        self.jersey.refresh_from_db()
        self.assertEqual(self.jersey.stock, 5)

    def test_invalid_payloads(self):
        bad_calls = [
            dict(items=[]),
            dict(items=[{"product_id": self.jersey.pk, "quantity": 0}]),
            dict(items=[{"product_id": "abc", "quantity": 1}]),
            dict(items=[{"product_id": self.jersey.pk, "quantity": 1.5}]),
            dict(items=[{"product_id": self.jersey.pk, "quantity": 1}], payment_method="PAYPAL"),
            dict(items=[{"product_id": self.jersey.pk, "quantity": 1}], shipping_address="Kathmandu"),
            dict(items=[{"product_id": self.jersey.pk, "quantity": 1}], shipping_cost="-5"),
        ]
        for kwargs in bad_calls:
            items = kwargs.pop("items")
            with self.subTest(items=items, **kwargs):
                with self.assertRaises(ValidationFailed):
                    self.place(self.ledger, self.user, items, **kwargs)
        self.assertFalse(Order.objects.exists())

    def test_out_of_range_amounts_are_rejected(self):
        line = [{"product_id": self.jersey.pk, "quantity": 1}]
        for field, value in (("shipping_cost", "1e30"), ("shipping_cost", "1e15"), ("discount_amount", "1e30"),
                             ("shipping_cost", "NaN"), ("shipping_cost", "10000000000")):
            with self.subTest(field=field, value=value):
                with self.assertRaises(ValidationFailed) as ctx:
                    self.place(self.ledger, self.user, line, **{field: value})
                self.assertEqual(ctx.exception.details["field"], field)
        with self.assertRaises(ValidationFailed):
            self.ledger.quote(line, shipping_cost="1e30")
        self.assertFalse(Order.objects.exists())

    def test_line_totals_beyond_column_size_roll_back(self):
        vault = self.make_product("Signed Vault Jersey", "9000000000.00", stock=5)
        with self.assertRaises(ValidationFailed):
            self.place(self.ledger, self.user, [{"product_id": vault.pk, "quantity": 2}])
        vault.refresh_from_db()
        self.assertEqual(vault.stock, 5)
        self.assertFalse(Order.objects.exists())

    def test_order_created_broadcast_after_commit(self):
        with self.captureOnCommitCallbacks(execute=True):
            order = self.place(self.ledger, self.user, [{"product_id": self.jersey.pk, "quantity": 1}])
        self.notifier.order_created.assert_called_once_with(order)

    def test_failed_order_is_not_broadcast(self):
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            with self.assertRaises(InsufficientStock):
                self.place(self.ledger, self.user, [{"product_id": self.jersey.pk, "quantity": 50}])
        self.assertEqual(callbacks, [])
        self.notifier.order_created.assert_not_called()

    def test_quote_does_not_reserve(self):
        quote = self.ledger.quote([{"product_id": self.shorts.pk, "quantity": 2}], shipping_cost=100)
        self.assertEqual(quote["total_amount"], Decimal("700.00"))
        self.shorts.refresh_from_db()
        self.assertEqual(self.shorts.stock, 5)


class LastUnitTests(StoreFixtures, TestCase):
    def setUp(self):
        self.ledger = self.make_ledger()
        self.product = self.make_product("Keeper Gloves", "1500.00", stock=1)
        self.alice = self.make_user("alice")
        self.bob = self.make_user("bob")

    def test_only_one_order_gets_the_last_unit(self):
        results = []
        for user in (self.alice, self.bob):
            try:
                results.append(self.place(self.ledger, user, [{"product_id": self.product.pk, "quantity": 1}]))
            except InsufficientStock as e:
                results.append(e)
        self.assertIsInstance(results[0], Order)
        self.assertIsInstance(results[1], InsufficientStock)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 0)

    def test_conditional_update_catches_a_concurrent_decrement(self):
        real_filter = Product.objects.filter

        def racing_filter(*args, **kwargs):
            if "stock__gte" in kwargs:
                # another checkout takes the unit between the check and the write
                real_filter(pk=self.product.pk).update(stock=0)
            return real_filter(*args, **kwargs)

        with patch.object(Product.objects, "filter", side_effect=racing_filter):
            with self.assertRaises(InsufficientStock):
                self.place(self.ledger, self.alice, [{"product_id": self.product.pk, "quantity": 1}])
        self.assertFalse(Order.objects.exists())


@unittest.skipUnless(
    connection.vendor == "postgresql", "row locks need a real database server (storefront.settings.test_postgres)"
)
class ConcurrentPlacementTests(StoreFixtures, TransactionTestCase):
    def test_parallel_checkouts_never_oversell(self):
        product = self.make_product("Derby Scarf", "800.00", stock=3)
        users = [self.make_user(f"fan{i}") for i in range(8)]
        ledger = self.make_ledger()
        outcomes = []
        barrier = threading.Barrier(len(users))

        def checkout(user):
            barrier.wait()
            try:
                self.place(ledger, user, [{"product_id": product.pk, "quantity": 1}])
                outcomes.append("ok")
            except InsufficientStock:
                outcomes.append("sold out")
            finally:
                connection.close()

        threads = [threading.Thread(target=checkout, args=(u,)) for u in users]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        product.refresh_from_db()
        self.assertEqual(outcomes.count("ok"), 3)
        self.assertEqual(outcomes.count("sold out"), 5)
        self.assertEqual(product.stock, 0)


class InventoryGuardTests(SimpleTestCase):
    def test_reserve_requires_an_atomic_block(self):
        with self.assertRaises(RuntimeError):
            InventoryGuard().reserve([(1, 1)])


class UpdateStatusTests(StoreFixtures, TestCase):
    def setUp(self):
        self.user = self.make_user()
        self.ledger = self.make_ledger()
        product = self.make_product(stock=5)
        self.order = self.place(self.ledger, self.user, [{"product_id": product.pk, "quantity": 1}])

    def test_happy_path_through_fulfilment(self):
        for status in (OrderStatus.CONFIRMED, OrderStatus.SHIPPED, OrderStatus.DELIVERED):
            self.ledger.update_status(self.order.pk, status, requester_is_admin=True)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, OrderStatus.DELIVERED)

    def test_skipping_states_is_rejected(self):
        with self.assertRaises(InvalidState) as ctx:
            self.ledger.update_status(self.order.pk, OrderStatus.DELIVERED, requester_is_admin=True)
        self.assertEqual(ctx.exception.details["current"], OrderStatus.PENDING)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, OrderStatus.PENDING)

    def test_terminal_states_cannot_move(self):
        self.ledger.update_status(self.order.pk, OrderStatus.CANCELLED, requester_is_admin=True)
        with self.assertRaises(InvalidState):
            self.ledger.update_status(self.order.pk, OrderStatus.CONFIRMED, requester_is_admin=True)

    def test_unknown_status_is_a_validation_error(self):
        with self.assertRaises(ValidationFailed):
            self.ledger.update_status(self.order.pk, "LOST", requester_is_admin=True)

    def test_non_admin_is_forbidden(self):
        with self.assertRaises(Forbidden):
            self.ledger.update_status(self.order.pk, OrderStatus.CONFIRMED, requester_is_admin=False)

    def test_same_status_updates_tracking_and_notes(self):
        self.ledger.update_status(self.order.pk, OrderStatus.CONFIRMED, requester_is_admin=True)
        self.ledger.update_status(self.order.pk, OrderStatus.SHIPPED, requester_is_admin=True)
        self.ledger.update_status(
            self.order.pk, OrderStatus.SHIPPED, requester_is_admin=True,
            tracking_number="NCM-123", admin_notes="Handed to courier",
        )
        self.order.refresh_from_db()
        self.assertEqual(self.order.tracking_number, "NCM-123")
        self.assertEqual(self.order.admin_notes, "Handed to courier")

    def test_update_broadcasts_previous_status(self):
        with self.captureOnCommitCallbacks(execute=True):
            order = self.ledger.update_status(self.order.pk, OrderStatus.CONFIRMED, requester_is_admin=True)
        self.notifier.order_updated.assert_called_once_with(order, previous_status=OrderStatus.PENDING)

    def test_unknown_order(self):
        with self.assertRaises(NotFound):
            self.ledger.update_status("not-a-uuid", OrderStatus.CONFIRMED, requester_is_admin=True)


class DeleteOrderTests(StoreFixtures, TestCase):
    def setUp(self):
        self.owner = self.make_user("owner")
        self.other = self.make_user("other")
        self.ledger = self.make_ledger()
        self.product = self.make_product(stock=5)
        self.order = self.place(self.ledger, self.owner, [{"product_id": self.product.pk, "quantity": 2}])

    def test_owner_deletes_pending_order(self):
        with self.captureOnCommitCallbacks(execute=True):
            self.ledger.delete_order(self.order.pk, self.owner.pk, False)
        self.assertFalse(Order.objects.exists())
        self.assertFalse(OrderItem.objects.exists())
        self.notifier.order_deleted.assert_called_once_with(str(self.order.pk), self.owner.pk)
        # stock is not restored
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 3)

    def test_other_user_is_forbidden(self):
        with self.assertRaises(Forbidden):
            self.ledger.delete_order(self.order.pk, self.other.pk, False)
        self.assertTrue(Order.objects.filter(pk=self.order.pk).exists())

    def test_owner_cannot_delete_paid_order(self):
        Order.objects.filter(pk=self.order.pk).update(payment_status=OrderPaymentStatus.PAID)
        with self.assertRaises(InvalidState):
            self.ledger.delete_order(self.order.pk, self.owner.pk, False)
        self.assertTrue(Order.objects.filter(pk=self.order.pk).exists())

    def test_admin_deletes_any_order(self):
        Order.objects.filter(pk=self.order.pk).update(payment_status=OrderPaymentStatus.REFUNDED)
        self.ledger.delete_order(self.order.pk, self.other.pk, True)
        self.assertFalse(Order.objects.exists())


class ListAndStatsTests(StoreFixtures, TestCase):
    def setUp(self):
        self.alice = self.make_user("alice")
        self.bob = self.make_user("bob")
        self.ledger = self.make_ledger()
        product = self.make_product(stock=20)
        line = [{"product_id": product.pk, "quantity": 1}]
        self.a1 = self.place(self.ledger, self.alice, line)
        self.a2 = self.place(self.ledger, self.alice, line, payment_method=PaymentMethod.COD)
        self.b1 = self.place(self.ledger, self.bob, line)
        Order.objects.filter(pk=self.b1.pk).update(payment_status=OrderPaymentStatus.PAID, status=OrderStatus.CONFIRMED)

    def test_customer_sees_only_own_orders(self):
        page = self.ledger.list_orders(self.alice.pk, False, filters={"user": self.bob.pk})
        self.assertEqual({o.pk for o in page["results"]}, {self.a1.pk, self.a2.pk})
        self.assertEqual(page["count"], 2)

    def test_admin_filters(self):
        page = self.ledger.list_orders(self.alice.pk, True, filters={"user": self.bob.pk})
        self.assertEqual([o.pk for o in page["results"]], [self.b1.pk])
        page = self.ledger.list_orders(self.alice.pk, True, filters={"payment_method": PaymentMethod.COD})
        self.assertEqual([o.pk for o in page["results"]], [self.a2.pk])

    def test_pagination(self):
        page = self.ledger.list_orders(self.alice.pk, True, page=2, page_size=2)
        self.assertEqual(len(page["results"]), 1)
        self.assertTrue(page["has_prev"])
        self.assertFalse(page["has_next"])

    def test_get_order_scoping(self):
        self.assertEqual(self.ledger.get_order(self.a1.pk, self.alice.pk, False).pk, self.a1.pk)
        with self.assertRaises(Forbidden):
            self.ledger.get_order(self.a1.pk, self.bob.pk, False)

    def test_statistics(self):
        stats = self.ledger.statistics()
        self.assertEqual(stats["total_orders"], 3)
        self.assertEqual(stats["by_status"][OrderStatus.PENDING], 2)
        self.assertEqual(stats["by_status"][OrderStatus.CONFIRMED], 1)
        self.assertEqual(stats["revenue"], Decimal("500.00"))
        self.assertEqual(stats["awaiting_payment"], 2)
