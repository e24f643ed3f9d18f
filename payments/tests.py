from decimal import Decimal
from unittest.mock import Mock, patch

import requests
from django.test import TestCase

from orders.models import Order, OrderPaymentStatus, OrderStatus, PaymentMethod
from orders.tests import ADDRESS, StoreFixtures
from storefront.container import build_services
from storefront.errors import Forbidden, GatewayUnavailable, InvalidState, ValidationFailed

from .gateways import CashOnDeliveryGateway, EsewaGateway, GatewayRegistry, KhaltiGateway
from .models import Payment, PaymentStatus
from .test_gateways import ESEWA_CONFIG, KHALTI_CONFIG, FakeResponse


def make_registry():
    registry = GatewayRegistry()
    registry.register(PaymentMethod.COD, CashOnDeliveryGateway())
    registry.register(PaymentMethod.KHALTI, KhaltiGateway(KHALTI_CONFIG, timeout=5))
    registry.register(PaymentMethod.ESEWA, EsewaGateway(ESEWA_CONFIG, timeout=5))
    return registry


class PaymentFixtures(StoreFixtures):
    def setUp(self):
        self.notifier = Mock()
        self.services = build_services(notifier=self.notifier, gateways=make_registry())
        self.user = self.make_user("alice")
        self.admin = self.make_user("admin", is_staff=True)
        self.jersey = self.make_product("Home Jersey", "500.00", stock=10)
        self.shorts = self.make_product("Training Shorts", "300.00", stock=10)

    def make_order(self, method=PaymentMethod.KHALTI, user=None):
        return self.services.orders.create_order(
            user=user or self.user,
            items=[{"product_id": self.jersey.pk, "quantity": 1}, {"product_id": self.shorts.pk, "quantity": 2}],
            shipping_address=ADDRESS,
            payment_method=method,
            shipping_cost=100,
        )

    def khalti_initiated(self, pidx="pidx-1"):
        return FakeResponse(200, {"pidx": pidx, "payment_url": f"https://pay.khalti.test/?pidx={pidx}"})


class PaymentLedgerTests(PaymentFixtures, TestCase):
    def setUp(self):
        super().setUp()
        self.ledger = self.services.payments
        self.order = self.make_order()
        self.payment = self.ledger.create_payment(
            user=self.user, method=PaymentMethod.KHALTI, amount=self.order.total_amount, order=self.order
        )
        Payment.objects.filter(pk=self.payment.pk).update(external_id="pidx-1")

    def test_new_payment_is_pending(self):
        self.assertEqual(self.payment.status, PaymentStatus.PENDING)
        self.assertEqual(self.payment.amount, Decimal("1200.00"))
        self.assertEqual(self.payment.currency, "NPR")

    def test_success_confirms_order(self):
        payment = self.ledger.update_status(self.payment.pk, PaymentStatus.SUCCESS, transaction_id="T-1")
        self.assertIsNotNone(payment.completed_at)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.PAID)
        self.assertEqual(self.order.status, OrderStatus.CONFIRMED)
        self.assertEqual(self.order.payment_ref, "pidx-1")

    def test_success_does_not_rewind_fulfilment(self):
        Order.objects.filter(pk=self.order.pk).update(status=OrderStatus.SHIPPED)
        self.ledger.update_status(self.payment.pk, PaymentStatus.SUCCESS)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, OrderStatus.SHIPPED)

    def test_same_status_is_a_noop(self):
        first = self.ledger.update_status(self.payment.pk, PaymentStatus.SUCCESS)
        again = self.ledger.update_status(self.payment.pk, PaymentStatus.SUCCESS, transaction_id="other")
        self.assertEqual(again.completed_at, first.completed_at)
        self.assertEqual(again.transaction_id, "")

    def test_transitions_outside_the_table_are_rejected(self):
        self.ledger.update_status(self.payment.pk, PaymentStatus.FAILED, failure_reason="Expired")
        for status in (PaymentStatus.SUCCESS, PaymentStatus.REFUNDED, PaymentStatus.PENDING):
            with self.subTest(status=status):
                with self.assertRaises(InvalidState):
                    self.ledger.update_status(self.payment.pk, status)

    def test_failure_keeps_order_open(self):
        self.ledger.update_status(self.payment.pk, PaymentStatus.FAILED, failure_reason="User canceled")
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.failure_reason, "User canceled")
        self.assertIsNotNone(self.payment.failed_at)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.FAILED)
        self.assertEqual(self.order.status, OrderStatus.PENDING)

    def test_second_success_for_paid_order_stays_pending(self):
        self.ledger.update_status(self.payment.pk, PaymentStatus.SUCCESS)
        second = self.ledger.create_payment(
            user=self.user, method=PaymentMethod.ESEWA, amount=self.order.total_amount, order=self.order
        )
        with self.assertRaises(InvalidState):
            self.ledger.update_status(second.pk, PaymentStatus.SUCCESS)
        second.refresh_from_db()
        self.assertEqual(second.status, PaymentStatus.PENDING)
        self.assertEqual(Payment.objects.filter(order=self.order, status=PaymentStatus.SUCCESS).count(), 1)

    def test_refund_cancels_order(self):
        self.ledger.update_status(self.payment.pk, PaymentStatus.SUCCESS)
        payment = self.ledger.update_status(self.payment.pk, PaymentStatus.REFUNDED)
        self.assertIsNotNone(payment.refunded_at)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.REFUNDED)
        self.assertEqual(self.order.status, OrderStatus.CANCELLED)

    def test_refund_after_delivery_keeps_delivery_state(self):
        self.ledger.update_status(self.payment.pk, PaymentStatus.SUCCESS)
        Order.objects.filter(pk=self.order.pk).update(status=OrderStatus.DELIVERED)
        self.ledger.update_status(self.payment.pk, PaymentStatus.REFUNDED)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, OrderStatus.DELIVERED)
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.REFUNDED)

    def test_receipt_is_claimed_once(self):
        self.assertTrue(self.ledger.claim_receipt(self.payment.pk))
        self.assertFalse(self.ledger.claim_receipt(self.payment.pk))

    def test_initiation_failure_leaves_order_alone(self):
        self.ledger.mark_initiation_failed(self.payment.pk, "Khalti initiate failed: HTTP 503")
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.FAILED)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.PENDING)


class InitiatePaymentTests(PaymentFixtures, TestCase):
    def setUp(self):
        super().setUp()
        self.order = self.make_order()
        self.service = self.services.payment_service

    def test_initiate_records_correlation_id(self):
        with patch("payments.gateways.khalti.requests.post", return_value=self.khalti_initiated()) as post:
            payment, initiation = self.service.initiate(
                user=self.user, order_id=self.order.pk, method=PaymentMethod.KHALTI
            )
        self.assertEqual(payment.external_id, "pidx-1")
        self.assertEqual(payment.status, PaymentStatus.PENDING)
        self.assertIsNotNone(payment.initiated_at)
        self.assertEqual(initiation.redirect_url, "https://pay.khalti.test/?pidx=pidx-1")
        self.assertEqual(post.call_args.kwargs["json"]["amount"], 120000)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_ref, "pidx-1")

    def test_gateway_outage_closes_attempt_and_allows_retry(self):
        with patch("payments.gateways.khalti.requests.post", side_effect=requests.Timeout("slow")):
            with self.assertRaises(GatewayUnavailable):
                self.service.initiate(user=self.user, order_id=self.order.pk, method=PaymentMethod.KHALTI)
        failed = Payment.objects.get(order=self.order)
        self.assertEqual(failed.status, PaymentStatus.FAILED)
        self.assertIsNone(failed.external_id)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.PENDING)
        self.assertEqual(self.order.status, OrderStatus.PENDING)

        with patch("payments.gateways.khalti.requests.post", return_value=self.khalti_initiated("pidx-2")):
            retry, _ = self.service.initiate(user=self.user, order_id=self.order.pk, method=PaymentMethod.KHALTI)
        self.assertEqual(retry.external_id, "pidx-2")
        self.assertEqual(self.order.payments.count(), 2)

    def test_esewa_initiation_returns_form(self):
        payment, initiation = self.service.initiate(user=self.user, order_id=self.order.pk, method=PaymentMethod.ESEWA)
        self.assertEqual(payment.external_id, str(payment.pk))
        self.assertEqual(initiation.form_fields["total_amount"], "1200")

    def test_paid_order_cannot_be_charged_again(self):
        Order.objects.filter(pk=self.order.pk).update(payment_status=OrderPaymentStatus.PAID)
        with self.assertRaises(InvalidState):
            self.service.initiate(user=self.user, order_id=self.order.pk, method=PaymentMethod.KHALTI)
        self.assertFalse(Payment.objects.exists())

    def test_other_users_order_is_forbidden(self):
        mallory = self.make_user("mallory")
        with self.assertRaises(Forbidden):
            self.service.initiate(user=mallory, order_id=self.order.pk, method=PaymentMethod.KHALTI)

    def test_unknown_method(self):
        with self.assertRaises(ValidationFailed):
            self.service.initiate(user=self.user, order_id=self.order.pk, method="PAYPAL")


class CashOnDeliveryTests(PaymentFixtures, TestCase):
    def setUp(self):
        super().setUp()
        self.order = self.make_order(PaymentMethod.COD)
        self.service = self.services.payment_service

    def test_confirmation_then_collection(self):
        with self.captureOnCommitCallbacks(execute=True):
            payment, initiation = self.service.process_cash_on_delivery(user=self.user, order_id=self.order.pk)
        self.assertEqual(initiation.immediate_status, "PENDING_COLLECTION")
        self.assertTrue(payment.external_id.startswith("COD-"))
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, OrderStatus.CONFIRMED)
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.PENDING)
        self.notifier.payment_updated.assert_called_once()

        collected = self.service.collect_cash(payment_id=payment.pk, requester_is_admin=True)
        self.assertEqual(collected.status, PaymentStatus.SUCCESS)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.PAID)
        self.assertEqual(self.order.status, OrderStatus.CONFIRMED)

    def test_confirming_twice_reuses_the_payment(self):
        first, _ = self.service.process_cash_on_delivery(user=self.user, order_id=self.order.pk)
        second, _ = self.service.process_cash_on_delivery(user=self.user, order_id=self.order.pk)
        self.assertEqual(first.pk, second.pk)
        self.assertEqual(Payment.objects.count(), 1)

    def test_confirmation_queued_behind_another_sees_its_payment(self):
        real_lock = self.services.orders.lock_order
        calls, rival = [], []

        def lock_after_rival(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                # a second request wins the row lock while this one waits
                rival.append(self.service.process_cash_on_delivery(user=self.user, order_id=self.order.pk)[0])
            return real_lock(*args, **kwargs)

        with patch.object(self.services.orders, "lock_order", side_effect=lock_after_rival):
            mine, _ = self.service.process_cash_on_delivery(user=self.user, order_id=self.order.pk)

        self.assertEqual(len(calls), 2)
        self.assertEqual(mine.pk, rival[0].pk)
        self.assertEqual(Payment.objects.filter(order=self.order, method=PaymentMethod.COD).count(), 1)

    def test_confirming_after_collection_is_rejected(self):
        payment, _ = self.service.process_cash_on_delivery(user=self.user, order_id=self.order.pk)
        self.service.collect_cash(payment_id=payment.pk, requester_is_admin=True)
        with self.assertRaises(InvalidState):
            self.service.process_cash_on_delivery(user=self.user, order_id=self.order.pk)
        self.assertEqual(Payment.objects.filter(order=self.order).count(), 1)

    def test_collection_announces_the_paid_order(self):
        payment, _ = self.service.process_cash_on_delivery(user=self.user, order_id=self.order.pk)
        with self.captureOnCommitCallbacks(execute=True):
            self.service.collect_cash(payment_id=payment.pk, requester_is_admin=True)
        self.notifier.order_updated.assert_called_once()
        order = self.notifier.order_updated.call_args.args[0]
        self.assertEqual(order.payment_status, OrderPaymentStatus.PAID)
        self.assertEqual(self.notifier.order_updated.call_args.kwargs["previous_status"], OrderStatus.CONFIRMED)

    def test_confirmation_for_someone_elses_order_is_forbidden(self):
        intruder = self.make_user("mallory")
        with self.assertRaises(Forbidden):
            self.service.process_cash_on_delivery(user=intruder, order_id=self.order.pk)
        self.assertFalse(Payment.objects.exists())

    def test_wallet_order_cannot_switch_to_cash(self):
        wallet_order = self.make_order(PaymentMethod.KHALTI)
        with self.assertRaises(InvalidState):
            self.service.process_cash_on_delivery(user=self.user, order_id=wallet_order.pk)
        self.assertFalse(Payment.objects.filter(order=wallet_order).exists())

    def test_collection_is_admin_only(self):
        payment, _ = self.service.process_cash_on_delivery(user=self.user, order_id=self.order.pk)
        with self.assertRaises(Forbidden):
            self.service.collect_cash(payment_id=payment.pk, requester_is_admin=False)

    def test_cod_cannot_go_through_wallet_initiation(self):
        with self.assertRaises(ValidationFailed):
            self.service.initiate(user=self.user, order_id=self.order.pk, method=PaymentMethod.COD)


class RefundTests(PaymentFixtures, TestCase):
    def setUp(self):
        super().setUp()
        self.order = self.make_order()
        self.payment = self.services.payments.create_payment(
            user=self.user, method=PaymentMethod.KHALTI, amount=self.order.total_amount, order=self.order
        )
        self.service = self.services.payment_service

    def test_refund_requires_settled_payment(self):
        with self.assertRaises(InvalidState):
            self.service.refund(payment_id=self.payment.pk, requester_is_admin=True)

    def test_refund_records_reason(self):
        self.services.payments.update_status(self.payment.pk, PaymentStatus.SUCCESS)
        payment = self.service.refund(payment_id=self.payment.pk, requester_is_admin=True, reason="Wrong size")
        self.assertEqual(payment.status, PaymentStatus.REFUNDED)
        self.assertEqual(payment.metadata["refund"], {"reason": "Wrong size", "amount": "1200.00"})
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.REFUNDED)

    def test_partial_refund_amount_is_normalised(self):
        self.services.payments.update_status(self.payment.pk, PaymentStatus.SUCCESS)
        payment = self.service.refund(payment_id=self.payment.pk, requester_is_admin=True, amount="500")
        self.assertEqual(payment.metadata["refund"]["amount"], "500.00")

    def test_invalid_refund_amounts_are_rejected(self):
        self.services.payments.update_status(self.payment.pk, PaymentStatus.SUCCESS)
        for amount in ("abc", "5000", "0", "-10", "1e30"):
            with self.assertRaises(ValidationFailed) as ctx:
                self.service.refund(payment_id=self.payment.pk, requester_is_admin=True, amount=amount)
            self.assertEqual(ctx.exception.details["field"], "amount")
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.SUCCESS)
        self.assertNotIn("refund", self.payment.metadata)

    def test_refund_announces_the_cancelled_order(self):
        self.services.payments.update_status(self.payment.pk, PaymentStatus.SUCCESS)
        with self.captureOnCommitCallbacks(execute=True):
            self.service.refund(payment_id=self.payment.pk, requester_is_admin=True)
        self.notifier.order_updated.assert_called_once()
        order = self.notifier.order_updated.call_args.args[0]
        self.assertEqual(order.status, OrderStatus.CANCELLED)
        self.assertEqual(self.notifier.order_updated.call_args.kwargs["previous_status"], OrderStatus.CONFIRMED)

    def test_refund_is_admin_only(self):
        with self.assertRaises(Forbidden):
            self.service.refund(payment_id=self.payment.pk, requester_is_admin=False)


class DeferredPaymentTests(PaymentFixtures, TestCase):
    def draft(self, **extra):
        return {
            "items": [{"product_id": self.jersey.pk, "quantity": 2}],
            "shipping_address": ADDRESS,
            "shipping_cost": 100,
            **extra,
        }

    def test_draft_payment_has_no_order_yet(self):
        with patch("payments.gateways.khalti.requests.post", return_value=self.khalti_initiated("pidx-d")):
            payment, _ = self.services.payment_service.initiate_with_draft(
                user=self.user, method=PaymentMethod.KHALTI, draft=self.draft()
            )
        self.assertIsNone(payment.order_id)
        self.assertEqual(payment.amount, Decimal("1100.00"))
        self.assertEqual(payment.metadata["draft"]["shipping_cost"], "100.00")
        self.assertFalse(Order.objects.exists())
        self.jersey.refresh_from_db()
        self.assertEqual(self.jersey.stock, 10)

    def test_cod_needs_a_placed_order(self):
        with self.assertRaises(ValidationFailed):
            self.services.payment_service.initiate_with_draft(
                user=self.user, method=PaymentMethod.COD, draft=self.draft()
            )

    def test_draft_is_validated_up_front(self):
        with self.assertRaises(ValidationFailed):
            self.services.payment_service.initiate_with_draft(
                user=self.user, method=PaymentMethod.KHALTI, draft=self.draft(items=[])
            )
        self.assertFalse(Payment.objects.exists())
