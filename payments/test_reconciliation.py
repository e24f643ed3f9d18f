import base64
import json
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

import requests
from django.core import mail
from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone

from catalog.models import Product
from orders.models import Order, OrderPaymentStatus, OrderStatus, PaymentMethod
from storefront.errors import InvalidCallback, NotFound

from .gateways import Outcome
from .models import Payment, PaymentStatus
from .test_gateways import FakeResponse, esewa_signature
from .tests import PaymentFixtures

KHALTI_POST = "payments.gateways.khalti.requests.post"


def khalti_lookup(status="Completed", total_amount=120000, pidx="pidx-1"):
    return FakeResponse(200, {"pidx": pidx, "status": status, "total_amount": total_amount,
                              "transaction_id": "KTX-1" if status == "Completed" else None})


class ReconcileTests(PaymentFixtures, TestCase):
    def setUp(self):
        super().setUp()
        self.reconciliation = self.services.reconciliation
        self.order = self.make_order()
        with patch(KHALTI_POST, return_value=self.khalti_initiated("pidx-1")):
            self.payment, _ = self.services.payment_service.initiate(
                user=self.user, order_id=self.order.pk, method=PaymentMethod.KHALTI
            )

    def test_double_callback_confirms_once(self):
        with patch(KHALTI_POST, return_value=khalti_lookup()) as lookup:
            with self.captureOnCommitCallbacks(execute=True):
                first = self.reconciliation.handle_callback(PaymentMethod.KHALTI, {"pidx": "pidx-1", "status": "Completed"})
            with self.captureOnCommitCallbacks(execute=True):
                second = self.reconciliation.handle_callback(PaymentMethod.KHALTI, {"pidx": "pidx-1", "status": "Completed"})

        self.assertEqual((first.outcome, first.changed), (Outcome.COMPLETED, True))
        self.assertEqual((second.outcome, second.changed), (Outcome.COMPLETED, False))
        self.assertEqual(second.payment.status, PaymentStatus.SUCCESS)
        # settled payments are answered locally
        self.assertEqual(lookup.call_count, 1)

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, OrderStatus.CONFIRMED)
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.PAID)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.transaction_id, "KTX-1")
        self.assertTrue(self.payment.metadata["receipt_sent"])
        self.notifier.payment_updated.assert_called_once()

        # customer receipt and admin notification, once
        self.assertEqual(len(mail.outbox), 2)
        self.assertEqual(mail.outbox[0].to, ["alice@example.com"])
        self.assertEqual(mail.outbox[1].to, ["ops@example.com"])

    def test_verify_timeout_leaves_everything_pending(self):
        with patch(KHALTI_POST, side_effect=requests.Timeout("slow")):
            with self.captureOnCommitCallbacks(execute=True):
                result = self.reconciliation.reconcile("pidx-1")

        self.assertEqual(result.outcome, Outcome.PENDING)
        self.assertFalse(result.changed)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.PENDING)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.PENDING)
        self.notifier.payment_updated.assert_called_once()

        with patch(KHALTI_POST, return_value=self.khalti_initiated("pidx-2")):
            retry, _ = self.services.payment_service.initiate(
                user=self.user, order_id=self.order.pk, method=PaymentMethod.KHALTI
            )
        self.assertEqual(retry.status, PaymentStatus.PENDING)
        self.assertEqual(retry.external_id, "pidx-2")

    def test_cancelled_at_provider(self):
        with patch(KHALTI_POST, return_value=khalti_lookup("User canceled")):
            result = self.reconciliation.reconcile("pidx-1")
        self.assertEqual(result.outcome, Outcome.FAILED)
        self.assertEqual(result.payment.failure_reason, "User canceled")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.FAILED)
        self.assertEqual(self.order.status, OrderStatus.PENDING)
        self.assertEqual(len(mail.outbox), 0)

    def test_amount_mismatch_fails_payment(self):
        with patch(KHALTI_POST, return_value=khalti_lookup(total_amount=1000)):
            result = self.reconciliation.reconcile("pidx-1")
        self.assertEqual(result.outcome, Outcome.FAILED)
        self.order.refresh_from_db()
        self.assertNotEqual(self.order.payment_status, OrderPaymentStatus.PAID)

    def test_unknown_correlation_id(self):
        with patch(KHALTI_POST) as lookup:
            with self.assertRaises(NotFound):
                self.reconciliation.handle_callback(PaymentMethod.KHALTI, {"pidx": "nope"})
        lookup.assert_not_called()
        self.assertEqual(Payment.objects.count(), 1)

    def test_second_success_is_logged_and_left_pending(self):
        other = self.services.payments.create_payment(
            user=self.user, method=PaymentMethod.ESEWA, amount=self.order.total_amount, order=self.order
        )
        self.services.payments.update_status(other.pk, PaymentStatus.SUCCESS)

        with patch(KHALTI_POST, return_value=khalti_lookup()):
            with self.assertLogs("payments.reconciliation", level="ERROR"):
                result = self.reconciliation.reconcile("pidx-1")
        self.assertEqual(result.outcome, Outcome.PENDING)
        self.assertEqual(result.payment.status, PaymentStatus.PENDING)

    def test_rejected_second_success_announces_nothing(self):
        other = self.services.payments.create_payment(
            user=self.user, method=PaymentMethod.ESEWA, amount=self.order.total_amount, order=self.order
        )
        self.services.payments.update_status(other.pk, PaymentStatus.SUCCESS)

        with patch(KHALTI_POST, return_value=khalti_lookup()):
            with self.assertLogs("payments.reconciliation", level="ERROR"):
                with self.captureOnCommitCallbacks(execute=True):
                    self.reconciliation.reconcile("pidx-1")
        self.notifier.order_updated.assert_not_called()

    def test_success_announces_the_confirmed_order(self):
        with patch(KHALTI_POST, return_value=khalti_lookup()):
            with self.captureOnCommitCallbacks(execute=True):
                self.reconciliation.reconcile("pidx-1")
        self.notifier.order_updated.assert_called_once()
        order = self.notifier.order_updated.call_args.args[0]
        self.assertEqual(order.status, OrderStatus.CONFIRMED)
        self.assertEqual(order.payment_status, OrderPaymentStatus.PAID)
        self.assertEqual(self.notifier.order_updated.call_args.kwargs["previous_status"], OrderStatus.PENDING)

    def test_failure_announces_the_order(self):
        with patch(KHALTI_POST, return_value=khalti_lookup("Expired")):
            with self.captureOnCommitCallbacks(execute=True):
                self.reconciliation.reconcile("pidx-1")
        self.notifier.order_updated.assert_called_once()
        order = self.notifier.order_updated.call_args.args[0]
        self.assertEqual(order.payment_status, OrderPaymentStatus.FAILED)
        self.assertEqual(self.notifier.order_updated.call_args.kwargs["previous_status"], OrderStatus.PENDING)

    def test_pending_sweep(self):
        Payment.objects.filter(pk=self.payment.pk).update(updated_at=timezone.now() - timedelta(minutes=10))
        cod_order = self.make_order(PaymentMethod.COD)
        cod, _ = self.services.payment_service.process_cash_on_delivery(user=self.user, order_id=cod_order.pk)
        Payment.objects.filter(pk=cod.pk).update(updated_at=timezone.now() - timedelta(minutes=10))

        self.assertEqual(self.reconciliation.pending_correlation_ids(older_than_minutes=5), ["pidx-1"])
        with patch(KHALTI_POST, return_value=khalti_lookup()):
            results = self.reconciliation.reconcile_pending(older_than_minutes=5)
        self.assertEqual([r.payment.status for r in results], [PaymentStatus.SUCCESS])


class EsewaCallbackTests(PaymentFixtures, TestCase):
    def setUp(self):
        super().setUp()
        self.order = self.make_order()
        self.payment, _ = self.services.payment_service.initiate(
            user=self.user, order_id=self.order.pk, method=PaymentMethod.ESEWA
        )

    def callback(self, **overrides):
        body = {
            "transaction_code": "000AWEO",
            "status": "COMPLETE",
            "total_amount": "1200.0",
            "transaction_uuid": self.payment.external_id,
            "product_code": "EPAYTEST",
            "signed_field_names": "transaction_code,status,total_amount,transaction_uuid,product_code,signed_field_names",
        }
        body["signature"] = esewa_signature(",".join(f"{k}={body[k]}" for k in body["signed_field_names"].split(",")))
        body.update(overrides)
        return {"data": base64.b64encode(json.dumps(body).encode()).decode()}

    def test_signed_callback_is_reverified(self):
        status = FakeResponse(200, {"status": "COMPLETE", "ref_id": "0007VJ7", "total_amount": 1200.0})
        with patch("payments.gateways.esewa.requests.get", return_value=status) as get:
            result = self.services.reconciliation.handle_callback(PaymentMethod.ESEWA, self.callback())
        get.assert_called_once()
        self.assertEqual(result.payment.status, PaymentStatus.SUCCESS)
        self.assertEqual(result.payment.transaction_id, "0007VJ7")

    def test_callback_claiming_success_is_not_trusted(self):
        status = FakeResponse(200, {"status": "PENDING"})
        with patch("payments.gateways.esewa.requests.get", return_value=status):
            result = self.services.reconciliation.handle_callback(PaymentMethod.ESEWA, self.callback())
        self.assertEqual(result.outcome, Outcome.PENDING)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.PENDING)

    def test_forged_signature_changes_nothing(self):
        with patch("payments.gateways.esewa.requests.get") as get:
            with self.assertRaises(InvalidCallback):
                self.services.reconciliation.handle_callback(PaymentMethod.ESEWA, self.callback(signature="Zm9yZ2Vk"))
        get.assert_not_called()
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.PENDING)


class DeferredReconcileTests(PaymentFixtures, TestCase):
    def setUp(self):
        super().setUp()
        draft = {
            "items": [{"product_id": self.jersey.pk, "quantity": 2}],
            "shipping_address": {"city": "Pokhara"},
            "shipping_cost": 100,
        }
        with patch(KHALTI_POST, return_value=self.khalti_initiated("pidx-d")):
            self.payment, _ = self.services.payment_service.initiate_with_draft(
                user=self.user, method=PaymentMethod.KHALTI, draft=draft
            )

    def test_success_creates_order_at_current_prices(self):
        Product.objects.filter(pk=self.jersey.pk).update(sale_price=Decimal("450.00"))
        with patch(KHALTI_POST, return_value=khalti_lookup(total_amount=110000, pidx="pidx-d")):
            result = self.services.reconciliation.reconcile("pidx-d")

        self.assertEqual(result.payment.status, PaymentStatus.SUCCESS)
        order = Order.objects.get()
        self.assertEqual(result.payment.order_id, order.pk)
        self.assertEqual(order.total_amount, Decimal("1000.00"))
        self.assertEqual(result.payment.metadata["repriced_total"], "1000.00")
        self.assertEqual(order.payment_status, OrderPaymentStatus.PAID)
        self.assertEqual(order.status, OrderStatus.CONFIRMED)
        self.assertEqual(order.payment_ref, "pidx-d")
        self.assertEqual(Product.objects.get(pk=self.jersey.pk).stock, 8)

    def test_sold_out_draft_is_flagged_for_refund(self):
        Product.objects.filter(pk=self.jersey.pk).update(stock=1)
        with patch(KHALTI_POST, return_value=khalti_lookup(total_amount=110000, pidx="pidx-d")):
            with self.assertLogs("payments.ledger", level="ERROR"):
                result = self.services.reconciliation.reconcile("pidx-d")

        self.assertEqual(result.outcome, Outcome.FAILED)
        self.assertTrue(result.payment.metadata["requires_refund"])
        self.assertFalse(Order.objects.exists())
        self.assertEqual(Product.objects.get(pk=self.jersey.pk).stock, 1)


class ReconcileCommandTests(PaymentFixtures, TestCase):
    def test_no_pending_payments(self):
        out = StringIO()
        call_command("reconcile_pending_payments", "--sleep", "0", stdout=out)
        self.assertIn("No pending payments", out.getvalue())

    def test_settles_stale_payments(self):
        order = self.make_order()
        payment = Payment.objects.create(
            user=self.user, order=order, method=PaymentMethod.KHALTI, amount=order.total_amount, external_id="pidx-old"
        )
        Payment.objects.filter(pk=payment.pk).update(updated_at=timezone.now() - timedelta(minutes=30))

        out = StringIO()
        with patch(KHALTI_POST, return_value=khalti_lookup(pidx="pidx-old")):
            call_command("reconcile_pending_payments", "--sleep", "0", stdout=out)

        self.assertIn("pidx-old", out.getvalue())
        payment.refresh_from_db()
        self.assertEqual(payment.status, PaymentStatus.SUCCESS)
