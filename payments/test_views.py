import base64
import json
from unittest.mock import patch

import requests
from django.test import TestCase
from django.urls import reverse

from orders.models import Order, OrderPaymentStatus, OrderStatus, PaymentMethod

from .models import Payment, PaymentStatus
from .test_gateways import FakeResponse
from .tests import PaymentFixtures

KHALTI_POST = "payments.gateways.khalti.requests.post"


class PaymentApiTests(PaymentFixtures, TestCase):
    def setUp(self):
        super().setUp()
        self.order = self.make_order()

    def _post(self, url, payload=None):
        return self.client.post(url, data=json.dumps(payload or {}), content_type="application/json")

    def _initiate(self, pidx="pidx-1"):
        self.client.force_login(self.user)
        with patch(KHALTI_POST, return_value=self.khalti_initiated(pidx)):
            return self._post(reverse("payments:initiate"), {"order_id": str(self.order.pk), "method": "KHALTI"})

    def test_initiate(self):
        resp = self._initiate()
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["correlation_id"], "pidx-1")
        self.assertEqual(body["redirect_url"], "https://pay.khalti.test/?pidx=pidx-1")
        self.assertEqual(body["payment"]["status"], "PENDING")

    def test_initiate_requires_login(self):
        resp = self._post(reverse("payments:initiate"), {"order_id": str(self.order.pk), "method": "KHALTI"})
        self.assertEqual(resp.status_code, 401)

    def test_initiate_missing_fields(self):
        self.client.force_login(self.user)
        resp = self._post(reverse("payments:initiate"), {"method": "KHALTI"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["details"]["missing"], ["order_id"])

    def test_initiate_gateway_timeout_is_503(self):
        self.client.force_login(self.user)
        with patch(KHALTI_POST, side_effect=requests.Timeout("slow")):
            resp = self._post(reverse("payments:initiate"), {"order_id": str(self.order.pk), "method": "KHALTI"})
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json()["code"], "gateway_unavailable")
        self.assertEqual(Payment.objects.get().status, PaymentStatus.FAILED)

    def test_khalti_callback_redirects_to_success(self):
        self._initiate()
        self.client.logout()
        lookup = FakeResponse(200, {"pidx": "pidx-1", "status": "Completed", "total_amount": 120000,
                                    "transaction_id": "KTX-1"})
        with patch(KHALTI_POST, return_value=lookup):
            resp = self.client.get(reverse("payments:khalti_callback"), {"pidx": "pidx-1", "status": "Completed"})

        self.assertEqual(resp.status_code, 302)
        self.assertEqual(
            resp["Location"], f"https://shop.example.com/order-success?orderId={self.order.pk}&payment=khalti"
        )
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.PAID)

    def test_khalti_callback_pending_lookup(self):
        self._initiate()
        with patch(KHALTI_POST, return_value=FakeResponse(200, {"status": "Pending"})):
            resp = self.client.get(reverse("payments:khalti_callback"), {"pidx": "pidx-1"})
        self.assertTrue(resp["Location"].startswith("https://shop.example.com/payment/pending?"))

    def test_forged_esewa_callback_changes_nothing(self):
        self.client.force_login(self.user)
        resp = self._post(reverse("payments:initiate"), {"order_id": str(self.order.pk), "method": "ESEWA"})
        payment_id = resp.json()["payment"]["id"]
        forged = {
            "status": "COMPLETE",
            "total_amount": "1200.0",
            "transaction_uuid": payment_id,
            "signed_field_names": "status,total_amount,transaction_uuid",
            "signature": base64.b64encode(b"not-a-signature").decode(),
        }
        data = base64.b64encode(json.dumps(forged).encode()).decode()

        with patch("payments.gateways.esewa.requests.get") as get:
            resp = self.client.get(reverse("payments:esewa_success"), {"data": data})
        get.assert_not_called()
        self.assertEqual(resp["Location"], "https://shop.example.com/payment/failed?error=invalid_callback")
        self.assertEqual(Payment.objects.get(pk=payment_id).status, PaymentStatus.PENDING)

    def test_verify_is_owner_only(self):
        self._initiate()
        self.client.force_login(self.make_user("bob"))
        with patch(KHALTI_POST) as lookup:
            resp = self._post(reverse("payments:verify"), {"pidx": "pidx-1"})
        self.assertEqual(resp.status_code, 403)
        lookup.assert_not_called()

    def test_verify(self):
        self._initiate()
        with patch(KHALTI_POST, return_value=FakeResponse(200, {"status": "Expired"})):
            resp = self._post(reverse("payments:verify"), {"correlation_id": "pidx-1"})
        body = resp.json()
        self.assertEqual(body["outcome"], "Failed")
        self.assertTrue(body["changed"])
        self.assertEqual(body["payment"]["failure_reason"], "Expired")

    def test_order_payments(self):
        self._initiate()
        resp = self.client.get(reverse("payments:order_payments", args=[self.order.pk]))
        body = resp.json()
        self.assertEqual(body["order"]["id"], str(self.order.pk))
        self.assertEqual([p["correlation_id"] for p in body["payments"]], ["pidx-1"])


class CashOnDeliveryApiTests(PaymentFixtures, TestCase):
    def setUp(self):
        super().setUp()
        self.order = self.make_order(PaymentMethod.COD)

    def _post(self, url, payload=None):
        return self.client.post(url, data=json.dumps(payload or {}), content_type="application/json")

    def test_cash_flow(self):
        self.client.force_login(self.user)
        resp = self._post(reverse("payments:cod_process"), {"order_id": str(self.order.pk)})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "PENDING_COLLECTION")
        payment_id = resp.json()["payment"]["id"]
        self.assertEqual(Order.objects.get(pk=self.order.pk).status, OrderStatus.CONFIRMED)

        resp = self._post(reverse("payments:collect", args=[payment_id]))
        self.assertEqual(resp.status_code, 403)

        self.client.force_login(self.admin)
        resp = self._post(reverse("payments:collect", args=[payment_id]))
        self.assertEqual(resp.json()["payment"]["status"], "SUCCESS")
        self.assertEqual(Order.objects.get(pk=self.order.pk).payment_status, OrderPaymentStatus.PAID)

        resp = self._post(reverse("payments:refund", args=[payment_id]), {"reason": "Returned"})
        self.assertEqual(resp.json()["payment"]["status"], "REFUNDED")
        order = Order.objects.get(pk=self.order.pk)
        self.assertEqual(order.payment_status, OrderPaymentStatus.REFUNDED)
        self.assertEqual(order.status, OrderStatus.CANCELLED)

    def test_refund_of_pending_cash_is_409(self):
        payment, _ = self.services.payment_service.process_cash_on_delivery(user=self.user, order_id=self.order.pk)
        self.client.force_login(self.admin)
        resp = self._post(reverse("payments:refund", args=[payment.pk]))
        self.assertEqual(resp.status_code, 409)

    def test_refund_amount_above_the_payment_is_400(self):
        payment, _ = self.services.payment_service.process_cash_on_delivery(user=self.user, order_id=self.order.pk)
        self.services.payment_service.collect_cash(payment_id=payment.pk, requester_is_admin=True)
        self.client.force_login(self.admin)
        resp = self._post(reverse("payments:refund", args=[payment.pk]), {"amount": "99999"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["details"]["field"], "amount")
        self.assertEqual(Payment.objects.get(pk=payment.pk).status, PaymentStatus.SUCCESS)
