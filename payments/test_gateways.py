import base64
import hashlib
import hmac
import json
import uuid
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import patch

import requests
from django.test import SimpleTestCase

from storefront.errors import GatewayRejected, GatewayUnavailable, InvalidCallback, ValidationFailed

from .gateways import CashOnDeliveryGateway, EsewaGateway, GatewayRegistry, KhaltiGateway, Outcome

KHALTI_CONFIG = {
    "BASE_URL": "https://khalti.test/api/v2",
    "SECRET_KEY": "test-khalti-secret",
    "RETURN_URL": "https://api.example.com/api/payments/khalti/callback",
    "WEBSITE_URL": "https://shop.example.com",
}
ESEWA_CONFIG = {
    "FORM_URL": "https://esewa.test/api/epay/main/v2/form",
    "STATUS_URL": "https://esewa.test/api/epay/transaction/status/",
    "PRODUCT_CODE": "EPAYTEST",
    "SECRET_KEY": "8gBm/:&EnhH.1/q",
    "SUCCESS_URL": "https://api.example.com/api/payments/esewa/success",
    "FAILURE_URL": "https://shop.example.com/payment/failed",
}


class FakeResponse:
    def __init__(self, status_code=200, data=None, text=""):
        self.status_code = status_code
        self._data = data
        self.text = text or json.dumps(data)

    def json(self):
        if self._data is None:
            raise ValueError("no json")
        return self._data


def make_payment(amount="1200.00", external_id=None, order_id=None):
    return SimpleNamespace(pk=uuid.uuid4(), amount=Decimal(amount), external_id=external_id, order_id=order_id)


def esewa_signature(message, secret=ESEWA_CONFIG["SECRET_KEY"]):
    digest = hmac.new(secret.encode(), message.encode(), hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


class KhaltiGatewayTests(SimpleTestCase):
    def setUp(self):
        self.gateway = KhaltiGateway(KHALTI_CONFIG, timeout=5)

    def test_initiate_posts_amount_in_paisa(self):
        payment = make_payment("1200.50", order_id=uuid.uuid4())
        reply = {"pidx": "HT6o6PEZRWFJ5ygavzHWd5", "payment_url": "https://pay.khalti.test/?pidx=HT6o",
                 "expires_at": "2026-10-19T13:00:00+05:45"}
        with patch("payments.gateways.khalti.requests.post", return_value=FakeResponse(200, reply)) as post:
            initiation = self.gateway.initiate(payment, customer={"name": "Alice", "email": "a@example.com"})

        self.assertEqual(initiation.correlation_id, "HT6o6PEZRWFJ5ygavzHWd5")
        self.assertEqual(initiation.redirect_url, reply["payment_url"])
        self.assertEqual(initiation.expires_at, reply["expires_at"])
        args, kwargs = post.call_args
        self.assertEqual(args[0], "https://khalti.test/api/v2/epayment/initiate/")
        self.assertEqual(kwargs["headers"]["Authorization"], "Key test-khalti-secret")
        self.assertEqual(kwargs["timeout"], 5)
        self.assertEqual(kwargs["json"]["amount"], 120050)
        self.assertEqual(kwargs["json"]["purchase_order_id"], str(payment.pk))
        self.assertEqual(kwargs["json"]["return_url"], KHALTI_CONFIG["RETURN_URL"])

    def test_initiate_transport_errors_are_unavailable(self):
        for side_effect in (requests.Timeout("slow"), requests.ConnectionError("down")):
            with self.subTest(error=side_effect):
                with patch("payments.gateways.khalti.requests.post", side_effect=side_effect):
                    with self.assertRaises(GatewayUnavailable):
                        self.gateway.initiate(make_payment())

    def test_initiate_5xx_is_unavailable_and_4xx_rejected(self):
        with patch("payments.gateways.khalti.requests.post", return_value=FakeResponse(502, text="bad gateway")):
            with self.assertRaises(GatewayUnavailable):
                self.gateway.initiate(make_payment())
        detail = {"amount": ["Amount should be greater than Rs. 10"]}
        with patch("payments.gateways.khalti.requests.post", return_value=FakeResponse(400, detail)):
            with self.assertRaises(GatewayRejected) as ctx:
                self.gateway.initiate(make_payment("5"))
        self.assertEqual(ctx.exception.details["response"], detail)

    def test_initiate_without_pidx_is_rejected(self):
        with patch("payments.gateways.khalti.requests.post", return_value=FakeResponse(200, {"detail": "?"})):
            with self.assertRaises(GatewayRejected):
                self.gateway.initiate(make_payment())

    def _lookup(self, reply=None, side_effect=None, amount="1200.00"):
        payment = make_payment(amount, external_id="pidx-1")
        with patch("payments.gateways.khalti.requests.post", return_value=reply, side_effect=side_effect) as post:
            verification = self.gateway.verify(payment)
        return verification, post

    def test_completed_lookup(self):
        verification, post = self._lookup(FakeResponse(200, {
            "pidx": "pidx-1", "status": "Completed", "total_amount": 120000, "transaction_id": "GFq9PFS7b2iYvL8Lir9oXe",
        }))
        self.assertEqual(verification.outcome, Outcome.COMPLETED)
        self.assertEqual(verification.transaction_id, "GFq9PFS7b2iYvL8Lir9oXe")
        self.assertEqual(post.call_args.kwargs["json"], {"pidx": "pidx-1"})

    def test_completed_lookup_with_wrong_amount_fails(self):
        verification, _ = self._lookup(FakeResponse(200, {"status": "Completed", "total_amount": 1000}))
        self.assertEqual(verification.outcome, Outcome.FAILED)
        self.assertEqual(verification.reason, "Amount mismatch")

    def test_status_mapping(self):
        cases = {
            "Expired": Outcome.FAILED,
            "User canceled": Outcome.FAILED,
            "Refunded": Outcome.FAILED,
            "Pending": Outcome.PENDING,
            "Initiated": Outcome.PENDING,
            "Partially Refunded": Outcome.PENDING,
        }
        for status, expected in cases.items():
            with self.subTest(status=status):
                verification, _ = self._lookup(FakeResponse(200, {"status": status, "total_amount": 120000}))
                self.assertEqual(verification.outcome, expected)

    def test_lookup_trouble_stays_pending(self):
        for kwargs in ({"side_effect": requests.Timeout("slow")}, {"reply": FakeResponse(503, text="maintenance")}):
            with self.subTest(**kwargs):
                verification, _ = self._lookup(**kwargs)
                self.assertEqual(verification.outcome, Outcome.PENDING)

    def test_parse_callback(self):
        self.assertEqual(self.gateway.parse_callback({"pidx": "abc", "status": "Completed"}), "abc")
        with self.assertRaises(InvalidCallback):
            self.gateway.parse_callback({"status": "Completed"})


class EsewaGatewayTests(SimpleTestCase):
    def setUp(self):
        self.gateway = EsewaGateway(ESEWA_CONFIG, timeout=5)

    def test_initiate_builds_signed_form(self):
        payment = make_payment("1200.00")
        initiation = self.gateway.initiate(payment)
        fields = initiation.form_fields

        self.assertEqual(initiation.correlation_id, str(payment.pk))
        self.assertEqual(initiation.redirect_url, ESEWA_CONFIG["FORM_URL"])
        self.assertEqual(fields["total_amount"], "1200")
        self.assertEqual(fields["transaction_uuid"], str(payment.pk))
        self.assertEqual(fields["signed_field_names"], "total_amount,transaction_uuid,product_code")
        expected = esewa_signature(f"total_amount=1200,transaction_uuid={payment.pk},product_code=EPAYTEST")
        self.assertEqual(fields["signature"], expected)

    def test_fractional_amount_keeps_paisa(self):
        fields = self.gateway.initiate(make_payment("99.5")).form_fields
        self.assertEqual(fields["total_amount"], "99.50")

    def _status(self, reply=None, side_effect=None, amount="1200.00"):
        payment = make_payment(amount, external_id="tx-uuid-1")
        with patch("payments.gateways.esewa.requests.get", return_value=reply, side_effect=side_effect) as get:
            verification = self.gateway.verify(payment)
        return verification, get

    def test_complete_status(self):
        verification, get = self._status(FakeResponse(200, {
            "product_code": "EPAYTEST", "transaction_uuid": "tx-uuid-1", "total_amount": 1200.0,
            "status": "COMPLETE", "ref_id": "0001TS9",
        }))
        self.assertEqual(verification.outcome, Outcome.COMPLETED)
        self.assertEqual(verification.transaction_id, "0001TS9")
        self.assertEqual(get.call_args.kwargs["params"], {
            "product_code": "EPAYTEST", "total_amount": "1200", "transaction_uuid": "tx-uuid-1",
        })
        self.assertEqual(get.call_args.kwargs["timeout"], 5)

    def test_status_mapping(self):
        cases = {
            "CANCELED": Outcome.FAILED,
            "NOT_FOUND": Outcome.FAILED,
            "FULL_REFUND": Outcome.FAILED,
            "PENDING": Outcome.PENDING,
            "AMBIGUOUS": Outcome.PENDING,
            "PARTIAL_REFUND": Outcome.PENDING,
        }
        for status, expected in cases.items():
            with self.subTest(status=status):
                verification, _ = self._status(FakeResponse(200, {"status": status}))
                self.assertEqual(verification.outcome, expected)

    def test_complete_with_wrong_amount_fails(self):
        verification, _ = self._status(FakeResponse(200, {"status": "COMPLETE", "total_amount": "1,000.0"}))
        self.assertEqual(verification.outcome, Outcome.FAILED)

    def test_status_trouble_stays_pending(self):
        for kwargs in ({"side_effect": requests.ConnectionError("down")}, {"reply": FakeResponse(500, text="oops")}):
            with self.subTest(**kwargs):
                verification, _ = self._status(**kwargs)
                self.assertEqual(verification.outcome, Outcome.PENDING)

    def _callback(self, body):
        return {"data": base64.b64encode(json.dumps(body).encode()).decode()}

    def _signed_body(self, **overrides):
        body = {
            "transaction_code": "000AWEO",
            "status": "COMPLETE",
            "total_amount": "1200.0",
            "transaction_uuid": "tx-uuid-1",
            "product_code": "EPAYTEST",
            "signed_field_names": "transaction_code,status,total_amount,transaction_uuid,product_code,signed_field_names",
        }
        message = ",".join(f"{k}={body[k]}" for k in body["signed_field_names"].split(","))
        body["signature"] = esewa_signature(message)
        body.update(overrides)
        return body

    def test_parse_valid_callback(self):
        self.assertEqual(self.gateway.parse_callback(self._callback(self._signed_body())), "tx-uuid-1")

    def test_forged_callback_is_rejected(self):
        forged = self._signed_body(total_amount="1.0")
        with self.assertRaises(InvalidCallback):
            self.gateway.parse_callback(self._callback(forged))

    def test_garbage_callback_is_rejected(self):
        for payload in ({}, {"data": "%%%not-base64"}, {"data": base64.b64encode(b"[1, 2]").decode()}):
            with self.subTest(payload=payload):
                with self.assertRaises(InvalidCallback):
                    self.gateway.parse_callback(payload)


class CashOnDeliveryGatewayTests(SimpleTestCase):
    def test_cash_is_never_settled_by_lookup(self):
        gateway = CashOnDeliveryGateway()
        payment = make_payment()
        initiation = gateway.initiate(payment)
        self.assertEqual(initiation.correlation_id, f"COD-{payment.pk.hex}")
        self.assertEqual(initiation.immediate_status, "PENDING_COLLECTION")
        self.assertEqual(gateway.verify(payment).outcome, Outcome.PENDING)
        with self.assertRaises(InvalidCallback):
            gateway.parse_callback({"anything": "x"})


class GatewayRegistryTests(SimpleTestCase):
    def test_unknown_method(self):
        registry = GatewayRegistry()
        registry.register("COD", CashOnDeliveryGateway())
        self.assertIn("COD", registry)
        with self.assertRaises(ValidationFailed):
            registry.get("PAYPAL")
