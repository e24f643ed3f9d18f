import base64
import hashlib
import hmac
import json
import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

import requests
from requests import RequestException

from storefront.errors import InvalidCallback

from .base import Initiation, Outcome, PaymentGateway, Verification

logger = logging.getLogger(__name__)

SIGNED_FIELDS = "total_amount,transaction_uuid,product_code"

STATUS_MAP = {
    "COMPLETE": Outcome.COMPLETED,
    "CANCELED": Outcome.FAILED,
    "NOT_FOUND": Outcome.FAILED,
    "FULL_REFUND": Outcome.FAILED,
}


def _amount_str(amount) -> str:
    q = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    s = format(q, "f")
    return s[:-3] if s.endswith(".00") else s


def _parse_amount(value):
    try:
        return Decimal(str(value).replace(",", ""))
    except (InvalidOperation, ValueError):
        return None


class EsewaGateway(PaymentGateway):
    """eSewa ePay v2: a signed form posted by the browser, status check by ``transaction_uuid``."""

    method = "ESEWA"

    def sign(self, message: str) -> str:
        key = (self.config.get("SECRET_KEY") or "").encode("utf-8")
        digest = hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()
        return base64.b64encode(digest).decode("utf-8")

    def initiate(self, payment, return_url="", customer=None) -> Initiation:
        total = _amount_str(payment.amount)
        uuid = str(payment.pk)
        product_code = self.config.get("PRODUCT_CODE", "EPAYTEST")
        fields = {
            "amount": total,
            "tax_amount": "0",
            "total_amount": total,
            "transaction_uuid": uuid,
            "product_code": product_code,
            "product_service_charge": "0",
            "product_delivery_charge": "0",
            "success_url": self.config.get("SUCCESS_URL", ""),
            "failure_url": self.config.get("FAILURE_URL", ""),
            "signed_field_names": SIGNED_FIELDS,
        }
        fields["signature"] = self.sign(
            f"total_amount={total},transaction_uuid={uuid},product_code={product_code}"
        )
        return Initiation(
            correlation_id=uuid,
            redirect_url=self.config.get("FORM_URL", ""),
            form_fields=fields,
            response={"form_url": self.config.get("FORM_URL", ""), "fields": fields},
        )

    def verify(self, payment) -> Verification:
        params = {
            "product_code": self.config.get("PRODUCT_CODE", "EPAYTEST"),
            "total_amount": _amount_str(payment.amount),
            "transaction_uuid": payment.external_id or str(payment.pk),
        }
        try:
            resp = requests.get(self.config.get("STATUS_URL", ""), params=params, timeout=self.timeout)
        except RequestException as e:
            logger.warning("eSewa status check for %s failed: %s", params["transaction_uuid"], e)
            return Verification(Outcome.PENDING, reason=f"eSewa status request failed: {e}")
        try:
            data = resp.json()
        except ValueError:
            data = None
        if resp.status_code != 200 or not isinstance(data, dict):
            logger.warning("eSewa status check for %s returned HTTP %s", params["transaction_uuid"], resp.status_code)
            return Verification(Outcome.PENDING, reason=f"eSewa status HTTP {resp.status_code}")

        status = str(data.get("status", "")).upper()
        outcome = STATUS_MAP.get(status, Outcome.PENDING)
        reason = "" if outcome == Outcome.COMPLETED else status
        if outcome == Outcome.COMPLETED and "total_amount" in data:
            paid = _parse_amount(data.get("total_amount"))
            if paid is None or paid != Decimal(str(payment.amount)):
                logger.error("eSewa amount mismatch for %s: got %s expected %s",
                             params["transaction_uuid"], data.get("total_amount"), payment.amount)
                outcome, reason = Outcome.FAILED, "Amount mismatch"
        return Verification(
            outcome,
            transaction_id=str(data.get("ref_id") or ""),
            response=data,
            reason=reason,
        )

    def parse_callback(self, payload) -> str:
        encoded = (payload or {}).get("data")
        if not encoded:
            raise InvalidCallback("Missing data")
        try:
            # query decoding turns "+" into spaces
            raw = base64.b64decode(str(encoded).replace(" ", "+"), validate=True)
            body = json.loads(raw.decode("utf-8"))
        except ValueError:
            raise InvalidCallback("Undecodable callback data")
        if not isinstance(body, dict):
            raise InvalidCallback("Undecodable callback data")

        names = [n for n in str(body.get("signed_field_names", "")).split(",") if n]
        if not names or any(n not in body for n in names) or "transaction_uuid" not in body:
            raise InvalidCallback("Callback is missing signed fields")
        message = ",".join(f"{n}={body[n]}" for n in names)
        if not hmac.compare_digest(self.sign(message), str(body.get("signature", ""))):
            logger.warning("eSewa callback signature mismatch for %s", body.get("transaction_uuid"))
            raise InvalidCallback("Signature mismatch")
        return str(body["transaction_uuid"])
