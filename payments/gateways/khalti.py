import logging
from decimal import ROUND_HALF_UP, Decimal

import requests
from requests import RequestException

from storefront.errors import GatewayError, GatewayRejected, GatewayUnavailable, InvalidCallback

from .base import Initiation, Outcome, PaymentGateway, Verification

logger = logging.getLogger(__name__)

STATUS_MAP = {
    "Completed": Outcome.COMPLETED,
    "Expired": Outcome.FAILED,
    "User canceled": Outcome.FAILED,
    "Refunded": Outcome.FAILED,
}


def to_paisa(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class KhaltiGateway(PaymentGateway):
    """Khalti ePayment v2: initiate returns a hosted payment page, lookup by ``pidx``."""

    method = "KHALTI"

    def _headers(self) -> dict:
        return {
            "Authorization": f"Key {self.config.get('SECRET_KEY', '')}",
            "Content-Type": "application/json",
        }

    def _post(self, action: str, payload: dict) -> dict:
        url = f"{self.config.get('BASE_URL', '').rstrip('/')}/epayment/{action}/"
        try:
            resp = requests.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
        except RequestException as e:
            raise GatewayUnavailable(f"Khalti {action} request failed: {e}")
        try:
            data = resp.json()
        except ValueError:
            data = {"raw": resp.text[:800]}
        if resp.status_code == 200:
            if not isinstance(data, dict):
                raise GatewayRejected(f"Khalti {action} returned an unexpected body")
            return data
        if resp.status_code >= 500:
            raise GatewayUnavailable(f"Khalti {action} failed: HTTP {resp.status_code}")
        raise GatewayRejected(f"Khalti {action} failed: HTTP {resp.status_code}", response=data)

    def initiate(self, payment, return_url="", customer=None) -> Initiation:
        customer = customer or {}
        name = f"Order {payment.order_id}" if payment.order_id else f"Payment {payment.pk}"
        payload = {
            "return_url": return_url or self.config.get("RETURN_URL", ""),
            "website_url": self.config.get("WEBSITE_URL", ""),
            "amount": to_paisa(payment.amount),
            "purchase_order_id": str(payment.pk),
            "purchase_order_name": name,
            "customer_info": {
                "name": customer.get("name") or "Customer",
                "email": customer.get("email") or "",
                "phone": customer.get("phone") or "",
            },
        }
        data = self._post("initiate", payload)
        if not data.get("pidx") or not data.get("payment_url"):
            raise GatewayRejected("Khalti initiate reply is missing pidx/payment_url", response=data)
        return Initiation(
            correlation_id=data["pidx"],
            redirect_url=data["payment_url"],
            expires_at=data.get("expires_at"),
            response=data,
        )

    def verify(self, payment) -> Verification:
        if not payment.external_id:
            return Verification(Outcome.PENDING, reason="Payment was never initiated")
        try:
            data = self._post("lookup", {"pidx": payment.external_id})
        except GatewayError as e:
            # Provider trouble never settles a payment
            logger.warning("Khalti lookup for %s failed: %s", payment.external_id, e.message)
            return Verification(Outcome.PENDING, reason=e.message)

        status = str(data.get("status", ""))
        outcome = STATUS_MAP.get(status, Outcome.PENDING)
        reason = "" if outcome == Outcome.COMPLETED else status
        if outcome == Outcome.COMPLETED:
            paid = data.get("total_amount")
            try:
                mismatch = paid is None or int(paid) != to_paisa(payment.amount)
            except (TypeError, ValueError):
                mismatch = True
            if mismatch:
                logger.error("Khalti amount mismatch for %s: got %s expected %s",
                             payment.external_id, paid, to_paisa(payment.amount))
                outcome, reason = Outcome.FAILED, "Amount mismatch"
        return Verification(
            outcome,
            transaction_id=str(data.get("transaction_id") or ""),
            response=data,
            reason=reason,
        )

    def parse_callback(self, payload) -> str:
        pidx = (payload or {}).get("pidx")
        if not pidx:
            raise InvalidCallback("Missing pidx")
        return str(pidx)
