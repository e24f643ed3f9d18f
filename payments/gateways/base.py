import enum
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

from storefront.errors import ValidationFailed


class Outcome(str, enum.Enum):
    COMPLETED = "Completed"
    FAILED = "Failed"
    PENDING = "Pending"


@dataclass
class Initiation:
    correlation_id: str
    redirect_url: str = ""
    form_fields: Optional[Dict[str, str]] = None
    immediate_status: Optional[str] = None
    expires_at: Optional[str] = None
    response: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict:
        data = {"correlation_id": self.correlation_id, "redirect_url": self.redirect_url}
        if self.form_fields is not None:
            data["form_fields"] = self.form_fields
        if self.immediate_status:
            data["status"] = self.immediate_status
        if self.expires_at:
            data["expires_at"] = self.expires_at
        return data


@dataclass
class Verification:
    outcome: Outcome
    transaction_id: str = ""
    response: Dict[str, Any] = field(default_factory=dict)
    reason: str = ""
    amount: Optional[Decimal] = None


class PaymentGateway:
    """Adapter contract for one payment provider.

    ``initiate`` may raise ``GatewayUnavailable``/``GatewayRejected``.
    ``verify`` never raises for provider trouble; it answers ``Outcome.PENDING``
    instead so the payment stays open. ``parse_callback`` only extracts the
    correlation id from an untrusted callback; the caller must re-verify.
    """

    method = ""

    def __init__(self, config: Optional[dict] = None, timeout: float = 10):
        self.config = config or {}
        self.timeout = timeout

    def initiate(self, payment, return_url: str = "", customer: Optional[dict] = None) -> Initiation:
        raise NotImplementedError

    def verify(self, payment) -> Verification:
        raise NotImplementedError

    def parse_callback(self, payload: dict) -> str:
        raise NotImplementedError


class GatewayRegistry:
    def __init__(self):
        self._gateways: Dict[str, PaymentGateway] = {}

    def register(self, method: str, gateway: PaymentGateway) -> None:
        self._gateways[str(method)] = gateway

    def get(self, method) -> PaymentGateway:
        try:
            return self._gateways[str(method)]
        except KeyError:
            raise ValidationFailed(f"Unsupported payment method '{method}'", field="method")

    def methods(self):
        return list(self._gateways)

    def __contains__(self, method) -> bool:
        return str(method) in self._gateways
