from storefront.errors import InvalidCallback

from .base import Initiation, Outcome, PaymentGateway, Verification


class CashOnDeliveryGateway(PaymentGateway):
    """No provider behind it: cash is confirmed by an admin when it is collected."""

    method = "COD"

    def initiate(self, payment, return_url="", customer=None) -> Initiation:
        return Initiation(
            correlation_id=f"COD-{payment.pk.hex}",
            immediate_status="PENDING_COLLECTION",
            response={"method": self.method, "amount": str(payment.amount)},
        )

    def verify(self, payment) -> Verification:
        return Verification(Outcome.PENDING, reason="Awaiting cash collection")

    def parse_callback(self, payload):
        raise InvalidCallback("Cash on delivery has no provider callback")
