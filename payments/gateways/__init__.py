from .base import GatewayRegistry, Initiation, Outcome, PaymentGateway, Verification
from .cod import CashOnDeliveryGateway
from .esewa import EsewaGateway
from .khalti import KhaltiGateway

__all__ = [
    "CashOnDeliveryGateway",
    "EsewaGateway",
    "GatewayRegistry",
    "Initiation",
    "KhaltiGateway",
    "Outcome",
    "PaymentGateway",
    "Verification",
]
