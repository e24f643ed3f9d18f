"""Service wiring.

Every service is constructed once, in ``StorefrontConfig.ready()``, and handed
its collaborators explicitly. Views reach the wired graph through
``get_services()``; tests build their own graph with ``build_services()`` when
they need fakes.
"""
from dataclasses import dataclass
from typing import Any, Optional

from django.apps import apps
from django.conf import settings


@dataclass
class Services:
    notifier: Any
    inventory: Any
    orders: Any
    gateways: Any
    payments: Any
    payment_service: Any
    reconciliation: Any


def build_gateways(timeout: Optional[float] = None):
    from payments.gateways import CashOnDeliveryGateway, EsewaGateway, GatewayRegistry, KhaltiGateway
    from orders.models import PaymentMethod

    timeout = timeout if timeout is not None else getattr(settings, "PAYMENT_GATEWAY_TIMEOUT", 10)
    registry = GatewayRegistry()
    registry.register(PaymentMethod.COD, CashOnDeliveryGateway({}, timeout=timeout))
    registry.register(PaymentMethod.KHALTI, KhaltiGateway(settings.KHALTI, timeout=timeout))
    registry.register(PaymentMethod.ESEWA, EsewaGateway(settings.ESEWA, timeout=timeout))
    return registry


def build_services(*, notifier=None, gateways=None) -> Services:
    from notifications.notifier import EventNotifier
    from orders.inventory import InventoryGuard
    from orders.services import OrderLedger
    from payments.ledger import PaymentLedger
    from payments.reconciliation import ReconciliationService
    from payments.services import PaymentService

    notifier = notifier or EventNotifier()
    gateways = gateways or build_gateways()
    inventory = InventoryGuard()
    orders = OrderLedger(inventory=inventory, notifier=notifier)
    payments = PaymentLedger(orders=orders)
    return Services(
        notifier=notifier,
        inventory=inventory,
        orders=orders,
        gateways=gateways,
        payments=payments,
        payment_service=PaymentService(ledger=payments, orders=orders, gateways=gateways, notifier=notifier),
        reconciliation=ReconciliationService(ledger=payments, gateways=gateways, notifier=notifier),
    )


def get_services() -> Services:
    config = apps.get_app_config("storefront")
    if config.services is None:
        raise RuntimeError("Services are not wired; is 'storefront' in INSTALLED_APPS?")
    return config.services
