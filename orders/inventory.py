import logging
from typing import Dict, Iterable, Tuple

from django.db import transaction
from django.db.models import F

from catalog.models import Product
from storefront.errors import InsufficientStock, NotFound

logger = logging.getLogger(__name__)


class InventoryGuard:
    """Atomically checks and decrements product stock for a set of order lines."""

    def reserve(self, lines: Iterable[Tuple[int, int]]) -> Dict[int, Product]:
        """Reserve ``quantity`` of each product in ``lines``.

        Must be called inside the caller's ``transaction.atomic()`` so the
        decrement commits or rolls back together with the order insert.
        Returns the locked products keyed by id.
        """
        if not transaction.get_connection().in_atomic_block:
            raise RuntimeError("InventoryGuard.reserve() must run inside transaction.atomic()")

        wanted: Dict[int, int] = {}
        for product_id, quantity in lines:
            wanted[product_id] = wanted.get(product_id, 0) + quantity

        # Lock rows in primary-key order so concurrent orders cannot deadlock
        ids = sorted(wanted)
        products = {p.pk: p for p in Product.objects.select_for_update().filter(pk__in=ids).order_by("pk")}

        for product_id in ids:
            product = products.get(product_id)
            if product is None or not product.is_active:
                raise NotFound(f"Product {product_id} not found", product_id=product_id)
            if product.stock < wanted[product_id]:
                raise InsufficientStock(
                    f"Insufficient stock for {product.name}",
                    product_id=product_id, available=product.stock, requested=wanted[product_id],
                )

        for product_id in ids:
            qty = wanted[product_id]
            updated = Product.objects.filter(pk=product_id, stock__gte=qty).update(stock=F("stock") - qty)
            if updated != 1:
                raise InsufficientStock(f"Insufficient stock for {products[product_id].name}", product_id=product_id)
            products[product_id].stock -= qty

        logger.debug("Reserved stock %s", dict(wanted))
        return products

    def check(self, lines: Iterable[Tuple[int, int]]) -> Dict[int, Product]:
        """Read-only availability check; nothing is locked or decremented."""
        wanted: Dict[int, int] = {}
        for product_id, quantity in lines:
            wanted[product_id] = wanted.get(product_id, 0) + quantity
        products = Product.objects.in_bulk(list(wanted))
        for product_id, qty in wanted.items():
            product = products.get(product_id)
            if product is None or not product.is_active:
                raise NotFound(f"Product {product_id} not found", product_id=product_id)
            if product.stock < qty:
                raise InsufficientStock(
                    f"Insufficient stock for {product.name}",
                    product_id=product_id, available=product.stock, requested=qty,
                )
        return products
