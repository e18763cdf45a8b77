"""
Price snapshot calculation.

Unit prices are resolved from the catalog exactly once, at order creation,
and frozen into the snapshot. Tax rate and shipping fee are configuration
values; nothing client-supplied enters the totals.
"""
from decimal import Decimal
from typing import List, Sequence

import structlog

from marketplace.domain import (
    InvalidItemError,
    ItemRequest,
    LineItem,
    PriceSnapshot,
    ValidationError,
    quantize_money,
)
from marketplace.integrations.catalog import CatalogPort

logger = structlog.get_logger(__name__)


def _validate_items(items: Sequence[ItemRequest]) -> None:
    if not items:
        raise ValidationError("Order must contain at least one item")

    for item in items:
        if not item.product_id:
            raise ValidationError("Every item needs a product id")
        # bool is an int subclass; True is not a quantity
        if isinstance(item.quantity, bool) or not isinstance(item.quantity, int):
            raise ValidationError(
                f"Quantity for product {item.product_id} must be an integer"
            )
        if item.quantity <= 0:
            raise ValidationError(
                f"Quantity for product {item.product_id} must be positive"
            )


class PriceCalculator:
    """Builds frozen price snapshots from catalog prices."""

    def __init__(self, catalog: CatalogPort):
        self.catalog = catalog

    async def compute_snapshot(
        self,
        items: Sequence[ItemRequest],
        tax_rate: Decimal,
        shipping_fee: Decimal,
    ) -> PriceSnapshot:
        """
        Compute the price snapshot for a set of requested items.

        Args:
            items: Requested products and quantities (order preserved)
            tax_rate: Fraction of the subtotal charged as tax
            shipping_fee: Flat shipping fee

        Returns:
            PriceSnapshot: Line items with frozen unit prices and totals

        Raises:
            ValidationError: If items are empty or a quantity is not a positive integer
            InvalidItemError: If a product does not exist in the catalog
        """
        _validate_items(items)

        prices = await self.catalog.get_prices([item.product_id for item in items])

        line_items: List[LineItem] = []
        for item in items:
            if item.product_id not in prices:
                logger.warning("unknown_product_in_order", product_id=item.product_id)
                raise InvalidItemError(
                    f"Product {item.product_id} not found", product_id=item.product_id
                )
            line_items.append(
                LineItem(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price_snapshot=quantize_money(prices[item.product_id]),
                )
            )

        subtotal = quantize_money(sum((li.line_total for li in line_items), Decimal("0")))
        tax = quantize_money(subtotal * Decimal(tax_rate))
        shipping = quantize_money(Decimal(shipping_fee))
        total = quantize_money(subtotal + tax + shipping)

        return PriceSnapshot(
            line_items=tuple(line_items),
            subtotal=subtotal,
            tax=tax,
            shipping=shipping,
            total=total,
        )
