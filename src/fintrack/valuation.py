"""Valuation engine: fold a product's transactions into its inventory position.

Stock is never stored. Every call re-derives it from the complete set of
transactions, so deleting a transaction reverts its effect without any
bookkeeping. The fold only accumulates sums, which makes the result
independent of transaction order.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from . import log
from .constants import StockStatus, TransactionType
from .data_manager import ProductRow, TransactionRow


ZERO = Decimal("0")


@dataclass(frozen=True)
class InventoryItem:
    """Derived inventory position of one product; never persisted."""

    id: str
    owner_id: str
    name: str
    category: str
    min_stock_level: Decimal
    unit: str
    stock: Decimal
    avg_cost: Decimal
    total_value: Decimal
    status: StockStatus


def classify_stock(stock: Decimal, min_stock_level: Decimal) -> StockStatus:
    """Classify a stock level against the product's minimum.

    ``out`` at or below zero, ``low`` strictly below the minimum, ``ok``
    otherwise (a stock equal to the minimum is ``ok``).
    """
    if stock <= ZERO:
        return StockStatus.OUT
    if stock < min_stock_level:
        return StockStatus.LOW
    return StockStatus.OK


def summarize(product: ProductRow, transactions: Iterable[TransactionRow]) -> InventoryItem:
    """Compute the current :class:`InventoryItem` for ``product``.

    Purchases add their net quantity to stock and contribute
    ``net_quantity * unit_price`` to the purchase cost; extra charges are
    overhead and never enter the cost. Sales subtract their net quantity.
    Stock may become negative and is not clamped.

    Args:
        product (ProductRow): Product being valued.
        transactions (Iterable[TransactionRow]): Any transactions; rows for
            other products are ignored.

    Returns:
        InventoryItem: Stock, weighted-average cost, stock value and status.
    """

    stock = ZERO
    purchased_quantity = ZERO
    purchase_cost = ZERO

    for transaction in transactions:
        if transaction.product_id != product.id:
            continue
        net = transaction.net_quantity
        if transaction.type is TransactionType.PURCHASE:
            stock += net
            purchased_quantity += net
            purchase_cost += net * transaction.unit_price
        else:
            stock -= net

    avg_cost = purchase_cost / purchased_quantity if purchased_quantity > ZERO else ZERO

    return InventoryItem(
        id=product.id,
        owner_id=product.owner_id,
        name=product.name,
        category=product.category,
        min_stock_level=product.min_stock_level,
        unit=product.unit,
        stock=stock,
        avg_cost=avg_cost,
        total_value=stock * avg_cost,
        status=classify_stock(stock, product.min_stock_level),
    )


def summarize_all(products: Sequence[ProductRow], transactions: Sequence[TransactionRow]) -> List[InventoryItem]:
    """Value every product and return the items ordered by product name."""

    by_product: dict[str, list[TransactionRow]] = {}
    for transaction in transactions:
        by_product.setdefault(transaction.product_id, []).append(transaction)

    items = [summarize(product, by_product.get(product.id, ())) for product in products]
    items.sort(key=lambda item: (item.name.casefold(), item.name, item.id))
    log.debug("Valued %d products from %d transactions", len(items), len(transactions))
    return items


def filter_inventory(items: Iterable[InventoryItem], term: Optional[str]) -> List[InventoryItem]:
    """Keep the items whose name or category contains ``term``, ignoring case.

    A blank ``term`` keeps every item.
    """

    needle = (term or "").strip().casefold()
    if not needle:
        return list(items)
    return [item for item in items if needle in item.name.casefold() or needle in item.category.casefold()]


__all__ = ["InventoryItem", "classify_stock", "summarize", "summarize_all", "filter_inventory"]
