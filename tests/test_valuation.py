"""Unit tests for the valuation engine."""

from __future__ import annotations

import random
from datetime import date
from decimal import Decimal

import pytest

from fintrack import valuation
from fintrack.constants import PaymentStatus, PaymentType, StockStatus, TransactionType
from fintrack.data_manager import ProductRow, TransactionRow


PRODUCT = ProductRow(
    id="P1",
    owner_id="owner-1",
    name="Basmati Rice",
    category="Grains",
    min_stock_level=Decimal("50"),
    unit="kg",
)


def _tx(
    tx_id: str,
    transaction_type: TransactionType,
    gross: str,
    price: str,
    *,
    deduction: str = "0",
    extra: str = "0",
    product_id: str = "P1",
) -> TransactionRow:
    gross_quantity = Decimal(gross)
    net = gross_quantity - Decimal(deduction)
    return TransactionRow(
        id=tx_id,
        owner_id="owner-1",
        product_id=product_id,
        product_name="Basmati Rice",
        type=transaction_type,
        counterparty_name="Acme",
        gross_quantity=gross_quantity,
        deduction=Decimal(deduction),
        unit="kg",
        unit_price=Decimal(price),
        total_value=net * Decimal(price) + Decimal(extra),
        date=date(2026, 3, 1),
        payment_type=PaymentType.CASH,
        payment_status=PaymentStatus.PAID,
        extra_charge=Decimal(extra),
    )


def test_summarize_without_transactions_is_out_of_stock():
    item = valuation.summarize(PRODUCT, [])
    assert item.stock == Decimal("0")
    assert item.avg_cost == Decimal("0")
    assert item.total_value == Decimal("0")
    assert item.status is StockStatus.OUT


def test_summarize_purchase_with_deduction_and_extra_charge():
    """Extra charges are overhead and never enter the average cost."""

    item = valuation.summarize(PRODUCT, [_tx("T1", TransactionType.PURCHASE, "500", "12.50", deduction="10", extra="200")])

    assert item.stock == Decimal("490")
    assert item.avg_cost == Decimal("12.50")
    assert item.total_value == Decimal("6125.00")
    assert item.status is StockStatus.OK


def test_summarize_sale_reduces_stock_at_average_cost():
    transactions = [
        _tx("T1", TransactionType.PURCHASE, "500", "12.50", deduction="10"),
        _tx("T2", TransactionType.SALE, "450", "15"),
    ]

    item = valuation.summarize(PRODUCT, transactions)

    assert item.stock == Decimal("40")
    assert item.total_value == Decimal("500.00")
    assert item.status is StockStatus.LOW


def test_summarize_weighted_average_over_purchases():
    transactions = [
        _tx("T1", TransactionType.PURCHASE, "10", "10"),
        _tx("T2", TransactionType.PURCHASE, "30", "20"),
    ]

    item = valuation.summarize(PRODUCT, transactions)

    assert item.avg_cost == Decimal("17.5")
    assert item.total_value == Decimal("700")


def test_summarize_ignores_other_products():
    transactions = [
        _tx("T1", TransactionType.PURCHASE, "100", "10"),
        _tx("T2", TransactionType.PURCHASE, "999", "1", product_id="P2"),
    ]

    assert valuation.summarize(PRODUCT, transactions).stock == Decimal("100")


def test_summarize_does_not_clamp_negative_stock():
    item = valuation.summarize(PRODUCT, [_tx("T1", TransactionType.SALE, "5", "10")])

    assert item.stock == Decimal("-5")
    assert item.status is StockStatus.OUT


def test_summarize_is_order_independent():
    transactions = [
        _tx("T1", TransactionType.PURCHASE, "120", "9.75", deduction="3"),
        _tx("T2", TransactionType.SALE, "40", "14"),
        _tx("T3", TransactionType.PURCHASE, "60", "11.20", extra="35"),
        _tx("T4", TransactionType.SALE, "12", "15"),
        _tx("T5", TransactionType.PURCHASE, "8", "10"),
    ]
    expected = valuation.summarize(PRODUCT, transactions)

    rng = random.Random(1234)
    for _ in range(10):
        shuffled = transactions[:]
        rng.shuffle(shuffled)
        assert valuation.summarize(PRODUCT, shuffled) == expected


@pytest.mark.parametrize(
    ("stock", "minimum", "expected"),
    [
        ("0", "10", StockStatus.OUT),
        ("-3", "0", StockStatus.OUT),
        ("9", "10", StockStatus.LOW),
        ("10", "10", StockStatus.OK),
        ("11", "10", StockStatus.OK),
        ("1", "0", StockStatus.OK),
    ],
)
def test_classify_stock(stock, minimum, expected):
    assert valuation.classify_stock(Decimal(stock), Decimal(minimum)) is expected


def test_summarize_all_orders_by_name_and_groups_transactions():
    products = [
        PRODUCT,
        ProductRow(id="P2", owner_id="owner-1", name="atta", category="Grains", min_stock_level=Decimal("0"), unit="kg"),
    ]
    transactions = [
        _tx("T1", TransactionType.PURCHASE, "10", "5", product_id="P2"),
        _tx("T2", TransactionType.PURCHASE, "70", "12"),
    ]

    items = valuation.summarize_all(products, transactions)

    assert [item.id for item in items] == ["P2", "P1"]
    assert items[0].stock == Decimal("10")
    assert items[1].stock == Decimal("70")


def test_filter_inventory_matches_name_or_category_ignoring_case():
    products = [
        PRODUCT,
        ProductRow(id="P2", owner_id="owner-1", name="Wheat", category="Flour", min_stock_level=Decimal("0"), unit="kg"),
        ProductRow(id="P3", owner_id="owner-1", name="Rice Flour", category="Flour", min_stock_level=Decimal("0"), unit="kg"),
    ]
    items = valuation.summarize_all(products, [])

    assert [item.id for item in valuation.filter_inventory(items, "rice")] == ["P1", "P3"]
    assert [item.id for item in valuation.filter_inventory(items, " FLOUR ")] == ["P3", "P2"]
    assert valuation.filter_inventory(items, "grains") == [items[0]]
    assert valuation.filter_inventory(items, "  ") == items
    assert valuation.filter_inventory(items, None) == items
    assert valuation.filter_inventory(items, "sugar") == []
