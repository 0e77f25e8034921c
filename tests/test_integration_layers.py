"""Integration tests describing end-to-end FINTRACK workflows.

These scenarios drive the façade against the workbook-backed store and
persist/reload between steps, mirroring how the CLI uses the layers.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from unittest.mock import Mock

import pytest

from conftest import OWNER, make_command
from fintrack import core_logic
from fintrack.constants import PaymentStatus, PaymentType, StockStatus, TransactionType
from fintrack.errors import InsufficientStockError


def test_purchase_sale_lifecycle_flow(runtime_context, product_factory):
    """Walk through a stock, sale and reporting cycle using both layers."""

    context = runtime_context
    product = product_factory(context)

    # Persist and reload so every step reads back what the previous one wrote.
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    purchase = core_logic.add_transaction(
        context,
        make_command(product.id, TransactionType.PURCHASE, "500", "12.50", deduction="10"),
        OWNER,
    )
    assert purchase.total_value == Decimal("6125.00")
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    [item] = core_logic.get_inventory_summary(context, OWNER)
    assert item.stock == Decimal("490")
    assert item.avg_cost == Decimal("12.50")
    assert item.total_value == Decimal("6125.00")
    assert item.status is StockStatus.OK

    core_logic.add_transaction(context, make_command(product.id, TransactionType.SALE, "450", "15"), OWNER)
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    [item] = core_logic.get_inventory_summary(context, OWNER)
    assert item.stock == Decimal("40")
    assert item.total_value == Decimal("500.00")
    assert item.status is StockStatus.LOW

    with pytest.raises(InsufficientStockError):
        core_logic.add_transaction(context, make_command(product.id, TransactionType.SALE, "41", "15"), OWNER)
    assert len(core_logic.list_transactions(context, OWNER)) == 2


def test_unsaved_changes_are_discarded_on_refresh(runtime_context, product_factory):
    product_factory(runtime_context)

    reloaded = core_logic.refresh_context(runtime_context)

    assert core_logic.list_products(reloaded, OWNER) == []


def test_credit_sale_becomes_overdue_and_is_settled(runtime_context, product_factory):
    context = runtime_context
    product = product_factory(context)
    core_logic.add_transaction(context, make_command(product.id, TransactionType.PURCHASE, "100", "10"), OWNER)
    sale = core_logic.add_transaction(
        context,
        make_command(
            product.id,
            TransactionType.SALE,
            "10",
            "15",
            on=date(2026, 1, 25),
            payment_type=PaymentType.CREDIT,
            credit_period_days=10,
        ),
        OWNER,
        today=date(2026, 1, 25),
    )
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    overdue = core_logic.get_transaction(context, sale.id, OWNER, today=date(2026, 2, 9))
    assert overdue.payment_status is PaymentStatus.OVERDUE
    assert overdue.due_date == date(2026, 2, 4)

    core_logic.mark_transaction_as_paid(context, sale.id, OWNER)
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    settled = core_logic.get_transaction(context, sale.id, OWNER, today=date(2026, 2, 9))
    assert settled.payment_status is PaymentStatus.PAID
    metrics = core_logic.calculate_dashboard_metrics(context, OWNER, today=date(2026, 2, 9))
    assert metrics.accounts_receivable == Decimal("0")
    assert metrics.overdue_count == 0


def test_subscriptions_survive_refresh(runtime_context, product_factory):
    listener = Mock()
    core_logic.subscribe(runtime_context, OWNER, listener)

    context = core_logic.refresh_context(runtime_context)
    product_factory(context)

    listener.assert_called_once_with()
