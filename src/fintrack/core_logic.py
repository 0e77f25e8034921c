"""Business logic layer for FINTRACK.

This module is the façade callers use to mutate and query the ledger. It
resolves ownership, enforces stock availability, delegates derivations to
:mod:`fintrack.lifecycle` and :mod:`fintrack.valuation`, and performs all I/O
through the :class:`~fintrack.data_manager.LedgerStore` held by the
:class:`RuntimeContext`.

The façade keeps no state between calls. Inventory and payment status are
recomputed from the stored transactions on every read.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from . import data_manager, lifecycle, log, valuation
from .constants import (
    DEFAULT_CATEGORY,
    DEFAULT_UNIT,
    EXPECTED_SCHEMA_VERSION,
    PaymentStatus,
    PaymentType,
    StockStatus,
    TableName,
    TransactionType,
)
from .data_manager import ProductRow, TransactionRow
from .errors import ForbiddenError, InsufficientStockError, NotFoundError, StoreError, ValidationError
from .lifecycle import TransactionCommand
from .valuation import InventoryItem


ZERO = Decimal("0")


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the ledger store used by the façade."""

    settings: data_manager.ConfigSettings
    store: data_manager.LedgerStore


@dataclass(frozen=True)
class ProductCommand:
    """User intent for registering a stocked product."""

    name: str
    category: str = DEFAULT_CATEGORY
    min_stock_level: Decimal = ZERO
    unit: str = DEFAULT_UNIT


@dataclass(frozen=True)
class InvoiceLine:
    """One product line of a multi-line invoice."""

    product_id: str
    gross_quantity: Decimal
    unit_price: Decimal
    deduction: Decimal = ZERO
    deduction_reason: Optional[str] = None


@dataclass(frozen=True)
class InvoiceCommand:
    """User intent for recording several product movements with one party.

    Each line becomes an independent transaction sharing type, party, date and
    payment terms. The invoice-level extra charge is booked on the first line.
    """

    type: TransactionType
    counterparty_name: str
    date: date
    lines: Tuple[InvoiceLine, ...]
    payment_type: PaymentType = PaymentType.CASH
    credit_period_days: Optional[int] = None
    extra_charge: Decimal = ZERO
    extra_charge_reason: Optional[str] = None


@dataclass(frozen=True)
class DashboardMetrics:
    """Headline figures derived from the inventory and the transaction list."""

    total_revenue: Decimal
    total_purchases: Decimal
    gross_profit: Decimal
    total_stock_value: Decimal
    low_stock_count: int
    accounts_receivable: Decimal
    accounts_payable: Decimal
    overdue_count: int = 0
    attention_items: Tuple[str, ...] = field(default_factory=tuple)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def _resolve_today(candidate: Optional[date]) -> date:
    """Return ``candidate`` or the current local calendar date.

    Overdue detection compares due dates against the start of this day, so
    the wall clock only enters the ledger here.
    """

    if candidate is not None:
        return candidate
    return datetime.now(UTC).astimezone().date()


def generate_id(*, prefix: str = "T", when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier such as ``T20261019093015123456-1a2b3c``.

    The timestamp part keeps identifiers roughly chronological; the random
    suffix keeps two rows created within the same microsecond distinct.
    """
    when = _resolve_timestamp(when)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}"


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the configured ledger store.

    Args:
        config_path (Path | None): Optional override path for ``config.ini``.
            When omitted the data layer searches upward from the cwd.

    Returns:
        RuntimeContext: Context ready for façade calls.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = data_manager.build_store(settings)
    log.info("Loaded runtime context for '%s' (%s store)", settings.business_name, settings.storage)
    return RuntimeContext(settings=settings, store=store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to operate on a store laid out for a different schema version.

    Raises:
        RuntimeError: If ``config.ini`` declares a schema version other than
            :data:`~fintrack.constants.EXPECTED_SCHEMA_VERSION`.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Ledger schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Ledger schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )


def persist_context(context: RuntimeContext) -> None:
    """Flush the store held by ``context`` to durable storage."""
    context.store.save()


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Return a fresh context whose store is reopened from configuration.

    Unsaved workbook edits are discarded. Subscriptions registered on the old
    store's channel carry over.
    """
    if context.settings.storage == "memory":
        return context
    store = data_manager.build_store(context.settings, channel=context.store.channel)
    log.info("Reloaded ledger store '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, store=store)


def subscribe(context: RuntimeContext, owner_id: str, on_change) -> data_manager.Unsubscribe:
    """Register ``on_change`` to run after any mutation of ``owner_id``'s rows."""
    return context.store.subscribe(owner_id, on_change)


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext, owner_id: str) -> List[ProductRow]:
    """Return the products owned by ``owner_id`` ordered by name."""
    records = context.store.select(TableName.PRODUCTS, {"owner_id": owner_id})
    products = [data_manager.deserialize_product(record) for record in records]
    products.sort(key=lambda product: (product.name.casefold(), product.name, product.id))
    return products


def get_product(
    context: RuntimeContext,
    product_id: str,
    owner_id: str,
    *,
    products: Optional[Sequence[ProductRow]] = None,
) -> ProductRow:
    """Resolve ``product_id`` among the products visible to ``owner_id``.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        product_id (str): Identifier to resolve.
        owner_id (str): Caller identity.
        products (Sequence[ProductRow] | None): Already loaded catalogue; the
            store is queried when omitted.

    Raises:
        NotFoundError: If no product with that id is owned by ``owner_id``.
    """
    candidates = products if products is not None else list_products(context, owner_id)
    for product in candidates:
        if product.id == product_id and product.owner_id == owner_id:
            return product
    log.warning("Product lookup failed for id '%s' (owner '%s')", product_id, owner_id)
    raise NotFoundError(f"Product not found: {product_id}")


def add_product(context: RuntimeContext, command: ProductCommand, owner_id: str) -> ProductRow:
    """Persist a new product scoped to ``owner_id``.

    Duplicate names are accepted.

    Raises:
        ValidationError: If the name is blank or the minimum stock level is negative.
    """
    name = (command.name or "").strip()
    if not name:
        raise ValidationError("Product name is required")
    lifecycle.require_nonnegative(command.min_stock_level, "Minimum stock level")

    timestamp = _resolve_timestamp(None)
    product = ProductRow(
        id=generate_id(prefix="P", when=timestamp),
        owner_id=owner_id,
        name=name,
        category=(command.category or "").strip() or DEFAULT_CATEGORY,
        min_stock_level=command.min_stock_level,
        unit=(command.unit or "").strip() or DEFAULT_UNIT,
        created_at=timestamp,
    )
    stored = context.store.insert(TableName.PRODUCTS, data_manager.serialize_product(product))
    log.info("Added product '%s' (%s) for owner '%s'", product.name, product.id, owner_id)
    return data_manager.deserialize_product(stored)


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


def list_transactions(context: RuntimeContext, owner_id: str) -> List[TransactionRow]:
    """Return ``owner_id``'s stored transactions in insertion order, as stored."""
    records = context.store.select(TableName.TRANSACTIONS, {"owner_id": owner_id})
    return [data_manager.deserialize_transaction(record) for record in records]


def _sort_newest_first(transactions: Sequence[TransactionRow]) -> List[TransactionRow]:
    oldest = datetime.min.replace(tzinfo=UTC)
    indexed = list(enumerate(transactions))
    indexed.sort(key=lambda pair: (pair[1].date, pair[1].created_at or oldest, pair[0]), reverse=True)
    return [transaction for _, transaction in indexed]


def get_transactions(context: RuntimeContext, owner_id: str, *, today: Optional[date] = None) -> List[TransactionRow]:
    """Return ``owner_id``'s transactions with their payment status as of today.

    Rows are ordered by date descending, ties broken by creation order
    descending.
    """
    current_day = _resolve_today(today)
    refreshed = [lifecycle.refresh_status(row, current_day) for row in list_transactions(context, owner_id)]
    return _sort_newest_first(refreshed)


def _load_owned_transaction(context: RuntimeContext, transaction_id: str, owner_id: str) -> TransactionRow:
    records = context.store.select(TableName.TRANSACTIONS, {"id": transaction_id})
    if not records:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise NotFoundError(f"Transaction not found: {transaction_id}")
    transaction = data_manager.deserialize_transaction(records[0])
    if transaction.owner_id != owner_id:
        log.warning(
            "Owner '%s' attempted to access transaction '%s' of another owner",
            owner_id,
            transaction_id,
        )
        raise ForbiddenError(f"Transaction not found: {transaction_id}")
    return transaction


def get_transaction(
    context: RuntimeContext, transaction_id: str, owner_id: str, *, today: Optional[date] = None
) -> TransactionRow:
    """Resolve one transaction owned by ``owner_id`` with its current status.

    Raises:
        NotFoundError: If the transaction does not exist.
        ForbiddenError: If it belongs to another owner.
    """
    transaction = _load_owned_transaction(context, transaction_id, owner_id)
    return lifecycle.refresh_status(transaction, _resolve_today(today))


def current_stock(context: RuntimeContext, product: ProductRow) -> InventoryItem:
    """Value ``product`` from the transactions currently in the store."""
    records = context.store.select(
        TableName.TRANSACTIONS,
        {"owner_id": product.owner_id, "product_id": product.id},
    )
    transactions = [data_manager.deserialize_transaction(record) for record in records]
    return valuation.summarize(product, transactions)


def _require_stock(item: InventoryItem, requested: Decimal) -> None:
    if requested > item.stock:
        log.warning(
            "Rejected sale of %s %s of '%s': only %s in stock",
            requested,
            item.unit,
            item.id,
            item.stock,
        )
        raise InsufficientStockError(item.id, stock=item.stock, requested=requested, unit=item.unit)


def add_transaction(
    context: RuntimeContext,
    command: TransactionCommand,
    owner_id: str,
    *,
    products: Optional[Sequence[ProductRow]] = None,
    today: Optional[date] = None,
    timestamp: Optional[datetime] = None,
) -> TransactionRow:
    """Validate, derive and persist a purchase or sale.

    The product is resolved among ``products`` (or the owner's catalogue). A
    sale is checked against stock recomputed from the store at this moment.
    The row is derived by :func:`fintrack.lifecycle.prepare` and inserted in
    one store call, which notifies the owner's subscribers.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        command (TransactionCommand): Caller intent.
        owner_id (str): Caller identity.
        products (Sequence[ProductRow] | None): Catalogue to resolve against.
        today (date | None): Date used to project the returned status.
        timestamp (datetime | None): Creation timestamp override.

    Returns:
        TransactionRow: The stored row with its status as of ``today``.

    Raises:
        NotFoundError: If the product is unknown to ``owner_id``.
        InsufficientStockError: If a sale exceeds the computed stock.
        ValidationError: If the numeric input is rejected.
        StoreError: If the store fails to persist the row.
    """
    product = get_product(context, command.product_id, owner_id, products=products)
    created_at = _resolve_timestamp(timestamp)
    transaction = lifecycle.prepare(
        command,
        product,
        transaction_id=generate_id(when=created_at),
        owner_id=owner_id,
        created_at=created_at,
    )
    if transaction.type is TransactionType.SALE:
        _require_stock(current_stock(context, product), transaction.net_quantity)

    stored = context.store.insert(TableName.TRANSACTIONS, data_manager.serialize_transaction(transaction))
    log.info(
        "Recorded %s '%s' of %s %s '%s' (total=%s, payment=%s)",
        transaction.type.value,
        transaction.id,
        transaction.net_quantity,
        transaction.unit,
        transaction.product_name,
        transaction.total_value,
        transaction.payment_type.value,
    )
    return lifecycle.refresh_status(data_manager.deserialize_transaction(stored), _resolve_today(today))


def add_invoice(
    context: RuntimeContext,
    command: InvoiceCommand,
    owner_id: str,
    *,
    products: Optional[Sequence[ProductRow]] = None,
    today: Optional[date] = None,
) -> List[TransactionRow]:
    """Record every line of a multi-line invoice as its own transaction.

    All lines are validated, and for sales the cumulative quantity per product
    is checked against stock, before the first row is inserted. If the store
    fails part way the rows already inserted are removed again.

    Raises:
        ValidationError: If the invoice has no lines or a line is rejected.
        NotFoundError: If a line references an unknown product.
        InsufficientStockError: If the sale lines exceed a product's stock.
        StoreError: If the store fails.
    """
    if not command.lines:
        raise ValidationError("An invoice needs at least one line")

    catalogue = list(products) if products is not None else list_products(context, owner_id)
    created_at = _resolve_timestamp(None)
    prepared: List[TransactionRow] = []
    for index, line in enumerate(command.lines):
        first = index == 0
        line_command = TransactionCommand(
            product_id=line.product_id,
            type=command.type,
            counterparty_name=command.counterparty_name,
            gross_quantity=line.gross_quantity,
            unit_price=line.unit_price,
            date=command.date,
            payment_type=command.payment_type,
            deduction=line.deduction,
            deduction_reason=line.deduction_reason,
            extra_charge=command.extra_charge if first else ZERO,
            extra_charge_reason=command.extra_charge_reason if first else None,
            credit_period_days=command.credit_period_days,
        )
        product = get_product(context, line.product_id, owner_id, products=catalogue)
        prepared.append(
            lifecycle.prepare(
                line_command,
                product,
                transaction_id=generate_id(when=created_at + timedelta(microseconds=index)),
                owner_id=owner_id,
                created_at=created_at + timedelta(microseconds=index),
            )
        )

    if command.type is TransactionType.SALE:
        requested: Dict[str, Decimal] = defaultdict(lambda: ZERO)
        for row in prepared:
            requested[row.product_id] += row.net_quantity
        for product_id, quantity in requested.items():
            product = get_product(context, product_id, owner_id, products=catalogue)
            _require_stock(current_stock(context, product), quantity)

    inserted: List[TransactionRow] = []
    try:
        for row in prepared:
            context.store.insert(TableName.TRANSACTIONS, data_manager.serialize_transaction(row))
            inserted.append(row)
    except StoreError:
        log.error("Invoice insert failed after %d of %d lines; rolling back", len(inserted), len(prepared))
        for row in inserted:
            context.store.delete(TableName.TRANSACTIONS, row.id)
        raise

    log.info(
        "Recorded %s invoice with %d lines for '%s'",
        command.type.value,
        len(inserted),
        command.counterparty_name,
    )
    current_day = _resolve_today(today)
    return [lifecycle.refresh_status(row, current_day) for row in inserted]


def mark_transaction_as_paid(context: RuntimeContext, transaction_id: str, owner_id: str) -> TransactionRow:
    """Settle a transaction. Settling an already paid row changes nothing.

    Raises:
        NotFoundError: If the transaction does not exist.
        ForbiddenError: If it belongs to another owner.
    """
    transaction = _load_owned_transaction(context, transaction_id, owner_id)
    if transaction.payment_status is PaymentStatus.PAID:
        log.debug("Transaction '%s' already paid", transaction_id)
        return transaction

    paid = lifecycle.mark_paid(transaction)
    context.store.update(TableName.TRANSACTIONS, transaction_id, {"payment_status": paid.payment_status.value})
    log.info("Marked transaction '%s' as paid", transaction_id)
    return paid


def delete_transaction(context: RuntimeContext, transaction_id: str, owner_id: str) -> bool:
    """Delete one of ``owner_id``'s transactions.

    Stock is derived, so deletion needs no compensating entries. Deleting an
    id that no longer exists is a no-op, which makes retries safe.

    Returns:
        bool: ``True`` if a row was removed.

    Raises:
        ForbiddenError: If the transaction belongs to another owner.
    """
    try:
        _load_owned_transaction(context, transaction_id, owner_id)
    except ForbiddenError:
        raise
    except NotFoundError:
        log.info("Transaction '%s' already absent; nothing to delete", transaction_id)
        return False

    context.store.delete(TableName.TRANSACTIONS, transaction_id)
    log.info("Deleted transaction '%s'", transaction_id)
    return True


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


def get_inventory_summary(context: RuntimeContext, owner_id: str) -> List[InventoryItem]:
    """Value every product of ``owner_id`` from the full transaction set, ordered by name."""
    products = list_products(context, owner_id)
    transactions = list_transactions(context, owner_id)
    return valuation.summarize_all(products, transactions)


def compute_dashboard_metrics(
    inventory: Sequence[InventoryItem], transactions: Sequence[TransactionRow]
) -> DashboardMetrics:
    """Aggregate headline figures from already computed summaries.

    Gross profit is ``revenue - (purchases - stock value)``: purchases still
    sitting in stock are not yet a cost of goods sold. Receivables and
    payables are the totals of unpaid sales and purchases.
    """
    total_revenue = ZERO
    total_purchases = ZERO
    receivable = ZERO
    payable = ZERO
    overdue = 0
    for transaction in transactions:
        unpaid = transaction.payment_status is not PaymentStatus.PAID
        if transaction.payment_status is PaymentStatus.OVERDUE:
            overdue += 1
        if transaction.type is TransactionType.SALE:
            total_revenue += transaction.total_value
            if unpaid:
                receivable += transaction.total_value
        else:
            total_purchases += transaction.total_value
            if unpaid:
                payable += transaction.total_value

    stock_value = sum((item.total_value for item in inventory), ZERO)
    attention = tuple(item.name for item in inventory if item.status is not StockStatus.OK)
    return DashboardMetrics(
        total_revenue=total_revenue,
        total_purchases=total_purchases,
        gross_profit=total_revenue - (total_purchases - stock_value),
        total_stock_value=stock_value,
        low_stock_count=len(attention),
        accounts_receivable=receivable,
        accounts_payable=payable,
        overdue_count=overdue,
        attention_items=attention,
    )


def calculate_dashboard_metrics(
    context: RuntimeContext, owner_id: str, *, today: Optional[date] = None
) -> DashboardMetrics:
    """Load ``owner_id``'s inventory and transactions and aggregate them."""
    inventory = get_inventory_summary(context, owner_id)
    transactions = get_transactions(context, owner_id, today=today)
    metrics = compute_dashboard_metrics(inventory, transactions)
    log.debug(
        "Dashboard for '%s': revenue=%s purchases=%s profit=%s",
        owner_id,
        metrics.total_revenue,
        metrics.total_purchases,
        metrics.gross_profit,
    )
    return metrics


def calculate_daily_sales(
    context: RuntimeContext, owner_id: str, *, days: int = 7, today: Optional[date] = None
) -> List[Tuple[date, Decimal]]:
    """Sum sale totals per calendar day for the last ``days`` days, oldest first."""
    if days <= 0:
        raise ValidationError("The sales window must cover at least one day")
    current_day = _resolve_today(today)
    window = [current_day - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
    totals: Dict[date, Decimal] = {day: ZERO for day in window}
    for transaction in list_transactions(context, owner_id):
        if transaction.type is TransactionType.SALE and transaction.date in totals:
            totals[transaction.date] += transaction.total_value
    return [(day, totals[day]) for day in window]


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------


def export_backup(context: RuntimeContext, owner_id: str) -> Dict[str, Any]:
    """Return a JSON-serialisable snapshot of ``owner_id``'s products and transactions."""
    snapshot = data_manager.export_snapshot(context.store, owner_id)
    log.info(
        "Exported backup for '%s' (%d products, %d transactions)",
        owner_id,
        len(snapshot["products"]),
        len(snapshot["transactions"]),
    )
    return snapshot


def restore_backup(context: RuntimeContext, owner_id: str, snapshot: Mapping[str, Any]) -> Tuple[int, int]:
    """Replace ``owner_id``'s rows with the content of ``snapshot``."""
    return data_manager.restore_snapshot(context.store, owner_id, snapshot)
