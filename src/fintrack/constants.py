"""Enumerations shared across the FINTRACK modules.

The storage layer, the valuation and lifecycle engines, the exporters and the
CLI all read their identifiers from here so a persisted value never drifts
from the value the engines compare against.
"""

from __future__ import annotations

from enum import Enum


# Layout version of the workbook store; checked against config.ini.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_UNIT = "units"
DEFAULT_CATEGORY = "General"
DEFAULT_CURRENCY = "INR"


class TransactionType(str, Enum):
    """Direction of a stock movement."""

    PURCHASE = "purchase"
    SALE = "sale"


class PaymentType(str, Enum):
    """Enumerate supported settlement terms."""

    CASH = "cash"
    CREDIT = "credit"


class PaymentStatus(str, Enum):
    """Payment lifecycle states of a transaction."""

    PAID = "paid"
    PENDING = "pending"
    OVERDUE = "overdue"


class StockStatus(str, Enum):
    """Classification of a product's derived stock level."""

    OK = "ok"
    LOW = "low"
    OUT = "out"


class TableName(str, Enum):
    """Tables (workbook sheets) managed by the ledger store."""

    PRODUCTS = "products"
    TRANSACTIONS = "transactions"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_UNIT",
    "DEFAULT_CATEGORY",
    "DEFAULT_CURRENCY",
    "TransactionType",
    "PaymentType",
    "PaymentStatus",
    "StockStatus",
    "TableName",
]
