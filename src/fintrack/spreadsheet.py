"""Spreadsheet exports of the transaction ledger and the inventory summary.

The exporters only lay out values the engines already computed; net
quantities are the one figure rebuilt here (``gross - deduction``) because
the stored row carries the gross and the deduction separately.
"""

from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import List, Optional, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

from . import log
from .data_manager import TransactionRow, save_workbook
from .valuation import InventoryItem


TRANSACTION_HEADERS: tuple[str, ...] = (
    "Date",
    "Type",
    "ID",
    "Product",
    "Party",
    "Gross Qty",
    "Deduction",
    "Deduction Reason",
    "Net Qty",
    "Unit",
    "Price/Unit",
    "Extra Charge",
    "Extra Charge Reason",
    "Total Value",
    "Payment",
    "Status",
    "Due Date",
)

INVENTORY_HEADERS: tuple[str, ...] = (
    "Product Name",
    "Category",
    "Current Stock",
    "Unit",
    "Avg Cost",
    "Total Value",
    "Status",
)


def transaction_rows(transactions: Sequence[TransactionRow]) -> List[list[object]]:
    """Lay out transactions as worksheet rows matching :data:`TRANSACTION_HEADERS`."""

    return [
        [
            tx.date,
            tx.type.value.upper(),
            tx.id,
            tx.product_name,
            tx.counterparty_name,
            tx.gross_quantity,
            tx.deduction,
            tx.deduction_reason or "",
            tx.net_quantity,
            tx.unit,
            tx.unit_price,
            tx.extra_charge,
            tx.extra_charge_reason or "",
            tx.total_value,
            tx.payment_type.value.upper(),
            tx.payment_status.value.upper(),
            tx.due_date,
        ]
        for tx in transactions
    ]


def inventory_rows(items: Sequence[InventoryItem]) -> List[list[object]]:
    """Lay out inventory items as worksheet rows matching :data:`INVENTORY_HEADERS`."""

    return [
        [
            item.name,
            item.category,
            item.stock,
            item.unit,
            item.avg_cost,
            item.total_value,
            item.status.value.upper(),
        ]
        for item in items
    ]


def default_filename(kind: str, *, today: Optional[date] = None) -> str:
    """Return ``Fintrack_<Kind>_<YYYY-MM-DD>.xlsx``."""

    stamp = (today or date.today()).isoformat()
    return f"Fintrack_{kind}_{stamp}.xlsx"


def write_sheet(destination: Path, title: str, headers: Sequence[str], rows: Sequence[Sequence[object]]) -> Path:
    """Write a single-sheet workbook with a bold header row.

    Date cells get an ISO ``yyyy-mm-dd`` number format and columns are sized
    to their longest value.
    """

    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = title

    bold_font = Font(bold=True)
    sheet.append(list(headers))
    for cell in sheet[1]:
        cell.font = bold_font

    for row in rows:
        sheet.append(list(row))

    for column_index, header in enumerate(headers, start=1):
        letter = get_column_letter(column_index)
        width = len(str(header))
        for cell in sheet[letter][1:]:
            if isinstance(cell.value, date):
                cell.number_format = "yyyy-mm-dd"
            width = max(width, len(str(cell.value)) if cell.value is not None else 0)
        sheet.column_dimensions[letter].width = min(width + 2, 60)

    destination = Path(destination).expanduser().resolve()
    save_workbook(workbook, destination)
    log.info("Exported %d %s rows to '%s'", len(rows), title.lower(), destination)
    return destination


def export_transactions(transactions: Sequence[TransactionRow], destination: Path) -> Path:
    """Export the transaction ledger to ``destination``."""

    return write_sheet(destination, "Transactions", TRANSACTION_HEADERS, transaction_rows(transactions))


def export_inventory(items: Sequence[InventoryItem], destination: Path) -> Path:
    """Export the inventory summary to ``destination``."""

    return write_sheet(destination, "Inventory", INVENTORY_HEADERS, inventory_rows(items))
