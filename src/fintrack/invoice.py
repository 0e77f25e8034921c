"""PDF invoices for single transactions and consolidated selections.

A selection of only sales renders as an ``INVOICE``, only purchases as a
``PURCHASE ORDER``. A mixed selection renders as a ``SETTLEMENT STATEMENT``
in which purchase amounts are negated so the grand total is the net amount
owed by (positive) or to (negative) the counterparty.

Layout uses reportlab's platypus flowables.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Optional, Sequence
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_LEFT, TA_RIGHT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from . import log
from .constants import DEFAULT_CURRENCY, TransactionType
from .data_manager import TransactionRow
from .errors import ValidationError


GRAY_900 = colors.HexColor("#111827")
GRAY_700 = colors.HexColor("#374151")
GRAY_500 = colors.HexColor("#6b7280")
GRAY_200 = colors.HexColor("#e5e7eb")
GRAY_50 = colors.HexColor("#f9fafb")

TITLE_SALE = "INVOICE"
TITLE_PURCHASE = "PURCHASE ORDER"
TITLE_SETTLEMENT = "SETTLEMENT STATEMENT"


@dataclass(frozen=True)
class InvoiceLineItem:
    """One printed row of the item table."""

    transaction_id: str
    description: str
    quantity_details: str
    unit_price: Optional[Decimal]
    amount: Decimal


@dataclass(frozen=True)
class InvoiceDocument:
    """Everything printed on an invoice, independent of the PDF layout."""

    title: str
    party_label: str
    party_names: tuple[str, ...]
    transaction_ids: tuple[str, ...]
    issue_date: date
    lines: tuple[InvoiceLineItem, ...]
    grand_total: Decimal
    is_settlement: bool


def format_quantity(value: Decimal) -> str:
    """Render a quantity without trailing zeros (``490``, ``12.5``)."""
    text = format(value.normalize(), "f")
    return "0" if text in ("-0", "") else text


def format_money(amount: Decimal, currency: str = DEFAULT_CURRENCY) -> str:
    return f"{currency} {amount:,.2f}"


def quantity_details(transaction: TransactionRow) -> str:
    """Describe the quantity of ``transaction``.

    Shows only the net quantity, or gross, deduction and net on separate lines
    when a deduction was recorded.
    """
    net = f"{format_quantity(transaction.net_quantity)} {transaction.unit}"
    if transaction.deduction <= 0:
        return net
    reason = f" ({transaction.deduction_reason})" if transaction.deduction_reason else ""
    return (
        f"Gross: {format_quantity(transaction.gross_quantity)}\n"
        f"Ded: -{format_quantity(transaction.deduction)}{reason}\n"
        f"Net: {net}"
    )


def build_invoice(transactions: Sequence[TransactionRow]) -> InvoiceDocument:
    """Assemble the printable content for ``transactions``.

    Every transaction contributes a goods line worth ``net * unit_price`` and,
    when it carries one, a separate extra-charge line. In a mixed selection
    purchase lines are negated.

    Raises:
        ValidationError: If ``transactions`` is empty.
    """
    if not transactions:
        raise ValidationError("Select at least one transaction to invoice")

    types = {tx.type for tx in transactions}
    is_settlement = len(types) > 1
    if is_settlement:
        title, party_label = TITLE_SETTLEMENT, "PARTY"
    elif TransactionType.SALE in types:
        title, party_label = TITLE_SALE, "BILL TO"
    else:
        title, party_label = TITLE_PURCHASE, "SUPPLIER"

    lines: list[InvoiceLineItem] = []
    grand_total = Decimal("0")
    for tx in transactions:
        sign = Decimal("-1") if is_settlement and tx.type is TransactionType.PURCHASE else Decimal("1")
        description = tx.product_name
        if is_settlement:
            description = f"{description} ({tx.type.value})"
        lines.append(
            InvoiceLineItem(
                transaction_id=tx.id,
                description=description,
                quantity_details=quantity_details(tx),
                unit_price=tx.unit_price,
                amount=sign * tx.net_quantity * tx.unit_price,
            )
        )
        if tx.extra_charge > 0:
            label = "Extra charge"
            if tx.extra_charge_reason:
                label = f"{label} ({tx.extra_charge_reason})"
            lines.append(
                InvoiceLineItem(
                    transaction_id=tx.id,
                    description=label,
                    quantity_details="",
                    unit_price=None,
                    amount=sign * tx.extra_charge,
                )
            )
        grand_total += sign * tx.total_value

    parties = tuple(dict.fromkeys(tx.counterparty_name for tx in transactions))
    return InvoiceDocument(
        title=title,
        party_label=party_label,
        party_names=parties,
        transaction_ids=tuple(tx.id for tx in transactions),
        issue_date=max(tx.date for tx in transactions),
        lines=tuple(lines),
        grand_total=grand_total,
        is_settlement=is_settlement,
    )


def default_invoice_filename(transactions: Sequence[TransactionRow]) -> str:
    """Return ``<type>_invoice_<id>.pdf`` (``settlement_invoice_...`` for mixed selections)."""
    if not transactions:
        raise ValidationError("Select at least one transaction to invoice")
    first = transactions[0]
    kinds = {tx.type for tx in transactions}
    kind = first.type.value if len(kinds) == 1 else "settlement"
    suffix = f"+{len(transactions) - 1}" if len(transactions) > 1 else ""
    return f"{kind}_invoice_{first.id}{suffix}.pdf"


def _styles() -> dict[str, ParagraphStyle]:
    base = getSampleStyleSheet()
    return {
        "banner": ParagraphStyle("Banner", parent=base["Title"], fontSize=20, textColor=colors.white, alignment=TA_LEFT),
        "banner_right": ParagraphStyle(
            "BannerRight", parent=base["Title"], fontSize=18, textColor=colors.white, alignment=TA_RIGHT
        ),
        "label": ParagraphStyle("Label", parent=base["Normal"], fontSize=8, textColor=GRAY_500),
        "value": ParagraphStyle("Value", parent=base["Normal"], fontSize=10, textColor=GRAY_900, fontName="Helvetica-Bold"),
        "cell": ParagraphStyle("Cell", parent=base["Normal"], fontSize=9, textColor=GRAY_700, leading=12),
        "note": ParagraphStyle("Note", parent=base["Normal"], fontSize=8, textColor=GRAY_500, leading=11),
    }


def _paragraph(text: str, style: ParagraphStyle) -> Paragraph:
    return Paragraph(escape(text).replace("\n", "<br/>"), style)


def render_invoice_pdf(
    document: InvoiceDocument,
    *,
    business_name: str = "FINTRACK",
    currency: str = DEFAULT_CURRENCY,
) -> bytes:
    """Render ``document`` to PDF and return the file content."""
    styles = _styles()
    buffer = io.BytesIO()
    pdf = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=15 * mm,
        rightMargin=15 * mm,
        topMargin=12 * mm,
        bottomMargin=15 * mm,
        title=f"{document.title} {document.transaction_ids[0]}",
    )
    width = A4[0] - 30 * mm

    banner = Table(
        [[_paragraph(business_name.upper(), styles["banner"]), _paragraph(document.title, styles["banner_right"])]],
        colWidths=[width * 0.5, width * 0.5],
    )
    banner.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, -1), GRAY_900),
                ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
                ("TOPPADDING", (0, 0), (-1, -1), 12),
                ("BOTTOMPADDING", (0, 0), (-1, -1), 12),
            ]
        )
    )

    id_label = "TRANSACTION ID" if len(document.transaction_ids) == 1 else "TRANSACTION IDS"
    details = Table(
        [
            [
                _paragraph(id_label, styles["label"]),
                _paragraph("DATE", styles["label"]),
                _paragraph(document.party_label, styles["label"]),
            ],
            [
                _paragraph("\n".join(document.transaction_ids), styles["value"]),
                _paragraph(document.issue_date.isoformat(), styles["value"]),
                _paragraph("\n".join(document.party_names), styles["value"]),
            ],
        ],
        colWidths=[width * 0.4, width * 0.25, width * 0.35],
    )
    details.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, -1), GRAY_50),
                ("BOX", (0, 0), (-1, -1), 0.5, GRAY_200),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("LEFTPADDING", (0, 0), (-1, -1), 8),
            ]
        )
    )

    rows: list[list[object]] = [["Item Description", "Qty Details", "Unit Price", "Total"]]
    for line in document.lines:
        rows.append(
            [
                _paragraph(line.description, styles["cell"]),
                _paragraph(line.quantity_details, styles["cell"]),
                format_money(line.unit_price, currency) if line.unit_price is not None else "",
                format_money(line.amount, currency),
            ]
        )
    total_label = "Net Settlement" if document.is_settlement else "Grand Total"
    rows.append(["", "", total_label, format_money(document.grand_total, currency)])

    items = Table(rows, colWidths=[width * 0.34, width * 0.26, width * 0.18, width * 0.22], repeatRows=1)
    items.setStyle(
        TableStyle(
            [
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("TEXTCOLOR", (0, 0), (-1, 0), GRAY_900),
                ("FONTSIZE", (0, 0), (-1, -1), 9),
                ("GRID", (0, 0), (-1, -2), 0.25, GRAY_200),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("ALIGN", (2, 1), (-1, -1), "RIGHT"),
                ("BACKGROUND", (0, -1), (-1, -1), GRAY_50),
                ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
                ("TEXTCOLOR", (0, -1), (-1, -1), GRAY_900),
                ("TOPPADDING", (0, 0), (-1, -1), 6),
                ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
            ]
        )
    )

    story: list[object] = [banner, Spacer(1, 8 * mm), details, Spacer(1, 8 * mm), items]
    if document.is_settlement:
        story.append(Spacer(1, 4 * mm))
        story.append(
            _paragraph(
                "Purchase amounts are shown as negative values. A positive net settlement is "
                "receivable from the party; a negative one is payable to the party.",
                styles["note"],
            )
        )

    pdf.build(story)
    return buffer.getvalue()


def write_invoice_pdf(
    transactions: Sequence[TransactionRow],
    destination: Path,
    *,
    business_name: str = "FINTRACK",
    currency: str = DEFAULT_CURRENCY,
) -> Path:
    """Build, render and save the invoice for ``transactions``.

    ``destination`` may be a directory, in which case
    :func:`default_invoice_filename` names the file.
    """
    document = build_invoice(transactions)
    destination = Path(destination).expanduser().resolve()
    if destination.is_dir():
        destination = destination / default_invoice_filename(transactions)
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_bytes(render_invoice_pdf(document, business_name=business_name, currency=currency))
    log.info("Wrote %s for %d transaction(s) to '%s'", document.title.lower(), len(transactions), destination)
    return destination
