"""Transaction lifecycle engine.

Turns caller intent into a fully derived :class:`TransactionRow` before it is
persisted, and projects the payment status of stored rows at read time.
Overdue detection is never written back: every read calls
:func:`refresh_status` against the current date.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional

from . import log
from .constants import PaymentStatus, PaymentType, TransactionType
from .data_manager import ProductRow, TransactionRow
from .errors import ValidationError


ZERO = Decimal("0")


@dataclass(frozen=True)
class TransactionCommand:
    """User intent for recording one purchase or sale of a single product."""

    product_id: str
    type: TransactionType
    counterparty_name: str
    gross_quantity: Decimal
    unit_price: Decimal
    date: date
    payment_type: PaymentType = PaymentType.CASH
    deduction: Decimal = ZERO
    deduction_reason: Optional[str] = None
    extra_charge: Decimal = ZERO
    extra_charge_reason: Optional[str] = None
    credit_period_days: Optional[int] = None

    @property
    def net_quantity(self) -> Decimal:
        return self.gross_quantity - self.deduction


def require_finite(value: Decimal, label: str) -> None:
    """Reject ``NaN``, ``sNaN`` and infinite amounts.

    Raises:
        ValidationError: If ``value`` is not a finite number.
    """
    if isinstance(value, Decimal) and not value.is_finite():
        log.error("%s validation failed: %s", label, value)
        raise ValidationError(f"{label} must be a finite number")


def require_positive(value: Decimal, label: str) -> None:
    """Reject zero, negative or non-finite ``value``.

    Raises:
        ValidationError: If ``value`` is not strictly positive.
    """
    require_finite(value, label)
    if value <= ZERO:
        log.error("%s validation failed: %s", label, value)
        raise ValidationError(f"{label} must be greater than zero")


def require_nonnegative(value: Decimal, label: str) -> None:
    """Reject negative or non-finite ``value``.

    Raises:
        ValidationError: If ``value`` is below zero.
    """
    require_finite(value, label)
    if value < ZERO:
        log.error("%s validation failed: %s", label, value)
        raise ValidationError(f"{label} must be zero or positive")


def compute_net_quantity(gross_quantity: Decimal, deduction: Decimal) -> Decimal:
    """Return ``gross_quantity - deduction`` after checking the deduction fits.

    Raises:
        ValidationError: If the deduction is negative or exceeds the gross quantity.
    """
    require_nonnegative(deduction, "Deduction")
    if deduction > gross_quantity:
        log.error("Deduction %s exceeds gross quantity %s", deduction, gross_quantity)
        raise ValidationError("Deduction cannot exceed the gross quantity")
    return gross_quantity - deduction


def compute_total_value(net_quantity: Decimal, unit_price: Decimal, extra_charge: Decimal = ZERO) -> Decimal:
    """Return ``net_quantity * unit_price + extra_charge``."""
    return net_quantity * unit_price + extra_charge


def compute_due_date(transaction_date: date, credit_period_days: int) -> date:
    """Add ``credit_period_days`` calendar days to ``transaction_date``."""
    return transaction_date + timedelta(days=credit_period_days)


def _coerce_date(value: date) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raise ValidationError(f"Invalid transaction date: {value!r}")


def _validate_credit_period(days: Optional[int]) -> Optional[int]:
    if days is None:
        return None
    if isinstance(days, bool) or not isinstance(days, int):
        raise ValidationError("Credit period must be a whole number of days")
    if days <= 0:
        log.error("Credit period validation failed: %s", days)
        raise ValidationError("Credit period must be greater than zero days")
    return days


def prepare(
    command: TransactionCommand,
    product: ProductRow,
    *,
    transaction_id: str,
    owner_id: str,
    created_at: Optional[datetime] = None,
) -> TransactionRow:
    """Validate ``command`` and materialise the row that will be persisted.

    Product name and unit are snapshotted from ``product``. Credit rows start
    ``pending`` and get a due date when a credit period is supplied; cash rows
    are ``paid`` immediately and never carry a due date or credit period.

    Args:
        command (TransactionCommand): Caller intent.
        product (ProductRow): Product the transaction moves.
        transaction_id (str): Identifier allocated for the new row.
        owner_id (str): Owner the row is scoped to.
        created_at (datetime | None): Creation timestamp stored on the row.

    Returns:
        TransactionRow: Row ready for persistence.

    Raises:
        ValidationError: If a quantity, price, deduction, extra charge,
            credit period, type or payment type is unacceptable, or a
            sale carries a deduction.
    """

    if not isinstance(command.type, TransactionType):
        raise ValidationError(f"Unsupported transaction type: {command.type}")
    if not isinstance(command.payment_type, PaymentType):
        raise ValidationError(f"Unsupported payment type: {command.payment_type}")

    require_positive(command.gross_quantity, "Quantity")
    require_positive(command.unit_price, "Unit price")
    require_nonnegative(command.extra_charge, "Extra charge")
    net_quantity = compute_net_quantity(command.gross_quantity, command.deduction)
    if command.type is TransactionType.SALE and command.deduction != ZERO:
        log.error("Rejected deduction of %s on a sale of '%s'", command.deduction, product.id)
        raise ValidationError("Deductions can only be recorded on purchases")
    transaction_date = _coerce_date(command.date)

    credit_period: Optional[int] = None
    due_date: Optional[date] = None
    if command.payment_type is PaymentType.CREDIT:
        payment_status = PaymentStatus.PENDING
        credit_period = _validate_credit_period(command.credit_period_days)
        if credit_period is not None:
            due_date = compute_due_date(transaction_date, credit_period)
    else:
        payment_status = PaymentStatus.PAID

    return TransactionRow(
        id=transaction_id,
        owner_id=owner_id,
        product_id=product.id,
        product_name=product.name,
        type=command.type,
        counterparty_name=command.counterparty_name.strip(),
        gross_quantity=command.gross_quantity,
        deduction=command.deduction,
        deduction_reason=command.deduction_reason if command.deduction > ZERO else None,
        extra_charge=command.extra_charge,
        extra_charge_reason=command.extra_charge_reason if command.extra_charge > ZERO else None,
        unit=product.unit,
        unit_price=command.unit_price,
        total_value=compute_total_value(net_quantity, command.unit_price, command.extra_charge),
        date=transaction_date,
        payment_type=command.payment_type,
        credit_period_days=credit_period,
        due_date=due_date,
        payment_status=payment_status,
        created_at=created_at,
    )


def is_overdue(transaction: TransactionRow, today: date) -> bool:
    """True when a pending credit row's due date lies before ``today``."""
    return (
        transaction.payment_status is not PaymentStatus.PAID
        and transaction.due_date is not None
        and transaction.due_date < today
    )


def refresh_status(transaction: TransactionRow, today: date) -> TransactionRow:
    """Project the payment status of a stored row onto ``today``.

    A ``pending`` row whose due date is before ``today`` is returned as an
    ``overdue`` copy. ``paid`` rows are returned unchanged.
    """
    if transaction.payment_status is PaymentStatus.PENDING and is_overdue(transaction, today):
        return replace(transaction, payment_status=PaymentStatus.OVERDUE)
    return transaction


def mark_paid(transaction: TransactionRow) -> TransactionRow:
    """Return ``transaction`` with its status set to ``paid``, whatever it was."""
    if transaction.payment_status is PaymentStatus.PAID:
        return transaction
    return replace(transaction, payment_status=PaymentStatus.PAID)


def days_late(transaction: TransactionRow, today: date) -> Optional[int]:
    """Whole days past the due date of an unpaid row, or ``None`` if not overdue."""
    if not is_overdue(transaction, today):
        return None
    return (today - transaction.due_date).days  # type: ignore[operator]


def days_remaining(transaction: TransactionRow, today: date) -> Optional[int]:
    """Whole days until the due date of an unpaid row (negative once late).

    ``None`` for paid rows and rows without a due date.
    """
    if transaction.payment_status is PaymentStatus.PAID or transaction.due_date is None:
        return None
    return (transaction.due_date - today).days


__all__ = [
    "TransactionCommand",
    "compute_net_quantity",
    "compute_total_value",
    "compute_due_date",
    "prepare",
    "is_overdue",
    "refresh_status",
    "mark_paid",
    "days_late",
    "days_remaining",
]
