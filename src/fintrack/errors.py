"""Error taxonomy raised by the FINTRACK engines and stores.

Every error that crosses the package boundary is a :class:`LedgerError`
whose ``str()`` is already a display-ready message. Only adapters that talk
to untyped external backends need :func:`normalize_error_message`.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional


class LedgerError(Exception):
    """Base class for all domain errors raised by the ledger."""


class ValidationError(LedgerError, ValueError):
    """Raised when numeric or structural input is rejected before persistence."""


class NotFoundError(LedgerError, LookupError):
    """Raised when a referenced product or transaction is unknown to the caller."""


class ForbiddenError(NotFoundError):
    """Raised when a referenced row exists but belongs to another owner."""


class InsufficientStockError(LedgerError):
    """Raised when a sale would take more than the computed stock."""

    def __init__(self, product_id: str, *, stock: Decimal, requested: Decimal, unit: str = "") -> None:
        self.product_id = product_id
        self.stock = stock
        self.requested = requested
        self.unit = unit
        suffix = f" {unit}" if unit else ""
        super().__init__(
            f"Insufficient stock for product '{product_id}': "
            f"requested {requested}{suffix}, current stock {stock}{suffix}"
        )


class StoreError(LedgerError):
    """Raised when the underlying ledger store fails to complete an operation."""


# Keys commonly carrying a human readable message in backend error payloads.
_MESSAGE_KEYS = ("message", "error_description", "msg", "description")


def _looks_like_object_repr(text: str) -> bool:
    stripped = text.strip()
    return "[object Object]" in stripped or (stripped.startswith("<") and " object at 0x" in stripped)


def normalize_error_message(value: Any, *, default: str = "") -> str:
    """Render an arbitrary error value as a display string.

    Exceptions contribute their message (or their class name when the message
    is empty), mappings contribute the first populated message-like key or a
    ``code``/``details`` pair, sequences are joined, and scalars are converted
    with ``str``. Default object representations are never returned.

    Args:
        value (Any): Error value produced by a backend or raised by a caller.
        default (str): Text returned when nothing meaningful can be extracted.

    Returns:
        str: Human readable message, or ``default``.
    """

    if value is None:
        return default
    if isinstance(value, str):
        return default if _looks_like_object_repr(value) else value
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, BaseException):
        if value.args:
            message = normalize_error_message(value.args[0] if len(value.args) == 1 else list(value.args))
            if message:
                return message
        return type(value).__name__
    if isinstance(value, Mapping):
        for key in _MESSAGE_KEYS:
            message = normalize_error_message(value.get(key))
            if message:
                return message
        code = normalize_error_message(value.get("code"))
        if code:
            details = normalize_error_message(value.get("details"))
            return f"Error code {code} - {details}" if details else f"Error code {code}"
        name = normalize_error_message(value.get("name"))
        return name or default
    if isinstance(value, (list, tuple, set, frozenset)):
        parts = [normalize_error_message(item) for item in value]
        return ", ".join(part for part in parts if part) or default

    message: Optional[str] = getattr(value, "message", None)
    if isinstance(message, str) and message:
        return normalize_error_message(message, default=default)
    text = str(value)
    return default if _looks_like_object_repr(text) else text


__all__ = [
    "LedgerError",
    "ValidationError",
    "NotFoundError",
    "ForbiddenError",
    "InsufficientStockError",
    "StoreError",
    "normalize_error_message",
]
