"""Data access layer for FINTRACK.

This module owns everything that touches storage. Business rules belong in
:mod:`fintrack.core_logic` and the engines it drives.

The public API is organised around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Row types: the :class:`ProductRow` and :class:`TransactionRow` dataclasses
   and their translation to and from snake_case store records.
3. Ledger stores: the :class:`LedgerStore` interface with an in-memory
   implementation and an ``.xlsx`` workbook-backed implementation.
4. Change notification and owner-scoped backup snapshots.
"""


from __future__ import annotations

import abc
import configparser
import copy
import zipfile
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook import Workbook

from . import log
from .constants import (
    DEFAULT_CATEGORY,
    DEFAULT_CURRENCY,
    DEFAULT_UNIT,
    PaymentStatus,
    PaymentType,
    TableName,
    TransactionType,
)
from .errors import StoreError, ValidationError, normalize_error_message


CONFIG_FILE_NAME = "config.ini"
STORAGE_BACKENDS = ("workbook", "memory")

PRODUCT_COLUMNS: tuple[str, ...] = (
    "id",
    "owner_id",
    "name",
    "category",
    "min_stock_level",
    "unit",
    "created_at",
)

TRANSACTION_COLUMNS: tuple[str, ...] = (
    "id",
    "owner_id",
    "product_id",
    "product_name",
    "type",
    "counterparty_name",
    "gross_quantity",
    "deduction",
    "deduction_reason",
    "extra_charge",
    "extra_charge_reason",
    "unit",
    "unit_price",
    "total_value",
    "date",
    "payment_type",
    "credit_period_days",
    "due_date",
    "payment_status",
    "created_at",
)

TABLE_COLUMNS: Mapping[TableName, Sequence[str]] = {
    TableName.PRODUCTS: PRODUCT_COLUMNS,
    TableName.TRANSACTIONS: TRANSACTION_COLUMNS,
}

Record = Dict[str, Any]
ChangeCallback = Callable[[], None]
Unsubscribe = Callable[[], None]


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    default_owner_id: str
    storage: str = "workbook"
    default_credit_period_days: Optional[int] = None
    currency: str = DEFAULT_CURRENCY


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``products`` table."""

    id: str
    owner_id: str
    name: str
    category: str
    min_stock_level: Decimal
    unit: str
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``transactions`` table.

    ``product_name`` and ``unit`` are snapshots taken from the product when
    the row was created. ``total_value`` and ``due_date`` are derived by
    :func:`fintrack.lifecycle.prepare` and stored as computed.
    """

    id: str
    owner_id: str
    product_id: str
    product_name: str
    type: TransactionType
    counterparty_name: str
    gross_quantity: Decimal
    deduction: Decimal
    unit: str
    unit_price: Decimal
    total_value: Decimal
    date: date
    payment_type: PaymentType
    payment_status: PaymentStatus
    deduction_reason: Optional[str] = None
    extra_charge: Decimal = Decimal("0")
    extra_charge_reason: Optional[str] = None
    credit_period_days: Optional[int] = None
    due_date: Optional[date] = None
    created_at: Optional[datetime] = None

    @property
    def net_quantity(self) -> Decimal:
        """Quantity that actually moves stock: gross minus deduction."""
        return self.gross_quantity - self.deduction


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls the ledger.

    An ``explicit_path`` is returned as-is without verification. Otherwise the
    function walks from the current working directory toward the filesystem
    root and returns the first ``config.ini`` it finds.

    Args:
        explicit_path (Path | None): Optional path to use instead of searching.

    Returns:
        Path: The caller's path or the discovered configuration file.

    Raises:
        FileNotFoundError: If no ``config.ini`` exists in the cwd or its parents.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser``.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after ``~``
            expansion and resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System] DataFile``, ``BusinessName``, ``SchemaVersion`` and
    ``[Defaults] Owner`` are required. ``[System] Storage``,
    ``[Defaults] CreditPeriodDays`` and ``[Defaults] Currency`` are optional.
    Relative data file paths are anchored at ``base_path`` (the current
    working directory when omitted) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor for relative ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required entry is missing.
        ValueError: If an optional entry holds an unusable value.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
        default_owner = parser.get("Defaults", "Owner")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    storage = parser.get("System", "Storage", fallback="workbook").strip().lower()
    if storage not in STORAGE_BACKENDS:
        raise ValueError(f"Unsupported storage backend: {storage}")

    credit_period_raw = parser.get("Defaults", "CreditPeriodDays", fallback="").strip()
    credit_period: Optional[int] = None
    if credit_period_raw:
        credit_period = int(credit_period_raw)
        if credit_period <= 0:
            raise ValueError("CreditPeriodDays must be a positive integer")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        default_owner_id=default_owner,
        storage=storage,
        default_credit_period_days=credit_period,
        currency=parser.get("Defaults", "Currency", fallback=DEFAULT_CURRENCY),
    )


# ---------------------------------------------------------------------------
# Record translation
# ---------------------------------------------------------------------------


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    if raw is None or raw == "":
        return Decimal(default)
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        log.warning("Discarding non-numeric stored value %r", raw)
        return Decimal(default)


def _to_text(raw: object, default: str = "") -> str:
    text = normalize_error_message(raw)
    return text if text else default


def _to_optional_text(raw: object) -> Optional[str]:
    text = _to_text(raw)
    return text or None


def _to_date(raw: object) -> Optional[date]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw)[:10])


def _to_datetime(raw: object) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    value = raw if isinstance(raw, datetime) else datetime.fromisoformat(str(raw))
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def _to_optional_int(raw: object) -> Optional[int]:
    if raw is None or raw == "":
        return None
    value = int(Decimal(str(raw)))
    return value or None


def serialize_product(record: ProductRow) -> Record:
    """Convert a product dataclass into a snake_case store record."""

    return {
        "id": record.id,
        "owner_id": record.owner_id,
        "name": record.name,
        "category": record.category,
        "min_stock_level": record.min_stock_level,
        "unit": record.unit,
        "created_at": record.created_at.isoformat() if record.created_at else None,
    }


def deserialize_product(raw: Mapping[str, Any]) -> ProductRow:
    """Convert a store record into a strongly typed product.

    Blank names, categories and units fall back to display defaults, and the
    minimum stock level falls back to zero when the stored value is unusable.
    """

    return ProductRow(
        id=_to_text(raw.get("id")),
        owner_id=_to_text(raw.get("owner_id")),
        name=_to_text(raw.get("name"), "Unknown Product"),
        category=_to_text(raw.get("category"), DEFAULT_CATEGORY),
        min_stock_level=_to_decimal(raw.get("min_stock_level")),
        unit=_to_text(raw.get("unit"), DEFAULT_UNIT),
        created_at=_to_datetime(raw.get("created_at")),
    )


def serialize_transaction(record: TransactionRow) -> Record:
    """Convert a transaction dataclass into a snake_case store record.

    Numeric fields stay :class:`~decimal.Decimal`; dates and timestamps are
    written as ISO-8601 strings so every backend stores them verbatim.
    """

    return {
        "id": record.id,
        "owner_id": record.owner_id,
        "product_id": record.product_id,
        "product_name": record.product_name,
        "type": record.type.value,
        "counterparty_name": record.counterparty_name,
        "gross_quantity": record.gross_quantity,
        "deduction": record.deduction,
        "deduction_reason": record.deduction_reason,
        "extra_charge": record.extra_charge,
        "extra_charge_reason": record.extra_charge_reason,
        "unit": record.unit,
        "unit_price": record.unit_price,
        "total_value": record.total_value,
        "date": record.date.isoformat(),
        "payment_type": record.payment_type.value,
        "credit_period_days": record.credit_period_days,
        "due_date": record.due_date.isoformat() if record.due_date else None,
        "payment_status": record.payment_status.value,
        "created_at": record.created_at.isoformat() if record.created_at else None,
    }


def deserialize_transaction(raw: Mapping[str, Any]) -> TransactionRow:
    """Convert a store record into a strongly typed transaction.

    Unknown ``type`` values are read as purchases and unknown payment types
    as cash. A missing payment status defaults to ``paid``.

    Raises:
        StoreError: If the record carries no usable transaction date.
    """

    transaction_type = TransactionType.SALE if raw.get("type") == TransactionType.SALE.value else TransactionType.PURCHASE
    payment_type = PaymentType.CREDIT if raw.get("payment_type") == PaymentType.CREDIT.value else PaymentType.CASH
    try:
        payment_status = PaymentStatus(raw.get("payment_status") or PaymentStatus.PAID.value)
    except ValueError:
        payment_status = PaymentStatus.PAID

    try:
        tx_date = _to_date(raw.get("date"))
        due_date = _to_date(raw.get("due_date"))
    except ValueError as exc:
        raise StoreError(f"Malformed date on transaction '{raw.get('id')}': {exc}") from exc
    if tx_date is None:
        raise StoreError(f"Transaction '{raw.get('id')}' has no date")

    return TransactionRow(
        id=_to_text(raw.get("id")),
        owner_id=_to_text(raw.get("owner_id")),
        product_id=_to_text(raw.get("product_id")),
        product_name=_to_text(raw.get("product_name"), "Item"),
        type=transaction_type,
        counterparty_name=_to_text(raw.get("counterparty_name"), "N/A"),
        gross_quantity=_to_decimal(raw.get("gross_quantity")),
        deduction=_to_decimal(raw.get("deduction")),
        deduction_reason=_to_optional_text(raw.get("deduction_reason")),
        extra_charge=_to_decimal(raw.get("extra_charge")),
        extra_charge_reason=_to_optional_text(raw.get("extra_charge_reason")),
        unit=_to_text(raw.get("unit"), DEFAULT_UNIT),
        unit_price=_to_decimal(raw.get("unit_price")),
        total_value=_to_decimal(raw.get("total_value")),
        date=tx_date,
        payment_type=payment_type,
        credit_period_days=_to_optional_int(raw.get("credit_period_days")),
        due_date=due_date,
        payment_status=payment_status,
        created_at=_to_datetime(raw.get("created_at")),
    )


# ---------------------------------------------------------------------------
# Change notification
# ---------------------------------------------------------------------------


class ChangeChannel:
    """Owner-scoped publish/subscribe channel for store mutations.

    Subscribers receive no payload: a notification only tells them to
    re-fetch whatever summaries they display.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._subscribers: Dict[str, List[ChangeCallback]] = {}

    def subscribe(self, owner_id: str, on_change: ChangeCallback) -> Unsubscribe:
        with self._lock:
            self._subscribers.setdefault(owner_id, []).append(on_change)
        log.debug("Subscribed listener for owner '%s'", owner_id)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._subscribers.get(owner_id, [])
                if on_change in listeners:
                    listeners.remove(on_change)
                if not listeners:
                    self._subscribers.pop(owner_id, None)

        return unsubscribe

    def subscriber_count(self, owner_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(owner_id, []))

    def publish(self, owner_id: str) -> None:
        """Notify every listener registered for ``owner_id``.

        A failing listener is logged and does not prevent delivery to the
        remaining listeners; the mutation that triggered it has already been
        applied.
        """

        with self._lock:
            listeners = list(self._subscribers.get(owner_id, []))
        for listener in listeners:
            try:
                listener()
            except Exception:
                log.exception("Change listener for owner '%s' failed", owner_id)


# ---------------------------------------------------------------------------
# Ledger stores
# ---------------------------------------------------------------------------


def _matches(record: Mapping[str, Any], filters: Optional[Mapping[str, Any]]) -> bool:
    if not filters:
        return True
    return all(record.get(column) == value for column, value in filters.items())


def _check_columns(table: TableName, names: Iterable[str]) -> None:
    known = TABLE_COLUMNS[table]
    unknown = [name for name in names if name not in known]
    if unknown:
        raise StoreError(f"Unknown {table.value} column(s): {', '.join(sorted(unknown))}")


class LedgerStore(abc.ABC):
    """Durable, owner-scoped storage of product and transaction records.

    Records are plain dictionaries keyed by the snake_case column names in
    :data:`TABLE_COLUMNS`. Every mutation publishes a change notification to
    the owner of the affected record.
    """

    def __init__(self, channel: Optional[ChangeChannel] = None) -> None:
        self.channel = channel if channel is not None else ChangeChannel()

    @abc.abstractmethod
    def insert(self, table: TableName, record: Mapping[str, Any]) -> Record:
        """Persist ``record`` and return the stored copy."""

    @abc.abstractmethod
    def select(self, table: TableName, filters: Optional[Mapping[str, Any]] = None) -> List[Record]:
        """Return copies of the records matching every ``filters`` entry, in insertion order."""

    @abc.abstractmethod
    def update(self, table: TableName, record_id: str, patch: Mapping[str, Any]) -> None:
        """Overwrite the ``patch`` columns of the record identified by ``record_id``."""

    @abc.abstractmethod
    def delete(self, table: TableName, record_id: str) -> None:
        """Remove the record identified by ``record_id``."""

    def subscribe(self, owner_id: str, on_change: ChangeCallback) -> Unsubscribe:
        return self.channel.subscribe(owner_id, on_change)

    def save(self) -> None:
        """Flush pending changes to durable storage. No-op for volatile stores."""

    def _notify(self, owner_id: object) -> None:
        if owner_id:
            self.channel.publish(str(owner_id))


class MemoryLedgerStore(LedgerStore):
    """Process-local store holding records in per-table lists.

    Each instance is independent; tests and embedded callers construct their
    own and inject it through :class:`fintrack.core_logic.RuntimeContext`.
    """

    def __init__(self, channel: Optional[ChangeChannel] = None) -> None:
        super().__init__(channel)
        self._lock = RLock()
        self._tables: Dict[TableName, List[Record]] = {table: [] for table in TableName}

    def _find_index(self, table: TableName, record_id: str) -> Optional[int]:
        for index, record in enumerate(self._tables[table]):
            if record.get("id") == record_id:
                return index
        return None

    def insert(self, table: TableName, record: Mapping[str, Any]) -> Record:
        _check_columns(table, record)
        row = {column: record.get(column) for column in TABLE_COLUMNS[table]}
        with self._lock:
            if not row.get("id"):
                raise StoreError(f"Cannot insert a {table.value} record without an id")
            if self._find_index(table, row["id"]) is not None:
                raise StoreError(f"Duplicate {table.value} id: {row['id']}")
            self._tables[table].append(row)
        self._notify(row.get("owner_id"))
        return copy.deepcopy(row)

    def select(self, table: TableName, filters: Optional[Mapping[str, Any]] = None) -> List[Record]:
        with self._lock:
            return [copy.deepcopy(record) for record in self._tables[table] if _matches(record, filters)]

    def update(self, table: TableName, record_id: str, patch: Mapping[str, Any]) -> None:
        _check_columns(table, patch)
        if "id" in patch and patch["id"] != record_id:
            raise StoreError("Record ids are immutable")
        with self._lock:
            index = self._find_index(table, record_id)
            if index is None:
                raise StoreError(f"{table.value} record not found: {record_id}")
            record = self._tables[table][index]
            record.update(patch)
            owner_id = record.get("owner_id")
        self._notify(owner_id)

    def delete(self, table: TableName, record_id: str) -> None:
        with self._lock:
            index = self._find_index(table, record_id)
            if index is None:
                raise StoreError(f"{table.value} record not found: {record_id}")
            removed = self._tables[table].pop(index)
        self._notify(removed.get("owner_id"))


class WorkbookLedgerStore(LedgerStore):
    """Embedded-file store keeping each table on a sheet of an ``.xlsx`` workbook.

    Row 1 of every sheet holds the column names from :data:`TABLE_COLUMNS`.
    Mutations apply to the in-memory workbook; :meth:`save` writes it back to
    :attr:`path`.
    """

    def __init__(self, path: Path, *, workbook: Optional[Workbook] = None, channel: Optional[ChangeChannel] = None) -> None:
        super().__init__(channel)
        self.path = Path(path).expanduser().resolve()
        self.workbook = workbook if workbook is not None else open_workbook(self.path)
        self._lock = RLock()

    def _sheet(self, table: TableName):
        try:
            return self.workbook[table.value]
        except KeyError as exc:
            raise StoreError(f"Workbook '{self.path.name}' has no '{table.value}' sheet") from exc

    def _header_map(self, table: TableName) -> Dict[str, int]:
        sheet = self._sheet(table)
        return {cell.value: index + 1 for index, cell in enumerate(sheet[1]) if cell.value is not None}

    def _iter_records(self, table: TableName) -> Iterable[tuple[int, Record]]:
        header = self._header_map(table)
        sheet = self._sheet(table)
        for row_index, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
            # skip fully empty rows
            if not any(cell is not None for cell in raw):
                continue
            record = {
                column: (raw[header[column] - 1] if column in header and header[column] <= len(raw) else None)
                for column in TABLE_COLUMNS[table]
            }
            yield row_index, record

    def _locate_row(self, table: TableName, record_id: str) -> Optional[int]:
        for row_index, record in self._iter_records(table):
            if record.get("id") == record_id:
                return row_index
        return None

    def insert(self, table: TableName, record: Mapping[str, Any]) -> Record:
        _check_columns(table, record)
        row = {column: record.get(column) for column in TABLE_COLUMNS[table]}
        with self._lock:
            if not row.get("id"):
                raise StoreError(f"Cannot insert a {table.value} record without an id")
            if self._locate_row(table, row["id"]) is not None:
                raise StoreError(f"Duplicate {table.value} id: {row['id']}")
            header = self._header_map(table)
            values: List[Any] = [None] * max(header.values(), default=0)
            for column, position in header.items():
                values[position - 1] = row.get(column)
            self._sheet(table).append(values)
        self._notify(row.get("owner_id"))
        return dict(row)

    def select(self, table: TableName, filters: Optional[Mapping[str, Any]] = None) -> List[Record]:
        with self._lock:
            return [record for _, record in self._iter_records(table) if _matches(record, filters)]

    def update(self, table: TableName, record_id: str, patch: Mapping[str, Any]) -> None:
        _check_columns(table, patch)
        if "id" in patch and patch["id"] != record_id:
            raise StoreError("Record ids are immutable")
        with self._lock:
            row_index = self._locate_row(table, record_id)
            if row_index is None:
                raise StoreError(f"{table.value} record not found: {record_id}")
            header = self._header_map(table)
            sheet = self._sheet(table)
            for column, value in patch.items():
                if column not in header:
                    raise StoreError(f"Workbook sheet '{table.value}' lacks column '{column}'")
                sheet.cell(row=row_index, column=header[column], value=value)
            owner_id = sheet.cell(row=row_index, column=header["owner_id"]).value if "owner_id" in header else None
        self._notify(owner_id)

    def delete(self, table: TableName, record_id: str) -> None:
        with self._lock:
            row_index = self._locate_row(table, record_id)
            if row_index is None:
                raise StoreError(f"{table.value} record not found: {record_id}")
            header = self._header_map(table)
            sheet = self._sheet(table)
            owner_id = sheet.cell(row=row_index, column=header["owner_id"]).value if "owner_id" in header else None
            sheet.delete_rows(row_index)
        self._notify(owner_id)

    def save(self) -> None:
        try:
            save_workbook(self.workbook, self.path)
        except OSError as exc:
            raise StoreError(f"Unable to save workbook '{self.path}': {normalize_error_message(exc)}") from exc
        log.info("Saved ledger workbook '%s'", self.path)


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
        StoreError: If the file exists but cannot be read as a workbook.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    try:
        return openpyxl.load_workbook(data_file)
    except (OSError, ValueError, KeyError, zipfile.BadZipFile, InvalidFileException) as exc:
        raise StoreError(f"Unable to open workbook '{data_file}': {normalize_error_message(exc)}") from exc


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook at ``destination``, creating parent folders on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def new_ledger_workbook() -> Workbook:
    """Build an empty workbook with one bold-headed sheet per ledger table."""

    workbook = openpyxl.Workbook()
    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active is not None and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)
    for table, columns in TABLE_COLUMNS.items():
        worksheet = workbook.create_sheet(title=table.value)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font
    return workbook


def build_store(settings: ConfigSettings, *, channel: Optional[ChangeChannel] = None) -> LedgerStore:
    """Instantiate the ledger store selected by ``settings.storage``."""

    if settings.storage == "memory":
        log.info("Using in-memory ledger store")
        return MemoryLedgerStore(channel)
    return WorkbookLedgerStore(settings.data_file, channel=channel)


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------


def _jsonable(record: Mapping[str, Any]) -> Record:
    return {key: (str(value) if isinstance(value, Decimal) else value) for key, value in record.items()}


def export_snapshot(store: LedgerStore, owner_id: str, *, now: Optional[datetime] = None) -> Record:
    """Return a JSON-serialisable snapshot of everything ``owner_id`` owns.

    Decimal columns are rendered as strings so the snapshot survives a JSON
    round trip without losing precision.
    """

    filters = {"owner_id": owner_id}
    moment = now if now is not None else datetime.now(UTC)
    return {
        "owner_id": owner_id,
        "timestamp": moment.isoformat(),
        "products": [_jsonable(record) for record in store.select(TableName.PRODUCTS, filters)],
        "transactions": [_jsonable(record) for record in store.select(TableName.TRANSACTIONS, filters)],
    }


def _check_snapshot_ids(store: LedgerStore, owner_id: str, table: TableName, records: Sequence[Record]) -> None:
    seen: set[str] = set()
    for record in records:
        record_id = record.get("id")
        if not record_id:
            raise ValidationError(f"Backup snapshot has a {table.value} row without an id")
        if record_id in seen:
            raise ValidationError(f"Backup snapshot repeats {table.value} id '{record_id}'")
        seen.add(record_id)
        for existing in store.select(table, {"id": record_id}):
            if existing.get("owner_id") != owner_id:
                raise ValidationError(f"Backup snapshot {table.value} id '{record_id}' belongs to another owner")


def _rollback_restore(
    store: LedgerStore,
    inserted: Sequence[tuple[TableName, str]],
    previous: Mapping[TableName, Sequence[Record]],
) -> None:
    for table, record_id in reversed(inserted):
        store.delete(table, record_id)
    for table in (TableName.PRODUCTS, TableName.TRANSACTIONS):
        for record in previous[table]:
            if not store.select(table, {"id": record["id"]}):
                store.insert(table, record)


def restore_snapshot(store: LedgerStore, owner_id: str, snapshot: Mapping[str, Any]) -> tuple[int, int]:
    """Replace the rows owned by ``owner_id`` with the rows of ``snapshot``.

    Every snapshot row is parsed, and its id checked against rows of other
    owners, before anything is removed, so a malformed snapshot leaves the
    store untouched. Rows are re-owned by ``owner_id``. If the store fails
    part way, the owner's previous rows are put back.

    Returns:
        tuple[int, int]: Number of products and transactions restored.

    Raises:
        ValidationError: If the snapshot is malformed or reuses another
            owner's ids.
        StoreError: If the store fails while replacing the rows.
    """

    try:
        raw_products = list(snapshot["products"])
        raw_transactions = list(snapshot["transactions"])
    except (KeyError, TypeError) as exc:
        raise ValidationError(f"Backup snapshot is missing {normalize_error_message(exc)}") from exc

    try:
        products = [serialize_product(deserialize_product({**raw, "owner_id": owner_id})) for raw in raw_products]
        transactions = [
            serialize_transaction(deserialize_transaction({**raw, "owner_id": owner_id})) for raw in raw_transactions
        ]
    except (StoreError, ValueError, TypeError) as exc:
        raise ValidationError(f"Backup snapshot is malformed: {normalize_error_message(exc)}") from exc

    _check_snapshot_ids(store, owner_id, TableName.PRODUCTS, products)
    _check_snapshot_ids(store, owner_id, TableName.TRANSACTIONS, transactions)

    filters = {"owner_id": owner_id}
    previous = {table: store.select(table, filters) for table in (TableName.PRODUCTS, TableName.TRANSACTIONS)}
    inserted: List[tuple[TableName, str]] = []
    try:
        for table in (TableName.TRANSACTIONS, TableName.PRODUCTS):
            for record in previous[table]:
                store.delete(table, record["id"])
        for table, records in ((TableName.PRODUCTS, products), (TableName.TRANSACTIONS, transactions)):
            for record in records:
                store.insert(table, record)
                inserted.append((table, record["id"]))
    except StoreError:
        log.error("Restore for owner '%s' failed after %d inserted rows; rolling back", owner_id, len(inserted))
        _rollback_restore(store, inserted, previous)
        raise

    log.info(
        "Restored %d products and %d transactions for owner '%s'",
        len(products),
        len(transactions),
        owner_id,
    )
    return len(products), len(transactions)
