"""Shared pytest fixtures and utilities for FINTRACK tests."""

from __future__ import annotations

import sys
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from fintrack import constants, core_logic, data_manager  # noqa: E402
from fintrack.constants import PaymentType, TransactionType  # noqa: E402
from fintrack.lifecycle import TransactionCommand  # noqa: E402
from fintrack.setup_workbook import create_ledger_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
OWNER = "owner-1"
OTHER_OWNER = "owner-2"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BusinessName = {business_name}\n"
    "SchemaVersion = {schema_version}\n"
    "Storage = {storage}\n\n"
    "[Defaults]\n"
    "Owner = {owner_id}\n"
    "{credit_line}"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    owner_id: str
    schema_version: str
    business_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        business_name: str = "Test Traders",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        owner_id: str = OWNER,
        storage: str = "workbook",
        credit_period_days: int | None = None,
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = create_ledger_workbook(bundle_dir / "fintrack_data.xlsx")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        credit_line = f"CreditPeriodDays = {credit_period_days}\n" if credit_period_days is not None else ""
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                business_name=business_name,
                schema_version=schema_version,
                storage=storage,
                owner_id=owner_id,
                credit_line=credit_line,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            owner_id=owner_id,
            schema_version=schema_version,
            business_name=business_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load a workbook-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for an in-memory ledger."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "fintrack_data.xlsx",
        business_name="Test Traders",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_owner_id=OWNER,
        storage="memory",
    )


@pytest.fixture
def context(settings: data_manager.ConfigSettings) -> core_logic.RuntimeContext:
    """Assemble a runtime context around a fresh in-memory store."""

    return core_logic.RuntimeContext(settings=settings, store=data_manager.MemoryLedgerStore())


@pytest.fixture
def product_factory() -> Callable[..., data_manager.ProductRow]:
    """Return a helper registering a product through the façade."""

    def _create(
        context: core_logic.RuntimeContext,
        *,
        name: str = "Basmati Rice",
        category: str = "Grains",
        unit: str = "kg",
        min_stock_level: Decimal = Decimal("50"),
        owner_id: str = OWNER,
    ) -> data_manager.ProductRow:
        command = core_logic.ProductCommand(
            name=name,
            category=category,
            min_stock_level=min_stock_level,
            unit=unit,
        )
        return core_logic.add_product(context, command, owner_id)

    return _create


def make_command(
    product_id: str,
    transaction_type: TransactionType,
    quantity: str,
    price: str,
    *,
    on: date = date(2026, 3, 1),
    deduction: str = "0",
    extra_charge: str = "0",
    payment_type: PaymentType = PaymentType.CASH,
    credit_period_days: int | None = None,
    counterparty: str = "Acme Supplies",
) -> TransactionCommand:
    """Build a transaction command from string amounts."""

    return TransactionCommand(
        product_id=product_id,
        type=transaction_type,
        counterparty_name=counterparty,
        gross_quantity=Decimal(quantity),
        unit_price=Decimal(price),
        date=on,
        payment_type=payment_type,
        deduction=Decimal(deduction),
        extra_charge=Decimal(extra_charge),
        credit_period_days=credit_period_days,
    )
