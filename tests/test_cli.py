"""Unit and end-to-end tests for the CLI presentation layer."""

from __future__ import annotations

import argparse
import json
from decimal import Decimal
from pathlib import Path

import pytest

from conftest import OWNER
from fintrack import cli, core_logic
from fintrack.constants import PaymentStatus, PaymentType, TransactionType
from fintrack.errors import InsufficientStockError, NotFoundError, ValidationError


WRITE_COMMANDS = {"add-product", "purchase", "sale", "mark-paid", "delete", "restore"}

READ_COMMANDS = {
    "stock",
    "log",
    "dashboard",
    "export-transactions",
    "export-inventory",
    "invoice",
    "backup",
}


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return set(action.choices)
    return set()


def _add_rice(config_path: Path) -> str:
    assert cli.main(["--config", str(config_path), "add-product", "--name", "Basmati Rice", "--unit", "kg", "--min-stock", "50"]) == 0
    context = core_logic.load_runtime_context(config_path)
    [product] = core_logic.list_products(context, OWNER)
    return product.id


def _transactions(config_path: Path):
    return core_logic.get_transactions(core_logic.load_runtime_context(config_path), OWNER)


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    parser = cli.build_parser()

    assert parser.prog == "fintrack"
    assert "FINTRACK" in (parser.description or "")


def test_configure_subcommands_registers_all_commands():
    parser = cli.build_parser()

    command_table = cli.configure_subcommands(parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(parser) == WRITE_COMMANDS | READ_COMMANDS


def test_build_command_table_rejects_duplicates():
    spec = cli.CommandSpec("alpha", "help", lambda subparsers: subparsers.add_parser("alpha"), lambda *_: 0)

    with pytest.raises(ValueError):
        cli.build_command_table([spec, spec])


def test_dispatch_command_rejects_unknown_command(context):
    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(command="nope"), {})


def test_translate_transaction_uses_default_credit_period():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    args = parser.parse_args(
        ["sale", "--product-id", "P1", "--party", "Walk-in", "--quantity", "3", "--price", "9.5", "--payment-type", "credit", "--date", "2026-03-01"]
    )

    command = cli.translate_transaction(args, default_credit_days=30)

    assert command.type is TransactionType.SALE
    assert command.payment_type is PaymentType.CREDIT
    assert command.credit_period_days == 30
    assert command.unit_price == Decimal("9.5")


@pytest.mark.parametrize("quantity", ["ten", "NaN", "Infinity", "sNaN"])
def test_translate_transaction_rejects_bad_numbers(quantity):
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    args = parser.parse_args(["purchase", "--product-id", "P1", "--party", "Acme", "--quantity", quantity, "--price", "1"])

    with pytest.raises(ValidationError):
        cli.translate_transaction(args)


def test_sale_parser_has_no_deduction_option(capsys):
    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    with pytest.raises(SystemExit):
        parser.parse_args(["sale", "--product-id", "P1", "--party", "Walk-in", "--quantity", "5", "--price", "1", "--deduction", "1"])
    assert "--deduction" in capsys.readouterr().err

    args = parser.parse_args(["sale", "--product-id", "P1", "--party", "Walk-in", "--quantity", "5", "--price", "1"])
    assert cli.translate_transaction(args).deduction == Decimal("0")


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (ValidationError("bad"), 2),
        (NotFoundError("missing"), 2),
        (InsufficientStockError("P1", stock=Decimal("1"), requested=Decimal("2")), 2),
        (FileNotFoundError("config.ini"), 3),
        (RuntimeError("boom"), 1),
    ],
)
def test_handle_cli_error_maps_exit_codes(error, expected):
    assert cli.handle_cli_error(error) == expected


# ---------------------------------------------------------------------------
# End-to-end commands
# ---------------------------------------------------------------------------


def test_missing_config_exits_with_code_3(tmp_path):
    assert cli.main(["--config", str(tmp_path / "missing.ini"), "stock"]) == 3


def test_schema_mismatch_exits_with_code_1(config_factory):
    bundle = config_factory(schema_version="0.1.0")

    assert cli.main(["--config", str(bundle.config_path), "stock"]) == 1


def test_purchase_sale_and_reports(config_file, capsys):
    product_id = _add_rice(config_file)
    base = ["--config", str(config_file)]

    assert cli.main(base + ["purchase", "--product-id", product_id, "--party", "Acme", "--quantity", "500", "--price", "12.50", "--deduction", "10", "--deduction-reason", "moisture"]) == 0
    assert cli.main(base + ["sale", "--product-id", product_id, "--party", "Walk-in", "--quantity", "450", "--price", "15"]) == 0
    assert cli.main(base + ["sale", "--product-id", product_id, "--party", "Walk-in", "--quantity", "41", "--price", "15"]) == 2
    capsys.readouterr()

    assert cli.main(base + ["stock"]) == 0
    stock_report = capsys.readouterr().out
    assert "Basmati Rice" in stock_report
    assert "LOW" in stock_report

    assert cli.main(base + ["dashboard"]) == 0
    dashboard = capsys.readouterr().out
    assert "INR 6,750.00" in dashboard
    assert "INR 6,125.00" in dashboard

    assert len(_transactions(config_file)) == 2


def test_stock_search_filters_by_name_or_category(config_file, capsys):
    base = ["--config", str(config_file)]
    _add_rice(config_file)
    assert cli.main(base + ["add-product", "--name", "Wheat", "--category", "Flour", "--unit", "kg"]) == 0
    capsys.readouterr()

    assert cli.main(base + ["stock", "--search", "RICE"]) == 0
    report = capsys.readouterr().out
    assert "Basmati Rice" in report
    assert "Wheat" not in report

    assert cli.main(base + ["stock", "--search", "flour"]) == 0
    report = capsys.readouterr().out
    assert "Wheat" in report
    assert "Basmati Rice" not in report


def test_credit_sale_mark_paid_and_delete(config_factory):
    bundle = config_factory(credit_period_days=15)
    base = ["--config", str(bundle.config_path)]
    product_id = _add_rice(bundle.config_path)
    assert cli.main(base + ["purchase", "--product-id", product_id, "--party", "Acme", "--quantity", "10", "--price", "2"]) == 0
    assert cli.main(base + ["sale", "--product-id", product_id, "--party", "Walk-in", "--quantity", "4", "--price", "3", "--payment-type", "credit"]) == 0

    sale = next(tx for tx in _transactions(bundle.config_path) if tx.type is TransactionType.SALE)
    assert sale.payment_status is PaymentStatus.PENDING
    assert sale.credit_period_days == 15

    assert cli.main(base + ["mark-paid", "--transaction-id", sale.id]) == 0
    assert next(tx for tx in _transactions(bundle.config_path) if tx.id == sale.id).payment_status is PaymentStatus.PAID

    assert cli.main(base + ["delete", "--transaction-id", sale.id]) == 0
    assert [tx.type for tx in _transactions(bundle.config_path)] == [TransactionType.PURCHASE]
    assert cli.main(base + ["mark-paid", "--transaction-id", sale.id]) == 2


def test_exports_invoice_backup_and_restore(config_file, tmp_path):
    base = ["--config", str(config_file)]
    product_id = _add_rice(config_file)
    assert cli.main(base + ["purchase", "--product-id", product_id, "--party", "Acme", "--quantity", "20", "--price", "5"]) == 0
    [purchase] = _transactions(config_file)
    out_dir = tmp_path / "exports"
    out_dir.mkdir()

    assert cli.main(base + ["export-transactions", "--output", str(out_dir)]) == 0
    assert cli.main(base + ["export-inventory", "--output", str(out_dir / "inventory.xlsx")]) == 0
    assert cli.main(base + ["invoice", "--transaction-id", purchase.id, "--output", str(out_dir)]) == 0
    assert len(list(out_dir.glob("Fintrack_Transactions_*.xlsx"))) == 1
    assert (out_dir / "inventory.xlsx").exists()
    assert (out_dir / f"purchase_invoice_{purchase.id}.pdf").read_bytes().startswith(b"%PDF")

    backup_path = tmp_path / "backup.json"
    assert cli.main(base + ["backup", "--output", str(backup_path)]) == 0
    snapshot = json.loads(backup_path.read_text(encoding="utf-8"))
    assert [tx["id"] for tx in snapshot["transactions"]] == [purchase.id]

    assert cli.main(base + ["delete", "--transaction-id", purchase.id]) == 0
    assert _transactions(config_file) == []
    assert cli.main(base + ["restore", "--input", str(backup_path)]) == 0
    assert [tx.id for tx in _transactions(config_file)] == [purchase.id]


def test_owner_flag_scopes_commands(config_file):
    base = ["--config", str(config_file)]
    _add_rice(config_file)

    assert cli.main(base + ["--owner", "owner-2", "add-product", "--name", "Wheat"]) == 0

    context = core_logic.load_runtime_context(config_file)
    assert [p.name for p in core_logic.list_products(context, "owner-2")] == ["Wheat"]
    assert [p.name for p in core_logic.list_products(context, OWNER)] == ["Basmati Rice"]
