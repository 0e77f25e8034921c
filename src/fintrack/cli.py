"""Command-line entry points for FINTRACK.

This module only wires argparse to the façade: it translates arguments into
command objects, calls :mod:`fintrack.core_logic`, and prints the results.
The same parser configuration is reused by the tests.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, invoice, lifecycle, log, spreadsheet, valuation
from .constants import PaymentType, TransactionType
from .errors import LedgerError, ValidationError, normalize_error_message


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="fintrack",
        description="FINTRACK inventory and billing ledger.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--owner",
        default=None,
        help="Owner whose ledger is used (defaults to [Defaults] Owner).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands."""
    specs = {
        "add-product": register_add_product_command(),
        "purchase": register_transaction_command(TransactionType.PURCHASE),
        "sale": register_transaction_command(TransactionType.SALE),
        "mark-paid": register_mark_paid_command(),
        "delete": register_delete_command(),
        "restore": register_restore_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports and exports."""
    specs = {
        "stock": register_stock_command(),
        "log": _simple_spec("log", "Display the transaction log with payment status.", run_log_report),
        "dashboard": _simple_spec("dashboard", "Display revenue, profit and credit figures.", run_dashboard_report),
        "export-transactions": _export_spec(
            "export-transactions", "Export the transaction ledger to .xlsx.", run_export_transactions
        ),
        "export-inventory": _export_spec("export-inventory", "Export the inventory summary to .xlsx.", run_export_inventory),
        "invoice": register_invoice_command(),
        "backup": register_backup_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _simple_spec(
    name: str, help_text: str, execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def _export_spec(
    name: str, help_text: str, execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--output", type=Path, default=None, help="Target file or directory.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_stock_command() -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels and valuation."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--search", default=None, metavar="TERM", help="Only show products whose name or category contains TERM.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_add_product_command() -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new stocked product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--category", default="General")
        parser.add_argument("--min-stock", default="0")
        parser.add_argument("--unit", default="units")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_transaction_command(transaction_type: TransactionType) -> CommandSpec:
    """Register the parser and executor for ``purchase`` or ``sale``."""
    name = transaction_type.value
    help_text = f"Record a {name} transaction."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--party", required=True, help="Supplier or customer name.")
        parser.add_argument("--quantity", required=True, help="Gross quantity.")
        parser.add_argument("--price", required=True, help="Price per unit.")
        if transaction_type is TransactionType.PURCHASE:
            parser.add_argument("--deduction", default="0", help="Quantity written off from the gross quantity.")
            parser.add_argument("--deduction-reason", default=None)
        parser.add_argument("--extra-charge", default="0")
        parser.add_argument("--extra-charge-reason", default=None)
        parser.add_argument("--date", default=None, help="Transaction date (YYYY-MM-DD, default today).")
        parser.add_argument(
            "--payment-type",
            choices=[member.value for member in PaymentType],
            default=PaymentType.CASH.value,
        )
        parser.add_argument("--credit-days", type=int, default=None, help="Credit period in days.")
        parser.set_defaults(command=name, transaction_type=transaction_type.value)
        return parser

    execute = run_purchase if transaction_type is TransactionType.PURCHASE else run_sale
    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_mark_paid_command() -> CommandSpec:
    """Register the parser and executor for ``mark-paid``."""
    name = "mark-paid"
    help_text = "Mark a credit transaction as settled."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_mark_paid)


def register_delete_command() -> CommandSpec:
    """Register the parser and executor for ``delete``."""
    name = "delete"
    help_text = "Delete a transaction; stock levels revert automatically."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete)


def register_restore_command() -> CommandSpec:
    """Register the parser and executor for ``restore``."""
    name = "restore"
    help_text = "Replace the owner's ledger with a JSON backup."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--input", type=Path, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_restore)


def register_invoice_command() -> CommandSpec:
    """Register the parser and executor for ``invoice``."""
    name = "invoice"
    help_text = "Generate a PDF invoice for one or more transactions."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", action="append", required=True, dest="transaction_ids")
        parser.add_argument("--output", type=Path, default=None, help="Target file or directory.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoice)


def register_backup_command() -> CommandSpec:
    """Register the parser and executor for ``backup``."""
    name = "backup"
    help_text = "Write the owner's products and transactions to a JSON file."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--output", type=Path, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_backup)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def resolve_owner(context: core_logic.RuntimeContext, args: argparse.Namespace) -> str:
    """Return ``--owner`` or the configured default owner."""
    return getattr(args, "owner", None) or context.settings.default_owner_id


def parse_decimal(raw: str, label: str) -> Decimal:
    """Parse a numeric argument, reporting bad input as a validation error."""
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise ValidationError(f"{label} must be a number, got '{raw}'") from exc
    if not value.is_finite():
        raise ValidationError(f"{label} must be a finite number, got '{raw}'")
    return value


def parse_date(raw: Optional[str]) -> date:
    if not raw:
        return date.today()
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise ValidationError(f"Dates must use YYYY-MM-DD, got '{raw}'") from exc


def translate_add_product(args: argparse.Namespace) -> core_logic.ProductCommand:
    """Translate CLI args into a product command object."""
    return core_logic.ProductCommand(
        name=args.name,
        category=args.category,
        min_stock_level=parse_decimal(args.min_stock, "Minimum stock"),
        unit=args.unit,
    )


def translate_transaction(
    args: argparse.Namespace, *, default_credit_days: Optional[int] = None
) -> lifecycle.TransactionCommand:
    """Translate CLI args into a transaction command object.

    Credit transactions entered without ``--credit-days`` fall back to
    ``default_credit_days``.
    """
    payment = PaymentType(args.payment_type)
    credit_days = args.credit_days
    if payment is PaymentType.CREDIT and credit_days is None:
        credit_days = default_credit_days
    return lifecycle.TransactionCommand(
        product_id=args.product_id,
        type=TransactionType(args.transaction_type),
        counterparty_name=args.party,
        gross_quantity=parse_decimal(args.quantity, "Quantity"),
        unit_price=parse_decimal(args.price, "Price"),
        date=parse_date(args.date),
        payment_type=payment,
        deduction=parse_decimal(getattr(args, "deduction", "0"), "Deduction"),
        deduction_reason=getattr(args, "deduction_reason", None),
        extra_charge=parse_decimal(args.extra_charge, "Extra charge"),
        extra_charge_reason=args.extra_charge_reason,
        credit_period_days=credit_days if payment is PaymentType.CREDIT else None,
    )


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow."""
    product = core_logic.add_product(context, translate_add_product(args), resolve_owner(context, args))
    print(f"Added product {product.id}: {product.name} ({product.unit})")
    return 0


def _run_transaction(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    command = translate_transaction(args, default_credit_days=context.settings.default_credit_period_days)
    transaction = core_logic.add_transaction(context, command, resolve_owner(context, args))
    due = f", due {transaction.due_date.isoformat()}" if transaction.due_date else ""
    print(
        f"Recorded {transaction.type.value} {transaction.id}: "
        f"{transaction.net_quantity} {transaction.unit} of {transaction.product_name}, "
        f"total {transaction.total_value} ({transaction.payment_status.value}{due})"
    )
    return 0


def run_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase workflow."""
    return _run_transaction(context, args)


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow."""
    return _run_transaction(context, args)


def run_mark_paid(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the mark-paid workflow."""
    transaction = core_logic.mark_transaction_as_paid(context, args.transaction_id, resolve_owner(context, args))
    print(f"Transaction {transaction.id} is {transaction.payment_status.value}")
    return 0


def run_delete(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete workflow."""
    removed = core_logic.delete_transaction(context, args.transaction_id, resolve_owner(context, args))
    print(f"Deleted transaction {args.transaction_id}" if removed else f"Transaction {args.transaction_id} not found")
    return 0


def run_restore(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the restore workflow."""
    payload = json.loads(Path(args.input).read_text(encoding="utf-8"))
    products, transactions = core_logic.restore_backup(context, resolve_owner(context, args), payload)
    print(f"Restored {products} products and {transactions} transactions")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the inventory summary, optionally narrowed by ``--search``."""
    items = core_logic.get_inventory_summary(context, resolve_owner(context, args))
    for item in valuation.filter_inventory(items, getattr(args, "search", None)):
        print(
            f"{item.name:<30} {item.stock:>12} {item.unit:<6} "
            f"avg {item.avg_cost:>10.2f}  value {item.total_value:>12.2f}  {item.status.value.upper()}"
        )
    return 0


def run_log_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the transaction log, newest first."""
    today = date.today()
    for tx in core_logic.get_transactions(context, resolve_owner(context, args), today=today):
        status = tx.payment_status.value.upper()
        late = lifecycle.days_late(tx, today)
        if late:
            status = f"{status} ({late}d late)"
        print(
            f"{tx.date.isoformat()} {tx.id} {tx.type.value:<8} {tx.product_name:<24} "
            f"{tx.net_quantity:>10} {tx.unit:<6} {tx.total_value:>12.2f} {tx.counterparty_name:<20} {status}"
        )
    return 0


def run_dashboard_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the dashboard figures."""
    metrics = core_logic.calculate_dashboard_metrics(context, resolve_owner(context, args))
    currency = context.settings.currency
    print(f"Total revenue:       {invoice.format_money(metrics.total_revenue, currency)}")
    print(f"Total purchases:     {invoice.format_money(metrics.total_purchases, currency)}")
    print(f"Gross profit:        {invoice.format_money(metrics.gross_profit, currency)}")
    print(f"Stock value:         {invoice.format_money(metrics.total_stock_value, currency)}")
    print(f"Accounts receivable: {invoice.format_money(metrics.accounts_receivable, currency)}")
    print(f"Accounts payable:    {invoice.format_money(metrics.accounts_payable, currency)}")
    print(f"Items needing stock: {metrics.low_stock_count}")
    print(f"Overdue payments:    {metrics.overdue_count}")
    return 0


def _export_target(output: Optional[Path], kind: str) -> Path:
    filename = spreadsheet.default_filename(kind)
    if output is None:
        return Path.cwd() / filename
    return output / filename if output.is_dir() else output


def run_export_transactions(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Export the transaction ledger."""
    transactions = core_logic.get_transactions(context, resolve_owner(context, args))
    path = spreadsheet.export_transactions(transactions, _export_target(args.output, "Transactions"))
    print(f"Exported {len(transactions)} transactions to {path}")
    return 0


def run_export_inventory(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Export the inventory summary."""
    items = core_logic.get_inventory_summary(context, resolve_owner(context, args))
    path = spreadsheet.export_inventory(items, _export_target(args.output, "Inventory"))
    print(f"Exported {len(items)} products to {path}")
    return 0


def run_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Generate a PDF invoice for the selected transactions."""
    owner_id = resolve_owner(context, args)
    transactions = [core_logic.get_transaction(context, tx_id, owner_id) for tx_id in args.transaction_ids]
    output = args.output if args.output is not None else Path.cwd()
    path = invoice.write_invoice_pdf(
        transactions,
        output,
        business_name=context.settings.business_name,
        currency=context.settings.currency,
    )
    print(f"Wrote invoice to {path}")
    return 0


def run_backup(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Write a JSON backup of the owner's ledger."""
    snapshot = core_logic.export_backup(context, resolve_owner(context, args))
    output = Path(args.output)
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(json.dumps(snapshot, indent=2), encoding="utf-8")
    print(f"Wrote backup to {output}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-facing messages and exit codes."""
    message = normalize_error_message(error, default="Unexpected error")
    if isinstance(error, LedgerError):
        log.error("%s", message)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", message)
        return 3
    log.error("%s", message)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            core_logic.persist_context(context)
        return exit_code
    except Exception as error:  # centralised error boundary, tested separately
        return handle_cli_error(error)
