"""Command-line entry points for the warehouse stock ledger.

This module only wires argparse and translates parsed arguments into calls on
the business layer, then prints the results. Keeping it thin lets tests,
scripts or another front-end reuse the same parser configuration.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, log, spreadsheet_export
from .constants import ReportMode
from .errors import (
    BusinessRuleViolation,
    InsufficientStockError,
    CorruptRowError,
    PartialSaleInconsistency,
    StorageUnavailableError,
)
from .sale_ledger import MonthlyTotal, ProductBreakdown

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_BUSINESS_RULE = 2
EXIT_MISSING_FILE = 3
EXIT_STORAGE_UNAVAILABLE = 4
EXIT_PARTIAL_SALE = 5


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="stock-ledger",
        description="Command-line tools for the warehouse stock ledger.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
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
    """Declare commands that change stock or the ledger."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "set-quantity": register_set_quantity_command(subparsers),
        "remove-product": register_remove_product_command(subparsers),
        "sale": register_sale_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only commands such as lookups and reports."""
    specs = {
        "product": register_product_command(subparsers),
        "products": register_products_command(subparsers),
        "sales": register_sales_command(subparsers),
        "export": register_export_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the Products sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--code", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--quantity", type=int, default=0)
        parser.add_argument("--location", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product, mutates=True)


def register_set_quantity_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-quantity``."""
    name = "set-quantity"
    help_text = "Overwrite the on-hand quantity of a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--code", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_quantity, mutates=True)


def register_remove_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``remove-product``."""
    name = "remove-product"
    help_text = "Delete a product; its past sales stay in the ledger."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--code", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_remove_product, mutates=True)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Sell units of a product and record the sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--code", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--note", dest="note", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale, mutates=True)


def register_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``product``."""
    name = "product"
    help_text = "Show one product by code."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--code", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_product)


def register_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``products``."""
    name = "products"
    help_text = "List products, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--search", default=None, help="Filter by code or name substring.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_products)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "Report on the sale ledger."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--mode",
            choices=[member.value for member in ReportMode],
            default=ReportMode.LIST.value,
        )
        parser.add_argument("--code", default=None)
        parser.add_argument("--month", default=None, help="Calendar month as YYYY-MM.")
        parser.add_argument("--limit", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


def register_export_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export``."""
    name = "export"
    help_text = "Export sales for a month (or all) to an .xlsx file."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--month", default=None, help="Calendar month as YYYY-MM; omit for all sales.")
        parser.add_argument("--output", type=Path, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(config_path)
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


def format_product(context: core_logic.RuntimeContext, product: data_manager.ProductRow) -> str:
    status = core_logic.stock_status(context, product).value
    location = f" @ {product.location}" if product.location else ""
    return f"{product.code}\t{product.name}\t{product.quantity}\t{status}{location}"


def format_sale(sale: data_manager.SaleRow, zone) -> str:
    sold_at = sale.sold_at.astimezone(zone).strftime("%Y-%m-%d %H:%M:%S")
    note = f"\t{sale.note}" if sale.note else ""
    return (
        f"{sold_at}\t{sale.product_code}\t{sale.product_name}\t"
        f"{sale.quantity_sold}\t{sale.quantity_before}->{sale.quantity_after}{note}"
    )


def format_report_row(row: object, zone) -> str:
    if isinstance(row, MonthlyTotal):
        return (
            f"{row.year:04d}-{row.month:02d}\tsold={row.total_sold}\t"
            f"transactions={row.transaction_count}\tproducts={row.distinct_product_count}"
        )
    if isinstance(row, ProductBreakdown):
        last = row.last_sold_at.astimezone(zone).strftime("%Y-%m-%d %H:%M:%S")
        return (
            f"{row.code}\t{row.name}\tsold={row.total_sold}\t"
            f"transactions={row.transaction_count}\tlast={last}"
        )
    return format_sale(row, zone)  # type: ignore[arg-type]


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(
        context,
        code=args.code,
        name=args.name,
        quantity=args.quantity,
        location=args.location,
    )
    print(format_product(context, product))
    return EXIT_OK


def run_set_quantity(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the quantity overwrite workflow in the BLL."""
    product = core_logic.set_quantity(context, args.code, args.quantity)
    print(format_product(context, product))
    return EXIT_OK


def run_remove_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the product removal workflow in the BLL."""
    product = core_logic.remove_product(context, args.code)
    print(f"Removed {product.code}")
    return EXIT_OK


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    command = core_logic.SaleCommand(code=args.code, quantity=args.quantity, note=args.note)
    sale = core_logic.record_sale(context, command)
    print(format_sale(sale, context.ledger.zone))
    return EXIT_OK


def run_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Show a single product."""
    print(format_product(context, core_logic.get_product(context, args.code)))
    return EXIT_OK


def run_products(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List products, optionally filtered."""
    for product in core_logic.list_products(context, search=args.search):
        print(format_product(context, product))
    return EXIT_OK


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sales reporting workflow."""
    rows = core_logic.run_report(
        context,
        args.mode,
        code=args.code,
        month=args.month,
        limit=args.limit,
    )
    for row in rows:
        print(format_report_row(row, context.ledger.zone))
    return EXIT_OK


def run_export(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Export a month of sales to a spreadsheet file."""
    rows = core_logic.export_window(context, args.month)
    destination = args.output or Path.cwd() / spreadsheet_export.export_file_name(args.month)
    path = spreadsheet_export.write_export(rows, destination)
    print(f"Exported {len(rows)} sales to {path}")
    return EXIT_OK


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into exit codes without exposing tracebacks."""
    if isinstance(error, InsufficientStockError):
        log.error("Not enough stock for %s: %d available", error.code, error.available)
        return EXIT_BUSINESS_RULE
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return EXIT_BUSINESS_RULE
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return EXIT_MISSING_FILE
    if isinstance(error, StorageUnavailableError):
        log.error("Storage unavailable; try again shortly (%s)", error)
        return EXIT_STORAGE_UNAVAILABLE
    if isinstance(error, CorruptRowError):
        log.error("Workbook needs repair: %s", error)
        return EXIT_FAILURE
    if isinstance(error, PartialSaleInconsistency):
        log.critical("Sale failed after stock was decremented; manual reconciliation required (%s)", error)
        return EXIT_PARTIAL_SALE
    log.error("Unexpected failure (%s): %s", type(error).__name__, error)
    return EXIT_FAILURE


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing, execution and saving."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == EXIT_OK and command_table[args.command].mutates:
            core_logic.persist_context(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
