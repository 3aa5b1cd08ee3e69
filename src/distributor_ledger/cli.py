"""Command-line entry points for the distributor ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing results. The same parser configuration can be reused by
tests or by any other front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence
import sys

from . import core_logic, log, pipeline
from .constants import SortDirection
from .exceptions import (
    DerivedSyncWarning,
    PersistenceError,
    SyncResult,
    ValidationError,
    user_message,
)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_VALIDATION = 2
EXIT_MISSING_FILE = 3
EXIT_PERSISTENCE = 4
EXIT_DERIVED_SYNC = 5

# The primary write succeeded for these codes, so the workbook is saved.
PERSISTING_EXIT_CODES = frozenset({EXIT_OK, EXIT_DERIVED_SYNC})

SubParsers = argparse._SubParsersAction


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[SubParsers], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="ledger-cli",
        description="Command-line tools for the distributor ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
    )
    return parser


def configure_subcommands(parser: argparse.ArgumentParser) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(subparsers: SubParsers) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and payments."""
    specs = {
        "add-customer": register_add_customer_command(subparsers),
        "add-pricing": register_add_pricing_command(subparsers),
        "sale": register_sale_command(subparsers),
        "payment": register_payment_command(subparsers),
        "update-sale": register_update_sale_command(subparsers),
        "delete": register_delete_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(subparsers: SubParsers) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "balances": register_balances_command(subparsers),
        "summary": register_summary_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_customer_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Register a customer row (one per client, branch and SKU)."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--client-name", required=True)
        parser.add_argument("--branch", default=None)
        parser.add_argument("--sku", default=None)
        parser.add_argument("--price-per-case", default=None)
        parser.add_argument("--price-per-bottle", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer)


def register_add_pricing_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``add-pricing``."""
    name = "add-pricing"
    help_text = "Record a factory cost per case for a SKU."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sku", required=True)
        parser.add_argument("--cost-per-case", required=True)
        parser.add_argument("--pricing-date", required=True, help="ISO date (YYYY-MM-DD).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_pricing)


def register_sale_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a sale with its production and transport entries."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--sku", required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--amount", default=None, help="Billed amount; suggested from the customer price when omitted.")
        parser.add_argument("--date", dest="transaction_date", required=True, help="ISO date (YYYY-MM-DD).")
        parser.add_argument("--branch", required=True)
        parser.add_argument("--description", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_payment_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``payment``."""
    name = "payment"
    help_text = "Record a payment received from a customer."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--date", dest="transaction_date", required=True, help="ISO date (YYYY-MM-DD).")
        parser.add_argument("--branch", default=None)
        parser.add_argument("--description", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_payment)


def register_update_sale_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``update-sale``."""
    name = "update-sale"
    help_text = "Change a sale or payment and its derived entries."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.add_argument("--customer-id", default=None)
        parser.add_argument("--sku", default=None)
        parser.add_argument("--quantity", default=None)
        parser.add_argument("--amount", default=None)
        parser.add_argument("--date", dest="transaction_date", default=None)
        parser.add_argument("--branch", default=None)
        parser.add_argument("--description", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_sale)


def register_delete_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``delete``."""
    name = "delete"
    help_text = "Delete a sale or payment together with its derived entries."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete)


def register_balances_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``balances``."""
    name = "balances"
    help_text = "List ledger entries with their running outstanding balance."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer", dest="customer_id", default=None, help="Only show one customer id.")
        parser.add_argument("--search", default="")
        parser.add_argument(
            "--filter",
            dest="filters",
            action="append",
            default=[],
            metavar="COLUMN=VALUE",
            help="Column filter; repeat for several values of customer, branch, sku or type.",
        )
        parser.add_argument("--sort", default=None, choices=sorted(pipeline.SORT_COLUMNS))
        parser.add_argument("--desc", action="store_true", help="Sort descending.")
        parser.add_argument("--page", type=int, default=1)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_balances)


def register_summary_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``summary``."""
    name = "summary"
    help_text = "Show total sales, payments and outstanding per customer."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_summary)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)


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


def build_command_table(specs: Iterable[CommandSpec]) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


# ---------------------------------------------------------------------------
# Argument translation
# ---------------------------------------------------------------------------


def parse_decimal(value: Optional[str], name: str) -> Optional[Decimal]:
    """Parse an optional decimal argument.

    Raises:
        ValidationError: If ``value`` is not a number.
    """
    if value is None:
        return None
    try:
        return Decimal(value)
    except InvalidOperation as exc:
        raise ValidationError(f"{name} must be a number, got '{value}'") from exc


def parse_filter(raw: str) -> tuple[str, str]:
    """Split a ``COLUMN=VALUE`` filter argument."""
    column, sep, value = raw.partition("=")
    if not sep or not column.strip():
        raise ValidationError(f"Filters take the form COLUMN=VALUE, got '{raw}'")
    return column.strip(), value.strip()


def translate_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command, suggesting the amount when omitted."""
    amount = parse_decimal(args.amount, "amount")
    if amount is None:
        amount = core_logic.suggest_sale_amount(
            context,
            args.customer_id,
            args.sku,
            core_logic.require_quantity(args.quantity),
        )
        if amount is None:
            raise ValidationError(f"No price per case configured for SKU '{args.sku}'; pass --amount")
        log.info("Using suggested amount %s for customer '%s'", amount, args.customer_id)
    return core_logic.SaleCommand(
        customer_id=args.customer_id,
        sku=args.sku,
        quantity=args.quantity,
        amount=amount,
        transaction_date=args.transaction_date,
        branch=args.branch,
        description=args.description,
    )


def translate_payment(args: argparse.Namespace) -> core_logic.PaymentCommand:
    return core_logic.PaymentCommand(
        customer_id=args.customer_id,
        amount=parse_decimal(args.amount, "amount"),
        transaction_date=args.transaction_date,
        description=args.description,
        branch=args.branch,
    )


def translate_update(args: argparse.Namespace) -> core_logic.SaleUpdate:
    return core_logic.SaleUpdate(
        customer_id=args.customer_id,
        sku=args.sku,
        quantity=args.quantity,
        amount=parse_decimal(args.amount, "amount"),
        transaction_date=args.transaction_date,
        branch=args.branch,
        description=args.description,
    )


def translate_filter_state(context: core_logic.RuntimeContext, args: argparse.Namespace) -> pipeline.FilterState:
    """Build the list state for ``balances`` through the pipeline reducers."""
    state = pipeline.FilterState(page_size=context.settings.page_size)
    if args.search:
        state = pipeline.set_search_term(state, args.search)

    grouped: Dict[str, List[str]] = {}
    for raw in args.filters:
        column, value = parse_filter(raw)
        grouped.setdefault(column, []).append(value)
    for column, values in grouped.items():
        if column in pipeline.SINGLE_VALUE_FILTERS:
            if len(values) > 1:
                raise ValidationError(f"Column '{column}' takes a single filter value")
            state = pipeline.set_column_filter(state, column, values[0])
        else:
            state = pipeline.set_column_filter(state, column, values)

    if args.sort:
        direction = SortDirection.DESC if args.desc else SortDirection.ASC
        state = pipeline.set_column_sort(state, args.sort, direction)
    return pipeline.set_page(state, args.page)


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def report_sync(result: SyncResult) -> int:
    for warning in result.sibling_warnings:
        print(f"[WARNING] {warning}")
    return EXIT_OK if result.in_sync else EXIT_DERIVED_SYNC


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    customer = core_logic.add_customer(
        context,
        customer_id=args.customer_id,
        client_name=args.client_name,
        branch=args.branch,
        sku=args.sku,
        price_per_case=parse_decimal(args.price_per_case, "price_per_case"),
        price_per_bottle=parse_decimal(args.price_per_bottle, "price_per_bottle"),
    )
    print(f"Added customer {customer.customer_id}")
    return EXIT_OK


def run_add_pricing(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    quote = core_logic.add_pricing(
        context,
        sku=args.sku,
        cost_per_case=parse_decimal(args.cost_per_case, "cost_per_case"),
        pricing_date=args.pricing_date,
    )
    print(f"Added pricing {quote.id}")
    return EXIT_OK


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL.

    A :class:`DerivedSyncWarning` here means the sale itself is stored, so the
    executor reports it and returns :data:`EXIT_DERIVED_SYNC` to keep the
    write.
    """
    command = translate_sale(context, args)
    try:
        sale = core_logic.record_sale(context, command)
    except DerivedSyncWarning as warning:
        print(f"[WARNING] {warning}")
        return EXIT_DERIVED_SYNC
    print(f"Recorded sale {sale.id}")
    return EXIT_OK


def run_payment(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    payment = core_logic.record_payment(context, translate_payment(args))
    print(f"Recorded payment {payment.id}")
    return EXIT_OK


def run_update_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = core_logic.update_sale(context, args.transaction_id, translate_update(args))
    print(f"Updated {args.transaction_id}")
    return report_sync(result)


def run_delete(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = core_logic.delete_transaction(context, args.transaction_id)
    print(f"Deleted {args.transaction_id}")
    return report_sync(result)


def _cell(value: object) -> str:
    return "" if value is None else str(value)


def run_balances(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print one page of the balance-annotated ledger."""
    state = translate_filter_state(context, args)
    page = core_logic.list_page(context, state, customer_id=args.customer_id)

    print("Date       | Type       | Customer             | Branch       | SKU      | Qty  | Amount     | Outstanding | ID")
    for row in page.rows:
        entry = row.entry
        print(
            f"{entry.transaction_date:<10} | {entry.transaction_type:<10} | {row.customer_name[:20]:<20} | "
            f"{row.branch[:12]:<12} | {_cell(entry.sku)[:8]:<8} | {_cell(entry.quantity):>4} | "
            f"{_cell(entry.amount):>10} | {_cell(row.outstanding):>11} | {entry.id}"
        )
    print(f"Page {page.page} of {page.page_count} ({page.filtered_count} of {page.total_count} entries)")
    return EXIT_OK


def run_summary(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    customers = {customer.customer_id: customer for customer in core_logic.list_customers(context)}
    totals = core_logic.customer_summary(context)
    for customer_id in sorted(totals):
        item = totals[customer_id]
        customer = customers.get(customer_id)
        name = customer.display_name if customer else customer_id
        print(
            f"{name}: sales {item.total_sales}, payments {item.total_payments}, "
            f"outstanding {item.outstanding}"
        )
    return EXIT_OK


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, ValidationError):
        log.error("%s", error)
        print(f"[ERROR] {user_message(error)} {error}", file=sys.stderr)
        return EXIT_VALIDATION
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return EXIT_MISSING_FILE
    if isinstance(error, PersistenceError):
        log.error("%s", error)
        print(f"[ERROR] {user_message(error)}", file=sys.stderr)
        return EXIT_PERSISTENCE
    if isinstance(error, DerivedSyncWarning):
        log.warning("%s", error)
        return EXIT_DERIVED_SYNC
    log.error("%s", error)
    return EXIT_FAILURE


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise PersistenceError(f"Cannot write workbook: {error}") from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code in PERSISTING_EXIT_CODES:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


