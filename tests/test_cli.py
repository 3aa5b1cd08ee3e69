"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock

import pytest

from distributor_ledger import cli, core_logic
from distributor_ledger.constants import SheetName, SortDirection
from distributor_ledger.exceptions import (
    DerivedSyncWarning,
    MissingReferenceError,
    PersistenceError,
    SyncResult,
    ValidationError,
)


WRITE_COMMANDS = {
    "add-customer",
    "add-pricing",
    "sale",
    "payment",
    "update-sale",
    "delete",
}

READ_COMMANDS = {
    "balances",
    "summary",
}


def _parse(*argv: str) -> argparse.Namespace:
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    return parser.parse_args(list(argv))


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "ledger-cli"
    assert "ledger" in (parser.description or "")


def test_configure_subcommands_registers_all_commands(cli_parser):
    """configure_subcommands should wire every read and write sub-command."""

    command_table = cli.configure_subcommands(cli_parser)
    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    assert all(isinstance(spec, cli.CommandSpec) for spec in specs.values())
    assert WRITE_COMMANDS <= set(subparsers_action.choices)


def test_register_read_commands_returns_command_specs(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    assert READ_COMMANDS <= set(subparsers_action.choices)


def test_sale_command_parses_arguments():
    args = _parse(
        "sale",
        "--customer-id", "C1",
        "--sku", "COLA-24",
        "--quantity", "20",
        "--amount", "1000",
        "--date", "2025-01-10",
        "--branch", "Downtown",
    )
    assert args.command == "sale"
    assert args.transaction_date == "2025-01-10"
    assert args.description is None


def test_balances_command_collects_repeated_filters():
    args = _parse("balances", "--filter", "branch=Downtown", "--filter", "branch=Uptown", "--sort", "amount", "--desc")
    assert args.filters == ["branch=Downtown", "branch=Uptown"]
    assert args.sort == "amount"
    assert args.desc is True
    assert args.page == 1


def test_balances_command_rejects_unknown_sort_column():
    with pytest.raises(SystemExit):
        _parse("balances", "--sort", "colour")


# ---------------------------------------------------------------------------
# Runtime context and dispatch helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_file, monkeypatch):
    sentinel_context = object()

    def fake_loader(path: Path | None) -> object:
        assert path == config_file
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    assert cli.load_runtime_context(config_file) is sentinel_context


def test_load_runtime_context_defaults_to_discovery(monkeypatch):
    """Without --config the business layer performs the upward search."""

    loader = Mock(return_value="ctx")
    monkeypatch.setattr(core_logic, "load_runtime_context", loader)

    assert cli.load_runtime_context() == "ctx"
    loader.assert_called_once_with(None)


def test_dispatch_command_invokes_executor(context):
    execute = Mock(return_value=0)
    spec = cli.CommandSpec("probe", "help", lambda s: s.add_parser("probe"), execute)
    args = argparse.Namespace(command="probe")

    assert cli.dispatch_command(context, args, {"probe": spec}) == 0
    execute.assert_called_once_with(context, args)


def test_dispatch_command_handles_unknown_commands(context):
    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(command="unknown"), {})


def test_build_command_table_indexes_specs(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    assert set(table) == {spec.name for spec in command_spec_iterable}


def test_build_command_table_detects_duplicate_commands():
    specs = [
        cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: 0),
        cli.CommandSpec("alpha", "Duplicate", lambda s: s.add_parser("alpha"), lambda c, a: 0),
    ]
    with pytest.raises(ValueError):
        cli.build_command_table(specs)


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def test_parse_decimal_rejects_text():
    assert cli.parse_decimal("2.50", "amount") == Decimal("2.50")
    assert cli.parse_decimal(None, "amount") is None
    with pytest.raises(ValidationError):
        cli.parse_decimal("lots", "amount")


def test_parse_filter_splits_column_and_value():
    assert cli.parse_filter("customer = Acme Stores") == ("customer", "Acme Stores")
    with pytest.raises(ValidationError):
        cli.parse_filter("no-separator")


def test_translate_sale_uses_explicit_amount(seeded_context):
    args = _parse(
        "sale", "--customer-id", "C1", "--sku", "COLA-24", "--quantity", "3",
        "--amount", "99.50", "--date", "2025-01-10", "--branch", "Downtown",
    )
    command = cli.translate_sale(seeded_context, args)

    assert isinstance(command, core_logic.SaleCommand)
    assert command.amount == Decimal("99.50")
    assert command.quantity == "3"


def test_translate_sale_suggests_amount_from_customer_price(seeded_context):
    args = _parse(
        "sale", "--customer-id", "C1", "--sku", "WATER-12", "--quantity", "4",
        "--date", "2025-01-10", "--branch", "Downtown",
    )
    assert cli.translate_sale(seeded_context, args).amount == Decimal("60")


def test_translate_sale_without_amount_or_price_fails(seeded_context):
    args = _parse(
        "sale", "--customer-id", "C1", "--sku", "JUICE-6", "--quantity", "4",
        "--date", "2025-01-10", "--branch", "Downtown",
    )
    with pytest.raises(ValidationError):
        cli.translate_sale(seeded_context, args)


def test_translate_update_leaves_unset_fields_empty():
    update = cli.translate_update(_parse("update-sale", "--transaction-id", "S1", "--amount", "10"))
    assert update == core_logic.SaleUpdate(amount=Decimal("10"))


def test_translate_filter_state_applies_reducers(context):
    args = _parse(
        "balances",
        "--search", "acme",
        "--filter", "branch=Downtown",
        "--filter", "branch=Uptown",
        "--filter", "date=2025-01-10",
        "--sort", "amount",
        "--page", "2",
    )
    state = cli.translate_filter_state(context, args)

    assert state.search_term == "acme"
    assert state.column_filters == {"branch": ("Downtown", "Uptown"), "date": "2025-01-10"}
    assert state.column_sort == ("amount", SortDirection.ASC)
    assert state.current_page == 2
    assert state.page_size == context.settings.page_size


def test_translate_filter_state_rejects_repeated_single_value_filter(context):
    args = _parse("balances", "--filter", "date=2025-01-10", "--filter", "date=2025-01-11")
    with pytest.raises(ValidationError):
        cli.translate_filter_state(context, args)


# ---------------------------------------------------------------------------
# Executors and error handling
# ---------------------------------------------------------------------------


def test_run_sale_reports_derived_sync_warning(monkeypatch, seeded_context, capsys):
    """A stored sale with missing siblings exits with the derived-sync code."""

    warning = DerivedSyncWarning("transport missing", sale_id="S1")
    monkeypatch.setattr(core_logic, "record_sale", Mock(side_effect=warning))
    args = _parse(
        "sale", "--customer-id", "C1", "--sku", "COLA-24", "--quantity", "3",
        "--amount", "120", "--date", "2025-01-10", "--branch", "Downtown",
    )

    assert cli.run_sale(seeded_context, args) == cli.EXIT_DERIVED_SYNC
    assert "transport missing" in capsys.readouterr().out


def test_report_sync_maps_warnings_to_exit_codes(capsys):
    assert cli.report_sync(SyncResult()) == cli.EXIT_OK
    result = SyncResult(sibling_warnings=[DerivedSyncWarning("missing production")])
    assert cli.report_sync(result) == cli.EXIT_DERIVED_SYNC
    assert "missing production" in capsys.readouterr().out


def test_run_balances_prints_page(seeded_context, capsys):
    core_logic.record_sale(
        seeded_context,
        core_logic.SaleCommand("C1", "COLA-24", 20, Decimal("1000"), "2025-01-10", "Downtown"),
    )
    args = _parse("balances", "--customer", "C1")

    assert cli.run_balances(seeded_context, args) == cli.EXIT_OK
    out = capsys.readouterr().out
    assert "Acme Stores" in out
    assert "Page 1 of 1 (1 of 1 entries)" in out


def test_run_balances_lists_rows_with_unreadable_amounts(seeded_context, capsys):
    core_logic.record_sale(
        seeded_context,
        core_logic.SaleCommand("C1", "COLA-24", 20, Decimal("1000"), "2025-01-10", "Downtown"),
    )
    seeded_context.workbook[SheetName.SALES_TRANSACTIONS.value].append(
        ["S-bad", 99, "C2", "sale", "2025-01-05", "n/a"]
    )

    assert cli.run_balances(seeded_context, _parse("balances")) == cli.EXIT_OK
    out = capsys.readouterr().out
    assert "S-bad" in out
    assert "Page 1 of 1 (2 of 2 entries)" in out


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (ValidationError("bad"), cli.EXIT_VALIDATION),
        (MissingReferenceError("who"), cli.EXIT_VALIDATION),
        (FileNotFoundError("config.ini"), cli.EXIT_MISSING_FILE),
        (PersistenceError("disk"), cli.EXIT_PERSISTENCE),
        (DerivedSyncWarning("sibling"), cli.EXIT_DERIVED_SYNC),
        (RuntimeError("schema"), cli.EXIT_FAILURE),
    ],
)
def test_handle_cli_error_maps_exit_codes(error, expected):
    assert cli.handle_cli_error(error) == expected


def test_main_skips_persist_when_command_fails(monkeypatch, seeded_context):
    """Failed writes must not be saved to disk."""

    monkeypatch.setattr(cli, "load_runtime_context", Mock(return_value=seeded_context))
    persist = Mock()
    monkeypatch.setattr(cli, "persist_workbook", persist)

    exit_code = cli.main(["payment", "--customer-id", "ghost", "--amount", "10", "--date", "2025-01-10"])

    assert exit_code == cli.EXIT_VALIDATION
    persist.assert_not_called()


def test_main_persists_after_successful_write(monkeypatch, seeded_context):
    monkeypatch.setattr(cli, "load_runtime_context", Mock(return_value=seeded_context))
    persist = Mock()
    monkeypatch.setattr(cli, "persist_workbook", persist)

    exit_code = cli.main(["payment", "--customer-id", "C1", "--amount", "10", "--date", "2025-01-10"])

    assert exit_code == cli.EXIT_OK
    persist.assert_called_once_with(seeded_context)


def test_main_missing_config_exits_with_missing_file_code(tmp_path):
    assert cli.main(["--config", str(tmp_path / "missing.ini"), "summary"]) == cli.EXIT_MISSING_FILE
