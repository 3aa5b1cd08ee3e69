"""Integration tests describing the end-to-end distributor ledger workflows.

These scenarios exercise the data access layer, the business layer and the CLI
against real workbooks on disk, persisting and reloading between steps the way
the application does.
"""

from __future__ import annotations

from decimal import Decimal

import openpyxl
import pytest

from distributor_ledger import cli, constants, core_logic, setup_excel
from distributor_ledger.core_logic import PaymentCommand, SaleCommand, SaleUpdate
from distributor_ledger.data_manager import LedgerRow, ProductionRow, TransportRow


def _register_acme(context: core_logic.RuntimeContext) -> None:
    core_logic.add_customer(
        context,
        customer_id="C1",
        client_name="Acme Stores",
        branch="Downtown",
        sku="COLA-24",
        price_per_case=Decimal("50"),
    )


def _reload(context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    core_logic.persist_context(context)
    return core_logic.refresh_context(context)


def test_sale_payment_balance_lifecycle_flow(runtime_context):
    """Record, persist, reload and read balances with derived records intact."""

    context = runtime_context
    _register_acme(context)
    core_logic.add_pricing(context, sku="COLA-24", cost_per_case=Decimal("18"), pricing_date="2025-01-01")
    context = _reload(context)

    sale = core_logic.record_sale(
        context,
        SaleCommand("C1", "COLA-24", 20, Decimal("1000"), "2025-01-05", "Downtown", "January order"),
    )
    core_logic.record_payment(context, PaymentCommand("C1", Decimal("400"), "2025-01-06"))
    core_logic.record_sale(context, SaleCommand("C1", "COLA-24", 6, Decimal("300"), "2025-01-07", "Downtown"))
    context = _reload(context)

    rows = core_logic.list_with_balances(context)
    assert [row.outstanding for row in rows] == [Decimal("1000"), Decimal("600"), Decimal("900")]
    assert core_logic.customer_summary(context)["C1"].outstanding == Decimal("900")

    production = context.store.query(ProductionRow, {"source_sale_id": sale.id})
    transport = context.store.query(TransportRow, {"source_sale_id": sale.id})
    assert [row.amount for row in production] == [Decimal("360")]
    assert [row.description for row in transport] == ["Acme Stores-Downtown Transport"]


def test_update_and_delete_lifecycle_flow(runtime_context):
    """Updates and deletes keep the three sheets consistent across reloads."""

    context = runtime_context
    _register_acme(context)
    sale = core_logic.record_sale(
        context,
        SaleCommand("C1", "COLA-24", 10, Decimal("500"), "2025-01-05", "Downtown"),
    )
    context = _reload(context)

    result = core_logic.update_sale(context, sale.id, SaleUpdate(quantity=12, amount=Decimal("600")))
    assert result.in_sync
    context = _reload(context)

    production = context.store.query(ProductionRow, {"source_sale_id": sale.id})[0]
    assert production.quantity == 12
    assert production.amount == Decimal("300")

    result = core_logic.delete_transaction(context, sale.id)
    assert result.in_sync
    context = _reload(context)

    assert context.store.query(LedgerRow) == []
    assert context.store.query(ProductionRow) == []
    assert context.store.query(TransportRow) == []


def test_cli_sale_and_balance_reporting_flow(config_factory, capsys):
    """Drive the whole workflow through ledger-cli commands."""

    bundle = config_factory(page_size=2)
    base = ["--config", str(bundle.config_path)]

    assert cli.main(base + [
        "add-customer", "--customer-id", "C1", "--client-name", "Acme Stores",
        "--branch", "Downtown", "--sku", "COLA-24", "--price-per-case", "50",
    ]) == 0
    assert cli.main(base + ["add-pricing", "--sku", "COLA-24", "--cost-per-case", "20", "--pricing-date", "2025-01-01"]) == 0
    assert cli.main(base + [
        "sale", "--customer-id", "C1", "--sku", "COLA-24", "--quantity", "10",
        "--date", "2025-01-05", "--branch", "Downtown",
    ]) == 0
    assert cli.main(base + ["payment", "--customer-id", "C1", "--amount", "200", "--date", "2025-01-06"]) == 0
    capsys.readouterr()

    assert cli.main(base + ["balances", "--filter", "type=sale"]) == 0
    out = capsys.readouterr().out
    assert "Acme Stores" in out
    assert "Page 1 of 1 (1 of 2 entries)" in out

    assert cli.main(base + ["summary"]) == 0
    assert "Acme Stores: sales 500.00, payments 200.00, outstanding 300.00" in capsys.readouterr().out

    context = core_logic.load_runtime_context(bundle.config_path)
    sale = next(
        entry
        for entry in core_logic.list_transactions(context)
        if entry.transaction_type == constants.TransactionType.SALE.value
    )
    assert sale.amount == Decimal("500")
    assert context.store.query(ProductionRow)[0].amount == Decimal("200")

    assert cli.main(base + ["delete", "--transaction-id", sale.id]) == 0
    context = core_logic.load_runtime_context(bundle.config_path)
    assert [entry.transaction_type for entry in core_logic.list_transactions(context)] == ["payment"]
    assert context.store.query(ProductionRow) == []


def test_cli_rejected_sale_leaves_workbook_untouched(config_factory):
    """Validation failures exit with code 2 and write nothing."""

    bundle = config_factory()
    base = ["--config", str(bundle.config_path)]
    assert cli.main(base + ["add-customer", "--customer-id", "C1", "--client-name", "Acme Stores"]) == 0

    exit_code = cli.main(base + [
        "sale", "--customer-id", "C1", "--sku", "COLA-24", "--quantity", "0",
        "--amount", "100", "--date", "2025-01-05", "--branch", "Downtown",
    ])

    assert exit_code == cli.EXIT_VALIDATION
    context = core_logic.load_runtime_context(bundle.config_path)
    assert core_logic.list_transactions(context) == []


def test_cli_schema_mismatch_is_refused(config_factory):
    bundle = config_factory(schema_version="0.1.0")
    assert cli.main(["--config", str(bundle.config_path), "summary"]) == cli.EXIT_FAILURE


# ---------------------------------------------------------------------------
# Workbook bootstrap
# ---------------------------------------------------------------------------


def test_create_master_workbook_writes_every_sheet(tmp_path):
    path = setup_excel.create_master_workbook(tmp_path / "book.xlsx")

    workbook = openpyxl.load_workbook(path)
    assert set(workbook.sheetnames) == set(setup_excel.SHEET_COLUMNS)
    sales = workbook[constants.SheetName.SALES_TRANSACTIONS.value]
    headers = [cell.value for cell in sales[1]]
    assert headers == list(setup_excel.SHEET_COLUMNS[constants.SheetName.SALES_TRANSACTIONS.value])
    assert sales["A1"].font.bold


def test_create_master_workbook_refuses_overwrite(tmp_path):
    path = setup_excel.create_master_workbook(tmp_path / "book.xlsx")
    with pytest.raises(FileExistsError):
        setup_excel.create_master_workbook(path)


def test_setup_main_creates_workbook_from_config(tmp_path, capsys):
    config_path = tmp_path / "config.ini"
    config_path.write_text(
        "[System]\nDataFile = data/master.xlsx\nDistributorName = Test\nSchemaVersion = 1.0.0\n"
    )

    assert setup_excel.main(["--config", str(config_path)]) == 0
    assert (tmp_path / "data" / "master.xlsx").exists()
    assert setup_excel.main(["--config", str(config_path)]) == 1
    assert "--force" in capsys.readouterr().out


def test_setup_load_settings_requires_data_file(tmp_path):
    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nDistributorName = Test\n")
    with pytest.raises(KeyError):
        setup_excel.load_settings(config_path)
