"""Shared pytest fixtures and utilities for distributor ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from distributor_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from distributor_ledger.setup_excel import build_master_workbook, create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "DistributorName = {distributor_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Ledger]\n"
    "PageSize = {page_size}\n"
    "CompensateOnFailure = {compensate}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    distributor_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "master_workbook.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        return create_master_workbook(base_dir / filename, overwrite=True)

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        distributor_name: str = "Test Beverages",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        page_size: int = 50,
        compensate: bool = True,
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        workbook_path = workbook_factory(subdir=bundle_dir_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                distributor_name=distributor_name,
                schema_version=schema_version,
                page_size=page_size,
                compensate="true" if compensate else "false",
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            distributor_name=distributor_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> Callable[[], datetime]:
    """Deterministic clock advancing one second per call."""

    state = {"now": datetime(2025, 1, 1, 8, 0, tzinfo=UTC)}

    def _tick() -> datetime:
        state["now"] += timedelta(seconds=1)
        return state["now"]

    return _tick


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        distributor_name="Test Beverages",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def workbook():
    """Return an in-memory workbook with every ledger sheet."""

    return build_master_workbook()


@pytest.fixture
def context(settings, workbook, clock) -> core_logic.RuntimeContext:
    """Assemble a runtime context over the in-memory workbook."""

    return core_logic.create_context(settings, workbook, clock=clock)


@pytest.fixture
def store(context) -> data_manager.WorkbookLedgerStore:
    return context.store


@pytest.fixture
def seeded_context(context) -> core_logic.RuntimeContext:
    """Context with two customers and one priced SKU for Acme."""

    core_logic.add_customer(
        context,
        customer_id="C1",
        client_name="Acme Stores",
        branch="Downtown",
        sku="COLA-24",
        price_per_case=Decimal("40"),
    )
    core_logic.add_customer(
        context,
        customer_id="C1-W",
        client_name="Acme Stores",
        branch="Downtown",
        sku="WATER-12",
        price_per_case=Decimal("15"),
    )
    core_logic.add_customer(
        context,
        customer_id="C2",
        client_name="Beta Mart",
        branch="Uptown",
        sku="COLA-24",
        price_per_case=Decimal("42"),
    )
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="ledger-cli", description="Ledger CLI")


@pytest.fixture
def subparsers_action(cli_parser: argparse.ArgumentParser):
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
