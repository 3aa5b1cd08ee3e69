"""Utility for initializing the distributor ledger master workbook.

The module doubles as a script (``ledger-setup``) and as a library used by
tests. Sheet names and headers come from :data:`data_manager.TABLES`, so the
bootstrap always matches what the store reads and writes.
"""

from __future__ import annotations

import argparse
import configparser
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from .data_manager import CONFIG_FILE_NAME, TABLES

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {spec.sheet: spec.headers for spec in TABLES.values()}


@dataclass(frozen=True)
class SetupSettings:
    """Configuration values used during setup."""

    data_file: Path
    distributor_name: str


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory, the same way the runtime context resolves them.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)

    try:
        data_file_raw = parser.get("System", "DataFile")
        distributor_name = parser.get("System", "DistributorName")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()

    return SetupSettings(data_file=data_file_path, distributor_name=distributor_name)


def build_master_workbook(sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS) -> Workbook:
    """Return an in-memory workbook holding every ledger sheet with bold headers."""

    workbook = openpyxl.Workbook()

    # Drop the default sheet openpyxl creates.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)
    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index, value=column_name)
            cell.font = bold_font
    return workbook


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the master workbook at ``destination``.

    Raises:
        FileExistsError: If the target exists and ``overwrite`` is ``False``.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)
    build_master_workbook(sheet_columns).save(destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    settings = load_settings(config_path)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialize the distributor ledger workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE_NAME,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the ``ledger-setup`` script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Distributor Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
