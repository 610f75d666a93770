"""Utility for initializing the billing ledger workbook.

The module doubles as a script (``python -m billing_ledger.setup_excel``) and
as a library used by tests or other tooling, so the bootstrap logic stays the
same regardless of the execution path.
"""

from __future__ import annotations

import argparse
import configparser
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from . import log
from .constants import SheetName
from .data_manager import (
    CASH_BANK_COLUMNS,
    CONFIG_FILE_NAME,
    INVOICE_COLUMNS,
    INVOICE_LINE_COLUMNS,
    ITEM_COLUMNS,
    PAYMENT_COLUMNS,
    parse_settings,
    read_config,
)


SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.ITEMS.value: ITEM_COLUMNS,
    SheetName.INVOICES.value: INVOICE_COLUMNS,
    SheetName.INVOICE_LINES.value: INVOICE_LINE_COLUMNS,
    SheetName.PAYMENTS.value: PAYMENT_COLUMNS,
    SheetName.CASH_BANK.value: CASH_BANK_COLUMNS,
}


def create_ledger_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create an empty ledger workbook at ``destination``.

    Every sheet gets a bold header row and nothing else. When ``overwrite`` is
    ``False`` (the default) this function raises ``FileExistsError`` if the
    target already exists.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing ledger workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)
    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    workbook.save(destination)
    log.info("Created ledger workbook '%s' with sheets: %s", destination, ", ".join(sheet_columns))
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``[System] DataFile`` in ``config_path``."""

    config_path = Path(config_path).expanduser().resolve()
    settings = parse_settings(read_config(config_path), base_path=config_path.parent)
    return create_ledger_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the billing ledger workbook")
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
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Billing Ledger Setup ---")
    print(f"Using configuration: {config_path}")
    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError, configparser.Error) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created ledger workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
