"""Utility for initializing the BeiPoa master workbook.

The module doubles as a script (``python -m beipoa_erp.setup_excel``) and as a
library used by tests or other tooling. Shared helpers keep the workbook
bootstrap logic consistent regardless of the execution path.
"""

from __future__ import annotations

import argparse
import sys
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Mapping, Sequence

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log
from .constants import PAYMENT_ACCOUNTS, WALK_IN_CUSTOMER_ID, SheetName

CONFIG_FILE = "config.ini"

# Seeded into every new workbook so cash sales have a customer to point at.
WALK_IN_CUSTOMER: Mapping[str, object] = {
    "CustomerID": WALK_IN_CUSTOMER_ID,
    "CustomerName": "Walk-in Customer",
    "Phone": None,
    "Email": None,
    "CreditLimit": Decimal("0.00"),
    "CurrentBalance": Decimal("0.00"),
    "TotalPurchases": Decimal("0.00"),
    "LastPurchaseDate": None,
    "IsActive": True,
}


def _append(worksheet, columns: Sequence[str], rows: Iterable[Mapping[str, object]]) -> None:
    for row in rows:
        worksheet.append([row.get(column) for column in columns])


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[SheetName, Sequence[str]] = data_manager.SHEET_COLUMNS,
    seed_defaults: bool = True,
    overwrite: bool = False,
) -> Path:
    """Create the BeiPoa master workbook at ``destination``.

    Every sheet gets a bold header row. With ``seed_defaults`` the payment
    accounts start at a zero balance and the walk-in customer is added.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is
            ``False``.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=SheetName(sheet_name).value)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    if seed_defaults:
        _append(
            workbook[SheetName.ACCOUNTS.value],
            sheet_columns[SheetName.ACCOUNTS],
            (
                {"AccountID": account_id, "AccountName": name, "Balance": Decimal("0.00")}
                for account_id, name in PAYMENT_ACCOUNTS.values()
            ),
        )
        _append(workbook[SheetName.CUSTOMERS.value], sheet_columns[SheetName.CUSTOMERS], [WALK_IN_CUSTOMER])

    workbook.save(destination)
    log.info("Created master workbook '%s'", destination)
    return destination


def load_settings(config_path: Path) -> data_manager.ConfigSettings:
    """Read ``config.ini``; relative paths resolve against its directory."""

    config_path = Path(config_path).expanduser().resolve()
    parser = data_manager.read_config(config_path)
    return data_manager.parse_settings(parser, base_path=config_path.parent)


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    settings = load_settings(config_path)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the BeiPoa master workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
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

    print("--- BeiPoa Setup Script ---")
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
