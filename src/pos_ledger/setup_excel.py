"""Utility for initializing the POS ledger master workbook.

The module doubles as a script (``pos-setup``) and as a library used by tests
or other tooling. Shared helpers keep the workbook bootstrap logic consistent
regardless of the execution path.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Mapping, Optional, Sequence
import sys

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from . import data_manager
from .constants import Collection


CONFIG_FILE = data_manager.CONFIG_FILE_NAME
DEFAULT_COMPANY_NAME = "My Shop"


def build_master_workbook(
    *,
    company_name: str = DEFAULT_COMPANY_NAME,
    sheet_columns: Optional[Mapping[Collection, Sequence[str]]] = None,
) -> Workbook:
    """Build an empty ledger workbook in memory.

    Every collection gets a sheet with bold headers. The ``CompanyProfile``
    sheet also receives a default row naming the shop.
    """

    if sheet_columns is None:
        sheet_columns = {collection: data_manager.sheet_headers(collection) for collection in Collection}

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for collection, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=collection.value)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    data_manager.write_company_profile(workbook, data_manager.CompanyProfileRow(name=company_name))
    return workbook


def create_master_workbook(
    destination: Path,
    *,
    company_name: str = DEFAULT_COMPANY_NAME,
    overwrite: bool = False,
) -> Path:
    """Create the POS ledger master workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    workbook = build_master_workbook(company_name=company_name)
    data_manager.save_workbook(workbook, destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``[System] DataFile`` in ``config_path``."""

    config_path = Path(config_path).expanduser().resolve()
    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    return create_master_workbook(
        settings.data_file,
        company_name=settings.shop_name,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the POS ledger data file")
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

    print("--- POS Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except KeyError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
