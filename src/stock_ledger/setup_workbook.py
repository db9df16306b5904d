"""Bootstrap an empty warehouse ledger workbook.

Run as ``stock-ledger-setup`` or import :func:`create_master_workbook` from
tests. Header rows come straight from the column tuples in
:mod:`stock_ledger.data_manager`, so a freshly created file is always readable
by the data access layer.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

from . import data_manager, log
from .constants import SheetName

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.PRODUCTS.value: data_manager.PRODUCT_COLUMNS,
    SheetName.SALES.value: data_manager.SALE_COLUMNS,
}
MIN_COLUMN_WIDTH = 12


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Write a workbook holding one sheet per entry of ``sheet_columns``.

    Each sheet gets a bold, frozen header row and nothing else.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is False.
    """

    target = Path(destination).expanduser().resolve()
    if target.exists() and not overwrite:
        raise FileExistsError(f"Ledger workbook already exists: {target}")
    target.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()
    # Drop the default "Sheet" so only ledger sheets remain.
    workbook.remove(workbook.active)

    header_font = Font(bold=True)
    for title, headers in sheet_columns.items():
        sheet = workbook.create_sheet(title=title)
        sheet.append(list(headers))
        for index, header in enumerate(headers, start=1):
            sheet.cell(row=1, column=index).font = header_font
            width = max(MIN_COLUMN_WIDTH, len(header) + 4)
            sheet.column_dimensions[get_column_letter(index)].width = width
        sheet.freeze_panes = "A2"

    workbook.save(target)
    log.info("Created ledger workbook '%s'", target)
    return target


def run_from_config(
    config_path: Path,
    *,
    overwrite: bool = False,
    output: Optional[Path] = None,
) -> Path:
    """Create the workbook at ``output``, or at ``DataFile`` from ``config_path``."""

    if output is not None:
        return create_master_workbook(output, overwrite=overwrite)
    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="stock-ledger-setup",
        description="Create an empty stock ledger workbook",
    )
    parser.add_argument(
        "--config",
        default=data_manager.CONFIG_FILE_NAME,
        help="config.ini whose DataFile names the workbook (default: config.ini)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Write the workbook here instead of the configured DataFile.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Replace an existing workbook.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for ``stock-ledger-setup``."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()
    if args.output is None:
        print(f"Reading DataFile from {config_path}")

    try:
        created = run_from_config(config_path, overwrite=args.force, output=args.output)
    except FileExistsError as exc:
        print(f"[ERROR] {exc}")
        print("Pass --force to replace it.")
        return 1
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"[ERROR] {exc}")
        return 1
    except OSError as exc:
        print(f"[ERROR] Could not write workbook: {exc}")
        return 1

    print(f"[SUCCESS] Ledger workbook ready at '{created}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
