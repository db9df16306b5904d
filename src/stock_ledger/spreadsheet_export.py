"""Render exported sale rows into a downloadable ``.xlsx`` report.

This is the formatting side of ``export_window``: the ledger hands over flat
rows and this module lays them out as a detail sheet plus a per-product
summary sheet.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet

from . import log
from .errors import StorageUnavailableError
from .sale_ledger import ExportRow

DETAIL_SHEET = "Sales"
SUMMARY_SHEET = "Product Summary"

DETAIL_COLUMNS: Sequence[Tuple[str, int]] = (
    ("Date", 14),
    ("Time", 10),
    ("Product Code", 16),
    ("Product Name", 30),
    ("Quantity Sold", 16),
    ("Quantity Before", 18),
    ("Quantity After", 18),
    ("Note", 20),
)
SUMMARY_COLUMNS: Sequence[Tuple[str, int]] = (
    ("Product Code", 16),
    ("Product Name", 30),
    ("Total Sold", 22),
    ("Transactions", 22),
)


def export_file_name(month: Optional[str]) -> str:
    """Default file name for an export of ``month`` (``YYYY-MM``) or everything."""
    label = "all" if month is None or month.strip().lower() == "all" else month.strip()
    return f"sales_{label}.xlsx"


def _write_header(sheet: Worksheet, columns: Sequence[Tuple[str, int]]) -> None:
    bold_font = Font(bold=True)
    for column_index, (title, width) in enumerate(columns, start=1):
        cell = sheet.cell(row=1, column=column_index, value=title)
        cell.font = bold_font
        sheet.column_dimensions[get_column_letter(column_index)].width = width


def summarize_rows(rows: Iterable[ExportRow]) -> List[Tuple[str, str, int, int]]:
    """Per-product ``(code, name, total_sold, transactions)`` in first-seen order."""
    summary: Dict[str, List] = {}
    for row in rows:
        entry = summary.setdefault(row.product_code, [row.product_name, 0, 0])
        entry[1] += row.quantity_sold
        entry[2] += 1
    return [(code, name, total, count) for code, (name, total, count) in summary.items()]


def write_export(rows: Sequence[ExportRow], destination: Path) -> Path:
    """Write ``rows`` to ``destination`` and return the resolved path.

    Raises:
        StorageUnavailableError: If the file or its directory cannot be written.
    """
    destination = Path(destination).expanduser().resolve()

    workbook = openpyxl.Workbook()
    detail = workbook.active
    detail.title = DETAIL_SHEET
    _write_header(detail, DETAIL_COLUMNS)
    for row in rows:
        detail.append(
            [
                row.sold_at.strftime("%Y-%m-%d"),
                row.sold_at.strftime("%H:%M:%S"),
                row.product_code,
                row.product_name,
                row.quantity_sold,
                row.quantity_before,
                row.quantity_after,
                row.note,
            ]
        )

    summary = workbook.create_sheet(title=SUMMARY_SHEET)
    _write_header(summary, SUMMARY_COLUMNS)
    for entry in summarize_rows(rows):
        summary.append(list(entry))

    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(destination)
    except OSError as exc:
        log.error("Unable to write export '%s': %s", destination, exc)
        raise StorageUnavailableError(f"Unable to write export {destination}: {exc}") from exc
    log.info("Exported %d sale rows to '%s'", len(rows), destination)
    return destination
