"""Data access layer for the warehouse stock ledger.

This module owns every read and write against the ``.xlsx`` master workbook.
Stock rules and ledger rules belong elsewhere.

The public API covers three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading typed records, appending rows, and rewriting or
   clearing individual product rows.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, Sequence, Tuple, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_LIST_LIMIT,
    DEFAULT_LOW_STOCK_THRESHOLD,
    DEFAULT_MONTHLY_LIMIT,
    DEFAULT_TIME_ZONE,
    SheetName,
)
from .errors import CorruptRowError, StorageUnavailableError


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
SALES_SHEET = SheetName.SALES.value

PRODUCT_COLUMNS: Tuple[str, ...] = (
    "ProductCode",
    "ProductName",
    "Quantity",
    "Location",
    "CreatedAt",
)
SALE_COLUMNS: Tuple[str, ...] = (
    "SaleID",
    "SoldAt",
    "ProductCode",
    "ProductName",
    "QuantitySold",
    "QuantityBefore",
    "QuantityAfter",
    "Note",
)
QUANTITY_COLUMN = PRODUCT_COLUMNS.index("Quantity") + 1

Record = TypeVar("Record")


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    warehouse_name: str
    schema_version: str
    time_zone: str = DEFAULT_TIME_ZONE
    list_limit: int = DEFAULT_LIST_LIMIT
    monthly_limit: int = DEFAULT_MONTHLY_LIMIT
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD

    @property
    def zone(self) -> ZoneInfo:
        """Time zone that defines calendar months for ledger reports."""
        return ZoneInfo(self.time_zone)


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    code: str
    name: str
    quantity: int
    location: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of one immutable fact from the ``Sales`` sheet."""

    sale_id: str
    sold_at: datetime
    product_code: str
    product_name: str
    quantity_sold: int
    quantity_before: int
    quantity_after: int
    note: Optional[str]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls the data layer.

    An explicit path wins without verification. Otherwise the search walks up
    from the current working directory and returns the first
    ``CONFIG_FILE_NAME`` it finds.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser holding the raw configuration data.
            Required entries are checked later by :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Reports]`` and ``[Stock]`` are
    optional and fall back to the package defaults. A relative ``DataFile``
    is anchored to ``base_path`` (or the working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a numeric option is not an integer, a limit is not
            positive, or the time zone is unknown.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        warehouse_name = parser.get("System", "WarehouseName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    time_zone = parser.get("Reports", "TimeZone", fallback=DEFAULT_TIME_ZONE).strip()
    list_limit = parser.getint("Reports", "ListLimit", fallback=DEFAULT_LIST_LIMIT)
    monthly_limit = parser.getint("Reports", "MonthlyLimit", fallback=DEFAULT_MONTHLY_LIMIT)
    low_stock_threshold = parser.getint(
        "Stock", "LowStockThreshold", fallback=DEFAULT_LOW_STOCK_THRESHOLD
    )

    if list_limit < 1 or monthly_limit < 1:
        raise ValueError("Report limits must be positive integers")
    if low_stock_threshold < 0:
        raise ValueError("LowStockThreshold must be zero or positive")
    try:
        ZoneInfo(time_zone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown time zone in configuration: {time_zone}") from exc

    data_file_path = Path(data_file_raw).expanduser()
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        warehouse_name=warehouse_name,
        schema_version=schema_version,
        time_zone=time_zone,
        list_limit=list_limit,
        monthly_limit=monthly_limit,
        low_stock_threshold=low_stock_threshold,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
        StorageUnavailableError: If the file exists but cannot be read.
        KeyError: If a required sheet is missing.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    try:
        wb = openpyxl.load_workbook(data_file)
    except OSError as exc:
        log.error("Unable to read workbook '%s': %s", data_file, exc)
        raise StorageUnavailableError(f"Unable to read workbook: {data_file}") from exc

    for sheet_name in (PRODUCTS_SHEET, SALES_SHEET):
        if sheet_name not in wb.sheetnames:
            raise KeyError(f"Workbook is missing the '{sheet_name}' sheet")
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination``, creating parent folders.

    Raises:
        StorageUnavailableError: If the file cannot be written, for example
            because it is open in Excel or the disk is read-only.
    """

    dest = Path(destination).expanduser().resolve()
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(dest)
    except OSError as exc:
        log.error("Unable to write workbook '%s': %s", dest, exc)
        raise StorageUnavailableError(f"Unable to write workbook: {dest}") from exc


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def _decode_row(
    decoder: Callable[[Sequence[object]], Record],
    raw: Sequence[object],
    sheet_name: str,
    row_index: int,
) -> Record:
    try:
        return decoder(raw)
    except (TypeError, ValueError) as exc:
        log.error("Unreadable row %d on sheet '%s': %s", row_index, sheet_name, exc)
        raise CorruptRowError(sheet_name, row_index, str(exc)) from exc


def iter_product_rows(workbook: Workbook) -> Iterator[Tuple[int, ProductRow]]:
    """Yield ``(row_index, ProductRow)`` pairs from the ``Products`` sheet.

    The header row and fully empty rows (including rows cleared by
    :func:`clear_product_row`) are skipped. Row indices are 1-based Excel
    indices suitable for :func:`read_product` and :func:`write_product_quantity`.
    """

    sheet = workbook[PRODUCTS_SHEET]
    for row_index, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if any(cell is not None for cell in raw):
            yield row_index, _decode_row(deserialize_product, raw, PRODUCTS_SHEET, row_index)


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet."""

    for _, product in iter_product_rows(workbook):
        yield product


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Stream sale facts from the ``Sales`` worksheet in append order."""

    sheet = workbook[SALES_SHEET]
    for row_index, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if any(cell is not None for cell in raw):
            yield _decode_row(deserialize_sale, raw, SALES_SHEET, row_index)


def append_product(workbook: Workbook, record: ProductRow) -> int:
    """Append a product record and return the row index it landed on."""

    sheet = workbook[PRODUCTS_SHEET]
    sheet.append(serialize_product(record))
    return sheet.max_row


def append_sale(workbook: Workbook, record: SaleRow) -> None:
    """Append a sale fact to the ``Sales`` worksheet."""

    sheet = workbook[SALES_SHEET]
    sheet.append(serialize_sale(record))


def read_product(workbook: Workbook, row_index: int) -> Optional[ProductRow]:
    """Return the product stored on ``row_index`` or ``None`` if it is blank."""

    sheet = workbook[PRODUCTS_SHEET]
    raw = [
        sheet.cell(row=row_index, column=column).value
        for column in range(1, len(PRODUCT_COLUMNS) + 1)
    ]
    if all(cell is None for cell in raw):
        return None
    return _decode_row(deserialize_product, raw, PRODUCTS_SHEET, row_index)


def write_product_quantity(workbook: Workbook, row_index: int, quantity: int) -> None:
    """Overwrite the ``Quantity`` cell of an existing product row."""

    sheet = workbook[PRODUCTS_SHEET]
    sheet.cell(row=row_index, column=QUANTITY_COLUMN, value=quantity)


def clear_product_row(workbook: Workbook, row_index: int) -> None:
    """Blank every cell of a product row.

    Rows are cleared rather than deleted so that the row indices of the
    remaining products never shift.
    """

    sheet = workbook[PRODUCTS_SHEET]
    for column in range(1, len(PRODUCT_COLUMNS) + 1):
        # Worksheet.cell() ignores value=None, so assign it directly.
        sheet.cell(row=row_index, column=column).value = None


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the ``Products`` column ordering."""

    return [
        record.code,
        record.name,
        record.quantity,
        record.location,
        record.created_at.isoformat(),
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    """Convert a sale dataclass into the ``Sales`` column ordering."""

    return [
        record.sale_id,
        record.sold_at.isoformat(),
        record.product_code,
        record.product_name,
        record.quantity_sold,
        record.quantity_before,
        record.quantity_after,
        record.note,
    ]


def _parse_timestamp(raw: object) -> datetime:
    # Excel may hand back a native datetime if someone edited the sheet by hand.
    if isinstance(raw, datetime):
        value = raw
    elif raw is None or str(raw).strip() == "":
        raise ValueError("Missing timestamp in workbook row")
    else:
        value = datetime.fromisoformat(str(raw))
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def _parse_int(raw: object) -> int:
    if raw is None:
        return 0
    return int(raw)


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Codes and names are coerced to ``str`` because Excel turns numeric-looking
    codes into numbers.
    """

    code, name, quantity, location, created_at = tuple(raw_row)[: len(PRODUCT_COLUMNS)]
    return ProductRow(
        code=str(code),
        name=str(name) if name is not None else "",
        quantity=_parse_int(quantity),
        location=(str(location) if location is not None else None),
        created_at=_parse_timestamp(created_at),
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw worksheet row into a strongly typed sale fact."""

    (
        sale_id,
        sold_at,
        product_code,
        product_name,
        quantity_sold,
        quantity_before,
        quantity_after,
        note,
    ) = tuple(raw_row)[: len(SALE_COLUMNS)]

    return SaleRow(
        sale_id=str(sale_id),
        sold_at=_parse_timestamp(sold_at),
        product_code=str(product_code),
        product_name=str(product_name) if product_name is not None else "",
        quantity_sold=_parse_int(quantity_sold),
        quantity_before=_parse_int(quantity_before),
        quantity_after=_parse_int(quantity_after),
        note=(str(note) if note is not None else None),
    )
