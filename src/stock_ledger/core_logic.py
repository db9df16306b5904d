"""Business logic layer for the warehouse stock ledger.

This module wires configuration, the live workbook, the stock store and the
sale ledger into a :class:`RuntimeContext` and exposes the operations the CLI
(or any other front-end) calls. All workbook I/O goes through the data access
layer; all stock and ledger rules live in :mod:`stock_store` and
:mod:`sale_ledger`.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, ReportMode, StockStatus
from .errors import InvalidInputError, StorageUnavailableError
from .sale_ledger import ExportRow, MonthlyTotal, ProductBreakdown, SaleLedger
from .stock_store import StockStore, classify_stock
from .validation import parse_month

SAVE_ATTEMPTS = 3
SAVE_RETRY_DELAY = 0.5


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook and the components built on it."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    store: StockStore
    ledger: SaleLedger
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)


@dataclass(frozen=True)
class SaleCommand:
    """User intent for selling ``quantity`` units of a product."""

    code: str
    quantity: int
    note: Optional[str] = None
    timestamp: Optional[datetime] = None


ReportResult = Union[List[data_manager.SaleRow], List[MonthlyTotal], List[ProductBreakdown]]


def build_runtime_context(settings: data_manager.ConfigSettings, workbook: Workbook) -> RuntimeContext:
    """Assemble a context whose store and ledger share one structure lock."""
    lock = threading.RLock()
    store = StockStore(workbook, structure_lock=lock)
    ledger = SaleLedger(
        workbook,
        store,
        zone=settings.zone,
        structure_lock=lock,
        list_limit=settings.list_limit,
        monthly_limit=settings.monthly_limit,
    )
    return RuntimeContext(settings=settings, workbook=workbook, store=store, ledger=ledger, lock=lock)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
        StorageUnavailableError: If the workbook exists but cannot be read.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return build_runtime_context(settings, workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to operate on a workbook declared with a different layout.

    Raises:
        RuntimeError: If ``SchemaVersion`` in ``config.ini`` does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext, *, attempts: int = SAVE_ATTEMPTS) -> None:
    """Save the in-memory workbook to the configured data file.

    Row appends are blocked for the duration of the save so the file always
    holds a consistent snapshot. A locked or unwritable file is retried up to
    ``attempts`` times with a growing pause between tries.

    Raises:
        StorageUnavailableError: If the workbook still cannot be written
            after the last attempt.
    """
    for attempt in range(attempts):
        try:
            with context.lock:
                data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
            break
        except StorageUnavailableError:
            if attempt == attempts - 1:
                raise
            log.warning("Save attempt %d of %d failed; retrying", attempt + 1, attempts)
            time.sleep(SAVE_RETRY_DELAY * (attempt + 1))
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk, discarding unsaved modifications."""
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return build_runtime_context(context.settings, workbook)


def add_product(
    context: RuntimeContext,
    *,
    code: str,
    name: str,
    quantity: int = 0,
    location: Optional[str] = None,
) -> data_manager.ProductRow:
    return context.store.create(code, name, quantity, location)


def get_product(context: RuntimeContext, code: str) -> data_manager.ProductRow:
    return context.store.lookup(code)


def list_products(context: RuntimeContext, *, search: Optional[str] = None) -> List[data_manager.ProductRow]:
    """Return products newest first, optionally narrowed by a search string."""
    if search is None:
        return context.store.list_products()
    return context.store.search_products(search)


def set_quantity(context: RuntimeContext, code: str, quantity: int) -> data_manager.ProductRow:
    return context.store.set_quantity(code, quantity)


def remove_product(context: RuntimeContext, code: str) -> data_manager.ProductRow:
    return context.store.remove(code)


def stock_status(context: RuntimeContext, product: data_manager.ProductRow) -> StockStatus:
    """Classify a product's quantity using the configured low-stock threshold."""
    return classify_stock(product.quantity, low_threshold=context.settings.low_stock_threshold)


def record_sale(context: RuntimeContext, command: SaleCommand) -> data_manager.SaleRow:
    """Sell ``command.quantity`` units: decrement stock, then append the fact."""
    return context.ledger.record_sale(
        command.code,
        command.quantity,
        command.note,
        sold_at=command.timestamp,
    )


def list_sales(
    context: RuntimeContext,
    *,
    code: Optional[str] = None,
    month: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[data_manager.SaleRow]:
    return context.ledger.list_sales(code=code, month=month, limit=limit)


def monthly_totals(context: RuntimeContext, *, limit: Optional[int] = None) -> List[MonthlyTotal]:
    return context.ledger.monthly_totals(limit)


def monthly_product_breakdown(context: RuntimeContext, year: int, month: int) -> List[ProductBreakdown]:
    return context.ledger.monthly_product_breakdown(year, month)


def export_window(context: RuntimeContext, month: Optional[str] = None) -> List[ExportRow]:
    return context.ledger.export_window(month)


def run_report(
    context: RuntimeContext,
    mode: Any = ReportMode.LIST,
    *,
    code: Optional[str] = None,
    month: Optional[str] = None,
    limit: Optional[int] = None,
) -> ReportResult:
    """Dispatch a sales query to the list, monthly or monthly-detail view.

    Raises:
        InvalidInputError: For an unknown mode, or ``monthly-detail`` without
            a month.
    """
    try:
        selected = ReportMode(mode)
    except ValueError as exc:
        raise InvalidInputError(f"Unknown report mode: {mode}") from exc

    if selected is ReportMode.MONTHLY:
        return monthly_totals(context, limit=limit)
    if selected is ReportMode.MONTHLY_DETAIL:
        if month is None:
            raise InvalidInputError("monthly-detail reports require a month (YYYY-MM)")
        year, month_number = parse_month(month)
        return monthly_product_breakdown(context, year, month_number)
    return list_sales(context, code=code, month=month, limit=limit)
