"""Sale ledger and aggregator.

Every completed sale becomes one immutable row on the ``Sales`` sheet. The
row copies the product's code and name and the quantity before and after the
sale, so reports built from the ledger never consult the stock store and stay
stable when products are later edited or removed.

Rollups are explicit group-and-fold passes over ledger rows: the group key is
a calendar month (in the ledger's configured time zone) or a product code, and
the fold sums quantities, counts transactions and tracks the latest sale.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, tzinfo
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import DEFAULT_LIST_LIMIT, DEFAULT_MONTHLY_LIMIT
from .errors import InvalidInputError, PartialSaleInconsistency
from .stock_store import StockDecrement, StockStore
from .validation import (
    month_window,
    normalize_code,
    normalize_optional_text,
    parse_month,
    require_calendar_month,
    require_limit,
    require_positive_amount,
)


@dataclass(frozen=True)
class MonthlyTotal:
    """Units sold and transaction counts for one calendar month."""

    year: int
    month: int
    total_sold: int
    transaction_count: int
    distinct_product_count: int


@dataclass(frozen=True)
class ProductBreakdown:
    """Per-product rollup within a single month."""

    code: str
    name: str
    total_sold: int
    transaction_count: int
    last_sold_at: datetime


@dataclass(frozen=True)
class ExportRow:
    """Flat, denormalized sale row handed to a spreadsheet formatter."""

    sold_at: datetime
    product_code: str
    product_name: str
    quantity_sold: int
    quantity_before: int
    quantity_after: int
    note: str


def _resolve_timestamp(candidate: Optional[datetime], zone: tzinfo) -> datetime:
    """Return ``candidate`` made timezone-aware, or the current UTC time."""
    if candidate is None:
        return datetime.now(UTC)
    if candidate.tzinfo is None:
        return candidate.replace(tzinfo=zone)
    return candidate


def generate_sale_id(when: datetime) -> str:
    """Build a sortable sale identifier: ``S{UTC timestamp}-{random suffix}``.

    The random suffix keeps identifiers unique when concurrent sales share a
    microsecond.
    """
    stamp = when.astimezone(UTC).strftime("%Y%m%d%H%M%S%f")
    return f"S{stamp}-{uuid.uuid4().hex[:6].upper()}"


def build_sale(
    decrement: StockDecrement,
    *,
    quantity_sold: int,
    note: Optional[str],
    sold_at: datetime,
) -> data_manager.SaleRow:
    """Materialize a stock decrement into a ledger fact."""
    return data_manager.SaleRow(
        sale_id=generate_sale_id(sold_at),
        sold_at=sold_at,
        product_code=decrement.product.code,
        product_name=decrement.product.name,
        quantity_sold=quantity_sold,
        quantity_before=decrement.quantity_before,
        quantity_after=decrement.quantity_after,
        note=note,
    )


def newest_first(sales: Iterable[data_manager.SaleRow]) -> List[data_manager.SaleRow]:
    """Order facts by ``sold_at`` descending; later appends win ties."""
    return sorted(reversed(list(sales)), key=lambda sale: sale.sold_at, reverse=True)


def group_monthly_totals(sales: Iterable[data_manager.SaleRow], zone: tzinfo) -> List[MonthlyTotal]:
    """Fold facts into per-month totals, most recent month first."""
    totals: Dict[Tuple[int, int], List[int]] = {}
    products: Dict[Tuple[int, int], Set[str]] = {}
    for sale in sales:
        local = sale.sold_at.astimezone(zone)
        key = (local.year, local.month)
        bucket = totals.setdefault(key, [0, 0])
        bucket[0] += sale.quantity_sold
        bucket[1] += 1
        products.setdefault(key, set()).add(sale.product_code)

    return [
        MonthlyTotal(
            year=year,
            month=month,
            total_sold=totals[(year, month)][0],
            transaction_count=totals[(year, month)][1],
            distinct_product_count=len(products[(year, month)]),
        )
        for year, month in sorted(totals, reverse=True)
    ]


def group_product_breakdown(sales: Iterable[data_manager.SaleRow]) -> List[ProductBreakdown]:
    """Fold facts into per-product totals, best sellers first.

    The reported name is the one carried by the earliest fact in ``sales``.
    Ties on ``total_sold`` are ordered by product code.
    """
    names: Dict[str, str] = {}
    totals: Dict[str, List[int]] = {}
    last_sold: Dict[str, datetime] = {}
    for sale in sorted(sales, key=lambda sale: sale.sold_at):
        code = sale.product_code
        names.setdefault(code, sale.product_name)
        bucket = totals.setdefault(code, [0, 0])
        bucket[0] += sale.quantity_sold
        bucket[1] += 1
        if code not in last_sold or sale.sold_at > last_sold[code]:
            last_sold[code] = sale.sold_at

    breakdown = [
        ProductBreakdown(
            code=code,
            name=names[code],
            total_sold=bucket[0],
            transaction_count=bucket[1],
            last_sold_at=last_sold[code],
        )
        for code, bucket in totals.items()
    ]
    breakdown.sort(key=lambda row: (-row.total_sold, row.code))
    return breakdown


class SaleLedger:
    """Append-only sale history over the ``Sales`` worksheet."""

    def __init__(
        self,
        workbook: Workbook,
        store: StockStore,
        *,
        zone: tzinfo = UTC,
        structure_lock: Optional[threading.RLock] = None,
        list_limit: int = DEFAULT_LIST_LIMIT,
        monthly_limit: int = DEFAULT_MONTHLY_LIMIT,
    ) -> None:
        self._workbook = workbook
        self._store = store
        self._zone = zone
        self._structure_lock = structure_lock if structure_lock is not None else store.structure_lock
        self._list_limit = list_limit
        self._monthly_limit = monthly_limit
        self._cache: Optional[List[data_manager.SaleRow]] = None

    @property
    def zone(self) -> tzinfo:
        return self._zone

    def _snapshot(self) -> List[data_manager.SaleRow]:
        with self._structure_lock:
            if self._cache is None:
                self._cache = list(data_manager.iter_sales(self._workbook))
                log.debug("Populated sales cache with %d entries", len(self._cache))
            return list(self._cache)

    def _append(self, sale: data_manager.SaleRow) -> None:
        with self._structure_lock:
            data_manager.append_sale(self._workbook, sale)
            if self._cache is not None:
                self._cache.append(sale)

    def record_sale(
        self,
        code: Any,
        amount: Any,
        note: Any = None,
        *,
        sold_at: Optional[datetime] = None,
    ) -> data_manager.SaleRow:
        """Decrement stock and append the matching sale fact.

        Validation and the stock check happen before anything is written, so
        ``InvalidInputError``, ``MissingReferenceError`` and
        ``InsufficientStockError`` leave both stock and ledger untouched. The
        decrement and the append happen under one hold of the structure lock,
        so a concurrent save never captures one without the other.

        Raises:
            PartialSaleInconsistency: If stock was decremented but the fact
                could not be appended. Stock and ledger then disagree and an
                operator must reconcile them.
        """
        units = require_positive_amount(amount)
        clean_note = normalize_optional_text(note)
        timestamp = _resolve_timestamp(sold_at, self._zone)
        recorded: List[data_manager.SaleRow] = []

        def append_fact(decrement: StockDecrement) -> None:
            try:
                sale = build_sale(decrement, quantity_sold=units, note=clean_note, sold_at=timestamp)
                self._append(sale)
            except Exception as exc:
                log.critical(
                    "Ledger append failed after decrementing '%s' by %d (%d -> %d): %s",
                    decrement.product.code,
                    units,
                    decrement.quantity_before,
                    decrement.quantity_after,
                    exc,
                )
                raise PartialSaleInconsistency(
                    decrement.product.code,
                    quantity_sold=units,
                    quantity_before=decrement.quantity_before,
                    quantity_after=decrement.quantity_after,
                    cause=exc,
                ) from exc
            recorded.append(sale)

        self._store.reserve_and_decrement(code, units, then=append_fact)
        sale = recorded[0]
        log.info(
            "Recorded sale '%s' of %d x '%s' (%d -> %d)",
            sale.sale_id,
            units,
            sale.product_code,
            sale.quantity_before,
            sale.quantity_after,
        )
        return sale

    def list_sales(
        self,
        *,
        code: Any = None,
        month: Any = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Any = None,
    ) -> List[data_manager.SaleRow]:
        """Return facts newest first, optionally filtered by code and time.

        ``month`` (``YYYY-MM``) selects a calendar month in the ledger's zone;
        ``start``/``end`` select an arbitrary half-open window. The two forms
        cannot be combined.
        """
        size = self._list_limit if limit is None else require_limit(limit)
        if month is not None and (start is not None or end is not None):
            raise InvalidInputError("Use either month or start/end, not both")
        if month is not None:
            start, end = month_window(*parse_month(month), self._zone)
        start = None if start is None else _resolve_timestamp(start, self._zone)
        end = None if end is None else _resolve_timestamp(end, self._zone)
        wanted = None if code is None else normalize_code(code)

        matches = [
            sale
            for sale in self._snapshot()
            if (wanted is None or sale.product_code == wanted)
            and (start is None or sale.sold_at >= start)
            and (end is None or sale.sold_at < end)
        ]
        return newest_first(matches)[:size]

    def monthly_totals(self, limit: Any = None) -> List[MonthlyTotal]:
        """Per-month totals over the whole ledger, most recent month first."""
        size = self._monthly_limit if limit is None else require_limit(limit)
        return group_monthly_totals(self._snapshot(), self._zone)[:size]

    def monthly_product_breakdown(self, year: int, month: int) -> List[ProductBreakdown]:
        """Per-product totals for facts sold within one calendar month."""
        require_calendar_month(year, month)
        start, end = month_window(year, month, self._zone)
        in_window = [sale for sale in self._snapshot() if start <= sale.sold_at < end]
        return group_product_breakdown(in_window)

    def export_window(self, month: Any = None) -> List[ExportRow]:
        """Project facts into flat export rows, newest first.

        ``month`` is a ``YYYY-MM`` string, or ``None``/``"all"`` for the whole
        ledger. No aggregation happens here.
        """
        sales = self._snapshot()
        if month is not None and str(month).strip().lower() != "all":
            start, end = month_window(*parse_month(month), self._zone)
            sales = [sale for sale in sales if start <= sale.sold_at < end]
        return [
            ExportRow(
                sold_at=sale.sold_at.astimezone(self._zone),
                product_code=sale.product_code,
                product_name=sale.product_name,
                quantity_sold=sale.quantity_sold,
                quantity_before=sale.quantity_before,
                quantity_after=sale.quantity_after,
                note=sale.note or "",
            )
            for sale in newest_first(sales)
        ]

    def invalidate(self) -> None:
        """Drop cached facts so the next read rescans the worksheet."""
        with self._structure_lock:
            self._cache = None
