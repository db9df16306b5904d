"""Stock store: current product state and the non-negative quantity rule.

The store wraps the ``Products`` sheet of a live workbook. Each indexed product
code owns a dedicated lock, and every read-check-write on a product's quantity
runs inside that lock, so two sales of the same code can never both pass the
availability check against the same stale quantity. Codes never share a lock,
which keeps sales of different products independent of each other. Locks exist
only for codes that are indexed: unknown codes are rejected without
registering one, and removing a product discards its lock.

Appending or saving touches the workbook's internal row structures, so those
steps additionally take the workbook-wide ``structure_lock`` supplied by the
caller. The lock order is always per-code lock first, then structure lock.
The registry lock is only ever held briefly and never while waiting on
another lock.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import DEFAULT_LOW_STOCK_THRESHOLD, StockStatus
from .errors import (
    DuplicateCodeError,
    InsufficientStockError,
    InvalidInputError,
    MissingReferenceError,
)
from .validation import (
    normalize_code,
    normalize_name,
    normalize_optional_text,
    require_positive_amount,
    require_quantity,
)


@dataclass(frozen=True)
class StockDecrement:
    """Snapshot returned by :meth:`StockStore.reserve_and_decrement`."""

    product: data_manager.ProductRow
    quantity_before: int
    quantity_after: int


def classify_stock(quantity: int, *, low_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD) -> StockStatus:
    """Map an on-hand quantity to the badge shown next to a product."""
    if quantity <= 0:
        return StockStatus.OUT_OF_STOCK
    if quantity <= low_threshold:
        return StockStatus.LOW
    return StockStatus.IN_STOCK


class StockStore:
    """Thread-safe product catalogue over the ``Products`` worksheet."""

    def __init__(self, workbook: Workbook, *, structure_lock: Optional[threading.RLock] = None) -> None:
        self._workbook = workbook
        self._structure_lock = structure_lock if structure_lock is not None else threading.RLock()
        self._registry_lock = threading.Lock()
        # One lock per indexed (or currently being created) code.
        self._code_locks: Dict[str, threading.Lock] = {}
        # code -> 1-based row index; an entry is only read or written while
        # holding that code's lock.
        self._rows: Dict[str, int] = {}
        with self._structure_lock:
            for row_index, product in data_manager.iter_product_rows(workbook):
                code = product.code.strip().upper()
                if code in self._rows:
                    log.warning(
                        "Duplicate product code '%s' on row %d ignored (first seen on row %d)",
                        code,
                        row_index,
                        self._rows[code],
                    )
                    continue
                self._rows[code] = row_index
                self._code_locks[code] = threading.Lock()
        log.debug("Indexed %d products from the workbook", len(self._rows))

    @property
    def structure_lock(self) -> threading.RLock:
        """Workbook-wide lock guarding appends and saves."""
        return self._structure_lock

    @contextmanager
    def _holding(self, code: str) -> Iterator[None]:
        """Hold the lock registered for ``code``.

        Raises:
            MissingReferenceError: If no lock is registered, i.e. the code is
                not indexed.
        """
        while True:
            with self._registry_lock:
                lock = self._code_locks.get(code)
            if lock is None:
                log.warning("Product lookup failed for code '%s'", code)
                raise MissingReferenceError(code)
            with lock:
                with self._registry_lock:
                    current = self._code_locks.get(code)
                if current is lock:
                    yield
                    return
            # The product was removed (and maybe re-created) while we waited.

    def _load(self, code: str) -> tuple[int, data_manager.ProductRow]:
        """Return ``(row_index, product)``; caller must hold the code lock."""
        row_index = self._rows.get(code)
        product = None if row_index is None else data_manager.read_product(self._workbook, row_index)
        if row_index is None or product is None:
            log.warning("Product lookup failed for code '%s'", code)
            raise MissingReferenceError(code)
        return row_index, product

    def lookup(self, code: Any) -> data_manager.ProductRow:
        """Resolve a product by code, case-insensitively.

        Raises:
            InvalidInputError: If ``code`` is blank.
            MissingReferenceError: If no product carries the normalized code.
        """
        normalized = normalize_code(code)
        with self._holding(normalized):
            _, product = self._load(normalized)
        return product

    def create(
        self,
        code: Any,
        name: Any,
        quantity: Any = 0,
        location: Any = None,
        *,
        created_at: Optional[datetime] = None,
    ) -> data_manager.ProductRow:
        """Register a new product.

        Raises:
            InvalidInputError: If code or name is blank or quantity is invalid.
            DuplicateCodeError: If the normalized code already exists.
        """
        normalized = normalize_code(code)
        record = data_manager.ProductRow(
            code=normalized,
            name=normalize_name(name),
            quantity=require_quantity(quantity),
            location=normalize_optional_text(location),
            created_at=created_at if created_at is not None else datetime.now(UTC),
        )
        lock = threading.Lock()
        with lock:
            # Publishing the held lock makes concurrent callers for this code
            # wait until the row is indexed.
            with self._registry_lock:
                if normalized in self._code_locks:
                    log.warning("Rejected duplicate product code '%s'", normalized)
                    raise DuplicateCodeError(normalized)
                self._code_locks[normalized] = lock
            try:
                with self._structure_lock:
                    row_index = data_manager.append_product(self._workbook, record)
            except BaseException:
                with self._registry_lock:
                    del self._code_locks[normalized]
                raise
            self._rows[normalized] = row_index
        log.info(
            "Created product '%s' (%s) with quantity %d",
            record.code,
            record.name,
            record.quantity,
        )
        return record

    def set_quantity(self, code: Any, quantity: Any) -> data_manager.ProductRow:
        """Overwrite a product's quantity unconditionally (administrative edit).

        Raises:
            InvalidInputError: If ``quantity`` is negative or non-integral.
            MissingReferenceError: If the code is unknown.
        """
        normalized = normalize_code(code)
        new_quantity = require_quantity(quantity)
        with self._holding(normalized):
            row_index, product = self._load(normalized)
            data_manager.write_product_quantity(self._workbook, row_index, new_quantity)
        log.info(
            "Set quantity of '%s' from %d to %d",
            normalized,
            product.quantity,
            new_quantity,
        )
        return data_manager.ProductRow(
            code=product.code,
            name=product.name,
            quantity=new_quantity,
            location=product.location,
            created_at=product.created_at,
        )

    def remove(self, code: Any) -> data_manager.ProductRow:
        """Hard-delete a product and return the record that was removed.

        Sale facts that reference the code are left untouched.
        """
        normalized = normalize_code(code)
        with self._holding(normalized):
            row_index, product = self._load(normalized)
            with self._structure_lock:
                data_manager.clear_product_row(self._workbook, row_index)
            del self._rows[normalized]
            with self._registry_lock:
                del self._code_locks[normalized]
        log.info("Removed product '%s' (last quantity %d)", normalized, product.quantity)
        return product

    def reserve_and_decrement(
        self,
        code: Any,
        amount: Any,
        *,
        then: Optional[Callable[[StockDecrement], Any]] = None,
    ) -> StockDecrement:
        """Atomically decrement stock if at least ``amount`` units are on hand.

        Read, availability check and write all happen under the product's
        lock, so no concurrent caller can observe or act on the pre-decrement
        quantity once this call has passed its check.

        The write runs under the structure lock, and ``then`` (if given) is
        called with the decrement before that lock is released. A save
        therefore sees either neither change or both. An exception raised by
        ``then`` propagates; the decrement is already written at that point.

        Raises:
            InvalidInputError: If ``amount`` is not an integer of at least 1.
            MissingReferenceError: If the code is unknown.
            InsufficientStockError: If fewer than ``amount`` units are on
                hand; the quantity is left unchanged.
        """
        normalized = normalize_code(code)
        units = require_positive_amount(amount)
        with self._holding(normalized):
            row_index, product = self._load(normalized)
            before = product.quantity
            if before < units:
                log.warning(
                    "Insufficient stock for '%s': requested %d, available %d",
                    normalized,
                    units,
                    before,
                )
                raise InsufficientStockError(normalized, requested=units, available=before)
            decrement = StockDecrement(product=product, quantity_before=before, quantity_after=before - units)
            with self._structure_lock:
                data_manager.write_product_quantity(self._workbook, row_index, decrement.quantity_after)
                log.debug("Decremented '%s' by %d (%d -> %d)", normalized, units, before, decrement.quantity_after)
                if then is not None:
                    then(decrement)
        return decrement

    def list_products(self) -> List[data_manager.ProductRow]:
        """Return every product, most recently created first."""
        with self._structure_lock:
            products = [product for _, product in data_manager.iter_product_rows(self._workbook)]
        products.sort(key=lambda product: product.created_at, reverse=True)
        return products

    def search_products(self, query: Any) -> List[data_manager.ProductRow]:
        """Case-insensitive substring search over product codes and names."""
        if not isinstance(query, str):
            raise InvalidInputError("Search query must be a string")
        needle = query.strip().lower()
        products = self.list_products()
        if not needle:
            return products
        return [
            product
            for product in products
            if needle in product.code.lower() or needle in product.name.lower()
        ]

    def __contains__(self, code: object) -> bool:
        if not isinstance(code, str) or not code.strip():
            return False
        normalized = code.strip().upper()
        with self._registry_lock:
            lock = self._code_locks.get(normalized)
        if lock is None:
            return False
        with lock:
            return normalized in self._rows

    def __len__(self) -> int:
        return len(self._rows)
