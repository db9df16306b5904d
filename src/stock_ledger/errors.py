"""Exception hierarchy raised by the stock store and the sale ledger.

Caller mistakes derive from :class:`BusinessRuleViolation` and are never
retried. :class:`CorruptRowError` names a workbook row that no longer
decodes, usually after a hand edit. :class:`StorageUnavailableError` is
transient and safe to retry because it is raised before anything is mutated.
:class:`PartialSaleInconsistency` means stock was decremented without a
matching ledger fact and needs an operator to reconcile the two.
"""

from __future__ import annotations

from typing import Optional


class StockLedgerError(Exception):
    """Base class for every error raised by the package."""


class BusinessRuleViolation(StockLedgerError):
    """Raised when a requested operation violates a domain constraint."""


class InvalidInputError(BusinessRuleViolation, ValueError):
    """Raised when an argument is malformed or out of range."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product code is unknown."""

    def __init__(self, code: str) -> None:
        super().__init__(f"Unknown product code: {code}")
        self.code = code


class DuplicateCodeError(BusinessRuleViolation):
    """Raised when creating a product whose code is already taken."""

    def __init__(self, code: str) -> None:
        super().__init__(f"Product code already exists: {code}")
        self.code = code


class InsufficientStockError(BusinessRuleViolation):
    """Raised when a sale asks for more units than are on hand."""

    def __init__(self, code: str, *, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for '{code}': requested {requested}, available {available}"
        )
        self.code = code
        self.requested = requested
        self.available = available


class StorageUnavailableError(StockLedgerError):
    """Raised when the backing workbook cannot be read or written."""


class CorruptRowError(StockLedgerError):
    """Raised when a workbook row cannot be decoded into a record."""

    def __init__(self, sheet: str, row_index: int, reason: str) -> None:
        super().__init__(f"Unreadable row {row_index} on sheet '{sheet}': {reason}")
        self.sheet = sheet
        self.row_index = row_index
        self.reason = reason


class PartialSaleInconsistency(StockLedgerError):
    """Raised when stock was decremented but the sale fact was not appended."""

    def __init__(
        self,
        code: str,
        *,
        quantity_sold: int,
        quantity_before: int,
        quantity_after: int,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(
            f"Stock for '{code}' was decremented {quantity_before} -> {quantity_after} "
            f"but the sale of {quantity_sold} was not recorded in the ledger"
        )
        self.code = code
        self.quantity_sold = quantity_sold
        self.quantity_before = quantity_before
        self.quantity_after = quantity_after
        self.cause = cause


__all__ = [
    "StockLedgerError",
    "BusinessRuleViolation",
    "InvalidInputError",
    "MissingReferenceError",
    "DuplicateCodeError",
    "InsufficientStockError",
    "StorageUnavailableError",
    "CorruptRowError",
    "PartialSaleInconsistency",
]
