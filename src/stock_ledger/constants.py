"""Enumerations and defaults shared across the stock ledger modules.

The data access layer, the stock store, the sale ledger and the CLI all read
sheet names, report modes and configuration defaults from here so that a
workbook written by one layer is always understood by the others.
"""

from __future__ import annotations

from enum import Enum


# Workbook layout version the code expects to find in config.ini.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_TIME_ZONE = "UTC"
DEFAULT_LIST_LIMIT = 200
DEFAULT_MONTHLY_LIMIT = 24
DEFAULT_LOW_STOCK_THRESHOLD = 1


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    SALES = "Sales"


class ReportMode(str, Enum):
    """Views offered by the sales report dispatcher."""

    LIST = "list"
    MONTHLY = "monthly"
    MONTHLY_DETAIL = "monthly-detail"


class StockStatus(str, Enum):
    """Availability classification shown next to a product's quantity."""

    OUT_OF_STOCK = "OUT_OF_STOCK"
    LOW = "LOW"
    IN_STOCK = "IN_STOCK"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_TIME_ZONE",
    "DEFAULT_LIST_LIMIT",
    "DEFAULT_MONTHLY_LIMIT",
    "DEFAULT_LOW_STOCK_THRESHOLD",
    "SheetName",
    "ReportMode",
    "StockStatus",
]
