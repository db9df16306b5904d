"""Unit tests for the business logic layer that wires store, ledger and workbook."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import UTC, datetime
from unittest.mock import Mock

import pytest

from stock_ledger import constants, core_logic, data_manager, sale_ledger
from stock_ledger.constants import ReportMode, StockStatus
from stock_ledger.errors import InvalidInputError, StorageUnavailableError
from stock_ledger.sale_ledger import MonthlyTotal, ProductBreakdown


@pytest.fixture
def context(runtime_context):
    return runtime_context


@pytest.fixture
def stocked_context(context):
    core_logic.add_product(context, code="A1", name="Anchor", quantity=20, location="Bay 1")
    core_logic.add_product(context, code="B2", name="Bracket", quantity=10)
    for code, units, day in (("A1", 3, 5), ("B2", 2, 6), ("A1", 1, 7)):
        core_logic.record_sale(
            context,
            core_logic.SaleCommand(code, units, timestamp=datetime(2024, 1, day, 12, tzinfo=UTC)),
        )
    return context


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings and workbook into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        data_file=tmp_path / "ledger.xlsx",
        warehouse_name="Main",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )
    workbook = Mock(name="workbook")

    monkeypatch.setattr(data_manager, "find_config_file", Mock(return_value=config_path))
    monkeypatch.setattr(data_manager, "read_config", Mock(return_value=parser))
    parse_settings = Mock(return_value=parsed_settings)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    open_workbook = Mock(return_value=workbook)
    monkeypatch.setattr(data_manager, "open_workbook", open_workbook)
    monkeypatch.setattr(data_manager, "iter_product_rows", Mock(return_value=iter(())))

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.workbook is workbook
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_workbook.assert_called_once_with(parsed_settings.data_file)


def test_load_runtime_context_from_disk(config_file):
    context = core_logic.load_runtime_context(config_file)

    assert context.settings.warehouse_name == "Test Warehouse"
    assert len(context.store) == 0
    assert context.ledger.zone.key == "UTC"


def test_load_runtime_context_missing_workbook(config_factory):
    bundle = config_factory()
    bundle.workbook_path.unlink()

    with pytest.raises(FileNotFoundError):
        core_logic.load_runtime_context(bundle.config_path)


def test_build_runtime_context_shares_one_lock(context):
    assert context.store._structure_lock is context.lock
    assert context.ledger._structure_lock is context.lock


def test_ensure_schema_version_accepts_expected(context):
    core_logic.ensure_schema_version(context)


def test_ensure_schema_version_rejects_mismatch(context):
    stale = replace(context, settings=replace(context.settings, schema_version="0.9"))

    with pytest.raises(RuntimeError, match="schema mismatch"):
        core_logic.ensure_schema_version(stale)


def test_persist_and_refresh_round_trip(stocked_context):
    core_logic.persist_context(stocked_context)
    core_logic.add_product(stocked_context, code="UNSAVED", name="Ghost")

    refreshed = core_logic.refresh_context(stocked_context)

    assert refreshed is not stocked_context
    assert "UNSAVED" not in refreshed.store
    assert core_logic.get_product(refreshed, "A1").quantity == 16
    assert len(core_logic.list_sales(refreshed)) == 3


def test_persist_context_surfaces_storage_errors(context, monkeypatch):
    save = Mock(side_effect=StorageUnavailableError("read-only"))
    sleep = Mock()
    monkeypatch.setattr(data_manager, "save_workbook", save)
    monkeypatch.setattr(core_logic.time, "sleep", sleep)

    with pytest.raises(StorageUnavailableError):
        core_logic.persist_context(context)

    assert save.call_count == core_logic.SAVE_ATTEMPTS
    assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]


def test_persist_context_retries_transient_failure(context, monkeypatch):
    save = Mock(side_effect=[StorageUnavailableError("locked"), None])
    monkeypatch.setattr(data_manager, "save_workbook", save)
    monkeypatch.setattr(core_logic.time, "sleep", Mock())

    core_logic.persist_context(context)

    assert save.call_count == 2


def test_save_during_a_sale_never_captures_half_of_it(context, monkeypatch):
    core_logic.add_product(context, code="X1", name="Bolt", quantity=10)
    core_logic.persist_context(context)
    original_build_sale = sale_ledger.build_sale
    saver_blocked = []
    savers = []

    def build_sale_with_concurrent_save(*args, **kwargs):
        # Stock is already decremented here; a save must wait for the append.
        saver = threading.Thread(target=core_logic.persist_context, args=(context,))
        saver.start()
        saver.join(timeout=0.2)
        saver_blocked.append(saver.is_alive())
        savers.append(saver)
        return original_build_sale(*args, **kwargs)

    monkeypatch.setattr(sale_ledger, "build_sale", build_sale_with_concurrent_save)

    core_logic.record_sale(context, core_logic.SaleCommand("X1", 3))
    savers[0].join(timeout=10)

    assert saver_blocked == [True]
    assert not savers[0].is_alive()
    on_disk = core_logic.refresh_context(context)
    assert core_logic.get_product(on_disk, "X1").quantity == 7
    assert [sale.quantity_sold for sale in core_logic.list_sales(on_disk)] == [3]


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


def test_product_lifecycle(context):
    created = core_logic.add_product(context, code="x9", name="Clamp", quantity=3)
    assert created.code == "X9"

    assert core_logic.set_quantity(context, "X9", 8).quantity == 8
    assert core_logic.get_product(context, "x9").quantity == 8

    removed = core_logic.remove_product(context, "X9")
    assert removed.code == "X9"
    assert core_logic.list_products(context) == []


def test_list_products_with_search(stocked_context):
    assert [p.code for p in core_logic.list_products(stocked_context, search="brack")] == ["B2"]
    assert len(core_logic.list_products(stocked_context)) == 2


@pytest.mark.parametrize(
    "quantity,threshold,expected",
    [
        (0, 1, StockStatus.OUT_OF_STOCK),
        (1, 1, StockStatus.LOW),
        (4, 5, StockStatus.LOW),
        (6, 5, StockStatus.IN_STOCK),
    ],
)
def test_stock_status_uses_configured_threshold(context, quantity, threshold, expected):
    tuned = replace(context, settings=replace(context.settings, low_stock_threshold=threshold))
    product = data_manager.ProductRow("X", "X", quantity, None, datetime(2024, 1, 1, tzinfo=UTC))

    assert core_logic.stock_status(tuned, product) is expected


# ---------------------------------------------------------------------------
# Sales and reports
# ---------------------------------------------------------------------------


def test_record_sale_uses_command_fields(context):
    core_logic.add_product(context, code="X1", name="Bolt", quantity=10)
    moment = datetime(2024, 3, 1, 9, 30, tzinfo=UTC)

    sale = core_logic.record_sale(context, core_logic.SaleCommand("x1", 3, "counter", moment))

    assert (sale.quantity_before, sale.quantity_after) == (10, 7)
    assert sale.note == "counter"
    assert sale.sold_at == moment


def test_run_report_list_is_default(stocked_context):
    rows = core_logic.run_report(stocked_context)

    assert [row.product_code for row in rows] == ["A1", "B2", "A1"]


def test_run_report_list_passes_filters(stocked_context):
    rows = core_logic.run_report(stocked_context, "list", code="A1", limit=1)

    assert len(rows) == 1
    assert rows[0].sold_at.day == 7


def test_run_report_monthly(stocked_context):
    (row,) = core_logic.run_report(stocked_context, ReportMode.MONTHLY)

    assert row == MonthlyTotal(2024, 1, total_sold=6, transaction_count=3, distinct_product_count=2)


def test_run_report_monthly_detail(stocked_context):
    rows = core_logic.run_report(stocked_context, "monthly-detail", month="2024-01")

    assert all(isinstance(row, ProductBreakdown) for row in rows)
    assert [(row.code, row.total_sold) for row in rows] == [("A1", 4), ("B2", 2)]


def test_run_report_monthly_detail_requires_month(stocked_context):
    with pytest.raises(InvalidInputError):
        core_logic.run_report(stocked_context, "monthly-detail")


def test_run_report_rejects_unknown_mode(stocked_context):
    with pytest.raises(InvalidInputError):
        core_logic.run_report(stocked_context, "weekly")


def test_export_window_delegates_to_ledger(stocked_context):
    rows = core_logic.export_window(stocked_context, "2024-01")

    assert len(rows) == 3
    assert rows[-1].product_name == "Anchor"
    assert core_logic.export_window(stocked_context, "2024-02") == []
