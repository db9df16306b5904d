"""Tests for the master workbook bootstrap script."""

from __future__ import annotations

import openpyxl
import pytest

from stock_ledger import data_manager
from stock_ledger.setup_workbook import create_master_workbook, main


def test_create_master_workbook_writes_expected_headers(tmp_path):
    path = create_master_workbook(tmp_path / "nested" / "ledger.xlsx")

    workbook = openpyxl.load_workbook(path)
    assert workbook.sheetnames == ["Products", "Sales"]
    products = workbook["Products"]
    assert tuple(cell.value for cell in products[1]) == data_manager.PRODUCT_COLUMNS
    assert tuple(cell.value for cell in workbook["Sales"][1]) == data_manager.SALE_COLUMNS
    assert products["A1"].font.bold
    assert products.freeze_panes == "A2"


def test_create_master_workbook_refuses_to_overwrite(tmp_path):
    path = create_master_workbook(tmp_path / "ledger.xlsx")

    with pytest.raises(FileExistsError):
        create_master_workbook(path)

    create_master_workbook(path, overwrite=True)


def test_main_creates_workbook_from_config(config_factory, capsys):
    bundle = config_factory()
    bundle.workbook_path.unlink()

    assert main(["--config", str(bundle.config_path)]) == 0

    assert bundle.workbook_path.exists()
    assert "[SUCCESS]" in capsys.readouterr().out


def test_main_requires_force_for_existing_workbook(config_factory, capsys):
    bundle = config_factory()

    assert main(["--config", str(bundle.config_path)]) == 1
    assert "--force" in capsys.readouterr().out
    assert main(["--config", str(bundle.config_path), "--force"]) == 0


def test_main_reports_missing_config(tmp_path, capsys):
    assert main(["--config", str(tmp_path / "missing.ini")]) == 1
    assert "[ERROR]" in capsys.readouterr().out


def test_main_output_overrides_config(tmp_path):
    target = tmp_path / "elsewhere" / "ledger.xlsx"

    assert main(["--config", str(tmp_path / "unused.ini"), "--output", str(target)]) == 0

    assert openpyxl.load_workbook(target).sheetnames == ["Products", "Sales"]


def test_created_workbook_opens_through_data_layer(tmp_path):
    path = create_master_workbook(tmp_path / "ledger.xlsx")

    workbook = data_manager.open_workbook(path)

    assert list(data_manager.iter_products(workbook)) == []
    assert list(data_manager.iter_sales(workbook)) == []
