"""Shared pytest fixtures and utilities for stock ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from stock_ledger import constants, core_logic, data_manager  # noqa: E402
from stock_ledger.sale_ledger import SaleLedger  # noqa: E402
from stock_ledger.setup_workbook import create_master_workbook  # noqa: E402
from stock_ledger.stock_store import StockStore  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "WarehouseName = {warehouse_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Reports]\n"
    "TimeZone = {time_zone}\n"
    "ListLimit = 200\n"
    "MonthlyLimit = 24\n\n"
    "[Stock]\n"
    "LowStockThreshold = 1\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Paths and identity values written into one generated config.ini."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    warehouse_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Build empty ledger workbooks under tmp_path on demand."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "warehouse_ledger.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Path to an empty ledger workbook in its own folder."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Build a config.ini plus its workbook, with overridable settings."""

    def _create_config(
        *,
        make_relative: bool = False,
        warehouse_name: str = "Test Warehouse",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        time_zone: str = "UTC",
    ) -> ConfigBundle:
        bundle_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_name
        workbook_path = workbook_factory(subdir=bundle_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                warehouse_name=warehouse_name,
                schema_version=schema_version,
                time_zone=time_zone,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            warehouse_name=warehouse_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Path to a valid config.ini pointing at an empty workbook."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def workbook(master_workbook_path: Path):
    """A freshly loaded, empty master workbook."""

    return data_manager.open_workbook(master_workbook_path)


@pytest.fixture
def store(workbook) -> StockStore:
    return StockStore(workbook)


@pytest.fixture
def ledger(workbook, store: StockStore) -> SaleLedger:
    return SaleLedger(workbook, store)


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="stock-ledger", description="Stock ledger CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")
