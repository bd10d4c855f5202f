"""Shared pytest fixtures and utilities for BeiPoa tests."""

from __future__ import annotations

import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from beipoa_erp import constants, core_logic, data_manager  # noqa: E402
from beipoa_erp.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_USER = "tester"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "ShopName = {shop_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "DefaultUser = {default_user}\n"
    "QuotationValidityDays = 14\n\n"
    "[Locking]\n"
    "WaitSeconds = {wait_seconds}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_user: str
    schema_version: str
    shop_name: str


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
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "master_workbook.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        shop_name: str = "Test Shop",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_user: str = DEFAULT_USER,
        wait_seconds: float = 5,
    ) -> ConfigBundle:
        bundle_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_name
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=bundle_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                shop_name=shop_name,
                schema_version=schema_version,
                default_user=default_user,
                wait_seconds=wait_seconds,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_user=default_user,
            schema_version=schema_version,
            shop_name=shop_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def audit() -> Mock:
    return Mock(name="audit")


@pytest.fixture
def runtime_context(config_file: Path, audit: Mock) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file, audit=audit)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def memory_context(tmp_path: Path, audit: Mock) -> core_logic.RuntimeContext:
    """Context over a freshly created workbook whose store never saves to disk."""

    workbook_path = create_master_workbook(tmp_path / "memory.xlsx", overwrite=True)
    settings = data_manager.ConfigSettings(
        data_file=workbook_path,
        shop_name="Test Shop",
        schema_version=DEFAULT_SCHEMA_VERSION,
        default_user=DEFAULT_USER,
        lock_wait_seconds=1.0,
    )
    context = core_logic.build_runtime_context(settings, data_manager.open_workbook(workbook_path), audit=audit)
    context.store.data_file = None
    return context


@pytest.fixture
def stocked_context(memory_context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    """Memory context with three products and a customer on credit.

    * ``ITEM-000001`` sells at 20.00 with batches 5 @ 10.00 then 5 @ 12.00.
    * ``ITEM-000002`` sells at 5.00 with one batch 10 @ 2.00.
    * ``ITEM-000003`` sells at 100.00 with one batch 1 @ 60.00.
    * ``CUST-000001`` has a credit limit of 1000.00 and a balance of 900.00.
    """

    context = memory_context
    with context.lock.hold("fixture"):
        for name, price in (("Widget", "20.00"), ("Bolt", "5.00"), ("Motor", "100.00")):
            core_logic.accounts.add_product(
                context.store, context.allocator, product_name=name, sell_price=Decimal(price), reorder_level=Decimal("2"))
        context.ledger.receive("ITEM-000001", Decimal("5"), Decimal("10.00"), timestamp=_at(1))
        context.ledger.receive("ITEM-000001", Decimal("5"), Decimal("12.00"), timestamp=_at(2))
        context.ledger.receive("ITEM-000002", Decimal("10"), Decimal("2.00"), timestamp=_at(3))
        context.ledger.receive("ITEM-000003", Decimal("1"), Decimal("60.00"), timestamp=_at(4))
        core_logic.accounts.add_customer(
            context.store, context.allocator, customer_name="Amina", credit_limit=Decimal("1000"))
        core_logic.accounts.adjust_customer_balance(context.store, "CUST-000001", Decimal("900"))
    return context


def _at(minute: int) -> datetime:
    return datetime(2024, 1, 1, 8, minute, tzinfo=UTC)
