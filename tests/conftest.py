"""Shared pytest fixtures and utilities for POS ledger tests."""

from __future__ import annotations

import argparse
import sys
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from pos_ledger import audit, cli, constants, core_logic, data_manager  # noqa: E402
from pos_ledger.constants import CollectionKey  # noqa: E402
from pos_ledger.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
FIXED_MOMENT = datetime(2025, 3, 14, 9, 30, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "ShopName = {shop_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "WalkInCustomerName = Cash Customer\n"
    "TaxType = {tax_type}\n"
    "TaxValue = {tax_value}\n\n"
    "[Permissions]\n"
    "CanMutateSales = {can_mutate}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    shop_name: str


class MemoryStore:
    """In-memory persistence double keyed by collection.

    Collections listed in ``fail_on`` raise ``OSError`` when saved, after the
    attempt has been recorded in ``saves``.
    """

    def __init__(self, collections: Optional[Dict[Any, Iterable[Any]]] = None) -> None:
        self.collections: Dict[CollectionKey, List[Any]] = {
            CollectionKey(key): list(records) for key, records in (collections or {}).items()
        }
        self.saves: List[CollectionKey] = []
        self.loads: List[CollectionKey] = []
        self.fail_on: set[CollectionKey] = set()

    def load(self, key: Any) -> Optional[List[Any]]:
        key = CollectionKey(key)
        self.loads.append(key)
        records = self.collections.get(key)
        return None if records is None else list(records)

    def save(self, key: Any, records: Iterable[Any]) -> None:
        key = CollectionKey(key)
        self.saves.append(key)
        if key in self.fail_on:
            raise OSError(f"disk full while saving {key.value}")
        self.collections[key] = list(records)


def make_product(
    product_id: str = "P",
    *,
    name: str = "Widget",
    price: str = "100",
    cost: str = "60",
    stock: int = 10,
) -> data_manager.ProductRow:
    return data_manager.ProductRow(product_id, name, Decimal(price), Decimal(cost), stock)


def make_account(account_id: str = "C", name: str = "Carla") -> data_manager.AccountRow:
    return data_manager.AccountRow(account_id=account_id, name=name, phone="555-0100")


def make_coupon(
    code: str = "SAVE10",
    *,
    adjustment_type: constants.AdjustmentType = constants.AdjustmentType.PERCENTAGE,
    value: str = "10",
    expiry: date = date(2025, 12, 31),
    is_active: bool = True,
) -> data_manager.CouponRow:
    return data_manager.CouponRow(code, code, adjustment_type, Decimal(value), expiry, is_active)


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(scope="session")
def project_root() -> Path:
    return PROJECT_ROOT


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
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        shop_name: str = "Corner Shop",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        tax_type: str = "percentage",
        tax_value: str = "14",
        can_mutate: bool = True,
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=bundle_dir_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                shop_name=shop_name,
                schema_version=schema_version,
                tax_type=tax_type,
                tax_value=tax_value,
                can_mutate="yes" if can_mutate else "no",
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            shop_name=shop_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    return argparse.ArgumentParser(prog="pos-ledger", description="POS ledger")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        shop_name="Corner Shop",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def store() -> MemoryStore:
    """Store seeded with one product (price 100, stock 10) and one customer."""

    return MemoryStore(
        {
            CollectionKey.PRODUCTS: [make_product("P")],
            CollectionKey.CUSTOMERS: [make_account("C")],
            CollectionKey.SUPPLIERS: [make_account("S", "Sam Supplies")],
            CollectionKey.COUPONS: [make_coupon()],
        }
    )


@pytest.fixture
def context(settings: data_manager.ConfigSettings, store: MemoryStore) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and the memory store."""

    trail = audit.AuditTrail(store, clock=lambda: FIXED_MOMENT)
    return core_logic.RuntimeContext(settings=settings, store=store, audit=trail)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


@pytest.fixture
def local_timezone(monkeypatch: pytest.MonkeyPatch) -> Iterator[Callable[[str], None]]:
    """Switch the process-local timezone (POSIX ``TZ`` syntax) for one test."""

    if not hasattr(time, "tzset"):
        pytest.skip("timezone switching requires time.tzset")

    def _apply(zone: str) -> None:
        monkeypatch.setenv("TZ", zone)
        time.tzset()

    yield _apply
    monkeypatch.undo()
    time.tzset()
