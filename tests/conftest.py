"""Shared pytest fixtures and utilities for retail ERP tests."""

from __future__ import annotations

import argparse
import sys
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import UTC
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

from retail_erp import cli, constants, core_logic, data_manager  # noqa: E402
from retail_erp.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "CurrencySymbol = $\n"
    "DefaultReorderLevel = {reorder_level}\n"
    "PaymentType = cash\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    store_name: str


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

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "master_workbook.xlsx",
    ) -> Path:
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
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        reorder_level: str = "5",
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
                store_name=store_name,
                schema_version=schema_version,
                reorder_level=reorder_level,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

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
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="retail-cli", description="Retail CLI")


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
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        store_name="Test Store",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        currency_symbol="$",
        default_reorder_level=Decimal("5"),
    )


def make_product(
    product_id: str = "P1",
    name: str = "Rice 5kg",
    *,
    quantity: str = "10",
    buying_price: str = "15",
    selling_price: str = "50",
    reorder_level: str = "5",
) -> data_manager.ProductRow:
    """Build a product row with sensible defaults."""

    return data_manager.ProductRow(
        product_id=product_id,
        name=name,
        category=None,
        unit="pcs",
        quantity=Decimal(quantity),
        buying_price=Decimal(buying_price),
        selling_price=Decimal(selling_price),
        reorder_level=Decimal(reorder_level),
    )


class InMemoryProducts:
    """Dictionary-backed product directory used to drive the recorder in unit tests."""

    def __init__(self, *products: data_manager.ProductRow) -> None:
        self.rows = {product.product_id: product for product in products}
        self.updates: list[tuple[str, Decimal, Decimal | None]] = []

    def find_by_id(self, product_id):
        return self.rows.get(product_id)

    def find_by_name(self, name):
        wanted = " ".join(name.split()).casefold()
        return [p for p in self.rows.values() if " ".join(p.name.split()).casefold() == wanted]

    def list_all(self):
        return list(self.rows.values())

    def update_quantity_and_price(self, product_id, new_quantity, new_buying_price=None, *, expected_quantity=None):
        current = self.rows[product_id]
        if expected_quantity is not None and current.quantity != expected_quantity:
            return False
        changes = {"quantity": new_quantity}
        if new_buying_price is not None:
            changes["buying_price"] = new_buying_price
        self.rows[product_id] = replace(current, **changes)
        self.updates.append((product_id, new_quantity, new_buying_price))
        return True


@pytest.fixture
def products() -> InMemoryProducts:
    """Product directory holding one product with ten units in stock."""

    return InMemoryProducts(make_product())


def _ledger_mock(kind: constants.TransactionType) -> Mock:
    ledger = Mock(name=f"{kind.value.lower()}_ledger")
    ledger.kind = kind
    ledger.insert_header.side_effect = lambda header: header
    ledger.find_by_request_key.return_value = None
    ledger.list_headers.return_value = []
    ledger.list_line_items.return_value = []
    ledger.references_product.return_value = False
    ledger.references_party.return_value = False
    return ledger


def _party_mock(kind: constants.PartyKind) -> Mock:
    directory = Mock(name=f"{kind.value.lower()}_directory")
    directory.kind = kind
    directory.find_by_id.return_value = None
    directory.find_by_name.return_value = None
    return directory


@pytest.fixture
def context(settings: data_manager.ConfigSettings, products: InMemoryProducts) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected in-memory and mock collaborators."""

    return core_logic.RuntimeContext(
        settings=settings,
        workbook=Mock(name="workbook"),
        products=products,
        suppliers=_party_mock(constants.PartyKind.SUPPLIER),
        customers=_party_mock(constants.PartyKind.CUSTOMER),
        sales=_ledger_mock(constants.TransactionType.SALE),
        purchases=_ledger_mock(constants.TransactionType.PURCHASE),
        lock=threading.RLock(),
    )


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment):
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


@pytest.fixture
def product_factory() -> Callable[..., data_manager.ProductRow]:
    """Expose :func:`make_product` to test modules."""

    return make_product


@pytest.fixture
def products_factory() -> Callable[..., InMemoryProducts]:
    """Build an in-memory product directory from product rows."""

    return InMemoryProducts
