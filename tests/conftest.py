"""Shared pytest fixtures and utilities for POS ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Optional

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from pos_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from pos_ledger.constants import Collection  # noqa: E402
from pos_ledger.ledger_store import BatchOperation, WorkbookLedgerStore  # noqa: E402
from pos_ledger.setup_excel import build_master_workbook, create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_OPERATOR = "counter"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "ShopName = {shop_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "Operator = {operator}\n\n"
    "[Store]\n"
    "MaxCommitAttempts = {max_commit_attempts}\n"
    "LockTimeout = 2\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    operator: str
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

    def _create_workbook(
        *,
        subdir: str | None = None,
        company_name: str = "Test Shop",
        filename: str = "master_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, company_name=company_name, overwrite=True)
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
        shop_name: str = "Test Shop",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        operator: str = DEFAULT_OPERATOR,
        max_commit_attempts: int = 3,
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=bundle_dir.name, company_name=shop_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                shop_name=shop_name,
                schema_version=schema_version,
                operator=operator,
                max_commit_attempts=max_commit_attempts,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            operator=operator,
            schema_version=schema_version,
            shop_name=shop_name,
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
# Store and core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        shop_name="Test Shop",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_operator=DEFAULT_OPERATOR,
        lock_timeout=2.0,
    )


@pytest.fixture
def store() -> WorkbookLedgerStore:
    """Return a store over a fresh in-memory workbook."""

    return WorkbookLedgerStore(build_master_workbook(company_name="Test Shop"), lock_timeout=2.0)


@pytest.fixture
def context(settings: data_manager.ConfigSettings, store: WorkbookLedgerStore) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and an in-memory store."""

    return core_logic.RuntimeContext(settings=settings, store=store)


@pytest.fixture
def seed_product(store: WorkbookLedgerStore) -> Callable[..., data_manager.ProductRow]:
    """Insert a product directly through the store."""

    def _seed(
        product_id: str = "P-1",
        *,
        quantity: int = 10,
        price: str = "1000",
        reorder_threshold: int = 0,
        name: Optional[str] = None,
        category_id: Optional[str] = None,
    ) -> data_manager.ProductRow:
        product = data_manager.ProductRow(
            product_id=product_id,
            name=name or f"Product {product_id}",
            category_id=category_id,
            quantity=quantity,
            price=Decimal(price),
            reorder_threshold=reorder_threshold,
        )
        store.commit_batch([BatchOperation.create(Collection.PRODUCTS, product)])
        return product

    return _seed


@pytest.fixture
def seed_customer(store: WorkbookLedgerStore) -> Callable[..., data_manager.CustomerRow]:
    """Insert a customer directly through the store."""

    def _seed(customer_id: str = "C-1", *, balance: str = "0", name: Optional[str] = None) -> data_manager.CustomerRow:
        customer = data_manager.CustomerRow(
            customer_id=customer_id,
            name=name or f"Customer {customer_id}",
            email=None,
            phone=None,
            balance=Decimal(balance),
        )
        store.commit_batch([BatchOperation.create(Collection.CUSTOMERS, customer)])
        return customer

    return _seed


@pytest.fixture
def make_sale_row() -> Callable[..., data_manager.SaleRow]:
    """Build sale rows for projection tests without touching a store."""

    def _make(
        sale_id: str,
        sale_date: str,
        *,
        total: str = "100",
        paid: Optional[str] = None,
        status: constants.SaleStatus = constants.SaleStatus.COMPLETED,
        customer_id: str = "C-1",
    ) -> data_manager.SaleRow:
        total_price = Decimal(total)
        return data_manager.SaleRow(
            sale_id=sale_id,
            sale_date=sale_date,
            product_id="P-1",
            product_name="Product P-1",
            customer_id=customer_id,
            customer_name=f"Customer {customer_id}",
            quantity=1,
            subtotal=total_price,
            discount_amount=Decimal("0"),
            vat_amount=Decimal("0"),
            total_price=total_price,
            paid_amount=Decimal(paid) if paid is not None else total_price,
            payment_type=constants.PaymentType.CASH.value,
            status=status.value,
            created_by=DEFAULT_OPERATOR,
        )

    return _make


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


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="pos-cli", description="POS CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

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
