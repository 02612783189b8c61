"""Tests for the workbook-backed ledger store."""

from __future__ import annotations

import threading
from decimal import Decimal
from unittest.mock import patch

import pytest

from pos_ledger import data_manager
from pos_ledger.constants import Collection
from pos_ledger.ledger_store import (
    BatchOperation,
    LedgerStore,
    OperationKind,
    StoreConflict,
    StoreError,
    WorkbookLedgerStore,
)


def _customer(customer_id: str, balance: str = "0") -> data_manager.CustomerRow:
    return data_manager.CustomerRow(
        customer_id=customer_id,
        name=f"Customer {customer_id}",
        email=None,
        phone=None,
        balance=Decimal(balance),
    )


def test_batch_operation_constructors_capture_keys():
    """create() should key the operation by the record identifier."""

    create = BatchOperation.create(Collection.CUSTOMERS, _customer("C1"))
    update = BatchOperation.update(Collection.CUSTOMERS, "C1", {"balance": Decimal("5")})

    assert create.kind is OperationKind.CREATE
    assert create.record_id == "C1"
    assert update.kind is OperationKind.UPDATE
    assert update.expected == {}


def test_get_and_list_return_typed_rows(store, seed_product):
    """Committed records should be readable by id and by listing."""

    seed_product("P1", quantity=3)
    seed_product("P2", quantity=8)

    assert store.get(Collection.PRODUCTS, "P1").quantity == 3
    assert store.get(Collection.PRODUCTS, "missing") is None
    assert [p.product_id for p in store.list(Collection.PRODUCTS)] == ["P1", "P2"]
    assert [p.product_id for p in store.list(Collection.PRODUCTS, lambda p: p.quantity > 5)] == ["P2"]
    ordered = store.list(Collection.PRODUCTS, key=lambda p: p.quantity, reverse=True)
    assert [p.product_id for p in ordered] == ["P2", "P1"]


def test_commit_batch_applies_creates_and_guarded_updates(store, seed_customer):
    """A valid batch should apply every operation."""

    seed_customer("C1", balance="100")
    store.commit_batch(
        [
            BatchOperation.create(Collection.CUSTOMERS, _customer("C2")),
            BatchOperation.update(
                Collection.CUSTOMERS,
                "C1",
                {"balance": Decimal("40")},
                expected={"balance": Decimal("100")},
            ),
        ]
    )

    assert store.get(Collection.CUSTOMERS, "C1").balance == Decimal("40")
    assert store.get(Collection.CUSTOMERS, "C2") is not None


def test_guard_mismatch_raises_conflict_and_writes_nothing(store, seed_customer):
    """A stale guard should reject the whole batch before any write."""

    seed_customer("C1", balance="100")
    with pytest.raises(StoreConflict):
        store.commit_batch(
            [
                BatchOperation.create(Collection.CUSTOMERS, _customer("C2")),
                BatchOperation.update(
                    Collection.CUSTOMERS,
                    "C1",
                    {"balance": Decimal("0")},
                    expected={"balance": Decimal("99")},
                ),
            ]
        )

    assert store.get(Collection.CUSTOMERS, "C2") is None
    assert store.get(Collection.CUSTOMERS, "C1").balance == Decimal("100")


def test_invalid_later_operation_leaves_earlier_operations_unapplied(store, seed_customer):
    """An update to a missing record should abort the creates that precede it."""

    with pytest.raises(StoreConflict):
        store.commit_batch(
            [
                BatchOperation.create(Collection.CUSTOMERS, _customer("C2")),
                BatchOperation.update(Collection.CUSTOMERS, "ghost", {"balance": Decimal("1")}),
            ]
        )

    assert store.list(Collection.CUSTOMERS) == []


def test_duplicate_create_raises_conflict(store, seed_customer):
    """Creating an existing identifier, or the same one twice, should conflict."""

    seed_customer("C1")
    with pytest.raises(StoreConflict):
        store.commit_batch([BatchOperation.create(Collection.CUSTOMERS, _customer("C1"))])
    with pytest.raises(StoreConflict):
        store.commit_batch(
            [
                BatchOperation.create(Collection.CUSTOMERS, _customer("C9")),
                BatchOperation.create(Collection.CUSTOMERS, _customer("C9")),
            ]
        )
    assert [c.customer_id for c in store.list(Collection.CUSTOMERS)] == ["C1"]


def test_malformed_operations_raise_store_error(store, seed_customer):
    """Unknown fields and mismatched row types are rejected as store errors."""

    seed_customer("C1")
    with pytest.raises(StoreError) as excinfo:
        store.commit_batch([BatchOperation.update(Collection.CUSTOMERS, "C1", {"colour": "red"})])
    assert not isinstance(excinfo.value, StoreConflict)

    with pytest.raises(StoreError):
        store.commit_batch([BatchOperation.create(Collection.PRODUCTS, _customer("C2"))])


def test_failure_while_applying_rolls_back_written_cells(store, seed_customer):
    """A failure midway through applying should restore previous values."""

    seed_customer("C1", balance="10")
    real_update = data_manager.update_record
    calls = {"count": 0}

    def flaky_update(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 2:
            raise OSError("disk full")
        return real_update(*args, **kwargs)

    batch = [
        BatchOperation.create(Collection.CUSTOMERS, _customer("C2")),
        BatchOperation.update(Collection.CUSTOMERS, "C1", {"balance": Decimal("20")}),
        BatchOperation.update(Collection.CUSTOMERS, "C1", {"balance": Decimal("30")}),
    ]
    with patch.object(data_manager, "update_record", side_effect=flaky_update):
        with pytest.raises(StoreError) as excinfo:
            store.commit_batch(batch)

    assert isinstance(excinfo.value.__cause__, OSError)
    assert store.get(Collection.CUSTOMERS, "C1").balance == Decimal("10")
    assert store.get(Collection.CUSTOMERS, "C2") is None


def test_empty_batch_is_a_no_op(store):
    """An empty batch should not bump the collection version."""

    store.commit_batch([])
    assert store.version(Collection.PRODUCTS) == 0


def test_commit_bumps_versions_of_touched_collections(store, seed_customer):
    """Only collections written by the batch should change version."""

    seed_customer("C1")
    assert store.version(Collection.CUSTOMERS) == 1
    assert store.version(Collection.SALES) == 0


def test_lock_timeout_surfaces_as_store_error(store):
    """A lock held by another thread past the timeout should fail the call."""

    store.lock_timeout = 0.05
    acquired = threading.Event()
    release = threading.Event()

    def hold_lock():
        with store._locked():
            acquired.set()
            release.wait(2)

    holder = threading.Thread(target=hold_lock)
    holder.start()
    try:
        acquired.wait(2)
        with pytest.raises(StoreError):
            store.commit_batch([BatchOperation.create(Collection.CUSTOMERS, _customer("C1"))])
    finally:
        release.set()
        holder.join()


def test_subscribe_yields_current_snapshot_then_changes(store, seed_customer):
    """Subscribers receive the initial state and one snapshot per commit."""

    seed_customer("C1")
    stream = store.subscribe(Collection.CUSTOMERS, timeout=1)

    first = next(stream)
    assert [c.customer_id for c in first] == ["C1"]

    seed_customer("C2")
    second = next(stream)
    assert [c.customer_id for c in second] == ["C1", "C2"]


def test_subscribe_applies_predicate(store, seed_customer):
    """The optional predicate filters every snapshot."""

    seed_customer("C1", balance="0")
    seed_customer("C2", balance="50")
    stream = store.subscribe(Collection.CUSTOMERS, lambda c: c.balance > 0, timeout=1)
    assert [c.customer_id for c in next(stream)] == ["C2"]


def test_subscribe_wakes_on_commit_from_another_thread(store, seed_customer):
    """A blocked subscriber should be notified by a concurrent commit."""

    stream = store.subscribe(Collection.CUSTOMERS, timeout=2)
    assert next(stream) == []

    writer = threading.Timer(0.05, lambda: seed_customer("C1"))
    writer.start()
    try:
        snapshot = next(stream)
    finally:
        writer.join()
    assert [c.customer_id for c in snapshot] == ["C1"]


def test_subscribe_times_out_without_changes(store):
    """Waiting past the timeout should raise StoreError."""

    stream = store.subscribe(Collection.PRODUCTS, timeout=0.05)
    next(stream)
    with pytest.raises(StoreError):
        next(stream)


def test_company_profile_round_trip_and_notification(store):
    """put_company_profile should replace the singleton and bump its version."""

    assert store.get_company_profile().name == "Test Shop"
    store.put_company_profile(data_manager.CompanyProfileRow(name="Renamed", phone="77"))

    assert store.get_company_profile() == data_manager.CompanyProfileRow(name="Renamed", phone="77")
    assert store.version(Collection.COMPANY_PROFILE) == 1


def test_company_profile_cannot_be_written_through_batches(store):
    """The singleton profile is not a keyed collection."""

    operation = BatchOperation(
        kind=OperationKind.UPDATE,
        collection=Collection.COMPANY_PROFILE,
        record_id="x",
        changes={"name": "y"},
    )
    with pytest.raises(StoreError):
        store.commit_batch([operation])


def test_save_and_from_file_round_trip(store, seed_customer, tmp_path):
    """Saved workbooks should reopen with the same records."""

    seed_customer("C1", balance="12.5")
    destination = tmp_path / "ledger.xlsx"
    store.save(destination)

    reopened = WorkbookLedgerStore.from_file(destination)
    assert reopened.get(Collection.CUSTOMERS, "C1").balance == Decimal("12.5")


def test_store_port_requires_save():
    """Adapters that cannot persist are rejected at construction time."""

    class ReadOnlyStore(LedgerStore):
        def get(self, collection, record_id):
            return None

        def list(self, collection, predicate=None, *, key=None, reverse=False):
            return []

        def commit_batch(self, operations):
            return None

        def subscribe(self, collection, predicate=None, *, timeout=None):
            yield []

        def get_company_profile(self):
            return None

        def put_company_profile(self, profile):
            return None

    with pytest.raises(TypeError):
        ReadOnlyStore()
