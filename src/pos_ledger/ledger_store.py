"""Ledger store for the POS ledger.

The business logic layer never touches worksheets directly. It talks to a
:class:`LedgerStore`, which exposes four capabilities: point reads, collection
listings, atomic multi-record batch commits, and live collection
subscriptions. :class:`WorkbookLedgerStore` implements the port on top of an
``openpyxl`` workbook through the data access layer.

Batch commits are all-or-nothing. Every operation in a batch is validated
against the current workbook state before the first cell is written, update
operations may carry ``expected`` guard values that must still match at commit
time, and a failure while applying rolls back the cells already written.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import Collection


Predicate = Callable[[Any], bool]


class StoreError(Exception):
    """Raised when the store cannot apply or serve a requested operation."""


class StoreConflict(StoreError):
    """Raised when a batch no longer matches the state it was computed from."""


class OperationKind(str, Enum):
    """Enumerate the write operations a batch may contain."""

    CREATE = "create"
    UPDATE = "update"


@dataclass(frozen=True)
class BatchOperation:
    """A single create or update participating in an atomic batch."""

    kind: OperationKind
    collection: Collection
    record_id: str
    record: Optional[data_manager.LedgerRow] = None
    changes: Mapping[str, Any] = field(default_factory=dict)
    expected: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, collection: Collection, record: data_manager.LedgerRow) -> "BatchOperation":
        return cls(
            kind=OperationKind.CREATE,
            collection=collection,
            record_id=data_manager.record_key(record),
            record=record,
        )

    @classmethod
    def update(
        cls,
        collection: Collection,
        record_id: str,
        changes: Mapping[str, Any],
        expected: Optional[Mapping[str, Any]] = None,
    ) -> "BatchOperation":
        return cls(
            kind=OperationKind.UPDATE,
            collection=collection,
            record_id=record_id,
            changes=dict(changes),
            expected=dict(expected or {}),
        )


class LedgerStore(ABC):
    """Port through which the business logic reads and writes ledger state."""

    @abstractmethod
    def get(self, collection: Collection, record_id: str) -> Optional[data_manager.LedgerRow]:
        """Return the record stored under ``record_id`` or ``None``."""

    @abstractmethod
    def list(
        self,
        collection: Collection,
        predicate: Optional[Predicate] = None,
        *,
        key: Optional[Callable[[Any], Any]] = None,
        reverse: bool = False,
    ) -> List[Any]:
        """Return the records of ``collection`` matching ``predicate``."""

    @abstractmethod
    def commit_batch(self, operations: Iterable[BatchOperation]) -> None:
        """Apply every operation or none of them."""

    @abstractmethod
    def subscribe(
        self,
        collection: Collection,
        predicate: Optional[Predicate] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Iterator[List[Any]]:
        """Stream full-collection snapshots, one per committed change."""

    @abstractmethod
    def get_company_profile(self) -> Optional[data_manager.CompanyProfileRow]:
        """Return the singleton company profile, if one was saved."""

    @abstractmethod
    def put_company_profile(self, profile: data_manager.CompanyProfileRow) -> None:
        """Replace the singleton company profile."""

    @abstractmethod
    def save(self, destination: Path) -> None:
        """Write the committed ledger state to ``destination``."""


class WorkbookLedgerStore(LedgerStore):
    """Ledger store backed by an in-memory ``openpyxl`` workbook.

    Writes are serialized by a re-entrant lock shared with a condition variable
    that wakes subscribers after each commit. Durability is explicit: callers
    persist the workbook with :meth:`save` once a unit of work succeeds.
    """

    def __init__(self, workbook: Workbook, *, lock_timeout: float = data_manager.DEFAULT_LOCK_TIMEOUT) -> None:
        self.workbook = workbook
        self.lock_timeout = lock_timeout
        self._condition = threading.Condition(threading.RLock())
        self._versions: Dict[Collection, int] = {collection: 0 for collection in Collection}

    @classmethod
    def from_file(cls, data_file: Path, *, lock_timeout: float = data_manager.DEFAULT_LOCK_TIMEOUT) -> "WorkbookLedgerStore":
        """Open ``data_file`` and wrap it in a store."""
        return cls(data_manager.open_workbook(data_file), lock_timeout=lock_timeout)

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._condition.acquire(timeout=self.lock_timeout):
            log.error("Timed out after %ss waiting for the ledger lock", self.lock_timeout)
            raise StoreError(f"Timed out after {self.lock_timeout}s waiting for the ledger lock")
        try:
            yield
        finally:
            self._condition.release()

    def version(self, collection: Collection) -> int:
        """Return the number of commits that touched ``collection`` so far."""
        with self._locked():
            return self._versions[collection]

    def get(self, collection: Collection, record_id: str) -> Optional[data_manager.LedgerRow]:
        with self._locked():
            return data_manager.find_record(self.workbook, collection, record_id)

    def list(
        self,
        collection: Collection,
        predicate: Optional[Predicate] = None,
        *,
        key: Optional[Callable[[Any], Any]] = None,
        reverse: bool = False,
    ) -> List[Any]:
        with self._locked():
            return self._snapshot(collection, predicate, key=key, reverse=reverse)

    def _snapshot(
        self,
        collection: Collection,
        predicate: Optional[Predicate],
        *,
        key: Optional[Callable[[Any], Any]] = None,
        reverse: bool = False,
    ) -> List[Any]:
        records = [
            record
            for record in data_manager.iter_records(self.workbook, collection)
            if predicate is None or predicate(record)
        ]
        if key is not None:
            records.sort(key=key, reverse=reverse)
        elif reverse:
            records.reverse()
        return records

    def commit_batch(self, operations: Iterable[BatchOperation]) -> None:
        """Validate and apply ``operations`` as a single atomic unit.

        Args:
            operations (Iterable[BatchOperation]): Creates and updates to apply
                in order.

        Raises:
            StoreConflict: If a created identifier already exists, an updated
                record has disappeared, or an ``expected`` guard no longer
                matches the stored value. Nothing is written.
            StoreError: If the lock cannot be acquired in time, an operation is
                malformed, or applying fails midway. Partial writes are rolled
                back before the error propagates.
        """

        batch = tuple(operations)
        if not batch:
            return

        with self._locked():
            self._validate(batch)
            undo: List[Tuple[str, Collection, Any]] = []
            try:
                for operation in batch:
                    undo.append(self._apply(operation))
            except Exception as exc:
                self._rollback(undo)
                log.error("Rolled back batch of %d operations: %s", len(batch), exc)
                raise StoreError(f"Batch commit failed: {exc}") from exc

            for collection in {operation.collection for operation in batch}:
                self._versions[collection] += 1
            self._condition.notify_all()

        log.debug("Committed batch of %d operations", len(batch))

    def _validate(self, batch: Tuple[BatchOperation, ...]) -> None:
        created: Set[Tuple[Collection, str]] = set()
        for operation in batch:
            if operation.collection not in data_manager.KEY_COLUMNS:
                raise StoreError(f"Collection {operation.collection.value} does not accept batch writes")

            if operation.kind is OperationKind.CREATE:
                expected_type = data_manager.ROW_TYPES[operation.collection]
                if not isinstance(operation.record, expected_type):
                    raise StoreError(
                        f"{operation.collection.value} create requires a {expected_type.__name__}"
                    )
                marker = (operation.collection, operation.record_id)
                existing = data_manager.find_record(self.workbook, operation.collection, operation.record_id)
                if existing is not None or marker in created:
                    raise StoreConflict(
                        f"{operation.collection.value} record already exists: {operation.record_id}"
                    )
                created.add(marker)
                continue

            attributes = {attribute for _, attribute in data_manager.SHEET_COLUMNS[operation.collection]}
            unknown = (set(operation.changes) | set(operation.expected)) - attributes
            if unknown:
                raise StoreError(
                    f"Unknown {operation.collection.value} field(s): {', '.join(sorted(unknown))}"
                )
            current = data_manager.find_record(self.workbook, operation.collection, operation.record_id)
            if current is None:
                raise StoreConflict(
                    f"{operation.collection.value} record no longer exists: {operation.record_id}"
                )
            for attribute, value in operation.expected.items():
                actual = getattr(current, attribute)
                if actual != value:
                    raise StoreConflict(
                        f"{operation.collection.value} '{operation.record_id}' changed: "
                        f"{attribute} is {actual}, expected {value}"
                    )

    def _apply(self, operation: BatchOperation) -> Tuple[str, Collection, Any]:
        if operation.kind is OperationKind.CREATE:
            row_index = data_manager.append_record(self.workbook, operation.collection, operation.record)
            return ("remove", operation.collection, row_index)
        previous = data_manager.update_record(
            self.workbook,
            operation.collection,
            operation.record_id,
            field_values=operation.changes,
        )
        return ("restore", operation.collection, (operation.record_id, previous))

    def _rollback(self, undo: List[Tuple[str, Collection, Any]]) -> None:
        for action, collection, payload in reversed(undo):
            if action == "remove":
                data_manager.remove_row(self.workbook, collection, payload)
            else:
                record_id, previous = payload
                data_manager.update_record(self.workbook, collection, record_id, field_values=previous)

    def subscribe(
        self,
        collection: Collection,
        predicate: Optional[Predicate] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Iterator[List[Any]]:
        """Yield the current snapshot of ``collection``, then one per change.

        The stream is lazy and never ends on its own; every call starts a new,
        independent stream beginning with the current state.

        Args:
            collection (Collection): Collection to observe.
            predicate (Callable | None): Optional record filter applied to each
                snapshot.
            timeout (float | None): Maximum seconds to wait for the next change.
                ``None`` waits indefinitely.

        Yields:
            list: Full filtered snapshot of the collection.

        Raises:
            StoreError: If ``timeout`` elapses without a change.
        """

        seen: Optional[int] = None
        while True:
            with self._locked():
                while self._versions[collection] == seen:
                    if not self._condition.wait(timeout):
                        raise StoreError(
                            f"No change to {collection.value} within {timeout}s"
                        )
                seen = self._versions[collection]
                snapshot = self._snapshot(collection, predicate)
            yield snapshot

    def get_company_profile(self) -> Optional[data_manager.CompanyProfileRow]:
        with self._locked():
            return data_manager.read_company_profile(self.workbook)

    def put_company_profile(self, profile: data_manager.CompanyProfileRow) -> None:
        with self._locked():
            data_manager.write_company_profile(self.workbook, profile)
            self._versions[Collection.COMPANY_PROFILE] += 1
            self._condition.notify_all()

    def save(self, destination: Path) -> None:
        """Persist the workbook to ``destination``."""
        with self._locked():
            data_manager.save_workbook(self.workbook, destination)
