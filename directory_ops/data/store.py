"""
Persistent Store Contract and In-Memory Implementation

The engine talks to persistence only through ``RecordStore``: read-by-id,
read-by-filter, atomic update-by-id-set, insert, and a transaction boundary
for multi-step mutations such as merges.

Atomicity guarantees every implementation must honor:
- ``update_businesses`` applies to the whole id set or to none of it, and
  concurrent readers never observe a partially applied set.
- Writes issued inside ``transaction()`` commit together or not at all. An
  implementation that cannot honor the boundary raises ``StorageError``
  instead of applying writes piecemeal.
- An update given a ``WriteDeadline`` claims it immediately before applying
  and applies nothing when the claim fails.

``InMemoryRecordStore`` backs tests and the ``memory`` store backend.
"""

import copy
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

import structlog

from directory_ops.business.exceptions import StorageError
from directory_ops.business.models import (
    AuditEntry,
    BulkOperation,
    BusinessRecord,
    ChildRecord,
    FilterCriterion,
    OperationStatus,
    OperationType,
    Snapshot,
    utcnow,
)

logger = structlog.get_logger(__name__)


class WriteDeadline:
    """
    Deadline shared by a batch writer and the store applying its write.

    The store calls ``claim`` right before applying; the writer calls
    ``abandon`` when it stops waiting. Exactly one of them succeeds, so a
    write reported as timed out is never applied afterwards.
    """

    def __init__(self, seconds: float):
        self.seconds = seconds
        self.expires_at = time.monotonic() + seconds
        self._lock = threading.Lock()
        self._state: Optional[str] = None

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    def claim(self) -> bool:
        with self._lock:
            if self._state is None and time.monotonic() < self.expires_at:
                self._state = 'claimed'
            return self._state == 'claimed'

    def abandon(self) -> bool:
        with self._lock:
            if self._state is None:
                self._state = 'abandoned'
            return self._state == 'abandoned'

    def expired_error(self, operation: str) -> StorageError:
        return StorageError(
            message=f"Write deadline of {self.seconds:g}s passed before the write was applied",
            error_code="STORAGE_TIMEOUT",
            operation=operation,
        )


class RecordStore(ABC):
    """Persistence collaborator used by every engine component."""

    # Businesses

    @abstractmethod
    def get_business(self, business_id: str) -> Optional[BusinessRecord]:
        """Return the record, or None when it does not exist."""

    @abstractmethod
    def get_businesses(self, business_ids: Iterable[str]) -> Dict[str, BusinessRecord]:
        """Return the existing records among ``business_ids`` keyed by id."""

    @abstractmethod
    def find_businesses(
        self,
        criteria: Iterable[FilterCriterion] = (),
        exclude_ids: Iterable[str] = (),
        include_duplicates: bool = True,
    ) -> List[BusinessRecord]:
        """
        Read by filter. All criteria are AND-ed.

        Results are ordered by creation time, then id.
        """

    @abstractmethod
    def insert_business(self, record: BusinessRecord) -> BusinessRecord:
        ...

    @abstractmethod
    def update_businesses(
        self,
        business_ids: List[str],
        changes: Dict[str, Any],
        deadline: Optional[WriteDeadline] = None,
        expected: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Apply ``changes`` to every record in ``business_ids`` atomically.

        Args:
            business_ids: Records to update
            changes: Field values to set (snake_case)
            deadline: Claimed right before applying; an expired or abandoned
                deadline applies nothing
            expected: Field values every record must still hold when the
                write is applied

        Raises:
            StorageError: If any id is missing, a record no longer holds the
                ``expected`` values, the deadline cannot be claimed or the
                write cannot be applied; no record is modified in that case
        """

    def update_business(
        self,
        business_id: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.update_businesses([business_id], changes, expected=expected)

    # Child records

    @abstractmethod
    def insert_child(self, child: ChildRecord) -> ChildRecord:
        ...

    @abstractmethod
    def get_children(self, business_id: str) -> List[ChildRecord]:
        ...

    @abstractmethod
    def relink_children(self, from_ids: List[str], to_id: str) -> Dict[str, int]:
        """Reassign child records of ``from_ids`` to ``to_id``; counts by kind."""

    # Operations and snapshots

    @abstractmethod
    def save_operation(self, operation: BulkOperation) -> None:
        ...

    @abstractmethod
    def get_operation(self, operation_id: str) -> Optional[BulkOperation]:
        ...

    @abstractmethod
    def list_operations(
        self,
        status: Optional[OperationStatus] = None,
        operation_type: Optional[OperationType] = None,
        created_by: Optional[str] = None,
    ) -> List[BulkOperation]:
        """Operations matching every given filter, newest first."""

    @abstractmethod
    def delete_operation(self, operation_id: str) -> bool:
        """Delete an operation together with its snapshot."""

    @abstractmethod
    def save_snapshot(self, snapshot: Snapshot) -> None:
        ...

    @abstractmethod
    def get_snapshot(self, snapshot_id: str) -> Optional[Snapshot]:
        ...

    # Audit

    @abstractmethod
    def append_audit(self, entry: AuditEntry) -> None:
        ...

    @abstractmethod
    def list_audit(
        self,
        target_id: Optional[str] = None,
        operation_id: Optional[str] = None,
        action: Optional[str] = None,
    ) -> List[AuditEntry]:
        ...

    # Transactions

    @abstractmethod
    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group writes so they commit together or not at all."""

    @property
    def in_transaction(self) -> bool:
        return False


def _sort_key(record: BusinessRecord):
    return (record.created_at, record.id)


class InMemoryRecordStore(RecordStore):
    """
    Thread-safe in-memory store.

    Records are copied on the way in and out so callers can never mutate
    stored state directly. A transaction holds the store lock for its whole
    duration and restores the pre-transaction state when it raises.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._businesses: Dict[str, BusinessRecord] = {}
        self._children: Dict[str, ChildRecord] = {}
        self._operations: Dict[str, BulkOperation] = {}
        self._snapshots: Dict[str, Snapshot] = {}
        self._audit: List[AuditEntry] = []
        self._transaction_depth = 0

    @property
    def in_transaction(self) -> bool:
        return self._transaction_depth > 0

    def get_business(self, business_id: str) -> Optional[BusinessRecord]:
        with self._lock:
            record = self._businesses.get(business_id)
            return record.model_copy(deep=True) if record else None

    def get_businesses(self, business_ids: Iterable[str]) -> Dict[str, BusinessRecord]:
        with self._lock:
            return {
                business_id: self._businesses[business_id].model_copy(deep=True)
                for business_id in business_ids
                if business_id in self._businesses
            }

    def find_businesses(
        self,
        criteria: Iterable[FilterCriterion] = (),
        exclude_ids: Iterable[str] = (),
        include_duplicates: bool = True,
    ) -> List[BusinessRecord]:
        criteria = list(criteria)
        excluded = set(exclude_ids)
        with self._lock:
            matches = [
                record for record in self._businesses.values()
                if record.id not in excluded
                and (include_duplicates or record.duplicate_of_id is None)
                and all(criterion.matches(record) for criterion in criteria)
            ]
            return [record.model_copy(deep=True) for record in sorted(matches, key=_sort_key)]

    def insert_business(self, record: BusinessRecord) -> BusinessRecord:
        with self._lock:
            if record.id in self._businesses:
                raise StorageError(
                    message=f"Business {record.id} already exists",
                    error_code="STORAGE_DUPLICATE_KEY",
                    operation="insert_business",
                )
            self._businesses[record.id] = record.model_copy(deep=True)
            return record

    def update_businesses(
        self,
        business_ids: List[str],
        changes: Dict[str, Any],
        deadline: Optional[WriteDeadline] = None,
        expected: Optional[Dict[str, Any]] = None,
    ) -> int:
        with self._lock:
            missing = [business_id for business_id in business_ids if business_id not in self._businesses]
            if missing:
                raise StorageError(
                    message=f"Cannot update missing businesses: {', '.join(missing)}",
                    error_code="STORAGE_RECORDS_MISSING",
                    operation="update_businesses",
                    context={'missing_ids': missing},
                )
            if expected:
                conflicting = [
                    business_id for business_id in business_ids
                    if any(getattr(self._businesses[business_id], name) != value
                           for name, value in expected.items())
                ]
                if conflicting:
                    raise StorageError(
                        message=f"Businesses changed concurrently: {', '.join(conflicting)}",
                        error_code="STORAGE_WRITE_CONFLICT",
                        operation="update_businesses",
                        context={'conflicting_ids': conflicting},
                    )

            # Validate every new version before replacing any stored record.
            stamped = dict(changes)
            stamped.setdefault('updated_at', utcnow())
            updated = {}
            for business_id in business_ids:
                current = self._businesses[business_id].model_dump()
                current.update(stamped)
                updated[business_id] = BusinessRecord.parse(current)
            if deadline is not None and not deadline.claim():
                raise deadline.expired_error("update_businesses")
            self._businesses.update(updated)
            return len(updated)

    def insert_child(self, child: ChildRecord) -> ChildRecord:
        with self._lock:
            self._children[child.id] = child.model_copy(deep=True)
            return child

    def get_children(self, business_id: str) -> List[ChildRecord]:
        with self._lock:
            return [
                child.model_copy(deep=True)
                for child in self._children.values()
                if child.business_id == business_id
            ]

    def relink_children(self, from_ids: List[str], to_id: str) -> Dict[str, int]:
        sources = set(from_ids)
        counts: Dict[str, int] = {}
        with self._lock:
            for child_id, child in list(self._children.items()):
                if child.business_id in sources:
                    self._children[child_id] = child.model_copy(update={'business_id': to_id})
                    counts[child.kind.value] = counts.get(child.kind.value, 0) + 1
        return counts

    def save_operation(self, operation: BulkOperation) -> None:
        with self._lock:
            self._operations[operation.id] = operation.model_copy(deep=True)

    def get_operation(self, operation_id: str) -> Optional[BulkOperation]:
        with self._lock:
            operation = self._operations.get(operation_id)
            return operation.model_copy(deep=True) if operation else None

    def list_operations(
        self,
        status: Optional[OperationStatus] = None,
        operation_type: Optional[OperationType] = None,
        created_by: Optional[str] = None,
    ) -> List[BulkOperation]:
        with self._lock:
            operations = [
                operation for operation in self._operations.values()
                if (status is None or operation.status == status)
                and (operation_type is None or operation.type == operation_type)
                and (created_by is None or operation.created_by == created_by)
            ]
            operations.sort(key=lambda operation: (operation.created_at, operation.id), reverse=True)
            return [operation.model_copy(deep=True) for operation in operations]

    def delete_operation(self, operation_id: str) -> bool:
        with self._lock:
            operation = self._operations.pop(operation_id, None)
            if operation is None:
                return False
            for snapshot_id in [
                snapshot.id for snapshot in self._snapshots.values()
                if snapshot.operation_id == operation_id
            ]:
                del self._snapshots[snapshot_id]
            return True

    def save_snapshot(self, snapshot: Snapshot) -> None:
        with self._lock:
            self._snapshots[snapshot.id] = snapshot.model_copy(deep=True)

    def get_snapshot(self, snapshot_id: str) -> Optional[Snapshot]:
        with self._lock:
            snapshot = self._snapshots.get(snapshot_id)
            return snapshot.model_copy(deep=True) if snapshot else None

    def append_audit(self, entry: AuditEntry) -> None:
        with self._lock:
            self._audit.append(entry)

    def list_audit(
        self,
        target_id: Optional[str] = None,
        operation_id: Optional[str] = None,
        action: Optional[str] = None,
    ) -> List[AuditEntry]:
        with self._lock:
            return [
                entry for entry in self._audit
                if (target_id is None or entry.target_id == target_id)
                and (operation_id is None or entry.operation_id == operation_id)
                and (action is None or entry.action == action)
            ]

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            outermost = self._transaction_depth == 0
            saved = self._capture_state() if outermost else None
            self._transaction_depth += 1
            try:
                yield
            except BaseException:
                if outermost:
                    self._restore_state(saved)
                    logger.warning("In-memory transaction rolled back")
                raise
            finally:
                self._transaction_depth -= 1

    def _capture_state(self) -> Dict[str, Any]:
        # Stored models are replaced, never mutated, so shallow copies suffice.
        return {
            'businesses': dict(self._businesses),
            'children': dict(self._children),
            'operations': dict(self._operations),
            'snapshots': dict(self._snapshots),
            'audit': list(self._audit),
        }

    def _restore_state(self, saved: Dict[str, Any]) -> None:
        self._businesses = saved['businesses']
        self._children = saved['children']
        self._operations = saved['operations']
        self._snapshots = saved['snapshots']
        self._audit = saved['audit']

    def dump(self) -> Dict[str, Any]:
        """Deep copy of all stored state, for diagnostics and tests."""
        with self._lock:
            return copy.deepcopy(self._capture_state())
