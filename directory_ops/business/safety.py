"""
Safety & Snapshot Manager

Pre-flight limits for bulk operations, snapshot capture before any mutation,
and snapshot restore.

A restore re-applies the captured values through the batch processor's
atomic per-batch update: records sharing identical prior values are grouped
and each group is applied in batches, so a rollback has the same failure
isolation as forward processing.
"""

import json
from datetime import timedelta
from typing import Dict, List, Optional

import structlog

from directory_ops.business.batch import BatchProcessor, partition
from directory_ops.business.exceptions import (
    DirectoryOpsError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from directory_ops.business.models import (
    BulkOperation,
    BusinessRecord,
    OperationStatus,
    OutcomeStatus,
    RecordOutcome,
    RollbackResult,
    RollbackStatus,
    SafetyChecks,
    Snapshot,
    utcnow,
)
from directory_ops.data.store import RecordStore

logger = structlog.get_logger(__name__)

DEFAULT_ROLLBACK_WINDOW_HOURS = 48


class SafetyManager:
    """Enforces safety limits and owns snapshot capture and restore."""

    def __init__(
        self,
        store: RecordStore,
        metrics=None,
        rollback_window_hours: int = DEFAULT_ROLLBACK_WINDOW_HOURS,
    ):
        self.store = store
        self.metrics = metrics
        self.rollback_window = timedelta(hours=rollback_window_hours)

    def preflight(self, target_count: int, safety_checks: SafetyChecks) -> None:
        """
        Check the target count against the safety ceiling.

        Raises:
            ValidationError: If there are no targets or more than
                ``max_records`` of them
        """
        if target_count == 0:
            raise ValidationError(
                message="Bulk operation selects no businesses",
                error_code="NO_TARGETS",
                field_name='targetIds',
            )
        if target_count > safety_checks.max_records:
            raise ValidationError(
                message=(
                    f"Target count {target_count} exceeds the safety limit of "
                    f"{safety_checks.max_records} records"
                ),
                error_code="SAFETY_LIMIT_EXCEEDED",
                field_name='safetyChecks.maxRecords',
                context={'target_count': target_count, 'max_records': safety_checks.max_records},
            )

    def capture_snapshot(self, operation: BulkOperation, records: List[BusinessRecord]) -> Snapshot:
        """
        Capture and persist the pre-operation values of every field the
        operation mutates.

        Raises:
            StorageError: If the snapshot cannot be persisted
        """
        fields = operation.details.mutated_fields()
        snapshot = Snapshot(
            operation_id=operation.id,
            fields=fields,
            records={record.id: record.field_values(fields) for record in records},
        )
        try:
            self.store.save_snapshot(snapshot)
        except DirectoryOpsError:
            self._record_metric('capture', 'failed')
            raise
        self._record_metric('capture', 'success')
        logger.info("Snapshot captured",
                    operation_id=operation.id,
                    snapshot_id=snapshot.id,
                    record_count=len(records),
                    fields=fields)
        return snapshot

    def rollback_status(self, operation: BulkOperation) -> RollbackStatus:
        """Report whether the operation can be rolled back now, and why not."""
        info = operation.rollback_info
        status = RollbackStatus(
            operation_id=operation.id,
            available=False,
            snapshot_id=info.snapshot_id if info else None,
            rolled_back_at=info.rolled_back_at if info else None,
        )
        if info is not None and info.captured_at is not None:
            status.expires_at = info.captured_at + self.rollback_window

        status.reason = self._unavailable_reason(operation)
        status.available = status.reason is None
        return status

    def _unavailable_reason(self, operation: BulkOperation) -> Optional[str]:
        info = operation.rollback_info
        if info is not None and info.rolled_back_at is not None:
            return "Operation has already been rolled back"
        if info is None or not info.available or info.snapshot_id is None:
            return "No snapshot was captured for this operation"
        if operation.status == OperationStatus.RUNNING:
            return "Cannot roll back a running operation"
        if info.captured_at is not None and utcnow() - info.captured_at > self.rollback_window:
            hours = int(self.rollback_window.total_seconds() // 3600)
            return f"Rollback window of {hours} hours has expired"
        return None

    def restore_snapshot(self, operation: BulkOperation, processor: BatchProcessor) -> RollbackResult:
        """
        Re-apply the operation's snapshot.

        Only store state changes here; the caller updates the operation's
        rollback metadata and audit trail.

        Raises:
            InvalidStateError: If the operation is running
            ValidationError: If rollback is unavailable or the window expired
            NotFoundError: If the snapshot no longer exists
        """
        reason = self._unavailable_reason(operation)
        if reason is not None:
            if operation.status == OperationStatus.RUNNING:
                raise InvalidStateError(
                    message=reason,
                    current_state=operation.status.value,
                    attempted_action="ROLLBACK",
                )
            raise ValidationError(
                message=reason,
                error_code="ROLLBACK_UNAVAILABLE",
                context={'operation_id': operation.id},
            )

        snapshot_id = operation.rollback_info.snapshot_id
        snapshot = self.store.get_snapshot(snapshot_id)
        if snapshot is None:
            raise NotFoundError(
                message=f"Snapshot {snapshot_id} not found",
                error_code="SNAPSHOT_NOT_FOUND",
                resource_type="snapshot",
                resource_id=snapshot_id,
            )

        size = processor.batch_size(operation.safety_checks)
        results: List[RecordOutcome] = []
        errors: List[str] = []
        batch_number = 1
        for business_ids in group_by_values(snapshot.records).values():
            changes = snapshot.records[business_ids[0]]
            for chunk in partition(business_ids, size):
                outcome = processor.apply_batch(batch_number, chunk, changes)
                if not outcome.success:
                    errors.append(outcome.error)
                for business_id in chunk:
                    results.append(RecordOutcome(
                        business_id=business_id,
                        status=OutcomeStatus.SUCCESS if outcome.success else OutcomeStatus.FAILED,
                        message="Restored from snapshot" if outcome.success else outcome.error,
                        batch_number=batch_number,
                        new_state=dict(changes) if outcome.success else {},
                    ))
                batch_number += 1

        success_count = sum(1 for result in results if result.status == OutcomeStatus.SUCCESS)
        failed_count = len(results) - success_count
        self._record_metric('restore', 'success' if failed_count == 0 else 'partial')

        logger.info("Snapshot restored",
                    operation_id=operation.id,
                    snapshot_id=snapshot.id,
                    restored=success_count,
                    failed=failed_count)
        return RollbackResult(
            success=failed_count == 0,
            operation_id=operation.id,
            snapshot_id=snapshot.id,
            rollback_count=len(results),
            success_count=success_count,
            failed_count=failed_count,
            results=results,
            errors=errors,
            warnings=[f"{failed_count} records could not be restored"] if failed_count else [],
        )

    def _record_metric(self, kind: str, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_snapshot(kind, outcome)


def group_by_values(records: Dict[str, Dict]) -> Dict[str, List[str]]:
    """Group record ids by identical captured values, preserving order."""
    groups: Dict[str, List[str]] = {}
    for business_id, values in records.items():
        key = json.dumps(values, sort_keys=True, default=str)
        groups.setdefault(key, []).append(business_id)
    return groups
