"""
Batch Processor

Partitions an operation's processed records into batches of
``min(checkpoint_frequency, max_batch_size)`` and applies each batch's
mutation as one atomic store update under a wall-clock timeout.

A failed or timed-out batch marks every record in it FAILED with the same
message and processing continues with the next batch. The store claims the
batch's ``WriteDeadline`` before applying, so a batch reported as timed out
never lands later. Batches run
sequentially; the operation's counters are advanced only here, through
``OperationCounters.record``, after each batch. One audit entry per record
is queued on the audit worker without delaying the next batch.
"""

import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import structlog

from directory_ops.auth.audit import AuditTrail
from directory_ops.business.exceptions import DirectoryOpsError
from directory_ops.business.models import (
    AuditEntry,
    BulkOperation,
    BusinessRecord,
    OutcomeStatus,
    RecordOutcome,
    SafetyChecks,
    utcnow,
)
from directory_ops.data.store import RecordStore, WriteDeadline

logger = structlog.get_logger(__name__)

HARD_MAX_BATCH_SIZE = 100


@dataclass
class BatchOutcome:
    batch_number: int
    business_ids: List[str]
    success: bool
    error: Optional[str] = None
    duration: float = 0.0


def partition(ids: List[str], size: int) -> List[List[str]]:
    return [ids[start:start + size] for start in range(0, len(ids), size)]


class BatchProcessor:
    """
    Applies bulk mutations batch by batch.

    Example:
        processor = BatchProcessor(store, audit, timeout_seconds=30)
        processor.run(operation, records, actor, should_stop=lambda: False,
                      persist=store.save_operation)
    """

    def __init__(
        self,
        store: RecordStore,
        audit: AuditTrail,
        metrics=None,
        max_batch_size: int = HARD_MAX_BATCH_SIZE,
        timeout_seconds: float = 30.0,
    ):
        self.store = store
        self.audit = audit
        self.metrics = metrics
        self.max_batch_size = min(max_batch_size, HARD_MAX_BATCH_SIZE)
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="batch")

    def batch_size(self, safety_checks: SafetyChecks) -> int:
        return min(safety_checks.checkpoint_frequency, self.max_batch_size)

    def apply_batch(self, batch_number: int, business_ids: List[str], changes: Dict[str, Any]) -> BatchOutcome:
        """
        Apply ``changes`` to one batch atomically within the batch timeout.

        Storage failures and timeouts are reported in the outcome, never raised.
        """
        start = time.perf_counter()
        deadline = WriteDeadline(self.timeout_seconds)
        future = self._executor.submit(self.store.update_businesses, business_ids, changes, deadline)
        try:
            error = self._await_write(batch_number, future, deadline)
        except DirectoryOpsError as e:
            error = f"Batch {batch_number} failed: {e.message}"
        duration = time.perf_counter() - start

        if self.metrics is not None:
            if error is None:
                self.metrics.record_batch('success', success=len(business_ids), duration=duration)
            else:
                self.metrics.record_batch('failed', failed=len(business_ids), duration=duration)

        if error is not None:
            logger.warning("Batch failed",
                           batch_number=batch_number,
                           batch_size=len(business_ids),
                           error=error)
        return BatchOutcome(batch_number, list(business_ids), error is None, error, duration)

    def _await_write(self, batch_number: int, future, deadline: WriteDeadline) -> Optional[str]:
        """Wait for a batch write; the timeout message, or None once the write landed."""
        try:
            future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            if deadline.abandon():
                return f"Batch {batch_number} timed out after {self.timeout_seconds:g}s"
            # The store claimed the deadline first and is applying the write.
            future.result()
        return None

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def run(
        self,
        operation: BulkOperation,
        records: Dict[str, BusinessRecord],
        actor: str,
        should_stop: Callable[[], bool],
        persist: Callable[[BulkOperation], None],
    ) -> bool:
        """
        Process the operation's pending ids from its cursor.

        The cursor, counters and results on ``operation`` advance after each
        batch and ``persist`` is called so a pause or crash resumes at the
        next unprocessed batch.

        Returns:
            True when every pending batch was processed, False when
            ``should_stop`` interrupted the run at a batch boundary
        """
        cursor = operation.cursor
        size = self.batch_size(operation.safety_checks)
        snapshot_id = operation.rollback_info.snapshot_id if operation.rollback_info else None

        while cursor.pending_ids:
            if should_stop():
                return False

            batch_ids = cursor.pending_ids[:size]
            batch_number = cursor.next_batch_number
            now = utcnow()
            changes = dict(operation.details.mutation())
            changes['reviewed_by'] = actor
            changes['reviewed_at'] = now

            outcome = self.apply_batch(batch_number, batch_ids, changes)
            results = self._record_outcomes(operation, outcome, records, changes, actor, snapshot_id)

            if outcome.success:
                operation.counters.record(success=len(batch_ids))
            else:
                operation.counters.record(failed=len(batch_ids))
                operation.errors = operation.errors + [outcome.error]
            operation.results = operation.results + results
            cursor.pending_ids = cursor.pending_ids[len(batch_ids):]
            cursor.next_batch_number = batch_number + 1
            persist(operation)

            logger.info("Batch processed",
                        operation_id=operation.id,
                        batch_number=batch_number,
                        batch_size=len(batch_ids),
                        success=outcome.success,
                        processed_count=operation.counters.processed_count,
                        failed_count=operation.counters.failed_count)

        return True

    def _record_outcomes(
        self,
        operation: BulkOperation,
        outcome: BatchOutcome,
        records: Dict[str, BusinessRecord],
        changes: Dict[str, Any],
        actor: str,
        snapshot_id: Optional[str],
    ) -> List[RecordOutcome]:
        fields = sorted(changes)
        results = []
        for business_id in outcome.business_ids:
            record = records[business_id]
            previous = record.field_values(fields)
            if outcome.success:
                new = {name: _plain(changes[name]) for name in fields}
                result = RecordOutcome(
                    business_id=business_id,
                    business_name=record.name,
                    status=OutcomeStatus.SUCCESS,
                    message=f"{operation.type.value} applied",
                    batch_number=outcome.batch_number,
                    previous_state=previous,
                    new_state=new,
                )
            else:
                result = RecordOutcome(
                    business_id=business_id,
                    business_name=record.name,
                    status=OutcomeStatus.FAILED,
                    message=outcome.error,
                    batch_number=outcome.batch_number,
                    previous_state=previous,
                    new_state=previous,
                )
            results.append(result)

            self.audit.record_async(AuditEntry(
                actor=actor,
                action="BULK_RECORD_UPDATED" if outcome.success else "BULK_RECORD_FAILED",
                target_id=business_id,
                operation_id=operation.id,
                before={'approvalStatus': previous.get('approval_status', record.approval_status.value)},
                after={'approvalStatus': result.new_state.get('approval_status', record.approval_status.value)},
                details=result.message,
                metadata={'batch_number': outcome.batch_number, 'snapshot_id': snapshot_id},
            ))
        return results


def _plain(value: Any) -> Any:
    return getattr(value, 'value', value)
