"""
Bulk Operation Controller

Owns the bulk operation state machine and orchestrates the safety manager,
workflow stage executor and batch processor.

State machine:
    DRAFT    --READY-->       READY
    READY    --START-->       RUNNING
    PAUSED   --RESUME-->      RUNNING
    RUNNING  --PAUSE-->       PAUSED
    RUNNING  --CHECKPOINT-->  PAUSED
    RUNNING  --COMPLETE-->    COMPLETED
    RUNNING  --FAIL-->        FAILED
    any non-terminal --CANCEL--> CANCELLED

COMPLETED, FAILED and CANCELLED are terminal. Every accepted transition is
appended to the operation's audit log and to the audit trail; a rejected one
raises InvalidStateError and changes nothing.

START and RESUME execute the operation synchronously in the calling thread.
PAUSE and CANCEL requested while this controller is executing the operation
are queued and honored at the next batch boundary.
"""

import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import structlog

from directory_ops.auth.audit import AuditTrail
from directory_ops.business.batch import BatchProcessor
from directory_ops.business.exceptions import (
    DirectoryOpsError,
    InvalidStateError,
    NotFoundError,
)
from directory_ops.business.models import (
    AuditEntry,
    BulkOperation,
    BulkOperationSpec,
    BusinessRecord,
    CALLER_ACTIONS,
    ExecutionResult,
    OperationAction,
    OperationCounters,
    OperationStatus,
    OperationType,
    OutcomeStatus,
    RecordOutcome,
    RollbackInfo,
    RollbackResult,
    SafetyChecks,
    default_workflow,
    utcnow,
)
from directory_ops.business.safety import SafetyManager
from directory_ops.business.workflow import WorkflowStageExecutor
from directory_ops.data.store import RecordStore

logger = structlog.get_logger(__name__)

S = OperationStatus
A = OperationAction

TRANSITIONS: Dict[Tuple[OperationStatus, OperationAction], OperationStatus] = {
    (S.DRAFT, A.READY): S.READY,
    (S.READY, A.START): S.RUNNING,
    (S.PAUSED, A.RESUME): S.RUNNING,
    (S.RUNNING, A.PAUSE): S.PAUSED,
    (S.RUNNING, A.CHECKPOINT): S.PAUSED,
    (S.RUNNING, A.COMPLETE): S.COMPLETED,
    (S.RUNNING, A.FAIL): S.FAILED,
}
TRANSITIONS.update({
    (status, A.CANCEL): S.CANCELLED
    for status in (S.DRAFT, S.READY, S.RUNNING, S.PAUSED)
})

AUDIT_ACTIONS = {
    A.READY: "OPERATION_READY",
    A.START: "OPERATION_STARTED",
    A.PAUSE: "OPERATION_PAUSED",
    A.RESUME: "OPERATION_RESUMED",
    A.CANCEL: "OPERATION_CANCELLED",
    A.COMPLETE: "OPERATION_COMPLETED",
    A.FAIL: "OPERATION_FAILED",
    A.CHECKPOINT: "CHECKPOINT_REACHED",
}


def next_status(status: OperationStatus, action: OperationAction) -> OperationStatus:
    """
    Look up a transition.

    Raises:
        InvalidStateError: If ``action`` is not allowed from ``status``
    """
    try:
        return TRANSITIONS[(status, action)]
    except KeyError:
        raise InvalidStateError(
            message=f"Cannot {action.value} an operation in status {status.value}",
            current_state=status.value,
            attempted_action=action.value,
        ) from None


@dataclass
class TransitionOutcome:
    """
    Result of a caller transition.

    ``pending`` is set when the request was queued for the run that is
    executing the operation. ``execution`` is set for START and RESUME.
    """

    operation: BulkOperation
    execution: Optional[ExecutionResult] = None
    pending: bool = False


class OperationController:
    """
    Creates bulk operations and drives them through their lifecycle.

    Example:
        controller = OperationController(store, audit, safety, executor, processor)
        operation = controller.create("admin-1", spec)
        controller.transition("admin-1", operation.id, "READY")
        outcome = controller.transition("admin-1", operation.id, "START")
        outcome.execution.success_count
    """

    def __init__(
        self,
        store: RecordStore,
        audit: AuditTrail,
        safety: SafetyManager,
        workflow: WorkflowStageExecutor,
        batches: BatchProcessor,
        metrics=None,
        default_safety_checks: Optional[Dict[str, Any]] = None,
    ):
        self.store = store
        self.audit = audit
        self.safety = safety
        self.workflow = workflow
        self.batches = batches
        self.metrics = metrics
        self.default_safety_checks = dict(default_safety_checks or {})
        self._lock = threading.RLock()
        self._running = set()
        self._rolling_back = set()
        self._signals: Dict[str, Tuple[str, OperationAction]] = {}

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def create(self, actor: str, spec) -> BulkOperation:
        """
        Create an operation from a spec (model or plain dictionary).

        Targets are resolved and frozen here. An operation with
        ``scheduled_for`` starts out READY, any other starts out DRAFT.

        Raises:
            ValidationError: If the spec is malformed, selects no records or
                exceeds the safety ceiling
            NotFoundError: If an explicit target id does not exist
        """
        if not isinstance(spec, BulkOperationSpec):
            spec = BulkOperationSpec.parse(spec)
        safety_checks = spec.safety_checks or SafetyChecks.parse(self.default_safety_checks)

        if spec.target_ids is not None:
            self.safety.preflight(len(spec.target_ids), safety_checks)
            found = self.store.get_businesses(spec.target_ids)
            missing = [business_id for business_id in spec.target_ids if business_id not in found]
            if missing:
                raise NotFoundError(
                    message=f"Target businesses not found: {', '.join(missing[:10])}",
                    error_code="BUSINESS_NOT_FOUND",
                    resource_type="business",
                    resource_id=missing[0],
                    context={'missing_count': len(missing)},
                )
            target_ids = list(spec.target_ids)
        else:
            target_ids = [record.id for record in self.store.find_businesses(spec.criteria)]
            self.safety.preflight(len(target_ids), safety_checks)

        workflow = (
            [stage.model_copy(deep=True) for stage in spec.workflow]
            if spec.workflow else default_workflow()
        )
        operation = BulkOperation(
            name=spec.name,
            description=spec.description,
            type=spec.type,
            created_by=actor,
            scheduled_for=spec.scheduled_for,
            criteria=spec.criteria,
            target_ids=target_ids,
            counters=OperationCounters(target_count=len(target_ids)),
            workflow=workflow,
            safety_checks=safety_checks,
            details=spec.resolved_details(),
        )
        self._append_audit(
            operation, actor, "OPERATION_CREATED",
            after={'status': operation.status.value, 'targetCount': len(target_ids)},
            details=f"Created {operation.type.value} operation '{operation.name}'",
        )
        if spec.scheduled_for is not None:
            self._apply(actor, operation, A.READY,
                        details=f"Scheduled for {spec.scheduled_for.isoformat()}")
        else:
            self.store.save_operation(operation)

        logger.info("Bulk operation created",
                    operation_id=operation.id,
                    operation_type=operation.type.value,
                    status=operation.status.value,
                    target_count=len(target_ids),
                    stage_count=len(operation.workflow))
        return operation

    def get(self, operation_id: str) -> BulkOperation:
        operation = self.store.get_operation(operation_id)
        if operation is None:
            raise NotFoundError(
                message=f"Bulk operation {operation_id} not found",
                error_code="OPERATION_NOT_FOUND",
                resource_type="bulk_operation",
                resource_id=operation_id,
            )
        return operation

    def list_operations(
        self,
        status: Optional[OperationStatus] = None,
        operation_type: Optional[OperationType] = None,
        created_by: Optional[str] = None,
    ) -> List[BulkOperation]:
        return self.store.list_operations(status=status, operation_type=operation_type, created_by=created_by)

    def delete(self, actor: str, operation_id: str) -> None:
        """
        Delete an operation together with its stages and snapshot.

        Raises:
            InvalidStateError: If the operation is running
        """
        with self._lock:
            operation = self.get(operation_id)
            self._refuse_during_rollback(operation, "DELETE")
            if operation.status == S.RUNNING:
                raise InvalidStateError(
                    message="Cannot delete a running operation",
                    current_state=operation.status.value,
                    attempted_action="DELETE",
                )
            self.store.delete_operation(operation_id)
        self.audit.log(
            actor=actor,
            action="OPERATION_DELETED",
            operation_id=operation_id,
            before={'status': operation.status.value},
            details=f"Deleted operation '{operation.name}'",
        )
        logger.info("Bulk operation deleted", operation_id=operation_id, status=operation.status.value)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(self, actor: str, operation_id: str, action) -> TransitionOutcome:
        """
        Apply a caller action (READY, START, PAUSE, RESUME or CANCEL).

        Raises:
            NotFoundError: If the operation does not exist
            InvalidStateError: If the action is unknown, internal, or not
                allowed from the operation's current status
        """
        action = self._parse_action(action)

        with self._lock:
            operation = self.get(operation_id)
            self._refuse_during_rollback(operation, action.value)
            if operation.id in self._running and action in (A.PAUSE, A.CANCEL):
                queued = self._signals.get(operation.id)
                if queued is None or queued[1] != A.CANCEL:
                    self._signals[operation.id] = (actor, action)
                logger.info("Operation stop requested",
                            operation_id=operation.id,
                            requested_action=action.value,
                            actor=actor)
                return TransitionOutcome(operation=operation, pending=True)

            self._apply(actor, operation, action)
            if action not in (A.START, A.RESUME):
                return TransitionOutcome(operation=operation)
            self._running.add(operation.id)

        try:
            execution = self._execute(actor, operation)
        finally:
            with self._lock:
                self._running.discard(operation.id)
                self._signals.pop(operation.id, None)
        return TransitionOutcome(operation=operation, execution=execution)

    def mark_ready(self, actor: str, operation_id: str) -> BulkOperation:
        return self.transition(actor, operation_id, A.READY).operation

    def _parse_action(self, action) -> OperationAction:
        try:
            parsed = OperationAction(action.upper() if isinstance(action, str) else action)
        except ValueError:
            parsed = None
        if parsed not in CALLER_ACTIONS:
            raise InvalidStateError(
                message=f"Unknown operation action '{action}'",
                error_code="INVALID_OPERATION_ACTION",
                attempted_action=str(action),
            )
        return parsed

    def _apply(self, actor: str, operation: BulkOperation, action: OperationAction, details: str = "") -> None:
        """Validate and apply one transition, audit it and persist the operation."""
        previous = operation.status
        try:
            target = next_status(previous, action)
        except InvalidStateError:
            self._record_transition(action, 'rejected')
            raise

        now = utcnow()
        operation.status = target
        if action == A.START and operation.started_at is None:
            operation.started_at = now
        if target.is_terminal:
            operation.completed_at = now

        self._append_audit(
            operation, actor, AUDIT_ACTIONS[action],
            before={'status': previous.value},
            after={'status': target.value},
            details=details or f"{previous.value} -> {target.value}",
        )
        self.store.save_operation(operation)
        self._record_transition(action, 'accepted')
        logger.info("Operation transitioned",
                    operation_id=operation.id,
                    action=action.value,
                    from_status=previous.value,
                    to_status=target.value)

    def _append_audit(self, operation: BulkOperation, actor: str, action: str,
                      before=None, after=None, details: str = "", metadata=None) -> AuditEntry:
        entry = AuditEntry(
            actor=actor,
            action=action,
            operation_id=operation.id,
            before=before or {},
            after=after or {},
            details=details,
            metadata=metadata or {},
        )
        operation.audit_log = operation.audit_log + [entry]
        self.audit.record(entry)
        return entry

    def _record_transition(self, action: OperationAction, result: str) -> None:
        if self.metrics is not None:
            self.metrics.record_transition(action.value, result)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute(self, actor: str, operation: BulkOperation) -> ExecutionResult:
        try:
            self._advance(actor, operation)
        except Exception as e:
            logger.exception("Bulk operation failed unexpectedly",
                             operation_id=operation.id,
                             error_type=type(e).__name__)
            operation.errors = operation.errors + [f"Unexpected error: {e}"]
            if operation.status == S.RUNNING:
                self._apply(actor, operation, A.FAIL, details=f"Unexpected error: {type(e).__name__}")
        return self.execution_result(operation)

    def _advance(self, actor: str, operation: BulkOperation) -> None:
        cursor = operation.cursor

        if cursor.eligible_ids is None:
            if not self._prepare(actor, operation):
                return

        if cursor.phase == 'workflow':
            if not self._run_workflow(actor, operation):
                return

        if cursor.phase == 'batches':
            records = self._load_records(operation, cursor.pending_ids)
            cursor.pending_ids = [business_id for business_id in cursor.pending_ids if business_id in records]
            finished = self.batches.run(
                operation, records, actor,
                should_stop=lambda: self._has_signal(operation.id),
                persist=self.store.save_operation,
            )
            if not finished:
                with self._lock:
                    signal_actor, signal = self._signals.pop(operation.id)
                self._apply(signal_actor, operation, signal, details="Honored at batch boundary")
                return
            cursor.phase = 'done'

        counters = operation.counters
        if counters.failed_count:
            operation.warnings = operation.warnings + [
                f"Partial success: {counters.failed_count} of {counters.target_count} records failed"
            ]
        self._apply(actor, operation, A.COMPLETE,
                    details=f"{counters.success_count} succeeded, {counters.failed_count} failed, "
                            f"{counters.skipped_count} skipped")

    def _prepare(self, actor: str, operation: BulkOperation) -> bool:
        """First run: snapshot targets and freeze the eligible set. False when the operation failed."""
        records = self.store.get_businesses(operation.target_ids)
        present = [records[business_id] for business_id in operation.target_ids if business_id in records]

        safety_checks = operation.safety_checks
        if safety_checks.snapshot_required:
            try:
                snapshot = self.safety.capture_snapshot(operation, present)
            except DirectoryOpsError as e:
                message = f"Snapshot creation failed: {e.message}"
                if safety_checks.require_approval:
                    operation.errors = operation.errors + [message]
                    operation.rollback_info = RollbackInfo(available=False)
                    self._apply(actor, operation, A.FAIL, details=message)
                    return False
                operation.warnings = operation.warnings + [f"{message}; continuing without rollback"]
                operation.rollback_info = RollbackInfo(available=False)
            else:
                operation.rollback_info = RollbackInfo(
                    available=True,
                    snapshot_id=snapshot.id,
                    captured_at=snapshot.timestamp,
                    rollback_steps=[f"Captured {len(present)} records in snapshot {snapshot.id}"],
                )
        else:
            operation.rollback_info = RollbackInfo(available=False)

        self._fail_missing(operation, [business_id for business_id in operation.target_ids
                                       if business_id not in records])
        operation.cursor.eligible_ids = [record.id for record in present]
        self.store.save_operation(operation)
        return True

    def _run_workflow(self, actor: str, operation: BulkOperation) -> bool:
        """Run remaining stages. False when a checkpoint suspended the run."""
        cursor = operation.cursor
        records = self._load_records(operation, cursor.eligible_ids)
        eligible = [business_id for business_id in cursor.eligible_ids if business_id in records]

        run = self.workflow.run(operation, records, eligible, cursor.next_stage_index)

        failed = sum(1 for outcome in run.outcomes if outcome.status == OutcomeStatus.FAILED)
        skipped = len(run.outcomes) - failed
        operation.counters.record(failed=failed, skipped=skipped)
        operation.results = operation.results + run.outcomes
        if self.metrics is not None:
            self.metrics.record_skipped(skipped)

        cursor.eligible_ids = run.eligible_ids
        cursor.next_stage_index = run.next_stage_index
        if run.suspended:
            self._apply(actor, operation, A.CHECKPOINT, details=run.suspended_at.checkpoint_message)
            return False

        cursor.phase = 'batches'
        cursor.pending_ids = list(run.eligible_ids)
        self.store.save_operation(operation)
        return True

    def _load_records(self, operation: BulkOperation, business_ids: List[str]) -> Dict[str, BusinessRecord]:
        """Current versions of ``business_ids``; records deleted meanwhile are failed."""
        records = self.store.get_businesses(business_ids)
        self._fail_missing(operation, [business_id for business_id in business_ids if business_id not in records])
        return records

    def _fail_missing(self, operation: BulkOperation, missing: List[str]) -> None:
        if not missing:
            return
        operation.counters.record(failed=len(missing))
        operation.results = operation.results + [
            RecordOutcome(business_id=business_id, status=OutcomeStatus.FAILED, message="Business not found")
            for business_id in missing
        ]
        logger.warning("Operation targets missing", operation_id=operation.id, missing_count=len(missing))

    def _has_signal(self, operation_id: str) -> bool:
        with self._lock:
            return operation_id in self._signals

    @staticmethod
    def execution_result(operation: BulkOperation) -> ExecutionResult:
        counters = operation.counters
        info = operation.rollback_info
        return ExecutionResult(
            success=counters.failed_count == 0 and operation.status != S.FAILED,
            operation_id=operation.id,
            status=operation.status,
            processed_count=counters.processed_count,
            success_count=counters.success_count,
            failed_count=counters.failed_count,
            skipped_count=counters.skipped_count,
            results=operation.results,
            snapshot_id=info.snapshot_id if info else None,
            rollback_available=bool(info and info.available),
            errors=operation.errors,
            warnings=operation.warnings,
        )

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def rollback(self, actor: str, operation_id: str) -> RollbackResult:
        """
        Restore the operation's snapshot.

        Afterwards rollback is no longer available for the operation, and an
        operation that had not finished is cancelled so it cannot be resumed
        over the restored records. Transitions on the operation are refused
        while the restore runs; other operations are not blocked.
        """
        with self._lock:
            operation = self.get(operation_id)
            if operation.id in self._running:
                raise InvalidStateError(
                    message="Cannot roll back a running operation",
                    current_state=S.RUNNING.value,
                    attempted_action="ROLLBACK",
                )
            self._claim_for_rollback(operation)

        try:
            result = self.safety.restore_snapshot(operation, self.batches)

            with self._lock:
                info = operation.rollback_info
                info.available = False
                info.rolled_back_at = result.rollback_timestamp
                info.rollback_steps = info.rollback_steps + [
                    f"Restored {result.success_count} of {result.rollback_count} records "
                    f"from snapshot {result.snapshot_id}"
                ]
                self._append_audit(
                    operation, actor, "OPERATION_ROLLED_BACK",
                    details=f"Rolled back {result.success_count} records",
                    metadata={
                        'snapshot_id': result.snapshot_id,
                        'success_count': result.success_count,
                        'failed_count': result.failed_count,
                    },
                )
                self.store.save_operation(operation)
                if not operation.status.is_terminal:
                    self._apply(actor, operation, A.CANCEL, details="Cancelled after rollback")
        finally:
            with self._lock:
                self._rolling_back.discard(operation.id)

        logger.info("Operation rolled back",
                    operation_id=operation.id,
                    snapshot_id=result.snapshot_id,
                    restored=result.success_count,
                    failed=result.failed_count,
                    status=operation.status.value)
        return result

    def _claim_for_rollback(self, operation: BulkOperation) -> None:
        if operation.id in self._rolling_back:
            raise InvalidStateError(
                message="A rollback of this operation is already in progress",
                current_state=operation.status.value,
                attempted_action="ROLLBACK",
            )
        self._rolling_back.add(operation.id)

    def _refuse_during_rollback(self, operation: BulkOperation, attempted_action: str) -> None:
        if operation.id in self._rolling_back:
            raise InvalidStateError(
                message="Operation is being rolled back",
                current_state=operation.status.value,
                attempted_action=attempted_action,
            )
