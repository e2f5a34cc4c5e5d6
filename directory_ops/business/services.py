"""
Directory Administration Service

Facade exposing the engine's operations to callers (the admin blueprint,
scripts, tests). Every mutating entry point checks that the actor is an
administrator before touching any record; read-only entry points do not.

Key Components:
- DirectoryAdminService: duplicate detection, merge, unmark, mark, scan and
  the bulk operation lifecycle including rollback
- create_admin_service: wires store, audit trail, metrics and settings from
  a configuration class
"""

from typing import Any, Dict, List, Optional

import structlog

from directory_ops.auth.audit import AuditTrail, StoreAuditSink
from directory_ops.auth.authorization import AdminAuthorizer, StaticAdminAuthorizer, require_admin
from directory_ops.business.batch import BatchProcessor
from directory_ops.business.duplicates import (
    DuplicateCandidateFinder,
    DuplicateMarker,
    DuplicateScanner,
    parse_mode,
)
from directory_ops.business.exceptions import ValidationError
from directory_ops.business.merge import MergeExecutor, UnmarkRestoreOperator
from directory_ops.business.models import (
    ApprovalStatus,
    BulkOperation,
    MatchMode,
    MergeStrategy,
    OperationStatus,
    OperationType,
    RollbackResult,
    RollbackStatus,
)
from directory_ops.business.operations import OperationController, TransitionOutcome
from directory_ops.business.safety import SafetyManager
from directory_ops.business.workflow import (
    ApprovalChannel,
    QualityScoreApprovalChannel,
    WorkflowStageExecutor,
)
from directory_ops.config.settings import BaseConfig, EngineSettings
from directory_ops.data.store import InMemoryRecordStore, RecordStore

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 100


class DirectoryAdminService:
    """
    Administrative operations over the business directory.

    Example:
        service = DirectoryAdminService(store, StaticAdminAuthorizer(["admin-1"]), audit)
        found = service.find_duplicates("admin-1", "biz-1", mode="strict")
        service.merge_businesses("admin-1", "biz-1", ["biz-2"], strategy="merge_data")
    """

    def __init__(
        self,
        store: RecordStore,
        authorizer: AdminAuthorizer,
        audit: AuditTrail,
        settings: Optional[EngineSettings] = None,
        metrics=None,
        approval_channel: Optional[ApprovalChannel] = None,
    ):
        self.store = store
        self.authorizer = authorizer
        self.audit = audit
        self.settings = settings or EngineSettings()
        self.metrics = metrics

        self.finder = DuplicateCandidateFinder(store, self.settings.loose_name_similarity_threshold)
        self.marker = DuplicateMarker(store, audit)
        self.scanner = DuplicateScanner(store, self.finder, self.marker)
        self.merger = MergeExecutor(store, audit, metrics)
        self.unmarker = UnmarkRestoreOperator(store, audit, metrics)
        self.safety = SafetyManager(store, metrics, self.settings.rollback_window_hours)
        self.batches = BatchProcessor(
            store, audit, metrics,
            max_batch_size=self.settings.max_batch_size,
            timeout_seconds=self.settings.batch_timeout_seconds,
        )
        self.workflow = WorkflowStageExecutor(
            approval_channel or QualityScoreApprovalChannel(self.settings.manual_review_quality_threshold)
        )
        self.operations = OperationController(
            store, audit, self.safety, self.workflow, self.batches,
            metrics=metrics,
            default_safety_checks=self.settings.default_safety_checks,
        )

    # ------------------------------------------------------------------
    # Duplicates
    # ------------------------------------------------------------------

    def find_duplicates(
        self,
        actor: str,
        target_id: str,
        mode=MatchMode.STRICT,
        include_resolved: bool = False,
    ) -> Dict[str, Any]:
        """Candidates for ``target_id`` with a confidence summary."""
        require_admin(self.authorizer, actor, 'find_duplicates')
        mode = parse_mode(mode)
        candidates = self.finder.find_candidates(target_id, mode, include_resolved)
        summary = self.finder.summarize(candidates)

        self.audit.log(
            actor=actor,
            action="DUPLICATE_DETECTION",
            target_id=target_id,
            details=f"Found {len(candidates)} candidate(s) in {mode.value} mode",
            metadata={'mode': mode.value, 'candidate_ids': [c.candidate_id for c in candidates]},
        )
        if self.metrics is not None:
            self.metrics.record_detection(mode.value, len(candidates))

        return {
            'targetId': target_id,
            'mode': mode.value,
            'candidates': [candidate.to_api_dict() for candidate in candidates],
            'summary': summary.to_api_dict(),
        }

    def merge_businesses(self, actor: str, primary_id: str, duplicate_ids: List[str],
                         strategy=MergeStrategy.KEEP_PRIMARY):
        require_admin(self.authorizer, actor, 'merge_businesses')
        return self.merger.merge(actor, primary_id, duplicate_ids, strategy)

    def unmark_duplicate(self, actor: str, business_id: str, restore_status=ApprovalStatus.PENDING):
        require_admin(self.authorizer, actor, 'unmark_duplicate')
        return self.unmarker.unmark(actor, business_id, restore_status)

    def mark_as_duplicate(self, actor: str, primary_id: str, business_ids: List[str]):
        require_admin(self.authorizer, actor, 'mark_as_duplicate')
        if not business_ids:
            raise ValidationError(
                message="At least one business id is required",
                error_code="EMPTY_BUSINESS_LIST",
                field_name='businessIds',
            )
        return self.marker.mark_as_duplicate(actor, primary_id, business_ids)

    def scan_duplicates(self, actor: str, mode=MatchMode.STRICT, auto_mark: bool = False):
        require_admin(self.authorizer, actor, 'scan_duplicates')
        return self.scanner.scan(actor, mode, auto_mark)

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    def create_bulk_operation(self, actor: str, spec) -> BulkOperation:
        require_admin(self.authorizer, actor, 'create_bulk_operation')
        return self.operations.create(actor, spec)

    def transition_operation(self, actor: str, operation_id: str, action) -> TransitionOutcome:
        require_admin(self.authorizer, actor, 'transition_operation')
        return self.operations.transition(actor, operation_id, action)

    def mark_operation_ready(self, actor: str, operation_id: str) -> BulkOperation:
        require_admin(self.authorizer, actor, 'mark_operation_ready')
        return self.operations.mark_ready(actor, operation_id)

    def get_operation(self, operation_id: str) -> BulkOperation:
        return self.operations.get(operation_id)

    def list_operations(
        self,
        status: Optional[str] = None,
        operation_type: Optional[str] = None,
        created_by: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """
        Page through operations, newest first.

        The summary covers every operation matching the filters, not only the
        returned page.
        """
        try:
            status = OperationStatus(status) if status else None
            operation_type = OperationType(operation_type) if operation_type else None
        except ValueError as e:
            raise ValidationError(message=str(e), error_code="INVALID_FILTER") from None
        if limit < 1 or offset < 0:
            raise ValidationError(
                message="limit must be positive and offset must not be negative",
                error_code="INVALID_PAGINATION",
            )
        limit = min(limit, MAX_PAGE_SIZE)

        operations = self.operations.list_operations(status, operation_type, created_by)
        page = operations[offset:offset + limit]

        by_status = {item.value: 0 for item in OperationStatus}
        for operation in operations:
            by_status[operation.status.value] += 1

        return {
            'operations': [operation.summary(audit_tail=0) for operation in page],
            'pagination': {
                'total': len(operations),
                'limit': limit,
                'offset': offset,
                'hasMore': offset + limit < len(operations),
            },
            'summary': {
                'total': len(operations),
                'byStatus': by_status,
                'totalProcessed': sum(op.counters.processed_count for op in operations),
                'totalSuccess': sum(op.counters.success_count for op in operations),
                'totalFailed': sum(op.counters.failed_count for op in operations),
            },
        }

    def rollback_operation(self, actor: str, operation_id: str) -> RollbackResult:
        require_admin(self.authorizer, actor, 'rollback_operation')
        return self.operations.rollback(actor, operation_id)

    def get_rollback_status(self, operation_id: str) -> RollbackStatus:
        return self.safety.rollback_status(self.operations.get(operation_id))

    def delete_operation(self, actor: str, operation_id: str) -> None:
        require_admin(self.authorizer, actor, 'delete_operation')
        self.operations.delete(actor, operation_id)

    def shutdown(self) -> None:
        """Stop the batch workers and drain queued audit entries."""
        self.batches.shutdown()
        self.audit.shutdown()


def create_store(config) -> RecordStore:
    """Build the record store selected by ``STORE_BACKEND``."""
    if config.STORE_BACKEND == 'mongodb':
        from directory_ops.data.mongodb import MongoRecordStore

        store = MongoRecordStore.from_uri(
            config.MONGODB_URI,
            config.MONGODB_DATABASE,
            retry_attempts=config.STORAGE_RETRY_ATTEMPTS,
        )
        store.ensure_indexes()
        return store
    return InMemoryRecordStore()


def create_admin_service(config, store: Optional[RecordStore] = None, metrics=None) -> DirectoryAdminService:
    """
    Wire a service from a configuration class or Flask config mapping.

    Raises:
        ConfigurationError: If the configuration is invalid
    """
    settings = EngineSettings.from_config(config)
    if isinstance(config, dict):
        config = type('MappingConfig', (BaseConfig,), dict(config))
    store = store or create_store(config)
    audit = AuditTrail(StoreAuditSink(store), metrics=metrics,
                       flush_timeout=settings.audit_flush_timeout_seconds)

    service = DirectoryAdminService(
        store=store,
        authorizer=StaticAdminAuthorizer(config.ADMIN_ACTORS),
        audit=audit,
        settings=settings,
        metrics=metrics,
    )
    logger.info("Directory admin service created",
                store_backend=type(store).__name__,
                max_batch_size=settings.max_batch_size,
                batch_timeout_seconds=settings.batch_timeout_seconds)
    return service
