"""
Merge Executor and Unmark/Restore Operator

A merge folds an ordered list of duplicate records into a primary record in
one transaction:

1. Field backfill (``merge_data`` strategy only): each empty primary field in
   BACKFILL_FIELDS takes the first non-empty value found among the duplicates
   in list order.
2. Child records (inquiries, ownership claims) of every duplicate move to the
   primary; records marked as duplicates of a merged duplicate are re-pointed
   at the primary.
3. Every duplicate gets ``duplicate_of_id = primary`` and status REJECTED.

Either all of it commits or none of it does. One audit entry summarizes the
merge after commit. Merging is deliberately not idempotent: repeating a merge
fails because the duplicates are already marked.
"""

from typing import Any, Dict, List

import structlog

from directory_ops.auth.audit import AuditTrail
from directory_ops.business.duplicates import repoint_dependents
from directory_ops.business.exceptions import DirectoryOpsError, NotFoundError, ValidationError
from directory_ops.business.models import (
    ApprovalStatus,
    BusinessRecord,
    MergeResult,
    MergeStrategy,
    RecordState,
    UnmarkResult,
)
from directory_ops.data.store import RecordStore

logger = structlog.get_logger(__name__)

BACKFILL_FIELDS = ('phone', 'email', 'website', 'bio', 'abn')


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def plan_backfill(primary: BusinessRecord, duplicates: List[BusinessRecord]) -> Dict[str, Any]:
    """
    Compute the primary's backfilled fields.

    Earlier duplicates win; a field the primary already has is never touched.
    """
    backfill: Dict[str, Any] = {}
    for field in BACKFILL_FIELDS:
        if not _is_empty(getattr(primary, field)):
            continue
        for duplicate in duplicates:
            value = getattr(duplicate, field)
            if not _is_empty(value):
                backfill[field] = value
                break
    return backfill


class MergeExecutor:
    """Transactional merge of duplicate records into a primary record."""

    def __init__(self, store: RecordStore, audit: AuditTrail, metrics=None):
        self.store = store
        self.audit = audit
        self.metrics = metrics

    def merge(
        self,
        actor: str,
        primary_id: str,
        duplicate_ids: List[str],
        strategy=MergeStrategy.KEEP_PRIMARY,
    ) -> MergeResult:
        """
        Merge ``duplicate_ids`` into ``primary_id``.

        Args:
            actor: Administrator performing the merge
            primary_id: Record that survives the merge
            duplicate_ids: Ordered, distinct duplicate record ids
            strategy: ``keep_primary`` or ``merge_data``

        Returns:
            MergeResult describing backfilled fields and transferred records

        Raises:
            NotFoundError: If the primary or any duplicate does not exist
            ValidationError: If the duplicate list is empty, repeats an id,
                contains the primary, or a record is already a duplicate
            StorageError: If the store cannot commit the merge atomically
        """
        try:
            result = self._merge(actor, primary_id, duplicate_ids, strategy)
        except DirectoryOpsError:
            if self.metrics is not None:
                self.metrics.record_merge('failed')
            raise
        if self.metrics is not None:
            self.metrics.record_merge('success', merged_count=len(result.merged_ids))
        return result

    def _merge(self, actor, primary_id, duplicate_ids, strategy) -> MergeResult:
        strategy = self._parse_strategy(strategy)
        duplicate_ids = list(duplicate_ids)
        self._validate_ids(primary_id, duplicate_ids)

        with self.store.transaction():
            primary, duplicates = self._load_unlinked(primary_id, duplicate_ids)
            backfill = plan_backfill(primary, duplicates) if strategy == MergeStrategy.MERGE_DATA else {}

            # Writing the primary conflicts with any concurrent merge that marks it.
            self.store.update_business(primary_id, backfill, expected={'duplicate_of_id': None})
            transferred = self.store.relink_children(duplicate_ids, primary_id)
            repointed = repoint_dependents(self.store, duplicate_ids, primary_id)
            if repointed:
                transferred['duplicates'] = repointed
            self.store.update_businesses(
                duplicate_ids,
                {'duplicate_of_id': primary_id, 'approval_status': ApprovalStatus.REJECTED},
                expected={'duplicate_of_id': None},
            )

        result = MergeResult(
            primary_id=primary_id,
            merged_ids=duplicate_ids,
            strategy=strategy,
            fields_backfilled=backfill,
            related_records_transferred=transferred,
        )

        self.audit.log(
            actor=actor,
            action="BUSINESS_MERGE",
            target_id=primary_id,
            before={
                'primary': {field: getattr(primary, field) for field in backfill},
                'duplicates': {record.id: record.state() for record in duplicates},
            },
            after={
                'primary': dict(backfill),
                'duplicates': {
                    business_id: {'duplicateOfId': primary_id, 'approvalStatus': 'REJECTED'}
                    for business_id in duplicate_ids
                },
            },
            details=f"Merged {len(duplicate_ids)} duplicate(s) into {primary_id}",
            metadata={
                'strategy': strategy.value,
                'fields_backfilled': sorted(backfill),
                'related_records_transferred': transferred,
            },
        )

        logger.info("Businesses merged",
                    primary_id=primary_id,
                    merged_count=len(duplicate_ids),
                    strategy=strategy.value,
                    fields_backfilled=sorted(backfill),
                    related_records_transferred=transferred)
        return result

    def _load_unlinked(self, primary_id: str, duplicate_ids: List[str]):
        """Read the merge inputs and check none of them is already a duplicate."""
        primary = self.store.get_business(primary_id)
        if primary is None:
            raise NotFoundError(
                message=f"Primary business {primary_id} not found",
                error_code="BUSINESS_NOT_FOUND",
                resource_type="business",
                resource_id=primary_id,
            )
        if primary.duplicate_of_id is not None:
            raise ValidationError(
                message=(
                    f"Business {primary_id} is itself a duplicate of "
                    f"{primary.duplicate_of_id} and cannot be a merge primary"
                ),
                error_code="PRIMARY_IS_DUPLICATE",
                field_name='primaryId',
            )

        found = self.store.get_businesses(duplicate_ids)
        missing = [business_id for business_id in duplicate_ids if business_id not in found]
        if missing:
            raise NotFoundError(
                message=f"Duplicate businesses not found: {', '.join(missing)}",
                error_code="BUSINESS_NOT_FOUND",
                resource_type="business",
                resource_id=missing[0],
                context={'missing_ids': missing},
            )
        duplicates = [found[business_id] for business_id in duplicate_ids]

        already_marked = [record.id for record in duplicates if record.duplicate_of_id is not None]
        if already_marked:
            raise ValidationError(
                message=f"Businesses already marked as duplicates: {', '.join(already_marked)}",
                error_code="ALREADY_MARKED_DUPLICATE",
                field_name='duplicateIds',
                context={'business_ids': already_marked},
            )
        return primary, duplicates

    @staticmethod
    def _parse_strategy(strategy) -> MergeStrategy:
        try:
            return MergeStrategy(strategy)
        except ValueError:
            raise ValidationError(
                message=f"Unknown merge strategy '{strategy}'",
                error_code="INVALID_MERGE_STRATEGY",
                field_name='strategy',
            ) from None

    @staticmethod
    def _validate_ids(primary_id: str, duplicate_ids: List[str]) -> None:
        if not duplicate_ids:
            raise ValidationError(
                message="At least one duplicate id is required",
                error_code="EMPTY_DUPLICATE_LIST",
                field_name='duplicateIds',
            )
        if primary_id in duplicate_ids:
            raise ValidationError(
                message=f"Primary business {primary_id} cannot appear in its own duplicate list",
                error_code="PRIMARY_IN_DUPLICATE_LIST",
                field_name='duplicateIds',
            )
        if len(set(duplicate_ids)) != len(duplicate_ids):
            raise ValidationError(
                message="Duplicate ids must be distinct",
                error_code="DUPLICATE_IDS_NOT_DISTINCT",
                field_name='duplicateIds',
            )


class UnmarkRestoreOperator:
    """Clears a duplicate mark and restores a chosen approval status."""

    def __init__(self, store: RecordStore, audit: AuditTrail, metrics=None):
        self.store = store
        self.audit = audit
        self.metrics = metrics

    def unmark(
        self,
        actor: str,
        business_id: str,
        restore_status=ApprovalStatus.PENDING,
    ) -> UnmarkResult:
        """
        Unmark a duplicate.

        Calling this on a record that is not marked fails rather than
        succeeding silently.

        Raises:
            NotFoundError: If the record does not exist
            ValidationError: If the record is not marked as a duplicate or
                ``restore_status`` is not an approval status
        """
        try:
            restore_status = ApprovalStatus(restore_status)
        except ValueError:
            raise ValidationError(
                message=f"Unknown approval status '{restore_status}'",
                error_code="INVALID_RESTORE_STATUS",
                field_name='restoreStatus',
            ) from None

        record = self.store.get_business(business_id)
        if record is None:
            raise NotFoundError(
                message=f"Business {business_id} not found",
                error_code="BUSINESS_NOT_FOUND",
                resource_type="business",
                resource_id=business_id,
            )
        if record.duplicate_of_id is None:
            self._record_metric('rejected')
            raise ValidationError(
                message=f"Business {business_id} is not marked as duplicate",
                error_code="NOT_MARKED_DUPLICATE",
                field_name='businessId',
            )

        previous = RecordState(duplicate_of_id=record.duplicate_of_id, approval_status=record.approval_status)
        self.store.update_business(business_id, {
            'duplicate_of_id': None,
            'approval_status': restore_status,
        })
        new = RecordState(duplicate_of_id=None, approval_status=restore_status)

        self.audit.log(
            actor=actor,
            action="DUPLICATE_UNMARKED",
            target_id=business_id,
            before=previous.to_api_dict(),
            after=new.to_api_dict(),
            details=f"Unmarked duplicate of {previous.duplicate_of_id}",
        )
        self._record_metric('success')
        logger.info("Duplicate unmarked",
                    business_id=business_id,
                    previous_primary=previous.duplicate_of_id,
                    restore_status=restore_status.value)
        return UnmarkResult(business_id=business_id, previous_state=previous, new_state=new)

    def _record_metric(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_unmark(outcome)
