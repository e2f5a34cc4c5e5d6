"""
Duplicate Detection

Candidate retrieval for a single target record, whole-directory duplicate
scans and explicit mark-as-duplicate. Candidate retrieval is read-only; only
marking mutates records.

Duplicate-of references never chain: a primary must not itself be a
duplicate, and records already pointing at a newly marked duplicate are
re-pointed at its primary.
"""

from typing import Iterable, List, Optional

import structlog

from directory_ops.auth.audit import AuditTrail
from directory_ops.business.exceptions import NotFoundError, StorageError, ValidationError
from directory_ops.business.matching import (
    DEFAULT_NAME_SIMILARITY_THRESHOLD,
    MERGE_THRESHOLD,
    REVIEW_THRESHOLD,
    confidence_band,
    is_loose_match,
    is_strict_match,
    name_similarity,
    score_pair,
)
from directory_ops.business.models import (
    ApprovalStatus,
    BusinessRecord,
    CriterionOperator,
    DetectionSummary,
    DuplicateCandidate,
    DuplicateGroup,
    FilterCriterion,
    MarkOutcome,
    MatchMode,
    RecordState,
    Recommendation,
    ScanResult,
)
from directory_ops.data.store import RecordStore

logger = structlog.get_logger(__name__)


def parse_mode(mode) -> MatchMode:
    try:
        return MatchMode(mode)
    except ValueError:
        raise ValidationError(
            message=f"Unknown matching mode '{mode}'",
            error_code="INVALID_MATCH_MODE",
            field_name='mode',
        ) from None


class DuplicateCandidateFinder:
    """
    Retrieves and scores duplicate candidates for a target record.

    Strict mode requires a shared strong identity signal (phone, email,
    website or ABN). Loose mode also accepts records in the same suburb whose
    names are more similar than the configured threshold.
    """

    def __init__(
        self,
        store: RecordStore,
        name_similarity_threshold: float = DEFAULT_NAME_SIMILARITY_THRESHOLD,
    ):
        self.store = store
        self.name_similarity_threshold = name_similarity_threshold

    def find_candidates(
        self,
        target_id: str,
        mode=MatchMode.STRICT,
        include_resolved: bool = False,
    ) -> List[DuplicateCandidate]:
        """
        Find duplicate candidates for one record.

        Args:
            target_id: Record to find duplicates of
            mode: ``strict`` or ``loose``
            include_resolved: Include records already marked as duplicates

        Returns:
            Candidates ordered by confidence descending, then candidate id

        Raises:
            NotFoundError: If the target record does not exist
            ValidationError: If the mode is unknown
        """
        mode = parse_mode(mode)
        target = self.store.get_business(target_id)
        if target is None:
            raise NotFoundError(
                message=f"Business {target_id} not found",
                error_code="BUSINESS_NOT_FOUND",
                resource_type="business",
                resource_id=target_id,
            )

        pool = self.store.find_businesses(exclude_ids=[target_id], include_duplicates=include_resolved)
        candidates = self.score_candidates(target, pool, mode)
        logger.debug("Duplicate candidates found",
                     target_id=target_id,
                     mode=mode.value,
                     pool_size=len(pool),
                     candidate_count=len(candidates))
        return candidates

    def score_candidates(
        self,
        target: BusinessRecord,
        pool: Iterable[BusinessRecord],
        mode: MatchMode,
    ) -> List[DuplicateCandidate]:
        candidates = []
        for record in pool:
            if record.id == target.id or not self._matches(target, record, mode):
                continue
            fields, score, recommendation = score_pair(target, record)
            candidates.append(DuplicateCandidate(
                target_id=target.id,
                candidate_id=record.id,
                candidate_name=record.name,
                candidate_suburb=record.suburb,
                candidate_duplicate_of_id=record.duplicate_of_id,
                matched_fields=fields,
                confidence_score=score,
                recommendation=Recommendation(recommendation),
                name_similarity=(
                    round(name_similarity(target, record), 4) if mode == MatchMode.LOOSE else None
                ),
            ))
        candidates.sort(key=lambda candidate: (-candidate.confidence_score, candidate.candidate_id))
        return candidates

    def _matches(self, a: BusinessRecord, b: BusinessRecord, mode: MatchMode) -> bool:
        if mode == MatchMode.LOOSE:
            return is_loose_match(a, b, self.name_similarity_threshold)
        return is_strict_match(a, b)

    @staticmethod
    def summarize(candidates: List[DuplicateCandidate]) -> DetectionSummary:
        return DetectionSummary(
            total_found=len(candidates),
            high_confidence=sum(1 for c in candidates if c.confidence_score >= MERGE_THRESHOLD),
            medium_confidence=sum(
                1 for c in candidates if REVIEW_THRESHOLD <= c.confidence_score < MERGE_THRESHOLD
            ),
            low_confidence=sum(1 for c in candidates if c.confidence_score < REVIEW_THRESHOLD),
            recommend_merge=sum(1 for c in candidates if c.recommendation == Recommendation.MERGE),
        )


class DuplicateMarker:
    """Marks records as duplicates of a primary without merging data."""

    def __init__(self, store: RecordStore, audit: AuditTrail):
        self.store = store
        self.audit = audit

    def mark_as_duplicate(
        self,
        actor: str,
        primary_id: str,
        business_ids: List[str],
    ) -> List[MarkOutcome]:
        """
        Mark each record as a duplicate of ``primary_id``.

        Each record is handled independently and reported with its own
        outcome; the primary itself, unknown ids and records already marked
        are reported as failures.

        Raises:
            NotFoundError: If the primary does not exist
            ValidationError: If the primary is itself a duplicate
        """
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
                    f"{primary.duplicate_of_id} and cannot be a primary"
                ),
                error_code="PRIMARY_IS_DUPLICATE",
                field_name='primaryId',
            )

        outcomes = []
        for business_id in dict.fromkeys(business_ids):
            outcomes.append(self._mark_one(actor, primary_id, business_id))

        logger.info("Businesses marked as duplicates",
                    primary_id=primary_id,
                    requested=len(business_ids),
                    marked=sum(1 for outcome in outcomes if outcome.success))
        return outcomes

    def _mark_one(self, actor: str, primary_id: str, business_id: str) -> MarkOutcome:
        if business_id == primary_id:
            return MarkOutcome(business_id=business_id, success=False,
                               error="A business cannot be marked as a duplicate of itself")

        try:
            with self.store.transaction():
                record = self.store.get_business(business_id)
                error = self._mark_error(primary_id, record)
                if error is not None:
                    return MarkOutcome(business_id=business_id, success=False, error=error)

                previous = RecordState(duplicate_of_id=None, approval_status=record.approval_status)
                # Writing the primary conflicts with any concurrent merge that marks it.
                self.store.update_business(primary_id, {}, expected={'duplicate_of_id': None})
                repointed = repoint_dependents(self.store, [business_id], primary_id)
                self.store.update_business(business_id, {
                    'duplicate_of_id': primary_id,
                    'approval_status': ApprovalStatus.REJECTED,
                }, expected={'duplicate_of_id': None})
        except StorageError as e:
            if e.error_code != "STORAGE_WRITE_CONFLICT":
                raise
            logger.warning("Duplicate mark conflicted with a concurrent change",
                           primary_id=primary_id, business_id=business_id)
            return MarkOutcome(business_id=business_id, success=False,
                               error="Business or primary changed concurrently")
        new = RecordState(duplicate_of_id=primary_id, approval_status=ApprovalStatus.REJECTED)

        self.audit.log(
            actor=actor,
            action="DUPLICATE_MARKED",
            target_id=business_id,
            before=previous.to_api_dict(),
            after=new.to_api_dict(),
            details=f"Marked as duplicate of {primary_id}",
            metadata={'primary_id': primary_id, 'repointed_duplicates': repointed},
        )
        return MarkOutcome(business_id=business_id, success=True,
                           previous_state=previous, new_state=new)

    def _mark_error(self, primary_id: str, record: Optional[BusinessRecord]) -> Optional[str]:
        if record is None:
            return "Business not found"
        if record.duplicate_of_id is not None:
            return f"Business is already a duplicate of {record.duplicate_of_id}"
        primary = self.store.get_business(primary_id)
        if primary is None or primary.duplicate_of_id is not None:
            return f"Primary business {primary_id} is no longer a valid primary"
        return None


def repoint_dependents(store: RecordStore, duplicate_ids: List[str], primary_id: str) -> int:
    """Re-point records marked as duplicates of ``duplicate_ids`` at ``primary_id``."""
    dependents = store.find_businesses([
        FilterCriterion(field='duplicate_of_id', operator=CriterionOperator.IN, value=list(duplicate_ids)),
    ])
    if not dependents:
        return 0
    store.update_businesses([record.id for record in dependents], {'duplicate_of_id': primary_id})
    return len(dependents)


class DuplicateScanner:
    """Groups the whole directory into canonical records and their duplicates."""

    def __init__(self, store: RecordStore, finder: DuplicateCandidateFinder, marker: DuplicateMarker):
        self.store = store
        self.finder = finder
        self.marker = marker

    def scan(self, actor: str, mode=MatchMode.STRICT, auto_mark: bool = False) -> ScanResult:
        """
        Scan every unresolved record for duplicates.

        The earliest-created record of a group is its canonical record and
        every record belongs to at most one group. With ``auto_mark`` each
        grouped duplicate is marked against its canonical record.
        """
        mode = parse_mode(mode)
        records = self.store.find_businesses(include_duplicates=False)
        assigned = set()
        groups: List[DuplicateGroup] = []

        for index, record in enumerate(records):
            if record.id in assigned:
                continue
            remaining = [other for other in records[index + 1:] if other.id not in assigned]
            candidates = self.finder.score_candidates(record, remaining, mode)
            if not candidates:
                continue
            duplicate_ids = [candidate.candidate_id for candidate in candidates]
            assigned.add(record.id)
            assigned.update(duplicate_ids)
            top_score = candidates[0].confidence_score
            groups.append(DuplicateGroup(
                canonical_id=record.id,
                duplicate_ids=duplicate_ids,
                confidence=confidence_band(top_score),
            ))

        marked = 0
        if auto_mark:
            for group in groups:
                outcomes = self.marker.mark_as_duplicate(actor, group.canonical_id, group.duplicate_ids)
                marked += sum(1 for outcome in outcomes if outcome.success)

        logger.info("Duplicate scan completed",
                    mode=mode.value,
                    processed=len(records),
                    groups=len(groups),
                    marked=marked)
        return ScanResult(mode=mode, groups=groups, processed_count=len(records), marked_count=marked)
