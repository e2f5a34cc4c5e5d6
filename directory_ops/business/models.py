"""
Business Data Models for the Directory Operations Engine

This module provides the Pydantic data model shared by duplicate detection,
merging, staged workflows and bulk operations. Models serialize to camelCase
for the JSON surface (``duplicateOfId``, ``confidenceScore``) while Python code
uses snake_case attribute names.

Model Categories:
    Directory Records:
        BusinessRecord: A business listing with identity fields and review state
        ChildRecord: Inquiry or ownership claim referencing a business

    Duplicate Handling:
        DuplicateCandidate: Scored candidate pair (transient)
        MergeResult / UnmarkResult / MarkOutcome: Mutation outcomes
        DuplicateGroup: Canonical record with its duplicates (scan output)

    Bulk Operations:
        BulkOperationSpec: Creation request
        BulkOperation: Operation aggregate (owns stages, counters, snapshot ref)
        WorkflowStage: Tagged union of stage variants keyed by ``type``
        OperationDetails: Tagged union of mutation variants keyed by ``type``
        SafetyChecks, FilterCriterion, OperationCounters, ExecutionCursor

    Audit and Rollback:
        AuditEntry: Append-only audit trail entry
        Snapshot: Immutable capture of pre-operation field values
        RecordOutcome, ExecutionResult, RollbackResult: Per-record reporting
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, List, Literal, Optional, Union

import structlog
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .exceptions import ValidationError
from .rules import VALIDATION_RULES

logger = structlog.get_logger("business.models")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Generate a prefixed unique identifier such as ``op_3f2a9c...``."""
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


# ============================================================================
# BASE MODEL
# ============================================================================

class BaseDirectoryModel(BaseModel):
    """
    Base class for all directory data models.

    Converts pydantic validation failures into the engine's ``ValidationError``
    so callers only ever handle the engine's exception taxonomy.

    Example:
        record = BusinessRecord(id="biz-1", name="Corner Cafe")
        payload = record.to_api_dict()   # {"id": "biz-1", "approvalStatus": ...}
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
        str_strip_whitespace=True,
        extra='forbid',
        hide_input_in_errors=True,
    )

    def __init__(self, **data):
        try:
            super().__init__(**data)
        except PydanticValidationError as e:
            raise ValidationError(
                message=f"{self.__class__.__name__} validation failed",
                error_code="MODEL_VALIDATION_FAILED",
                validation_errors=_describe_pydantic_errors(e),
                context={'model_type': self.__class__.__name__},
            ) from e

    @classmethod
    def parse(cls, data: Dict[str, Any]):
        """
        Validate a plain dictionary (camelCase or snake_case keys).

        Raises:
            ValidationError: If validation fails
        """
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(
                message=f"{cls.__name__} validation failed",
                error_code="MODEL_VALIDATION_FAILED",
                validation_errors=_describe_pydantic_errors(e),
                context={'model_type': cls.__name__},
            ) from e

    def to_api_dict(self, exclude_none: bool = False) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dictionary with camelCase keys."""
        return self.model_dump(mode='json', by_alias=True, exclude_none=exclude_none)


def _describe_pydantic_errors(error: PydanticValidationError) -> List[Dict[str, Any]]:
    return [
        {
            'field': '.'.join(str(loc) for loc in item['loc']),
            'message': item['msg'],
            'type': item['type'],
        }
        for item in error.errors()
    ]


# ============================================================================
# ENUMERATION TYPES
# ============================================================================

class ApprovalStatus(str, Enum):
    """Review state of a business listing."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class AbnStatus(str, Enum):
    """Verification state of a listing's Australian Business Number."""
    UNVERIFIED = "UNVERIFIED"
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"


class MatchMode(str, Enum):
    STRICT = "strict"
    LOOSE = "loose"


class Recommendation(str, Enum):
    MERGE = "merge"
    REVIEW = "review"
    IGNORE = "ignore"


class MergeStrategy(str, Enum):
    """How a merge treats the primary's empty fields."""
    KEEP_PRIMARY = "keep_primary"
    MERGE_DATA = "merge_data"


class ChildRecordKind(str, Enum):
    INQUIRY = "inquiry"
    OWNERSHIP_CLAIM = "ownership_claim"


class OperationStatus(str, Enum):
    """Bulk operation lifecycle state."""
    DRAFT = "DRAFT"
    READY = "READY"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    OperationStatus.COMPLETED,
    OperationStatus.FAILED,
    OperationStatus.CANCELLED,
})


class OperationType(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    CONDITIONAL_APPROVE = "CONDITIONAL_APPROVE"
    STAGED_APPROVAL = "STAGED_APPROVAL"
    BULK_UPDATE = "BULK_UPDATE"


class OperationAction(str, Enum):
    """
    Events driving the operation state machine.

    READY, START, PAUSE, RESUME and CANCEL are caller actions; COMPLETE, FAIL
    and CHECKPOINT are raised by the controller itself.
    """
    READY = "READY"
    START = "START"
    PAUSE = "PAUSE"
    RESUME = "RESUME"
    CANCEL = "CANCEL"
    COMPLETE = "COMPLETE"
    FAIL = "FAIL"
    CHECKPOINT = "CHECKPOINT"


CALLER_ACTIONS = frozenset({
    OperationAction.READY,
    OperationAction.START,
    OperationAction.PAUSE,
    OperationAction.RESUME,
    OperationAction.CANCEL,
})


class StageType(str, Enum):
    VALIDATION = "VALIDATION"
    AUTO_APPROVE = "AUTO_APPROVE"
    MANUAL_REVIEW = "MANUAL_REVIEW"
    CONDITIONAL = "CONDITIONAL"
    CHECKPOINT = "CHECKPOINT"


class StageStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class OutcomeStatus(str, Enum):
    """Per-record result of a bulk operation or rollback."""
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class CriterionOperator(str, Enum):
    EQUALS = "EQUALS"
    CONTAINS = "CONTAINS"
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"
    IN = "IN"
    NOT_IN = "NOT_IN"
    BETWEEN = "BETWEEN"


class RejectionCategory(str, Enum):
    INCOMPLETE = "INCOMPLETE"
    INVALID = "INVALID"
    DUPLICATE = "DUPLICATE"
    POLICY_VIOLATION = "POLICY_VIOLATION"
    OTHER = "OTHER"


# ============================================================================
# DIRECTORY RECORDS
# ============================================================================

class BusinessRecord(BaseDirectoryModel):
    """
    A business listing.

    ``duplicate_of_id`` is a weak reference to the canonical listing; it never
    implies ownership and never points at the record itself.
    """

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=200)
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    abn: Optional[str] = None
    suburb: Optional[str] = None
    category: Optional[str] = None
    bio: Optional[str] = None
    source: Optional[str] = None

    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    quality_score: int = Field(default=0, ge=0, le=100)
    abn_status: AbnStatus = AbnStatus.UNVERIFIED
    ownership_verified: bool = False
    duplicate_of_id: Optional[str] = None

    approval_reason: Optional[str] = None
    approval_conditions: List[str] = Field(default_factory=list)
    rejection_reason: Optional[str] = None
    rejection_category: Optional[RejectionCategory] = None
    appeal_allowed: Optional[bool] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode='after')
    def _not_duplicate_of_self(self) -> 'BusinessRecord':
        if self.duplicate_of_id is not None and self.duplicate_of_id == self.id:
            raise ValueError("a business cannot be a duplicate of itself")
        return self

    @property
    def is_marked_duplicate(self) -> bool:
        return self.duplicate_of_id is not None

    def field_values(self, fields: List[str]) -> Dict[str, Any]:
        """Current values of the given snake_case fields, enums as plain values."""
        dumped = self.model_dump(include=set(fields))
        return {
            name: dumped[name].value if isinstance(dumped.get(name), Enum) else dumped.get(name)
            for name in fields
        }

    def state(self) -> Dict[str, Any]:
        """The review state reported in before/after audit values."""
        return {
            'duplicateOfId': self.duplicate_of_id,
            'approvalStatus': self.approval_status.value,
        }



class ChildRecord(BaseDirectoryModel):
    """An inquiry or ownership claim that references a business by id."""

    id: str = Field(default_factory=lambda: new_id("child"))
    business_id: str
    kind: ChildRecordKind
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# DUPLICATE HANDLING
# ============================================================================

class DuplicateCandidate(BaseDirectoryModel):
    """A scored candidate for one target record. Never persisted."""

    target_id: str
    candidate_id: str
    candidate_name: Optional[str] = None
    candidate_suburb: Optional[str] = None
    candidate_duplicate_of_id: Optional[str] = None
    matched_fields: FrozenSet[str] = Field(default_factory=frozenset)
    confidence_score: int = Field(..., ge=0, le=100)
    recommendation: Recommendation
    name_similarity: Optional[float] = None

    @field_serializer('matched_fields')
    def _serialize_matched_fields(self, value: FrozenSet[str]) -> List[str]:
        return sorted(value)


class DetectionSummary(BaseDirectoryModel):
    total_found: int = 0
    high_confidence: int = 0
    medium_confidence: int = 0
    low_confidence: int = 0
    recommend_merge: int = 0


class DuplicateGroup(BaseDirectoryModel):
    canonical_id: str
    duplicate_ids: List[str]
    confidence: Literal['high', 'medium', 'low']


class ScanResult(BaseDirectoryModel):
    mode: MatchMode
    groups: List[DuplicateGroup] = Field(default_factory=list)
    processed_count: int = 0
    marked_count: int = 0


class MergeResult(BaseDirectoryModel):
    """
    Outcome of a merge. Persisted only through its audit entry.

    ``fields_backfilled`` maps each filled primary field to the value copied.
    """

    primary_id: str
    merged_ids: List[str]
    strategy: MergeStrategy
    fields_backfilled: Dict[str, Any] = Field(default_factory=dict)
    related_records_transferred: Dict[str, int] = Field(default_factory=dict)


class RecordState(BaseDirectoryModel):
    duplicate_of_id: Optional[str] = None
    approval_status: ApprovalStatus


class UnmarkResult(BaseDirectoryModel):
    business_id: str
    previous_state: RecordState
    new_state: RecordState


class MarkOutcome(BaseDirectoryModel):
    business_id: str
    success: bool
    error: Optional[str] = None
    previous_state: Optional[RecordState] = None
    new_state: Optional[RecordState] = None


# ============================================================================
# SELECTION AND SAFETY CONFIGURATION
# ============================================================================

FILTERABLE_FIELDS = frozenset({
    'id', 'name', 'suburb', 'category', 'source', 'approval_status',
    'quality_score', 'abn_status', 'ownership_verified', 'duplicate_of_id',
    'created_at', 'updated_at',
})


class FilterCriterion(BaseDirectoryModel):
    """
    One selection predicate. All criteria of an operation are AND-ed.

    ``field`` accepts snake_case or camelCase record field names.
    """

    field: str
    operator: CriterionOperator
    value: Any = None
    label: Optional[str] = None

    @field_validator('field')
    @classmethod
    def _known_field(cls, value: str) -> str:
        snake = _to_snake(value)
        if snake not in FILTERABLE_FIELDS:
            raise ValueError(f"field {value!r} cannot be used in criteria")
        return snake

    @model_validator(mode='after')
    def _value_shape(self) -> 'FilterCriterion':
        if self.operator in (CriterionOperator.IN, CriterionOperator.NOT_IN):
            if not isinstance(self.value, (list, tuple)):
                raise ValueError(f"{self.operator.value} requires a list value")
        elif self.operator == CriterionOperator.BETWEEN:
            if not isinstance(self.value, (list, tuple)) or len(self.value) != 2:
                raise ValueError("BETWEEN requires a [low, high] value")
        elif self.operator == CriterionOperator.CONTAINS:
            if not isinstance(self.value, str):
                raise ValueError("CONTAINS requires a string value")
        return self

    def matches(self, record: BusinessRecord) -> bool:
        """Evaluate the criterion against a record in memory."""
        actual = getattr(record, self.field)
        if isinstance(actual, Enum):
            actual = actual.value
        op = self.operator

        if op == CriterionOperator.EQUALS:
            return actual == _coerce_like(actual, self.value)
        if op in (CriterionOperator.IN, CriterionOperator.NOT_IN):
            found = actual in [_coerce_like(actual, item) for item in self.value]
            return found if op == CriterionOperator.IN else not found
        if actual is None:
            return False
        if op == CriterionOperator.CONTAINS:
            return self.value.lower() in str(actual).lower()
        try:
            if op == CriterionOperator.GREATER_THAN:
                return actual > _coerce_like(actual, self.value)
            if op == CriterionOperator.LESS_THAN:
                return actual < _coerce_like(actual, self.value)
            low, high = (_coerce_like(actual, bound) for bound in self.value)
            return low <= actual <= high
        except TypeError:
            return False


def _coerce_like(actual: Any, value: Any) -> Any:
    """Parse ISO strings when comparing against datetime fields."""
    if isinstance(actual, datetime) and isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return value


def _to_snake(name: str) -> str:
    chars = []
    for char in name:
        if char.isupper():
            chars.append('_')
            chars.append(char.lower())
        else:
            chars.append(char)
    return ''.join(chars).lstrip('_')


class SafetyChecks(BaseDirectoryModel):
    """Pre-flight limits, snapshot policy and batch sizing for an operation."""

    max_records: int = Field(default=1000, gt=0)
    require_approval: bool = True
    confirmation_required: bool = True
    backup_required: bool = True
    rollback_enabled: bool = True
    staging_enabled: bool = True
    checkpoint_frequency: int = Field(default=100, gt=0)

    @property
    def snapshot_required(self) -> bool:
        return self.backup_required and self.rollback_enabled


# ============================================================================
# WORKFLOW STAGES (tagged by ``type``)
# ============================================================================

class StageConditions(BaseDirectoryModel):
    """Conditions evaluated by AUTO_APPROVE and CONDITIONAL stages."""

    quality_score_min: Optional[int] = Field(default=None, ge=0, le=100)
    abn_required: bool = False
    ownership_verified: bool = False


class StageResults(BaseDirectoryModel):
    success: int = 0
    failed: int = 0
    skipped: int = 0
    messages: List[str] = Field(default_factory=list)


class _StageBase(BaseDirectoryModel):
    id: str = Field(default_factory=lambda: new_id("stage"))
    name: str = Field(..., min_length=1)
    status: StageStatus = StageStatus.PENDING
    results: StageResults = Field(default_factory=StageResults)
    completed_at: Optional[datetime] = None


class ValidationStage(_StageBase):
    type: Literal['VALIDATION'] = 'VALIDATION'
    validation_rules: List[str] = Field(..., min_length=1)

    @field_validator('validation_rules')
    @classmethod
    def _registered_rules(cls, rules: List[str]) -> List[str]:
        unknown = [rule for rule in rules if rule not in VALIDATION_RULES]
        if unknown:
            raise ValueError(f"unknown validation rules: {', '.join(unknown)}")
        return rules


class AutoApproveStage(_StageBase):
    type: Literal['AUTO_APPROVE'] = 'AUTO_APPROVE'
    conditions: StageConditions = Field(default_factory=StageConditions)


class ConditionalStage(_StageBase):
    type: Literal['CONDITIONAL'] = 'CONDITIONAL'
    conditions: StageConditions = Field(default_factory=StageConditions)


class ManualReviewStage(_StageBase):
    type: Literal['MANUAL_REVIEW'] = 'MANUAL_REVIEW'
    requires_manual_approval: bool = True
    approvers: List[str] = Field(default_factory=list)


class CheckpointStage(_StageBase):
    type: Literal['CHECKPOINT'] = 'CHECKPOINT'
    checkpoint_message: str = "Manual checkpoint"
    require_confirmation: bool = False
    rollback_enabled: bool = True


WorkflowStage = Annotated[
    Union[ValidationStage, AutoApproveStage, ConditionalStage, ManualReviewStage, CheckpointStage],
    Field(discriminator='type'),
]


def default_workflow() -> List[Any]:
    """A single VALIDATION stage running ``basic_validation``."""
    return [ValidationStage(name="Validation", validation_rules=['basic_validation'])]


# ============================================================================
# OPERATION DETAILS (tagged by ``type``)
# ============================================================================

class _DetailsBase(BaseDirectoryModel):

    def mutation(self) -> Dict[str, Any]:
        """Field changes applied to every processed record (snake_case)."""
        raise NotImplementedError

    def mutated_fields(self) -> List[str]:
        return sorted(set(self.mutation()) | {'reviewed_by', 'reviewed_at'})


class ApprovalDetails(_DetailsBase):
    type: Literal['APPROVE'] = 'APPROVE'
    reason: str = "Approved by bulk operation"

    def mutation(self) -> Dict[str, Any]:
        return {'approval_status': ApprovalStatus.APPROVED, 'approval_reason': self.reason}


class RejectionDetails(_DetailsBase):
    type: Literal['REJECT'] = 'REJECT'
    reason: str = "Rejected by bulk operation"
    category: RejectionCategory = RejectionCategory.OTHER
    appeal_allowed: bool = True
    resubmission_allowed: bool = True
    improvement_suggestions: List[str] = Field(default_factory=list)

    def mutation(self) -> Dict[str, Any]:
        return {
            'approval_status': ApprovalStatus.REJECTED,
            'rejection_reason': self.reason,
            'rejection_category': self.category,
            'appeal_allowed': self.appeal_allowed,
        }


class ConditionalApprovalDetails(_DetailsBase):
    type: Literal['CONDITIONAL_APPROVE'] = 'CONDITIONAL_APPROVE'
    reason: str = "Conditionally approved by bulk operation"
    conditions: List[str] = Field(..., min_length=1)

    def mutation(self) -> Dict[str, Any]:
        return {
            'approval_status': ApprovalStatus.APPROVED,
            'approval_reason': self.reason,
            'approval_conditions': list(self.conditions),
        }


class StagedApprovalDetails(_DetailsBase):
    type: Literal['STAGED_APPROVAL'] = 'STAGED_APPROVAL'
    reason: str = "Approved through staged workflow"

    def mutation(self) -> Dict[str, Any]:
        return {'approval_status': ApprovalStatus.APPROVED, 'approval_reason': self.reason}


BULK_UPDATABLE_FIELDS = frozenset({'category', 'suburb', 'quality_score', 'approval_status'})


class BulkUpdateDetails(_DetailsBase):
    type: Literal['BULK_UPDATE'] = 'BULK_UPDATE'
    updates: Dict[str, Any] = Field(..., min_length=1)

    @field_validator('updates')
    @classmethod
    def _whitelisted(cls, updates: Dict[str, Any]) -> Dict[str, Any]:
        normalized = {}
        for key, value in updates.items():
            snake = _to_snake(key)
            if snake not in BULK_UPDATABLE_FIELDS:
                raise ValueError(f"field {key!r} cannot be bulk updated")
            normalized[snake] = value
        if 'quality_score' in normalized:
            score = normalized['quality_score']
            if not isinstance(score, int) or isinstance(score, bool) or not 0 <= score <= 100:
                raise ValueError("qualityScore must be an integer between 0 and 100")
        if 'approval_status' in normalized:
            normalized['approval_status'] = ApprovalStatus(normalized['approval_status'])
        for key in ('category', 'suburb'):
            if key in normalized and not isinstance(normalized[key], str):
                raise ValueError(f"{key} must be a string")
        return normalized

    def mutation(self) -> Dict[str, Any]:
        return dict(self.updates)


OperationDetails = Annotated[
    Union[ApprovalDetails, RejectionDetails, ConditionalApprovalDetails,
          StagedApprovalDetails, BulkUpdateDetails],
    Field(discriminator='type'),
]

_DEFAULT_DETAILS = {
    OperationType.APPROVE: ApprovalDetails,
    OperationType.REJECT: RejectionDetails,
    OperationType.STAGED_APPROVAL: StagedApprovalDetails,
}


# ============================================================================
# AUDIT, SNAPSHOTS AND OUTCOMES
# ============================================================================

class AuditEntry(BaseDirectoryModel):
    """Append-only audit record. Never updated or deleted once written."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("audit"))
    timestamp: datetime = Field(default_factory=utcnow)
    actor: str
    action: str
    target_id: Optional[str] = None
    operation_id: Optional[str] = None
    before: Dict[str, Any] = Field(default_factory=dict)
    after: Dict[str, Any] = Field(default_factory=dict)
    details: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Snapshot(BaseDirectoryModel):
    """
    Point-in-time capture of pre-operation field values, keyed by business id.

    Owned by the operation that created it and used only for rollback.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("snap"))
    operation_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    fields: List[str]
    records: Dict[str, Dict[str, Any]]


class RollbackInfo(BaseDirectoryModel):
    available: bool = False
    snapshot_id: Optional[str] = None
    captured_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None
    rollback_steps: List[str] = Field(default_factory=list)


class RecordOutcome(BaseDirectoryModel):
    business_id: str
    business_name: Optional[str] = None
    status: OutcomeStatus
    message: str
    stage: Optional[str] = None
    batch_number: Optional[int] = None
    previous_state: Dict[str, Any] = Field(default_factory=dict)
    new_state: Dict[str, Any] = Field(default_factory=dict)


class OperationCounters(BaseDirectoryModel):
    """
    Running totals for an operation.

    Mutated only through ``record``; totals never decrease and
    ``processed_count == success_count + failed_count + skipped_count``.
    """

    target_count: int = Field(default=0, ge=0)
    processed_count: int = Field(default=0, ge=0)
    success_count: int = Field(default=0, ge=0)
    failed_count: int = Field(default=0, ge=0)
    skipped_count: int = Field(default=0, ge=0)

    def record(self, success: int = 0, failed: int = 0, skipped: int = 0) -> None:
        if min(success, failed, skipped) < 0:
            raise ValueError("counter increments must be non-negative")
        self.success_count += success
        self.failed_count += failed
        self.skipped_count += skipped
        self.processed_count += success + failed + skipped


class ExecutionCursor(BaseDirectoryModel):
    """Resume position of a paused or interrupted operation run."""

    phase: Literal['workflow', 'batches', 'done'] = 'workflow'
    next_stage_index: int = 0
    eligible_ids: Optional[List[str]] = None
    pending_ids: List[str] = Field(default_factory=list)
    next_batch_number: int = 1
    confirmed_checkpoints: List[str] = Field(default_factory=list)


class BulkOperationSpec(BaseDirectoryModel):
    """
    Request to create a bulk operation.

    Exactly one of ``target_ids`` or ``criteria`` selects the targets, which are
    resolved and frozen when the operation is created.
    """

    name: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    type: OperationType
    target_ids: Optional[List[str]] = None
    criteria: List[FilterCriterion] = Field(default_factory=list)
    workflow: Optional[List[WorkflowStage]] = None
    safety_checks: Optional[SafetyChecks] = None
    details: Optional[OperationDetails] = None
    scheduled_for: Optional[datetime] = None

    @model_validator(mode='after')
    def _consistent(self) -> 'BulkOperationSpec':
        if self.target_ids is None and not self.criteria:
            raise ValueError("either targetIds or criteria must be provided")
        if self.target_ids is not None and self.criteria:
            raise ValueError("targetIds and criteria are mutually exclusive")
        if self.target_ids is not None:
            if not self.target_ids:
                raise ValueError("targetIds must not be empty")
            if len(set(self.target_ids)) != len(self.target_ids):
                raise ValueError("targetIds must be distinct")

        if self.details is not None and self.details.type != self.type.value:
            raise ValueError(
                f"details of type {self.details.type} do not match operation type {self.type.value}"
            )
        if self.details is None and self.type not in _DEFAULT_DETAILS:
            raise ValueError(f"{self.type.value} operations require details")

        if self.type == OperationType.STAGED_APPROVAL:
            staged = [
                stage for stage in (self.workflow or [])
                if stage.type != StageType.VALIDATION.value
            ]
            if not staged:
                raise ValueError("STAGED_APPROVAL operations require at least one non-validation stage")
        return self

    def resolved_details(self):
        """The supplied details, or the type's defaults when none were given."""
        if self.details is not None:
            return self.details
        return _DEFAULT_DETAILS[self.type]()


class BulkOperation(BaseDirectoryModel):
    """
    Bulk operation aggregate.

    Owns its workflow stages and snapshot; deleting the operation deletes both.
    ``status`` is changed only by the operation controller's transition table.
    """

    id: str = Field(default_factory=lambda: new_id("op"))
    name: str
    description: str = ""
    type: OperationType
    status: OperationStatus = OperationStatus.DRAFT
    created_by: str
    created_at: datetime = Field(default_factory=utcnow)
    scheduled_for: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    criteria: List[FilterCriterion] = Field(default_factory=list)
    target_ids: List[str] = Field(default_factory=list)
    counters: OperationCounters = Field(default_factory=OperationCounters)
    workflow: List[WorkflowStage] = Field(default_factory=default_workflow)
    safety_checks: SafetyChecks = Field(default_factory=SafetyChecks)
    details: OperationDetails

    audit_log: List[AuditEntry] = Field(default_factory=list)
    rollback_info: Optional[RollbackInfo] = None
    cursor: ExecutionCursor = Field(default_factory=ExecutionCursor)
    results: List[RecordOutcome] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    def summary(self, audit_tail: int = 10) -> Dict[str, Any]:
        """API view: status, counters and the tail of the audit log."""
        payload = self.to_api_dict()
        payload.pop('results', None)
        payload['auditLog'] = payload['auditLog'][-audit_tail:] if audit_tail else []
        return payload


class ExecutionResult(BaseDirectoryModel):
    success: bool
    operation_id: str
    status: OperationStatus
    processed_count: int
    success_count: int
    failed_count: int
    skipped_count: int
    results: List[RecordOutcome]
    snapshot_id: Optional[str] = None
    rollback_available: bool = False
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class RollbackResult(BaseDirectoryModel):
    success: bool
    operation_id: str
    snapshot_id: str
    rollback_count: int
    success_count: int
    failed_count: int
    results: List[RecordOutcome]
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    rollback_timestamp: datetime = Field(default_factory=utcnow)


class RollbackStatus(BaseDirectoryModel):
    operation_id: str
    available: bool
    reason: Optional[str] = None
    snapshot_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None
