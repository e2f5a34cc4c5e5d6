"""
Workflow Stage Executor

Runs an operation's ordered workflow over its eligible records, stage by
stage. A record that fails or is skipped by a stage drops out and is never
seen by later stages. Records surviving every stage are handed to the batch
processor for the actual mutation.

Stage semantics:
    VALIDATION     registered rules; any failing rule FAILs the record
    AUTO_APPROVE   conditions; any unmet condition SKIPs the record
    CONDITIONAL    same as AUTO_APPROVE
    MANUAL_REVIEW  delegated to an ``ApprovalChannel``; a decline SKIPs
    CHECKPOINT     never changes eligibility; may suspend the run once

Because stages run stage-major, a confirming CHECKPOINT suspends after every
earlier stage has seen every record, and the run resumes at the next stage.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import structlog

from directory_ops.business.models import (
    AbnStatus,
    BulkOperation,
    BusinessRecord,
    CheckpointStage,
    OutcomeStatus,
    RecordOutcome,
    StageConditions,
    StageStatus,
    StageType,
    utcnow,
)
from directory_ops.business.rules import VALIDATION_RULES

logger = structlog.get_logger(__name__)

DEFAULT_MANUAL_REVIEW_THRESHOLD = 70


@dataclass
class ReviewDecision:
    approved: bool
    reason: str = ""


class ApprovalChannel(ABC):
    """Capability answering manual review requests for a record."""

    @abstractmethod
    def request_review(self, record: BusinessRecord) -> ReviewDecision:
        ...


class QualityScoreApprovalChannel(ApprovalChannel):
    """
    Deterministic stand-in for a human reviewer.

    Approves records whose quality score reaches the threshold and declines
    the rest for manual follow-up.
    """

    def __init__(self, threshold: int = DEFAULT_MANUAL_REVIEW_THRESHOLD):
        self.threshold = threshold

    def request_review(self, record: BusinessRecord) -> ReviewDecision:
        if record.quality_score >= self.threshold:
            return ReviewDecision(approved=True, reason="Quality score meets review threshold")
        return ReviewDecision(
            approved=False,
            reason="Requires manual review due to low quality score",
        )


@dataclass
class StageVerdict:
    status: Optional[OutcomeStatus] = None
    message: str = ""

    @property
    def passed(self) -> bool:
        return self.status is None


@dataclass
class WorkflowRun:
    """Result of running (part of) a workflow."""

    eligible_ids: List[str]
    outcomes: List[RecordOutcome] = field(default_factory=list)
    next_stage_index: int = 0
    suspended_at: Optional[CheckpointStage] = None

    @property
    def suspended(self) -> bool:
        return self.suspended_at is not None


def unmet_conditions(conditions: StageConditions, record: BusinessRecord) -> List[str]:
    unmet = []
    if conditions.quality_score_min is not None and record.quality_score < conditions.quality_score_min:
        unmet.append(
            f"quality score {record.quality_score} below minimum {conditions.quality_score_min}"
        )
    if conditions.abn_required and record.abn_status != AbnStatus.VERIFIED:
        unmet.append("ABN not verified")
    if conditions.ownership_verified and not record.ownership_verified:
        unmet.append("ownership not verified")
    return unmet


class WorkflowStageExecutor:
    """Executes workflow stages for a bulk operation."""

    def __init__(self, approval_channel: Optional[ApprovalChannel] = None):
        self.approval_channel = approval_channel or QualityScoreApprovalChannel()

    def run(
        self,
        operation: BulkOperation,
        records: Dict[str, BusinessRecord],
        eligible_ids: List[str],
        start_index: int = 0,
    ) -> WorkflowRun:
        """
        Run stages from ``start_index`` over ``eligible_ids``.

        Stage status and results on ``operation.workflow`` are updated in
        place, as is ``operation.cursor.confirmed_checkpoints``.

        Args:
            operation: Operation whose workflow is executed
            records: Current records keyed by id
            eligible_ids: Records still eligible, in target order
            start_index: First stage to run

        Returns:
            WorkflowRun with surviving ids, dropped-record outcomes and
            the checkpoint the run suspended at, if any
        """
        run = WorkflowRun(eligible_ids=list(eligible_ids), next_stage_index=start_index)

        for index in range(start_index, len(operation.workflow)):
            stage = operation.workflow[index]
            run.next_stage_index = index + 1

            if stage.type == StageType.CHECKPOINT.value:
                if self._checkpoint(operation, stage):
                    run.suspended_at = stage
                    return run
                continue

            stage.status = StageStatus.RUNNING
            survivors = []
            for business_id in run.eligible_ids:
                record = records[business_id]
                verdict = self.evaluate(stage, record)
                if verdict.passed:
                    survivors.append(business_id)
                    stage.results.success += 1
                    continue
                if verdict.status == OutcomeStatus.FAILED:
                    stage.results.failed += 1
                else:
                    stage.results.skipped += 1
                run.outcomes.append(RecordOutcome(
                    business_id=business_id,
                    business_name=record.name,
                    status=verdict.status,
                    message=verdict.message,
                    stage=stage.name,
                ))

            dropped = len(run.eligible_ids) - len(survivors)
            if dropped:
                stage.results.messages.append(
                    f"{dropped} of {len(run.eligible_ids)} businesses did not pass {stage.name}"
                )
            stage.status = StageStatus.COMPLETED
            stage.completed_at = utcnow()
            run.eligible_ids = survivors

            logger.info("Workflow stage completed",
                        operation_id=operation.id,
                        stage=stage.name,
                        stage_type=stage.type,
                        passed=len(survivors),
                        dropped=dropped)

        return run

    def evaluate(self, stage, record: BusinessRecord) -> StageVerdict:
        """Evaluate one non-checkpoint stage for one record."""
        if stage.type == StageType.VALIDATION.value:
            failed = [name for name in stage.validation_rules if not VALIDATION_RULES[name](record)]
            if failed:
                return StageVerdict(OutcomeStatus.FAILED, f"Validation failed: {', '.join(failed)}")
            return StageVerdict()

        if stage.type in (StageType.AUTO_APPROVE.value, StageType.CONDITIONAL.value):
            unmet = unmet_conditions(stage.conditions, record)
            if unmet:
                return StageVerdict(OutcomeStatus.SKIPPED, f"Conditions not met: {'; '.join(unmet)}")
            return StageVerdict()

        if stage.type == StageType.MANUAL_REVIEW.value:
            if not stage.requires_manual_approval:
                return StageVerdict()
            decision = self.approval_channel.request_review(record)
            if decision.approved:
                return StageVerdict()
            return StageVerdict(OutcomeStatus.SKIPPED, decision.reason or "Declined in manual review")

        return StageVerdict()

    def _checkpoint(self, operation: BulkOperation, stage: CheckpointStage) -> bool:
        """Record a checkpoint; True when the run must suspend here."""
        stage.results.messages.append(stage.checkpoint_message)
        stage.status = StageStatus.COMPLETED
        stage.completed_at = utcnow()

        confirmed = operation.cursor.confirmed_checkpoints
        if stage.require_confirmation and stage.id not in confirmed:
            operation.cursor.confirmed_checkpoints = confirmed + [stage.id]
            logger.info("Workflow checkpoint requires confirmation",
                        operation_id=operation.id,
                        stage=stage.name)
            return True
        return False
