"""
Unit tests for the data models: operation specs, criteria, counters and the
engine's exception taxonomy.
"""

from datetime import datetime, timezone

import pytest

from directory_ops.business.exceptions import (
    InvalidStateError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from directory_ops.business.models import (
    ApprovalDetails,
    ApprovalStatus,
    BulkOperation,
    BulkOperationSpec,
    BulkUpdateDetails,
    BusinessRecord,
    FilterCriterion,
    OperationCounters,
    OperationType,
    RejectionDetails,
    SafetyChecks,
)
from tests.fixtures import ADMIN_ACTOR
from tests.fixtures.factory_fixtures import BusinessRecordFactory


# ============================================================================
# BUSINESS RECORDS
# ============================================================================

class TestBusinessRecord:

    def test_camel_case_serialization(self):
        record = BusinessRecordFactory(duplicate_of_id="biz-primary")

        payload = record.to_api_dict()

        assert payload['duplicateOfId'] == "biz-primary"
        assert payload['approvalStatus'] == "PENDING"
        assert 'duplicate_of_id' not in payload

    def test_parse_accepts_camel_case(self):
        record = BusinessRecord.parse({'id': "biz-1", 'name': "Corner Cafe", 'qualityScore': 80})

        assert record.quality_score == 80

    def test_self_duplicate_is_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            BusinessRecord(id="biz-1", name="Corner Cafe", duplicate_of_id="biz-1")
        assert exc_info.value.error_code == "MODEL_VALIDATION_FAILED"

    def test_unknown_fields_are_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            BusinessRecord.parse({'id': "biz-1", 'name': "Corner Cafe", 'rating': 5})
        assert exc_info.value.validation_errors[0]['field'] == "rating"

    def test_field_values_unwrap_enums(self):
        record = BusinessRecordFactory(approval_status=ApprovalStatus.APPROVED, category="Cafe")

        assert record.field_values(['approval_status', 'category']) == {
            'approval_status': "APPROVED", 'category': "Cafe",
        }


# ============================================================================
# OPERATION SPECS
# ============================================================================

def spec(**overrides):
    data = {'name': "Bulk approve", 'type': "APPROVE", 'targetIds': ["biz-1", "biz-2"]}
    data.update(overrides)
    return data


class TestBulkOperationSpec:
    """Structural rules enforced when a spec is parsed."""

    def test_defaults_details_for_approve(self):
        parsed = BulkOperationSpec.parse(spec())

        assert parsed.details is None
        assert isinstance(parsed.resolved_details(), ApprovalDetails)

    def test_reject_details_are_discriminated_by_type(self):
        parsed = BulkOperationSpec.parse(spec(type="REJECT", details={
            'type': "REJECT", 'reason': "Incomplete listing", 'category': "INCOMPLETE",
            'appealAllowed': False,
        }))

        assert isinstance(parsed.details, RejectionDetails)
        assert parsed.details.mutation()['appeal_allowed'] is False

    @pytest.mark.parametrize("overrides, message", [
        ({'targetIds': None}, "either targetIds or criteria"),
        ({'criteria': [{'field': "category", 'operator': "EQUALS", 'value': "Cafe"}]}, "mutually exclusive"),
        ({'targetIds': []}, "must not be empty"),
        ({'targetIds': ["biz-1", "biz-1"]}, "must be distinct"),
        ({'details': {'type': "REJECT"}}, "do not match"),
        ({'type': "CONDITIONAL_APPROVE"}, "require details"),
        ({'type': "STAGED_APPROVAL",
          'workflow': [{'type': "VALIDATION", 'name': "V", 'validationRules': ["basic_validation"]}]},
         "non-validation stage"),
    ])
    def test_inconsistent_specs_are_rejected(self, overrides, message):
        data = spec(**overrides)
        if data['targetIds'] is None:
            del data['targetIds']

        with pytest.raises(ValidationError) as exc_info:
            BulkOperationSpec.parse(data)

        assert any(message in error['message'] for error in exc_info.value.validation_errors)

    def test_unknown_validation_rule_is_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            BulkOperationSpec.parse(spec(workflow=[
                {'type': "VALIDATION", 'name': "V", 'validationRules': ["basic_validation", "vibes_check"]},
            ]))
        assert "vibes_check" in exc_info.value.validation_errors[0]['message']

    def test_unknown_stage_type_is_rejected(self):
        with pytest.raises(ValidationError):
            BulkOperationSpec.parse(spec(workflow=[{'type': "TELEPORT", 'name': "T"}]))

    def test_safety_checks_bounds(self):
        with pytest.raises(ValidationError):
            SafetyChecks.parse({'maxRecords': 0})
        assert SafetyChecks.parse({'checkpointFrequency': 10}).checkpoint_frequency == 10


class TestBulkUpdateDetails:

    def test_camel_case_fields_are_normalized(self):
        details = BulkUpdateDetails(updates={'qualityScore': 60, 'approvalStatus': "APPROVED"})

        assert details.mutation() == {'quality_score': 60, 'approval_status': ApprovalStatus.APPROVED}
        assert details.mutated_fields() == ['approval_status', 'quality_score', 'reviewed_at', 'reviewed_by']

    @pytest.mark.parametrize("updates", [
        {'name': "Renamed"},
        {'duplicateOfId': "biz-1"},
        {'qualityScore': 101},
        {'qualityScore': True},
        {'approvalStatus': "ARCHIVED"},
        {'category': 5},
        {},
    ])
    def test_invalid_updates_are_rejected(self, updates):
        with pytest.raises(ValidationError):
            BulkUpdateDetails(updates=updates)


# ============================================================================
# CRITERIA
# ============================================================================

class TestFilterCriterion:

    @pytest.mark.parametrize("criterion, expected", [
        ({'field': "category", 'operator': "EQUALS", 'value': "Cafe"}, True),
        ({'field': "name", 'operator': "CONTAINS", 'value': "corner"}, True),
        ({'field': "qualityScore", 'operator': "GREATER_THAN", 'value': 70}, True),
        ({'field': "qualityScore", 'operator': "LESS_THAN", 'value': 70}, False),
        ({'field': "suburb", 'operator': "IN", 'value': ["Newtown", "Glebe"]}, True),
        ({'field': "suburb", 'operator': "NOT_IN", 'value': ["Newtown"]}, False),
        ({'field': "qualityScore", 'operator': "BETWEEN", 'value': [70, 80]}, True),
        ({'field': "approvalStatus", 'operator': "EQUALS", 'value': "PENDING"}, True),
        ({'field': "createdAt", 'operator': "GREATER_THAN", 'value': "2024-01-01T00:00:00Z"}, True),
        ({'field': "abnStatus", 'operator': "IN", 'value': ["VERIFIED"]}, False),
    ])
    def test_matches(self, criterion, expected):
        record = BusinessRecordFactory(
            name="Corner Cafe", category="Cafe", suburb="Newtown", quality_score=75,
            created_at=datetime(2025, 3, 1, tzinfo=timezone.utc),
        )

        assert FilterCriterion.parse(criterion).matches(record) is expected

    def test_missing_values_never_compare(self):
        record = BusinessRecordFactory(category=None)
        criterion = FilterCriterion.parse({'field': "category", 'operator': "CONTAINS", 'value': "Cafe"})

        assert criterion.matches(record) is False

    @pytest.mark.parametrize("criterion", [
        {'field': "phone", 'operator': "EQUALS", 'value': "0400000000"},
        {'field': "suburb", 'operator': "IN", 'value': "Newtown"},
        {'field': "qualityScore", 'operator': "BETWEEN", 'value': [1]},
        {'field': "name", 'operator': "CONTAINS", 'value': 5},
        {'field': "name", 'operator': "LIKE", 'value': "Cafe"},
    ])
    def test_invalid_criteria_are_rejected(self, criterion):
        with pytest.raises(ValidationError):
            FilterCriterion.parse(criterion)


# ============================================================================
# OPERATIONS
# ============================================================================

class TestOperationCounters:

    def test_record_keeps_processed_total(self):
        counters = OperationCounters(target_count=10)

        counters.record(success=3, failed=1)
        counters.record(skipped=2)

        assert counters.processed_count == 6
        assert counters.processed_count == (
            counters.success_count + counters.failed_count + counters.skipped_count
        )

    def test_negative_increments_are_rejected(self):
        counters = OperationCounters()

        with pytest.raises(ValueError):
            counters.record(success=-1)
        assert counters.processed_count == 0


class TestBulkOperation:

    def test_summary_trims_audit_log_and_results(self):
        operation = BulkOperation(
            name="Approve", type=OperationType.APPROVE, created_by=ADMIN_ACTOR,
            details={'type': "APPROVE"},
        )
        operation.audit_log = [
            {'actor': ADMIN_ACTOR, 'action': f"STEP_{i}"} for i in range(15)
        ]

        summary = operation.summary()

        assert 'results' not in summary
        assert [entry['action'] for entry in summary['auditLog']] == [f"STEP_{i}" for i in range(5, 15)]
        assert operation.summary(audit_tail=0)['auditLog'] == []
        assert summary['safetyChecks']['maxRecords'] == 1000

    def test_default_workflow_is_basic_validation(self):
        operation = BulkOperation(
            name="Approve", type=OperationType.APPROVE, created_by=ADMIN_ACTOR,
            details={'type': "APPROVE"},
        )

        assert [stage.type for stage in operation.workflow] == ["VALIDATION"]
        assert operation.workflow[0].validation_rules == ['basic_validation']


# ============================================================================
# EXCEPTIONS
# ============================================================================

class TestExceptions:

    @pytest.mark.parametrize("error, status", [
        (NotFoundError(message="Business biz-1 not found"), 404),
        (ValidationError(message="bad input"), 400),
        (InvalidStateError(message="bad transition"), 409),
        (StorageError(message="down"), 503),
    ])
    def test_http_status_codes(self, error, status):
        assert error.http_status_code == status

    def test_to_dict_shape(self):
        error = InvalidStateError(message="Cannot START an operation in status DRAFT",
                                  current_state="DRAFT", attempted_action="START")

        body = error.to_dict()['error']

        assert body['code'] == "INVALID_STATE_TRANSITION"
        assert body['context'] == {'current_state': "DRAFT", 'attempted_action': "START"}
        assert body['request_id'] is None

    def test_sensitive_values_are_redacted(self):
        error = StorageError(message="connect failed for mongodb://user:pw@db:27017/x",
                             context={'mongo_uri': "mongodb://user:pw@db"})

        assert "user:pw" not in error.message
        assert error.context['mongo_uri'] == "[REDACTED]"
