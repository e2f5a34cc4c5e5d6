"""
Unit tests for the administration service facade: admin checks, duplicate
detection payloads, operation listing and service wiring.
"""

import pytest

from directory_ops.business.exceptions import AuthorizationError, ValidationError
from directory_ops.business.models import ApprovalStatus, OperationStatus
from directory_ops.business.services import create_admin_service
from directory_ops.config.settings import TestingConfig
from directory_ops.data.store import InMemoryRecordStore
from tests.fixtures import ADMIN_ACTOR
from tests.fixtures.factory_fixtures import BusinessRecordFactory


def approve_spec(business_ids, name="Approve listings", operation_type="APPROVE"):
    spec = {'name': name, 'type': operation_type, 'targetIds': list(business_ids)}
    if operation_type == "REJECT":
        spec['details'] = {'type': "REJECT", 'reason': "Spam"}
    return spec


# ============================================================================
# AUTHORIZATION
# ============================================================================

class TestAdminChecks:
    """Mutating entry points refuse non-admin actors before touching records."""

    @pytest.mark.parametrize("call", [
        lambda service, ids: service.find_duplicates("visitor", ids[0]),
        lambda service, ids: service.merge_businesses("visitor", ids[0], [ids[1]]),
        lambda service, ids: service.mark_as_duplicate("visitor", ids[0], [ids[1]]),
        lambda service, ids: service.unmark_duplicate("visitor", ids[1]),
        lambda service, ids: service.scan_duplicates("visitor", auto_mark=True),
        lambda service, ids: service.create_bulk_operation("visitor", approve_spec(ids)),
    ])
    def test_non_admin_is_rejected_without_mutation(self, service, store, add_businesses, call):
        ids = [record.id for record in add_businesses(2)]
        before = store.dump()

        with pytest.raises(AuthorizationError) as exc_info:
            call(service, ids)

        assert exc_info.value.http_status_code == 403
        assert store.dump() == before

    @pytest.mark.parametrize("actor", [None, ""])
    def test_missing_actor_is_rejected(self, service, add_business, actor):
        with pytest.raises(AuthorizationError):
            service.merge_businesses(actor, add_business().id, ["biz-x"])

    def test_operation_lifecycle_requires_admin(self, service, add_businesses):
        operation = service.create_bulk_operation(ADMIN_ACTOR, approve_spec([r.id for r in add_businesses(2)]))

        for call in (
            lambda: service.transition_operation("visitor", operation.id, "READY"),
            lambda: service.mark_operation_ready("visitor", operation.id),
            lambda: service.rollback_operation("visitor", operation.id),
            lambda: service.delete_operation("visitor", operation.id),
        ):
            with pytest.raises(AuthorizationError):
                call()
        assert service.get_operation(operation.id).status == OperationStatus.DRAFT

    def test_read_only_entry_points_need_no_admin(self, service, add_businesses):
        operation = service.create_bulk_operation(ADMIN_ACTOR, approve_spec([r.id for r in add_businesses(1)]))

        assert service.get_operation(operation.id).id == operation.id
        assert service.list_operations()['pagination']['total'] == 1
        assert service.get_rollback_status(operation.id).available is False


# ============================================================================
# DUPLICATES
# ============================================================================

class TestFindDuplicates:

    def test_payload_is_camel_case_with_summary(self, service, add_business, audit_sink, metrics):
        target = add_business(phone="0298765432", email="hello@cornercafe.com.au")
        candidate = add_business(phone="(02) 9876 5432", email="HELLO@cornercafe.com.au")

        payload = service.find_duplicates(ADMIN_ACTOR, target.id)

        assert payload['targetId'] == target.id
        assert payload['mode'] == "strict"
        found = payload['candidates'][0]
        assert found['candidateId'] == candidate.id
        assert found['matchedFields'] == ["email", "phone"]
        assert found['confidenceScore'] == 50
        assert found['recommendation'] == "review"
        assert payload['summary']['totalFound'] == 1
        assert payload['summary']['mediumConfidence'] == 1
        assert audit_sink.actions() == ["DUPLICATE_DETECTION"]
        assert metrics.registry.get_sample_value(
            'directory_ops_duplicate_detections_total', {'mode': "strict"}
        ) == 1.0

    def test_invalid_mode(self, service, add_business):
        with pytest.raises(ValidationError) as exc_info:
            service.find_duplicates(ADMIN_ACTOR, add_business().id, mode="fuzzy")
        assert exc_info.value.error_code == "INVALID_MATCH_MODE"

    def test_mark_requires_business_ids(self, service, add_business):
        with pytest.raises(ValidationError) as exc_info:
            service.mark_as_duplicate(ADMIN_ACTOR, add_business().id, [])
        assert exc_info.value.error_code == "EMPTY_BUSINESS_LIST"


# ============================================================================
# OPERATION LISTING
# ============================================================================

class TestListOperations:

    @pytest.fixture
    def operations(self, service, add_businesses):
        created = []
        for index in range(5):
            ids = [record.id for record in add_businesses(2)]
            operation_type = "REJECT" if index % 2 else "APPROVE"
            created.append(service.create_bulk_operation(
                ADMIN_ACTOR, approve_spec(ids, name=f"Operation {index}", operation_type=operation_type),
            ))
        service.transition_operation(ADMIN_ACTOR, created[0].id, "CANCEL")
        return created

    def test_newest_first_with_pagination(self, service, operations):
        page = service.list_operations(limit=2, offset=1)

        assert [item['name'] for item in page['operations']] == ["Operation 3", "Operation 2"]
        assert page['pagination'] == {'total': 5, 'limit': 2, 'offset': 1, 'hasMore': True}
        assert all(item['auditLog'] == [] for item in page['operations'])

    def test_summary_covers_all_matches(self, service, operations):
        listing = service.list_operations(limit=1)

        summary = listing['summary']
        assert summary['total'] == 5
        assert summary['byStatus']['DRAFT'] == 4
        assert summary['byStatus']['CANCELLED'] == 1
        assert summary['totalProcessed'] == 0

    def test_filters(self, service, operations):
        assert service.list_operations(status="CANCELLED")['pagination']['total'] == 1
        assert service.list_operations(operation_type="REJECT")['pagination']['total'] == 2
        assert service.list_operations(created_by="someone-else")['pagination']['total'] == 0

    def test_page_size_is_capped(self, service, operations):
        assert service.list_operations(limit=1000)['pagination']['limit'] == 100

    @pytest.mark.parametrize("kwargs, code", [
        ({'status': "ARCHIVED"}, "INVALID_FILTER"),
        ({'operation_type': "DELETE"}, "INVALID_FILTER"),
        ({'limit': 0}, "INVALID_PAGINATION"),
        ({'offset': -1}, "INVALID_PAGINATION"),
    ])
    def test_invalid_arguments(self, service, kwargs, code):
        with pytest.raises(ValidationError) as exc_info:
            service.list_operations(**kwargs)
        assert exc_info.value.error_code == code


# ============================================================================
# WIRING
# ============================================================================

class TestCreateAdminService:

    def test_wires_from_configuration(self, metrics):
        store = InMemoryRecordStore()
        service = create_admin_service(TestingConfig, store=store, metrics=metrics)
        try:
            assert service.store is store
            assert service.authorizer.is_admin("admin-1")
            assert service.settings.batch_timeout_seconds == 5.0
            assert service.batches.timeout_seconds == 5.0
        finally:
            service.shutdown()

    def test_audit_entries_go_to_the_store(self, metrics):
        store = InMemoryRecordStore()
        service = create_admin_service(TestingConfig, store=store, metrics=metrics)
        try:
            primary = store.insert_business(BusinessRecordFactory(id="biz-a"))
            duplicate = store.insert_business(BusinessRecordFactory(id="biz-b"))
            service.merge_businesses("admin-1", primary.id, [duplicate.id])
        finally:
            service.shutdown()

        assert [entry.action for entry in store.list_audit(target_id="biz-a")] == ["BUSINESS_MERGE"]
        assert store.get_business("biz-b").approval_status == ApprovalStatus.REJECTED

    def test_shutdown_stops_batch_workers_and_audit(self, metrics, mocker):
        service = create_admin_service(TestingConfig, store=InMemoryRecordStore(), metrics=metrics)
        batches = mocker.spy(service.batches, 'shutdown')
        audit = mocker.spy(service.audit, 'shutdown')

        service.shutdown()

        batches.assert_called_once()
        audit.assert_called_once()
        with pytest.raises(RuntimeError):
            service.batches.apply_batch(1, ["biz-1"], {'category': "Bakery"})
