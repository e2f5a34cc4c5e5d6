"""
Unit tests for the audit trail and its fallback path.
"""

import threading

import pytest
from pydantic import ValidationError as PydanticValidationError

from directory_ops.auth.audit import AuditSink, AuditTrail, InMemoryAuditSink, StoreAuditSink
from directory_ops.business.models import AuditEntry
from tests.fixtures import ADMIN_ACTOR


class RejectingSink(AuditSink):
    def append(self, entry):
        return False


def failures(metrics):
    return metrics.registry.get_sample_value('directory_ops_audit_sink_failures_total')


class TestAuditTrail:

    def test_log_records_synchronously(self, audit, audit_sink):
        entry = audit.log(ADMIN_ACTOR, "BUSINESS_MERGE", target_id="biz-1",
                          after={'duplicates': ["biz-2"]})

        assert audit_sink.entries == [entry]
        assert entry.before == {}
        assert entry.timestamp is not None

    def test_sink_exception_goes_to_fallback(self, audit, audit_sink, metrics, mocker):
        mocker.patch.object(audit_sink, 'append', side_effect=ConnectionError("sink down"))
        fallback = mocker.patch.object(audit, 'fallback_logger')

        accepted = audit.record(AuditEntry(actor=ADMIN_ACTOR, action="DUPLICATE_UNMARKED"))

        assert accepted is False
        fallback.error.assert_called_once()
        kwargs = fallback.error.call_args.kwargs
        assert kwargs['reason'] == "ConnectionError: sink down"
        assert kwargs['audit_entry']['action'] == "DUPLICATE_UNMARKED"
        assert failures(metrics) == 1.0

    def test_rejected_entry_goes_to_fallback(self, metrics, mocker):
        trail = AuditTrail(RejectingSink(), metrics=metrics)
        fallback = mocker.patch.object(trail, 'fallback_logger')
        try:
            assert trail.record(AuditEntry(actor=ADMIN_ACTOR, action="OPERATION_CREATED")) is False
        finally:
            trail.shutdown()

        assert fallback.error.call_args.kwargs['reason'] == "sink rejected entry"
        assert failures(metrics) == 1.0

    def test_async_entries_keep_submission_order(self, audit, audit_sink):
        entries = [AuditEntry(actor=ADMIN_ACTOR, action="BULK_RECORD_UPDATED", target_id=f"biz-{i}")
                   for i in range(50)]

        for entry in entries:
            audit.record_async(entry)

        assert audit.flush(timeout=5)
        assert [e.target_id for e in audit_sink.entries] == [e.target_id for e in entries]

    def test_flush_reports_timeout(self, audit, audit_sink, mocker):
        release = threading.Event()
        mocker.patch.object(audit_sink, 'append', side_effect=lambda entry: release.wait(5))

        audit.record_async(AuditEntry(actor=ADMIN_ACTOR, action="BULK_RECORD_UPDATED"))
        try:
            assert audit.flush(timeout=0.05) is False
        finally:
            release.set()
        assert audit.flush(timeout=5) is True

    def test_flush_without_pending_entries(self, audit):
        assert audit.flush(timeout=0) is True


class TestSinks:

    def test_store_sink_appends_to_store(self, store):
        sink = StoreAuditSink(store)
        entry = AuditEntry(actor=ADMIN_ACTOR, action="DUPLICATE_MARKED", target_id="biz-2")

        assert sink.append(entry)
        assert store.list_audit(target_id="biz-2") == [entry]

    def test_in_memory_sink_lists_actions(self):
        sink = InMemoryAuditSink()
        sink.append(AuditEntry(actor=ADMIN_ACTOR, action="A"))
        sink.append(AuditEntry(actor=ADMIN_ACTOR, action="B"))

        assert sink.actions() == ["A", "B"]

    def test_entries_are_immutable(self):
        entry = AuditEntry(actor=ADMIN_ACTOR, action="BUSINESS_MERGE")

        with pytest.raises(PydanticValidationError):
            entry.action = "TAMPERED"
