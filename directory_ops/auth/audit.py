"""
Audit Trail

Append-only audit recording for merges, unmarks, operation transitions and
per-record bulk outcomes. The audit sink is an external collaborator whose
failures must never block or roll back a business mutation: when the sink
raises or refuses an entry, the full entry is written to the
``directory_ops.audit.fallback`` logger instead.

Per-record batch entries are recorded asynchronously on a single worker
thread, which keeps them in submission order without making batch completion
wait on the sink.
"""

import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Dict, List, Optional

import structlog

from directory_ops.business.models import AuditEntry
from directory_ops.data.store import RecordStore
from directory_ops.monitoring.logging import get_audit_fallback_logger

logger = structlog.get_logger(__name__)


class AuditSink(ABC):
    """Audit collaborator. ``append`` returns True when the entry was accepted."""

    @abstractmethod
    def append(self, entry: AuditEntry) -> bool:
        ...


class StoreAuditSink(AuditSink):
    """Writes audit entries to the record store's audit collection."""

    def __init__(self, store: RecordStore):
        self.store = store

    def append(self, entry: AuditEntry) -> bool:
        self.store.append_audit(entry)
        return True


class InMemoryAuditSink(AuditSink):
    def __init__(self):
        self._lock = threading.Lock()
        self.entries: List[AuditEntry] = []

    def append(self, entry: AuditEntry) -> bool:
        with self._lock:
            self.entries.append(entry)
        return True

    def actions(self) -> List[str]:
        with self._lock:
            return [entry.action for entry in self.entries]


class AuditTrail:
    """
    Non-blocking front for an ``AuditSink``.

    Example:
        trail = AuditTrail(StoreAuditSink(store))
        trail.log("admin-1", "BUSINESS_MERGE", target_id="biz-1")
        trail.record_async(entry)   # returns immediately
        trail.flush()
    """

    def __init__(self, sink: AuditSink, metrics=None, flush_timeout: float = 5.0):
        self.sink = sink
        self.metrics = metrics
        self.flush_timeout = flush_timeout
        self.fallback_logger = get_audit_fallback_logger()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit")
        self._pending: List[Future] = []
        self._lock = threading.Lock()

    def record(self, entry: AuditEntry) -> bool:
        """
        Append an entry synchronously.

        Returns:
            True when the sink accepted the entry, False when it was written
            to the fallback logger
        """
        try:
            accepted = self.sink.append(entry)
        except Exception as e:
            self._fallback(entry, reason=f"{type(e).__name__}: {e}")
            return False
        if not accepted:
            self._fallback(entry, reason="sink rejected entry")
            return False
        return True

    def record_async(self, entry: AuditEntry) -> Future:
        """Queue an entry for the audit worker and return immediately."""
        future = self._executor.submit(self.record, entry)
        with self._lock:
            self._pending = [pending for pending in self._pending if not pending.done()]
            self._pending.append(future)
        return future

    def log(
        self,
        actor: str,
        action: str,
        target_id: Optional[str] = None,
        operation_id: Optional[str] = None,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        details: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """Build an entry and record it synchronously."""
        entry = AuditEntry(
            actor=actor,
            action=action,
            target_id=target_id,
            operation_id=operation_id,
            before=before or {},
            after=after or {},
            details=details,
            metadata=metadata or {},
        )
        self.record(entry)
        return entry

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for queued entries.

        Returns:
            True when every queued entry was handled within the timeout
        """
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=self.flush_timeout if timeout is None else timeout)
        if not_done:
            logger.warning("Audit flush timed out", pending=len(not_done))
        return not not_done

    def shutdown(self) -> None:
        self.flush()
        self._executor.shutdown(wait=True)

    def _fallback(self, entry: AuditEntry, reason: str) -> None:
        if self.metrics is not None:
            self.metrics.record_audit_failure()
        self.fallback_logger.error(
            "Audit sink unavailable, entry written to fallback log",
            reason=reason,
            audit_entry=entry.to_api_dict(),
        )
