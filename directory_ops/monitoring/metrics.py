"""
Prometheus Metrics for the Directory Operations Engine

Counters and histograms for duplicate detection, merges, bulk operation
transitions, batch outcomes, snapshots and audit sink health. Each collector
owns its registry so several application instances (tests, workers) can
coexist in one process.
"""

from typing import Optional

from flask import Flask, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)


class DirectoryOpsMetrics:
    """
    Prometheus metrics collector for engine business events.

    Example:
        metrics = DirectoryOpsMetrics()
        metrics.record_merge("success", merged_count=2)
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._init_duplicate_metrics()
        self._init_operation_metrics()
        self._init_audit_metrics()

    def _init_duplicate_metrics(self):
        self.duplicate_detections_total = Counter(
            'directory_ops_duplicate_detections_total',
            'Duplicate candidate searches by matching mode',
            ['mode'],
            registry=self.registry,
        )
        self.duplicate_candidates_found = Histogram(
            'directory_ops_duplicate_candidates_found',
            'Number of candidates returned per duplicate search',
            ['mode'],
            buckets=[0, 1, 2, 5, 10, 25, 50, 100, float('inf')],
            registry=self.registry,
        )
        self.merges_total = Counter(
            'directory_ops_merges_total',
            'Merge attempts by outcome',
            ['outcome'],
            registry=self.registry,
        )
        self.records_merged_total = Counter(
            'directory_ops_records_merged_total',
            'Duplicate records folded into a primary record',
            registry=self.registry,
        )
        self.unmarks_total = Counter(
            'directory_ops_unmarks_total',
            'Unmark duplicate calls by outcome',
            ['outcome'],
            registry=self.registry,
        )

    def _init_operation_metrics(self):
        self.operation_transitions_total = Counter(
            'directory_ops_operation_transitions_total',
            'Bulk operation state transitions by action and result',
            ['action', 'result'],
            registry=self.registry,
        )
        self.batch_outcomes_total = Counter(
            'directory_ops_batch_outcomes_total',
            'Bulk operation batches by outcome',
            ['outcome'],
            registry=self.registry,
        )
        self.batch_duration_seconds = Histogram(
            'directory_ops_batch_duration_seconds',
            'Wall-clock duration of one atomic batch update',
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, float('inf')],
            registry=self.registry,
        )
        self.record_outcomes_total = Counter(
            'directory_ops_record_outcomes_total',
            'Per-record bulk operation outcomes',
            ['status'],
            registry=self.registry,
        )
        self.snapshots_total = Counter(
            'directory_ops_snapshots_total',
            'Snapshot captures and restores by outcome',
            ['kind', 'outcome'],
            registry=self.registry,
        )

    def _init_audit_metrics(self):
        self.audit_sink_failures_total = Counter(
            'directory_ops_audit_sink_failures_total',
            'Audit entries that fell back to local logging',
            registry=self.registry,
        )

    def record_detection(self, mode: str, candidate_count: int) -> None:
        self.duplicate_detections_total.labels(mode=mode).inc()
        self.duplicate_candidates_found.labels(mode=mode).observe(candidate_count)

    def record_merge(self, outcome: str, merged_count: int = 0) -> None:
        self.merges_total.labels(outcome=outcome).inc()
        if merged_count:
            self.records_merged_total.inc(merged_count)

    def record_unmark(self, outcome: str) -> None:
        self.unmarks_total.labels(outcome=outcome).inc()

    def record_transition(self, action: str, result: str) -> None:
        self.operation_transitions_total.labels(action=action, result=result).inc()

    def record_batch(self, outcome: str, success: int = 0, failed: int = 0,
                     duration: Optional[float] = None) -> None:
        self.batch_outcomes_total.labels(outcome=outcome).inc()
        if duration is not None:
            self.batch_duration_seconds.observe(duration)
        if success:
            self.record_outcomes_total.labels(status='SUCCESS').inc(success)
        if failed:
            self.record_outcomes_total.labels(status='FAILED').inc(failed)

    def record_skipped(self, count: int) -> None:
        if count:
            self.record_outcomes_total.labels(status='SKIPPED').inc(count)

    def record_snapshot(self, kind: str, outcome: str) -> None:
        self.snapshots_total.labels(kind=kind, outcome=outcome).inc()

    def record_audit_failure(self) -> None:
        self.audit_sink_failures_total.inc()

    def generate_metrics_output(self) -> bytes:
        return generate_latest(self.registry)

    def init_app(self, app: Flask, endpoint: str = '/metrics') -> None:
        """Expose the registry in Prometheus text format on ``endpoint``."""

        def metrics_view():
            return Response(self.generate_metrics_output(), mimetype=CONTENT_TYPE_LATEST)

        app.add_url_rule(endpoint, 'prometheus_metrics', metrics_view, methods=['GET'])
