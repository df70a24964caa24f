"""
Prometheus Metrics for the Replication Engine

Counters and gauges for real-time propagation, dependency resolution,
the divergence ledger and reconciliation passes. Each ReplicationMetrics
owns its registry so several instances (tests, CLI runs) never collide.
"""

import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

NAMESPACE = "pgmirror"


class ReplicationMetrics:
    """Prometheus metrics for the listener, writer and reconciler."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """
        Initialize replication metrics.

        Args:
            registry: Prometheus registry (a private one is created if not provided)
        """
        self.registry = registry or CollectorRegistry()

        self.notifications_total = Counter(
            f'{NAMESPACE}_notifications_total',
            'Change notifications received',
            ['table', 'event_type', 'outcome'],
            registry=self.registry
        )

        self.records_applied_total = Counter(
            f'{NAMESPACE}_records_applied_total',
            'Records written to the destination',
            ['entity', 'path', 'status'],
            registry=self.registry
        )

        self.dependencies_inserted_total = Counter(
            f'{NAMESPACE}_dependencies_inserted_total',
            'Referenced rows fetched from the source and inserted on demand',
            ['entity'],
            registry=self.registry
        )

        self.divergences_total = Counter(
            f'{NAMESPACE}_divergences_total',
            'Divergence records written to the ledger',
            ['entity', 'error_kind'],
            registry=self.registry
        )

        self.ledger_size = Gauge(
            f'{NAMESPACE}_divergence_ledger_size',
            'Entries currently held in the divergence ledger',
            registry=self.registry
        )

        self.in_flight = Gauge(
            f'{NAMESPACE}_notifications_in_flight',
            'Notifications currently being applied',
            registry=self.registry
        )

        self.listener_reconnects_total = Counter(
            f'{NAMESPACE}_listener_reconnects_total',
            'Times the notification subscription was re-established',
            registry=self.registry
        )

        self.reconciliation_runs_total = Counter(
            f'{NAMESPACE}_reconciliation_runs_total',
            'Reconciliation passes per entity',
            ['entity', 'status'],
            registry=self.registry
        )

        self.reconciliation_skipped_total = Counter(
            f'{NAMESPACE}_reconciliation_skipped_total',
            'Scheduled passes skipped because the previous one was still running',
            registry=self.registry
        )

        self.reconciliation_missing = Gauge(
            f'{NAMESPACE}_reconciliation_missing_rows',
            'Rows missing at the destination in the last pass',
            ['entity'],
            registry=self.registry
        )

        self.reconciliation_repaired = Gauge(
            f'{NAMESPACE}_reconciliation_repaired_rows',
            'Rows repaired in the last pass',
            ['entity'],
            registry=self.registry
        )

        self.reconciliation_duration_seconds = Histogram(
            f'{NAMESPACE}_reconciliation_duration_seconds',
            'Duration of reconciliation passes per entity',
            ['entity'],
            buckets=[0.5, 1, 5, 10, 30, 60, 120, 300, 600],
            registry=self.registry
        )

    def record_notification(self, table: str, event_type: str, outcome: str) -> None:
        self.notifications_total.labels(table=table, event_type=event_type, outcome=outcome).inc()

    def record_apply(self, entity: str, path: str, applied: int, failed: int) -> None:
        if applied:
            self.records_applied_total.labels(entity=entity, path=path, status="applied").inc(applied)
        if failed:
            self.records_applied_total.labels(entity=entity, path=path, status="failed").inc(failed)

    def record_dependencies_inserted(self, entity: str, count: int) -> None:
        if count:
            self.dependencies_inserted_total.labels(entity=entity).inc(count)

    def record_divergence(self, entity: str, error_kind: str) -> None:
        self.divergences_total.labels(entity=entity, error_kind=error_kind).inc()

    def set_ledger_size(self, size: int) -> None:
        self.ledger_size.set(size)

    def record_reconnect(self) -> None:
        self.listener_reconnects_total.inc()

    def record_skipped_pass(self) -> None:
        self.reconciliation_skipped_total.inc()

    def record_reconciliation(self, report) -> None:
        """
        Record one entity's reconciliation report.

        Args:
            report: ReconciliationReport
        """
        status = "failure" if report.error else "success"
        self.reconciliation_runs_total.labels(entity=report.entity_type, status=status).inc()
        self.reconciliation_missing.labels(entity=report.entity_type).set(report.missing)
        self.reconciliation_repaired.labels(entity=report.entity_type).set(report.repaired)
        self.reconciliation_duration_seconds.labels(entity=report.entity_type).observe(report.duration_seconds)


def start_metrics_server(metrics: ReplicationMetrics, port: int) -> bool:
    """
    Expose metrics over HTTP for Prometheus scraping.

    Args:
        metrics: Metrics whose registry is served
        port: TCP port (0 disables the exporter)

    Returns:
        True if the exporter was started
    """
    if not port:
        logger.info("Metrics exporter disabled")
        return False

    start_http_server(port, registry=metrics.registry)
    logger.info(f"Metrics exporter listening on port {port}")
    return True
