"""
Reconciliation Engine

Closes the gaps the real-time path missed. For every reconcilable entity
type it reads a bounded, newest-first window of source ids, diffs it
against the destination, and bulk-repairs what is missing through the same
write pipeline the listener uses. Every few passes the whole window is
re-applied to correct drift in mutable fields.

The engine only adds or updates rows. Destination rows outside the source
window, or absent from it, are counted and left alone.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from pgmirror.errors import ReplicationError
from pgmirror.monitoring.metrics import ReplicationMetrics
from pgmirror.reconciliation.differ import IdentifierDiffer
from pgmirror.replication.applier import RecordApplier
from pgmirror.replication.registry import EntityHandler, EntityRegistry
from pgmirror.utils.correlation import CorrelationContext
from pgmirror.utils.retry import retry_transient

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    """Outcome of reconciling one entity type."""

    entity_type: str
    window_size: int = 0
    missing: int = 0
    repaired: int = 0
    failed: int = 0
    resynced: int = 0
    destination_only: int = 0
    match_percentage: float = 100.0
    duration_seconds: float = 0.0
    dry_run: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PassReport:
    """Outcome of one reconciliation pass over every entity type."""

    pass_number: int
    resync: bool = False
    dry_run: bool = False
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    duration_seconds: float = 0.0
    entities: List[ReconciliationReport] = field(default_factory=list)

    @property
    def missing(self) -> int:
        return sum(r.missing for r in self.entities)

    @property
    def repaired(self) -> int:
        return sum(r.repaired for r in self.entities)

    @property
    def failed(self) -> int:
        return sum(r.failed for r in self.entities)

    @property
    def errors(self) -> List[str]:
        return [f"{r.entity_type}: {r.error}" for r in self.entities if r.error]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pass_number": self.pass_number,
            "resync": self.resync,
            "dry_run": self.dry_run,
            "started_at": self.started_at,
            "duration_seconds": self.duration_seconds,
            "missing": self.missing,
            "repaired": self.repaired,
            "failed": self.failed,
            "entities": [r.to_dict() for r in self.entities],
        }


class ReconciliationEngine:
    """Periodic gap detection and bulk repair."""

    def __init__(
        self,
        registry: EntityRegistry,
        applier: RecordApplier,
        batch_size: int = 200,
        default_window: int = 5000,
        resync_every: int = 6,
        metrics: Optional[ReplicationMetrics] = None
    ):
        """
        Initialize the engine.

        Args:
            registry: Entity registry; reconcilable() decides which types are visited
            applier: Shared write pipeline
            batch_size: Ids per batched source read
            default_window: Window size for entities that do not set their own
            resync_every: Re-apply the full window every N passes (0: only when forced)
            metrics: Metrics sink
        """
        if batch_size < 1:
            raise ValueError("batch_size must be positive")

        self.registry = registry
        self.applier = applier
        self.batch_size = batch_size
        self.default_window = default_window
        self.resync_every = resync_every
        self.metrics = metrics or applier.metrics
        self.differ = IdentifierDiffer()
        self._passes = 0

    @property
    def passes(self) -> int:
        return self._passes

    def _retry(self, func):
        writer = self.applier.writer
        return retry_transient(func, attempts=writer.retry_attempts, delay=writer.retry_delay)

    def _resync_due(self, pass_number: int) -> bool:
        if self.resync_every <= 0:
            return False
        return (pass_number - 1) % self.resync_every == 0

    def run_pass(
        self,
        entity_types: Optional[Iterable[str]] = None,
        dry_run: bool = False,
        force_resync: bool = False
    ) -> PassReport:
        """
        Reconcile every reconcilable entity type once.

        A failure in one entity type is reported and does not stop the others.

        Args:
            entity_types: Restrict the pass to these types
            dry_run: Compute the diff without writing
            force_resync: Re-apply the full window regardless of the pass count

        Returns:
            PassReport

        Raises:
            KeyError: If an unknown entity type is requested
        """
        self._passes += 1
        pass_number = self._passes
        resync = not dry_run and (force_resync or self._resync_due(pass_number))

        if entity_types is None:
            handlers = self.registry.reconcilable()
        else:
            handlers = [self.registry.require(name) for name in entity_types]

        report = PassReport(pass_number=pass_number, resync=resync, dry_run=dry_run)
        start = time.monotonic()

        with CorrelationContext(prefix="reconcile"):
            logger.info(
                f"Reconciliation pass {pass_number} started "
                f"({len(handlers)} entity types, resync={resync}, dry_run={dry_run})",
                extra={"pass_number": pass_number}
            )

            for handler in handlers:
                entity_report = self.reconcile_entity(handler, dry_run=dry_run, resync=resync)
                report.entities.append(entity_report)
                self.metrics.record_reconciliation(entity_report)

            report.duration_seconds = round(time.monotonic() - start, 3)
            logger.info(
                f"Reconciliation pass {pass_number} finished in {report.duration_seconds}s: "
                f"missing={report.missing} repaired={report.repaired} failed={report.failed}",
                extra={"pass_number": pass_number, "duration": report.duration_seconds}
            )

        return report

    def reconcile_entity(
        self,
        handler: EntityHandler,
        dry_run: bool = False,
        resync: bool = False
    ) -> ReconciliationReport:
        """
        Reconcile one entity type.

        Args:
            handler: Entity capability set
            dry_run: Compute the diff without writing
            resync: Also re-apply ids present on both sides

        Returns:
            ReconciliationReport. A store failure is recorded in its error
            field; counts gathered before the failure are kept and batches
            after a failed one are still attempted.
        """
        start = time.monotonic()
        report = ReconciliationReport(entity_type=handler.entity_type, dry_run=dry_run)
        limit = handler.window_size or self.default_window

        try:
            window = list(dict.fromkeys(
                i for i in self._retry(lambda: handler.window_ids(limit)) if i is not None
            ))
            report.window_size = len(window)
            present = self._retry(lambda: handler.destination_window_ids(window)) if window else set()
        except ReplicationError as e:
            logger.error(f"Reconciliation of {handler.entity_type} failed: {e}")
            report.error = str(e)
            report.duration_seconds = round(time.monotonic() - start, 3)
            return report

        if not window:
            logger.info(f"{handler.entity_type}: source window is empty; nothing to reconcile")
            report.duration_seconds = round(time.monotonic() - start, 3)
            return report

        missing = self.differ.find_missing(window, present)
        report.missing = len(missing)
        report.destination_only = len(self.differ.find_destination_only(window, present))
        report.match_percentage = self.differ.calculate_match_percentage(len(missing), len(window))

        if missing:
            logger.info(
                f"{handler.entity_type}: {len(missing)} of {len(window)} window ids missing at destination",
                extra={"entity_type": handler.entity_type}
            )

        if not dry_run:
            report.repaired = self._apply_batches(handler, missing, "reconcile", report)

            if resync:
                missing_set = set(missing)
                common = [i for i in window if i not in missing_set]
                report.resynced = self._apply_batches(handler, common, "resync", report)

        report.duration_seconds = round(time.monotonic() - start, 3)
        logger.info(
            f"{handler.entity_type}: window={report.window_size} missing={report.missing} "
            f"repaired={report.repaired} resynced={report.resynced} failed={report.failed} "
            f"destination_only={report.destination_only}",
            extra={"entity_type": handler.entity_type, "duration": report.duration_seconds}
        )
        return report

    def _apply_batches(
        self,
        handler: EntityHandler,
        ids: List[int],
        path: str,
        report: ReconciliationReport
    ) -> int:
        applied = 0
        for batch in self.differ.batches(ids, self.batch_size):
            try:
                rows = self._retry(lambda: handler.fetch_many(batch))
                result = self.applier.apply_rows(handler, rows, path=path)
            except ReplicationError as e:
                logger.error(f"{handler.entity_type}: {path} batch of {len(batch)} ids failed: {e}")
                report.error = report.error or str(e)
                continue
            applied += result.applied
            report.failed += result.failed
        return applied
