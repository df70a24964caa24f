"""
Divergence Reprocessing

Explicitly triggered retry of ledger entries. Runs apart from the listener
and the reconciler so a backlog of failures never slows real-time
propagation.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from pgmirror.errors import ReplicationError
from pgmirror.replication.applier import RecordApplier
from pgmirror.replication.ledger import DivergenceLedger
from pgmirror.replication.models import DivergenceRecord, Operation
from pgmirror.replication.registry import EntityHandler, EntityRegistry
from pgmirror.utils.correlation import CorrelationContext
from pgmirror.utils.retry import retry_transient

logger = logging.getLogger(__name__)


@dataclass
class ReprocessReport:
    """Outcome of one reprocessing run."""

    examined: int = 0
    resolved: int = 0
    still_failing: int = 0
    vanished: int = 0
    unknown_types: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "examined": self.examined,
            "resolved": self.resolved,
            "still_failing": self.still_failing,
            "vanished": self.vanished,
            "unknown_types": sorted(set(self.unknown_types)),
        }


class Reprocessor:
    """Re-resolve and retry the writes recorded in the divergence ledger."""

    def __init__(self, registry: EntityRegistry, applier: RecordApplier, ledger: DivergenceLedger):
        self.registry = registry
        self.applier = applier
        self.writer = applier.writer
        self.ledger = ledger

    def run(self, entity_type: Optional[str] = None) -> ReprocessReport:
        """
        Retry every ledger entry, removing those that now succeed.

        Entries are grouped by entity type and their source rows re-read in
        one batched fetch per type. An entry whose row no longer exists at
        the source is removed as well: there is nothing left to replicate.
        Failing entries stay, with their message and timestamp refreshed by
        the retry.

        Args:
            entity_type: Only reprocess entries of this type

        Returns:
            ReprocessReport
        """
        report = ReprocessReport()

        with CorrelationContext(prefix="reprocess"):
            entries = self.ledger.list(entity_type)
            logger.info(f"Reprocessing {len(entries)} divergence entr{'y' if len(entries) == 1 else 'ies'}")

            grouped: Dict[str, List[DivergenceRecord]] = defaultdict(list)
            for entry in entries:
                grouped[entry.entity_type].append(entry)

            for name, group in grouped.items():
                report.examined += len(group)
                handler = self.registry.get(name)
                if handler is None or not handler.replicated:
                    logger.warning(f"{len(group)} ledger entries for unregistered entity type {name}; keeping them")
                    report.unknown_types.append(name)
                    report.still_failing += len(group)
                    continue
                self._retry_group(handler, group, report)

        logger.info(
            f"Reprocessing complete: examined={report.examined} resolved={report.resolved} "
            f"still_failing={report.still_failing} vanished={report.vanished}"
        )
        return report

    def _resolved(self, entry: DivergenceRecord, report: ReprocessReport) -> None:
        self.ledger.remove(entry.entity_id, entry.entity_type)
        report.resolved += 1

    def _retry_group(self, handler: EntityHandler, entries: List[DivergenceRecord], report: ReprocessReport) -> None:
        writes = []
        for entry in entries:
            if entry.payload.get("operation") == Operation.DELETED.value and handler.supports_soft_delete:
                try:
                    self.writer.soft_delete(handler, entry.entity_id)
                except ReplicationError as e:
                    logger.warning(f"Deactivating {handler.entity_type} {entry.entity_id} failed: {e}")
                    report.still_failing += 1
                    continue
                self._resolved(entry, report)
            else:
                writes.append(entry)

        if not writes:
            return

        ids = [entry.entity_id for entry in writes]
        try:
            rows = retry_transient(
                lambda: handler.fetch_many(ids),
                attempts=self.writer.retry_attempts,
                delay=self.writer.retry_delay
            )
        except ReplicationError as e:
            logger.warning(f"Reading {len(ids)} {handler.entity_type} rows from source failed: {e}")
            report.still_failing += len(writes)
            return

        rows_by_id = {handler.record_id(row): row for row in rows}
        present = []
        for entry in writes:
            if entry.entity_id in rows_by_id:
                present.append(entry)
            else:
                logger.info(f"{entry.entity_type} {entry.entity_id} no longer exists at source")
                self.ledger.remove(entry.entity_id, entry.entity_type)
                report.vanished += 1

        if not present:
            return

        try:
            result = self.applier.apply_rows(
                handler, [rows_by_id[entry.entity_id] for entry in present], path="reprocess"
            )
        except ReplicationError as e:
            logger.warning(f"Reprocessing {len(present)} {handler.entity_type} entries failed: {e}")
            report.still_failing += len(present)
            return

        for entry in present:
            if entry.entity_id in result.failed_ids:
                report.still_failing += 1
            else:
                logger.info(f"{entry.entity_type} {entry.entity_id} reprocessed successfully")
                self._resolved(entry, report)
