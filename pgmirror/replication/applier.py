"""
Record Applier

The shared write pipeline used by the listener, the reconciler and the
reprocessor: map source rows, resolve their references as a batch, withhold
records with unresolved required references, write the rest.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from pgmirror.errors import UnresolvedDependencyError
from pgmirror.monitoring.metrics import ReplicationMetrics
from pgmirror.replication.models import ApplyResult, DivergenceKind, normalize_id
from pgmirror.replication.registry import EntityHandler
from pgmirror.replication.resolver import DependencyResolver
from pgmirror.replication.writer import UpsertWriter

logger = logging.getLogger(__name__)


class RecordApplier:
    """Map, resolve and write source rows of one entity type."""

    def __init__(
        self,
        resolver: DependencyResolver,
        writer: UpsertWriter,
        metrics: Optional[ReplicationMetrics] = None
    ):
        self.resolver = resolver
        self.writer = writer
        self.metrics = metrics or writer.metrics

    def apply_rows(
        self,
        handler: EntityHandler,
        rows: Sequence[Dict[str, Any]],
        path: str = "realtime"
    ) -> ApplyResult:
        """
        Apply source rows to the destination.

        Args:
            handler: Entity capability set
            rows: Source rows as fetched
            path: Label for logs and metrics

        Returns:
            Combined ApplyResult; records withheld for unresolved references
            count as failed and have a DivergenceRecord. Inactive rows are
            dropped and count as neither

        Raises:
            TransientIOError: If a store stays unreachable during resolution or the bulk write
        """
        result = ApplyResult()
        records: List[Dict[str, Any]] = []

        for row in rows:
            if not handler.is_active(row):
                logger.info(f"{handler.entity_type} {handler.record_id(row)} is inactive at source; not writing")
                continue
            try:
                records.append(handler.map(row))
            except (KeyError, TypeError, ValueError) as e:
                entity_id = handler.record_id(row)
                self.writer.record_divergence(
                    handler, entity_id, DivergenceKind.UNEXPECTED,
                    f"Mapping failed: {e}", {"path": path}
                )
                result = result + ApplyResult(failed=1, failed_ids={entity_id})

        for dependency in handler.dependencies:
            if not records:
                break

            ids = {normalize_id(r.get(dependency.field)) for r in records}
            ids.discard(None)
            resolved = self.resolver.ensure_exist(dependency.entity_type, ids) if ids else set()

            ready = []
            for record in records:
                value = normalize_id(record.get(dependency.field))
                if value is None or value in resolved:
                    ready.append(record)
                elif dependency.required:
                    entity_id = handler.record_id(record)
                    error = UnresolvedDependencyError(dependency.entity_type, dependency.field, [value])
                    self.writer.record_divergence(
                        handler, entity_id, DivergenceKind.UNRESOLVED_DEPENDENCY, str(error),
                        {"dependency": dependency.entity_type, "field": dependency.field,
                         "reference": value, "path": path}
                    )
                    result = result + ApplyResult(failed=1, failed_ids={entity_id})
                else:
                    logger.info(
                        f"{handler.entity_type} {handler.record_id(record)}: optional "
                        f"{dependency.field}={value} unresolved, writing NULL"
                    )
                    ready.append(dict(record, **{dependency.field: None}))
            records = ready

        if records:
            result = result + self.writer.apply(handler, records, path)
        return result
