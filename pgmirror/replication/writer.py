"""
Upsert Writer

Applies mapped records to the destination with insert-or-update semantics.
The bulk path and the single-record path issue the same statement, so a
record lands in the same state whichever path wrote it. Records that still
fail after per-record isolation end up in the divergence ledger.
"""

import logging
from typing import Any, Dict, Optional, Sequence

from pgmirror.errors import ConstraintViolationError, TransientIOError
from pgmirror.monitoring.metrics import ReplicationMetrics
from pgmirror.replication.ledger import DivergenceLedger
from pgmirror.replication.models import ApplyResult, DivergenceKind, DivergenceRecord, normalize_id
from pgmirror.replication.registry import EntityHandler
from pgmirror.replication.resolver import DependencyResolver
from pgmirror.utils.retry import retry_transient

logger = logging.getLogger(__name__)


class UpsertWriter:
    """Idempotent destination writes with per-record failure isolation."""

    def __init__(
        self,
        resolver: DependencyResolver,
        ledger: DivergenceLedger,
        metrics: Optional[ReplicationMetrics] = None,
        retry_attempts: int = 3,
        retry_delay: float = 1.0
    ):
        """
        Initialize the writer.

        Args:
            resolver: Used to re-resolve references after a foreign-key rejection
            ledger: Where permanently failed writes are recorded
            metrics: Metrics sink (a private one is created if not provided)
            retry_attempts: Attempts per write on transient failures
            retry_delay: Seconds between attempts
        """
        self.resolver = resolver
        self.ledger = ledger
        self.metrics = metrics or ReplicationMetrics()
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay

    def _retry(self, func):
        return retry_transient(func, attempts=self.retry_attempts, delay=self.retry_delay)

    def apply(self, handler: EntityHandler, records: Sequence[Dict[str, Any]], path: str = "realtime") -> ApplyResult:
        """
        Insert-or-update records of one entity type.

        The whole batch is tried as one statement first. If the destination
        rejects it on a constraint, every record is retried on its own so one
        bad record cannot block its siblings.

        Args:
            handler: Entity capability set
            records: Mapped records with resolved dependencies
            path: Label for logs and metrics ("realtime", "reconcile", "reprocess")

        Returns:
            ApplyResult with applied/failed counts

        Raises:
            TransientIOError: If the destination stays unreachable for the bulk attempt
        """
        records = list(records)
        if not records:
            return ApplyResult()

        try:
            self._retry(lambda: handler.apply_update(records))
            result = ApplyResult(applied=len(records))
        except ConstraintViolationError as e:
            logger.warning(
                f"Bulk write of {len(records)} {handler.entity_type} record(s) rejected ({e.kind.value}); "
                f"falling back to per-record writes"
            )
            result = ApplyResult()
            for record in records:
                result = result + self.apply_one(handler, record, path)

        self.metrics.record_apply(handler.entity_type, path, result.applied, result.failed)
        logger.debug(f"{path}: {handler.entity_type} applied={result.applied} failed={result.failed}")
        return result

    def apply_one(self, handler: EntityHandler, record: Dict[str, Any], path: str = "realtime") -> ApplyResult:
        """
        Write a single record; a permanent failure becomes a DivergenceRecord.

        A foreign-key rejection triggers one re-resolution of the record's
        references and one retry of the write.
        """
        entity_id = handler.record_id(record)

        try:
            self._retry(lambda: handler.apply_update([record]))
            return ApplyResult(applied=1)
        except ConstraintViolationError as e:
            if not e.is_foreign_key:
                self.record_divergence(
                    handler, entity_id, DivergenceKind.CONSTRAINT, e.detail or str(e),
                    {"constraint": e.constraint_name, "kind": e.kind.value, "path": path}
                )
                return ApplyResult(failed=1, failed_ids={entity_id})
            first_error = e
        except TransientIOError as e:
            self.record_divergence(handler, entity_id, DivergenceKind.TRANSIENT_IO, str(e), {"path": path})
            return ApplyResult(failed=1, failed_ids={entity_id})

        logger.info(
            f"{handler.entity_type} {entity_id} hit foreign key {first_error.constraint_name}; "
            f"re-resolving references"
        )
        try:
            self._re_resolve(handler, record)
            self._retry(lambda: handler.apply_update([record]))
            return ApplyResult(applied=1)
        except ConstraintViolationError as e:
            kind = DivergenceKind.FOREIGN_KEY if e.is_foreign_key else DivergenceKind.CONSTRAINT
            self.record_divergence(
                handler, entity_id, kind, e.detail or str(e),
                {"constraint": e.constraint_name, "kind": e.kind.value, "path": path}
            )
        except TransientIOError as e:
            self.record_divergence(handler, entity_id, DivergenceKind.TRANSIENT_IO, str(e), {"path": path})

        return ApplyResult(failed=1, failed_ids={entity_id})

    def _re_resolve(self, handler: EntityHandler, record: Dict[str, Any]) -> None:
        for dependency in handler.dependencies:
            value = normalize_id(record.get(dependency.field))
            if value is not None:
                self.resolver.ensure_exist(dependency.entity_type, {value})

    def soft_delete(self, handler: EntityHandler, entity_id: int) -> int:
        """
        Mark a destination row inactive.

        Returns:
            Number of rows changed (0 when the row was never replicated)

        Raises:
            TransientIOError: If the destination stays unreachable
        """
        changed = self._retry(lambda: handler.apply_soft_delete(entity_id))
        if changed:
            logger.info(f"Deactivated {handler.entity_type} {entity_id}")
        else:
            logger.info(f"{handler.entity_type} {entity_id} not present at destination; nothing to deactivate")
        return changed

    def record_divergence(
        self,
        handler: EntityHandler,
        entity_id: Optional[int],
        kind: DivergenceKind,
        message: str,
        payload: Optional[Dict[str, Any]] = None
    ) -> None:
        """Append a DivergenceRecord for a write that permanently failed."""
        if entity_id is None:
            logger.error(f"Cannot record divergence without an id for {handler.entity_type}: {message}")
            return

        self.ledger.record(DivergenceRecord(
            entity_id=entity_id,
            entity_type=handler.entity_type,
            error_kind=kind.value,
            message=message,
            payload={k: v for k, v in (payload or {}).items() if v is not None},
        ))
        self.metrics.record_divergence(handler.entity_type, kind.value)
