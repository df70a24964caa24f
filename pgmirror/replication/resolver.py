"""
Dependency Resolver

Makes sure referenced rows exist at the destination before a dependent
write is attempted, fetching and inserting the missing ones from the
source on demand.
"""

import logging
from typing import Iterable, Optional, Set

from pgmirror.errors import ConstraintViolationError, ReplicationError
from pgmirror.monitoring.metrics import ReplicationMetrics
from pgmirror.replication.models import normalize_id
from pgmirror.replication.registry import EntityRegistry
from pgmirror.utils.retry import retry_transient

logger = logging.getLogger(__name__)

INSERT_BATCH_SIZE = 50
MAX_DEPTH = 3


class DependencyResolver:
    """
    Resolves foreign-key references with insert-if-absent semantics.

    No client-side locking: two callers resolving the same id both issue an
    insert-if-absent and both observe the row afterwards.
    """

    def __init__(
        self,
        registry: EntityRegistry,
        metrics: Optional[ReplicationMetrics] = None,
        retry_attempts: int = 3,
        retry_delay: float = 1.0
    ):
        self.registry = registry
        self.metrics = metrics or ReplicationMetrics()
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay

    def _retry(self, func):
        return retry_transient(func, attempts=self.retry_attempts, delay=self.retry_delay)

    def ensure_exist(self, entity_type: str, ids: Iterable, _depth: int = 0) -> Set[int]:
        """
        Ensure rows exist at the destination.

        Args:
            entity_type: Registered entity type of the referenced rows
            ids: Referenced identifiers (None and unparsable values are ignored)

        Returns:
            Identifiers that exist at the destination afterwards
            (pre-existing plus newly inserted). Ids absent from the source are
            excluded and must be treated as unresolved by the caller.

        Raises:
            KeyError: If entity_type is not registered
            TransientIOError: If the stores stay unreachable after retries
        """
        handler = self.registry.require(entity_type)

        wanted = {normalize_id(i) for i in ids}
        wanted.discard(None)
        if not wanted:
            return set()

        existing = self._retry(lambda: handler.existing_ids(sorted(wanted))) & wanted
        missing = wanted - existing
        if not missing:
            return existing

        if not handler.replicated:
            logger.warning(
                f"{len(missing)} {entity_type} reference(s) absent at destination and "
                f"not replicated from source: {sorted(missing)[:20]}"
            )
            return existing

        logger.info(f"{len(missing)} {entity_type} row(s) missing at destination, fetching from source")
        rows = self._retry(lambda: handler.fetch_many(sorted(missing)))

        found = {handler.record_id(row) for row in rows}
        not_found = missing - found
        if not_found:
            logger.warning(f"{entity_type} not found at source: {sorted(not_found)[:20]}")

        records = []
        for row in rows:
            try:
                records.append(handler.map(row))
            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"Failed to map {entity_type} {handler.record_id(row)}: {e}")

        records = self._resolve_nested(handler, records, _depth)
        inserted = self._insert(handler, records)

        self.metrics.record_dependencies_inserted(entity_type, len(inserted))
        if inserted:
            logger.info(f"Inserted {len(inserted)} {entity_type} row(s) on demand")

        return existing | inserted

    def _resolve_nested(self, handler, records, depth):
        """Drop records whose own required dependencies cannot be resolved."""
        if not handler.dependencies or not records:
            return records

        if depth >= MAX_DEPTH:
            logger.warning(f"Dependency chain too deep at {handler.entity_type}; skipping nested resolution")
            return records

        for dependency in handler.dependencies:
            ids = {normalize_id(r.get(dependency.field)) for r in records}
            ids.discard(None)
            resolved = self.ensure_exist(dependency.entity_type, ids, _depth=depth + 1)

            kept = []
            for record in records:
                value = normalize_id(record.get(dependency.field))
                if value is None or value in resolved:
                    kept.append(record)
                elif dependency.required:
                    logger.warning(
                        f"{handler.entity_type} {handler.record_id(record)} skipped: "
                        f"{dependency.field}={value} unresolved"
                    )
                else:
                    kept.append(dict(record, **{dependency.field: None}))
            records = kept

        return records

    def _insert(self, handler, records) -> Set[int]:
        """Insert-if-absent in batches, isolating failures to single rows."""
        inserted: Set[int] = set()

        for start in range(0, len(records), INSERT_BATCH_SIZE):
            batch = records[start:start + INSERT_BATCH_SIZE]
            try:
                self._retry(lambda: handler.apply_insert(batch))
                inserted.update(handler.record_id(r) for r in batch)
                continue
            except ConstraintViolationError as e:
                logger.warning(f"Bulk insert of {handler.entity_type} failed ({e}); inserting one by one")

            for record in batch:
                try:
                    self._retry(lambda: handler.apply_insert([record]))
                    inserted.add(handler.record_id(record))
                except ReplicationError as e:
                    logger.error(f"Failed to insert {handler.entity_type} {handler.record_id(record)}: {e}")

        inserted.discard(None)
        return inserted
