"""
PostgreSQL-backed entity handlers.

An EntityDefinition declares where an entity lives on each side and how a
source row becomes a destination row; PostgresEntityHandler turns that into
parameterized reads and set-based writes. Identifiers come from code, never
from notification payloads; values are always bound as parameters.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from psycopg2.extras import execute_values

from pgmirror.db.client import DatabaseClient, quote_ident, quote_table
from pgmirror.replication.models import DependencyReference, normalize_id
from pgmirror.replication.registry import EntityHandler

logger = logging.getLogger(__name__)

# Batches at or below this size are merged directly; larger ones go through
# a staging relation.
STAGING_THRESHOLD = 50
STAGING_PAGE_SIZE = 500


@dataclass
class EntityDefinition:
    """
    Declarative description of a replicated entity.

    Attributes:
        entity_type: Registry key
        destination_table: Qualified destination table
        columns: Destination columns written by the engine
        source_table: Qualified source table (None: exists only at destination)
        key: Destination primary/conflict key column(s)
        preserved_fields: Destination-local columns written on insert only
        active_column: Column cleared by soft delete (None: no soft delete)
        dependencies: Foreign keys that must exist before a write
        mapper: Pure function from a source row to a destination row
        source_select: SELECT ... FROM ... used for source reads (joins allowed)
        source_key_expr: Expression for the source id inside source_select
        window_filter: Extra predicate for the reconciliation window
        source_active_column: Source flag column; rows where it is not true are not replicated
        window_size: Window override for this entity
        reconcile: Whether the reconciliation engine visits this entity
    """

    entity_type: str
    destination_table: str
    columns: Tuple[str, ...] = ()
    source_table: Optional[str] = None
    key: Tuple[str, ...] = ("id",)
    preserved_fields: Tuple[str, ...] = ()
    active_column: Optional[str] = None
    dependencies: Tuple[DependencyReference, ...] = ()
    mapper: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None
    source_select: Optional[str] = None
    source_key_expr: str = "id"
    window_filter: Optional[str] = None
    source_active_column: Optional[str] = None
    window_size: Optional[int] = None
    reconcile: bool = True

    @property
    def update_columns(self) -> Tuple[str, ...]:
        """Columns overwritten when the row already exists."""
        skip = set(self.key) | set(self.preserved_fields)
        return tuple(c for c in self.columns if c not in skip)


class PostgresEntityHandler(EntityHandler):
    """Capability set for an entity keyed by a single integer id."""

    def __init__(
        self,
        definition: EntityDefinition,
        source: Optional[DatabaseClient],
        destination: DatabaseClient
    ):
        self.definition = definition
        self.source = source
        self.destination = destination

        self.entity_type = definition.entity_type
        self.source_table = definition.source_table
        self.dependencies = definition.dependencies
        self.window_size = definition.window_size
        self.reconcile = definition.reconcile

        self._target = quote_table(definition.destination_table)
        self._key_sql = ", ".join(quote_ident(k) for k in definition.key)
        self._columns_sql = ", ".join(quote_ident(c) for c in definition.columns)

    @property
    def supports_soft_delete(self) -> bool:
        return self.definition.active_column is not None

    def is_active(self, row: Dict[str, Any]) -> bool:
        column = self.definition.source_active_column
        return column is None or bool(row.get(column))

    # Source reads

    def _source_select(self) -> str:
        if self.definition.source_select:
            return self.definition.source_select
        return f"SELECT * FROM {quote_table(self.source_table)}"

    def fetch_many(self, ids: Sequence[int]) -> List[Dict[str, Any]]:
        if not self.replicated or not ids:
            return []
        query = f"{self._source_select()} WHERE {self.definition.source_key_expr} = ANY(%s)"
        rows = self.source.fetch_all(query, (list(ids),))
        logger.debug(f"Fetched {len(rows)}/{len(ids)} {self.entity_type} rows from source")
        return rows

    def window_ids(self, limit: int) -> List[int]:
        if not self.replicated:
            return []
        where = f" WHERE {self.definition.window_filter}" if self.definition.window_filter else ""
        query = (
            f"SELECT id FROM {quote_table(self.source_table)}{where} "
            f"ORDER BY id DESC LIMIT %s"
        )
        return [normalize_id(v) for v in self.source.fetch_column(query, (limit,))]

    # Destination reads

    def existing_ids(self, ids: Iterable[int]) -> Set[int]:
        ids = list(ids)
        if not ids:
            return set()
        query = f"SELECT {self._key_sql} FROM {self._target} WHERE {self._key_sql} = ANY(%s)"
        return {normalize_id(v) for v in self.destination.fetch_column(query, (ids,))}

    def destination_window_ids(self, window: Sequence[int]) -> Set[int]:
        """Destination ids between the window's lowest and highest source id."""
        if not window:
            return set()
        query = f"SELECT {self._key_sql} FROM {self._target} WHERE {self._key_sql} BETWEEN %s AND %s"
        return {normalize_id(v) for v in self.destination.fetch_column(query, (min(window), max(window)))}

    # Mapping

    def map(self, row: Dict[str, Any]) -> Dict[str, Any]:
        if self.definition.mapper is None:
            return {c: row.get(c) for c in self.definition.columns}
        return self.definition.mapper(row)

    # Writes

    def _conflict_clause(self, update: bool) -> str:
        columns = self.definition.update_columns if update else ()
        if not columns:
            return f"ON CONFLICT ({self._key_sql}) DO NOTHING"
        assignments = ", ".join(f"{quote_ident(c)} = EXCLUDED.{quote_ident(c)}" for c in columns)
        return f"ON CONFLICT ({self._key_sql}) DO UPDATE SET {assignments}"

    def _dedupe(self, records: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        # ON CONFLICT cannot touch the same row twice in one statement; last one wins.
        by_key = {}
        for record in records:
            by_key[tuple(record.get(k) for k in self.definition.key)] = record
        return list(by_key.values())

    def _rows(self, records: Sequence[Dict[str, Any]]) -> List[tuple]:
        return [tuple(record.get(c) for c in self.definition.columns) for record in records]

    def _write(self, records: Sequence[Dict[str, Any]], update: bool) -> int:
        records = self._dedupe(records)
        if not records:
            return 0

        conflict = self._conflict_clause(update)
        rows = self._rows(records)

        with self.destination.transaction() as cursor:
            if len(rows) <= STAGING_THRESHOLD:
                execute_values(
                    cursor,
                    f"INSERT INTO {self._target} ({self._columns_sql}) VALUES %s {conflict}",
                    rows,
                    page_size=len(rows)
                )
                return cursor.rowcount

            stage = quote_ident(f"pgmirror_stage_{self.entity_type}")
            cursor.execute(
                f"CREATE TEMP TABLE {stage} ON COMMIT DROP AS "
                f"SELECT {self._columns_sql} FROM {self._target} WITH NO DATA"
            )
            execute_values(
                cursor,
                f"INSERT INTO {stage} ({self._columns_sql}) VALUES %s",
                rows,
                page_size=STAGING_PAGE_SIZE
            )
            cursor.execute(
                f"INSERT INTO {self._target} ({self._columns_sql}) "
                f"SELECT {self._columns_sql} FROM {stage} {conflict}"
            )
            return cursor.rowcount

    def apply_insert(self, records: Sequence[Dict[str, Any]]) -> int:
        """Insert rows that are absent; existing rows are left untouched."""
        return self._write(records, update=False)

    def apply_update(self, records: Sequence[Dict[str, Any]]) -> int:
        """Insert-or-update on the key; preserved fields survive updates."""
        return self._write(records, update=True)

    def apply_soft_delete(self, entity_id: int) -> int:
        if not self.supports_soft_delete:
            return super().apply_soft_delete(entity_id)
        query = (
            f"UPDATE {self._target} SET {quote_ident(self.definition.active_column)} = false "
            f"WHERE {self._key_sql} = %s"
        )
        return self.destination.execute(query, (entity_id,))


class LinkEntityHandler(PostgresEntityHandler):
    """
    Capability set for an association row keyed by a pair of foreign keys.

    The source row has its own id but the destination only stores the pair,
    so presence at the destination is decided by looking the pairs up.
    """

    def __init__(
        self,
        definition: EntityDefinition,
        source: Optional[DatabaseClient],
        destination: DatabaseClient,
        pair_source_columns: Tuple[str, str]
    ):
        super().__init__(definition, source, destination)
        self.id_field = "source_id"
        self.pair_source_columns = pair_source_columns

    def record_id(self, record: Dict[str, Any]) -> Optional[int]:
        value = record.get("source_id", record.get("id"))
        return normalize_id(value)

    def existing_ids(self, ids: Iterable[int]) -> Set[int]:
        return self.destination_window_ids(list(ids))

    def destination_window_ids(self, window: Sequence[int]) -> Set[int]:
        """Source ids in the window whose pair already exists at the destination."""
        if not window:
            return set()

        first, second = self.pair_source_columns
        pairs = {}
        for row in self.source.fetch_all(
            f"SELECT id, {quote_ident(first)}, {quote_ident(second)} "
            f"FROM {quote_table(self.source_table)} WHERE id = ANY(%s)",
            (list(window),)
        ):
            pairs[(normalize_id(row[first]), normalize_id(row[second]))] = normalize_id(row["id"])

        if not pairs:
            return set()

        left, right = self.definition.key
        present = self.destination.fetch_all(
            f"SELECT {quote_ident(left)}, {quote_ident(right)} FROM {self._target} "
            f"WHERE {quote_ident(left)} = ANY(%s)",
            (sorted({pair[0] for pair in pairs if pair[0] is not None}),)
        )
        found = set()
        for row in present:
            source_id = pairs.get((normalize_id(row[left]), normalize_id(row[right])))
            if source_id is not None:
                found.add(source_id)
        return found
