"""
Entity Registry

Maps each entity type to the capability set the engine needs to replicate
it. Adding an entity type means registering another EntityHandler; nothing
in the listener, resolver, writer or reconciler changes.
"""

import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set

from pgmirror.replication.models import DependencyReference, normalize_id

logger = logging.getLogger(__name__)


class EntityHandler:
    """
    Capability set for one entity type.

    Source-side reads: fetch_one, fetch_many, window_ids, plus is_active to
    tell rows that should not be replicated.
    Destination-side reads: existing_ids, destination_window_ids.
    Writes: apply_insert (insert-if-absent), apply_update (insert-or-update),
    apply_soft_delete. Mapping: map.

    Subclasses override what they support; the defaults describe an entity
    that exists only at the destination.
    """

    entity_type: str = ""
    source_table: Optional[str] = None
    dependencies: Sequence[DependencyReference] = ()
    window_size: Optional[int] = None
    reconcile: bool = True
    id_field: str = "id"

    @property
    def replicated(self) -> bool:
        """Whether rows of this type can be fetched from the source."""
        return self.source_table is not None

    @property
    def supports_soft_delete(self) -> bool:
        return False

    def is_active(self, row: Dict[str, Any]) -> bool:
        """Whether a source row should exist at the destination at all."""
        return True

    def record_id(self, record: Dict[str, Any]) -> Optional[int]:
        """Source identity of a source row or mapped record."""
        return normalize_id(record.get(self.id_field))

    def fetch_one(self, entity_id: int) -> Optional[Dict[str, Any]]:
        rows = self.fetch_many([entity_id])
        return rows[0] if rows else None

    def fetch_many(self, ids: Sequence[int]) -> List[Dict[str, Any]]:
        return []

    def window_ids(self, limit: int) -> List[int]:
        return []

    def destination_window_ids(self, window: Sequence[int]) -> Set[int]:
        raise NotImplementedError(f"{self.entity_type} cannot be reconciled")

    def existing_ids(self, ids: Iterable[int]) -> Set[int]:
        raise NotImplementedError

    def map(self, row: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError(f"{self.entity_type} has no mapper")

    def apply_insert(self, records: Sequence[Dict[str, Any]]) -> int:
        raise NotImplementedError(f"{self.entity_type} cannot be written")

    def apply_update(self, records: Sequence[Dict[str, Any]]) -> int:
        raise NotImplementedError(f"{self.entity_type} cannot be written")

    def apply_soft_delete(self, entity_id: int) -> int:
        raise NotImplementedError(f"{self.entity_type} has no soft delete")

    def __repr__(self):
        return f"<{type(self).__name__} {self.entity_type}>"


class EntityRegistry:
    """Lookup of handlers by entity type and by qualified source table."""

    def __init__(self, handlers: Optional[Iterable[EntityHandler]] = None):
        self._by_type: Dict[str, EntityHandler] = {}
        self._by_table: Dict[str, EntityHandler] = {}
        for handler in handlers or ():
            self.register(handler)

    def register(self, handler: EntityHandler) -> None:
        """
        Register a handler.

        Raises:
            ValueError: If the entity type or source table is already taken
        """
        if not handler.entity_type:
            raise ValueError("Handler must declare an entity_type")
        if handler.entity_type in self._by_type:
            raise ValueError(f"Entity type already registered: {handler.entity_type}")
        if handler.source_table and handler.source_table in self._by_table:
            raise ValueError(f"Source table already registered: {handler.source_table}")

        self._by_type[handler.entity_type] = handler
        if handler.source_table:
            self._by_table[handler.source_table] = handler
        logger.debug(f"Registered {handler!r}")

    def get(self, entity_type: str) -> Optional[EntityHandler]:
        return self._by_type.get(entity_type)

    def require(self, entity_type: str) -> EntityHandler:
        """
        Return the handler for entity_type.

        Raises:
            KeyError: If nothing is registered under that type
        """
        handler = self._by_type.get(entity_type)
        if handler is None:
            raise KeyError(f"Unknown entity type: {entity_type}")
        return handler

    def get_by_table(self, table: str) -> Optional[EntityHandler]:
        return self._by_table.get(table)

    def reconcilable(self) -> List[EntityHandler]:
        """Handlers the reconciliation engine should visit, in registration order."""
        return [h for h in self._by_type.values() if h.replicated and h.reconcile]

    def __iter__(self) -> Iterator[EntityHandler]:
        return iter(self._by_type.values())

    def __len__(self) -> int:
        return len(self._by_type)

    def __contains__(self, entity_type: str) -> bool:
        return entity_type in self._by_type
