"""
Data model for real-time replication.

ChangeDescriptor is transient (one listener invocation); DivergenceRecord is
the only type that is ever persisted.
"""

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Set


class Operation(Enum):
    """Row-level mutation kinds, valued by the trigger's event_type."""
    CREATED = "INSERT"
    UPDATED = "UPDATE"
    DELETED = "DELETE"


class DivergenceKind(Enum):
    """error_kind values written to the divergence ledger."""
    UNRESOLVED_DEPENDENCY = "unresolved_dependency"
    FOREIGN_KEY = "foreign_key_constraint"
    CONSTRAINT = "constraint_violation"
    TRANSIENT_IO = "transient_io"
    UNEXPECTED = "unexpected"


class InvalidNotificationError(ValueError):
    """Raised when a notification payload cannot be parsed."""
    pass


@dataclass(frozen=True)
class ChangeDescriptor:
    """
    Minimal description of a source mutation.

    Attributes:
        entity_id: Primary key of the mutated source row
        table: Qualified source table ("<schema>.<table>") identifying the entity type
        operation: Mutation kind
    """

    entity_id: int
    table: str
    operation: Operation

    @classmethod
    def from_payload(cls, payload: str) -> "ChangeDescriptor":
        """
        Parse a trigger payload: {"id": 1, "table": "public.demanda", "event_type": "INSERT"}.

        Raises:
            InvalidNotificationError: If the payload is malformed
        """
        try:
            data = json.loads(payload)
        except (TypeError, json.JSONDecodeError) as e:
            raise InvalidNotificationError(f"Payload is not JSON: {payload!r}") from e

        if not isinstance(data, dict):
            raise InvalidNotificationError(f"Payload must be an object: {payload!r}")

        missing = [key for key in ("id", "table", "event_type") if key not in data]
        if missing:
            raise InvalidNotificationError(f"Payload missing {missing}: {payload!r}")

        try:
            entity_id = int(data["id"])
        except (TypeError, ValueError) as e:
            raise InvalidNotificationError(f"Invalid id in payload: {data['id']!r}") from e

        try:
            operation = Operation(str(data["event_type"]).upper())
        except ValueError as e:
            raise InvalidNotificationError(f"Unknown event_type: {data['event_type']!r}") from e

        return cls(entity_id=entity_id, table=str(data["table"]), operation=operation)


@dataclass(frozen=True)
class DependencyReference:
    """
    A foreign key carried by a mapped record.

    Attributes:
        entity_type: Registered entity type the key points at
        field: Field of the mapped record holding the key
        required: Whether the write must be withheld while unresolved
    """

    entity_type: str
    field: str
    required: bool = True


@dataclass
class ApplyResult:
    """Outcome of a write: counts plus the source ids that failed."""

    applied: int = 0
    failed: int = 0
    failed_ids: Set[int] = field(default_factory=set)

    def __add__(self, other: "ApplyResult") -> "ApplyResult":
        return ApplyResult(
            self.applied + other.applied,
            self.failed + other.failed,
            self.failed_ids | other.failed_ids
        )


@dataclass
class DivergenceRecord:
    """
    A write that permanently failed.

    Only the identity of the record is kept, never its content; payload
    holds diagnostic context such as the offending references.
    """

    entity_id: int
    entity_type: str
    error_kind: str
    message: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def key(self):
        return (self.entity_type, self.entity_id)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DivergenceRecord":
        return cls(
            entity_id=int(data["entity_id"]),
            entity_type=data["entity_type"],
            error_kind=data.get("error_kind", DivergenceKind.UNEXPECTED.value),
            message=data.get("message", ""),
            payload=data.get("payload") or {},
            timestamp=data.get("timestamp") or datetime.now(timezone.utc).isoformat(),
        )


def normalize_id(value: Any) -> Optional[int]:
    """
    Coerce an identifier read from either database to int.

    Empty strings, None and unparsable values become None; quoted strings
    such as '"77"' are unquoted first.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip().strip("\"'"))
    except ValueError:
        return None
