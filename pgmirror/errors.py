"""
Error Taxonomy for the Replication Engine

Typed errors raised at the boundary with the source and destination stores.
Retry and divergence logic dispatches on these types and on
ConstraintViolationError.kind, never on database message text.
"""

from enum import Enum
from typing import Iterable, Optional


class ErrorKind(Enum):
    """Machine-checkable classification of constraint violations."""
    FOREIGN_KEY = "foreign_key"
    UNIQUE = "unique"
    NOT_NULL = "not_null"
    CHECK = "check"
    OTHER = "other"


class ReplicationError(Exception):
    """Base class for replication engine errors."""
    pass


class ConfigurationError(ReplicationError):
    """Raised when startup configuration is missing or invalid."""
    pass


class TransientIOError(ReplicationError):
    """Raised on connection drops and timeouts. Safe to retry."""
    pass


class ConstraintViolationError(ReplicationError):
    """
    Raised when the destination rejects a write on an integrity constraint.

    Attributes:
        kind: Constraint category
        constraint_name: Name of the violated constraint, when reported
        detail: Raw error detail preserved for operator diagnosis
    """

    def __init__(
        self,
        kind: ErrorKind,
        constraint_name: Optional[str] = None,
        detail: str = ""
    ):
        self.kind = kind
        self.constraint_name = constraint_name
        self.detail = detail
        super().__init__(
            f"{kind.value} violation"
            + (f" on {constraint_name}" if constraint_name else "")
            + (f": {detail}" if detail else "")
        )

    @property
    def is_foreign_key(self) -> bool:
        return self.kind is ErrorKind.FOREIGN_KEY


class UnresolvedDependencyError(ReplicationError):
    """Raised when a required foreign key cannot be resolved at the destination."""

    def __init__(self, entity_type: str, field: str, ids: Iterable[int]):
        self.entity_type = entity_type
        self.field = field
        self.ids = sorted(set(ids))
        super().__init__(
            f"Unresolved {entity_type} reference(s) in {field}: {self.ids}"
        )
