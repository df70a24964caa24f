"""
Real-time replication: change listener, dependency resolution, upsert
writes and the divergence ledger.

Usage:
    from pgmirror.replication import ChangeListener, DependencyResolver, UpsertWriter

    resolver = DependencyResolver(registry)
    writer = UpsertWriter(resolver, ledger)
    listener = ChangeListener(source, registry, RecordApplier(resolver, writer))
    listener.start()
"""

from pgmirror.replication.applier import RecordApplier
from pgmirror.replication.ledger import DivergenceLedger
from pgmirror.replication.listener import ChangeListener
from pgmirror.replication.models import (
    ApplyResult,
    ChangeDescriptor,
    DependencyReference,
    DivergenceKind,
    DivergenceRecord,
    Operation,
)
from pgmirror.replication.registry import EntityHandler, EntityRegistry
from pgmirror.replication.reprocess import ReprocessReport, Reprocessor
from pgmirror.replication.resolver import DependencyResolver
from pgmirror.replication.writer import UpsertWriter

__all__ = [
    "ApplyResult",
    "ChangeDescriptor",
    "ChangeListener",
    "DependencyReference",
    "DependencyResolver",
    "DivergenceKind",
    "DivergenceLedger",
    "DivergenceRecord",
    "EntityHandler",
    "EntityRegistry",
    "Operation",
    "RecordApplier",
    "ReprocessReport",
    "Reprocessor",
    "UpsertWriter",
]

__version__ = "1.0.0"
