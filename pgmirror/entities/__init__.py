"""
Entity handlers for PostgreSQL-backed replication.

Usage:
    from pgmirror.entities import build_default_registry

    registry = build_default_registry(source, destination)
    handler = registry.get_by_table("public.demanda")
"""

from pgmirror.entities.base import EntityDefinition, LinkEntityHandler, PostgresEntityHandler
from pgmirror.entities.fiscalizacao import build_default_registry

__all__ = [
    "EntityDefinition",
    "LinkEntityHandler",
    "PostgresEntityHandler",
    "build_default_registry",
]

__version__ = "1.0.0"
