"""
Database access for the replication engine.

Usage:
    from pgmirror.db import DatabaseClient

    with DatabaseClient(config.source_url, name="source") as source:
        rows = source.fetch_all("SELECT id FROM public.demanda LIMIT 10")
"""

from pgmirror.db.client import DatabaseClient, quote_ident, quote_table, translate_error

__all__ = [
    "DatabaseClient",
    "quote_ident",
    "quote_table",
    "translate_error",
]

__version__ = "1.0.0"
