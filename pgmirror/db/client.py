"""
PostgreSQL Client Handles

One DatabaseClient per side of the replication (source, destination).
Clients are created at startup, injected into every component that needs
them and closed exactly once at shutdown. psycopg2 errors are translated
into the engine's typed errors here, at the boundary.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

import psycopg2
from psycopg2 import errorcodes, pool
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT
from psycopg2.extras import RealDictCursor

from pgmirror.errors import ConstraintViolationError, ErrorKind, TransientIOError

logger = logging.getLogger(__name__)

_CONSTRAINT_KINDS = {
    errorcodes.FOREIGN_KEY_VIOLATION: ErrorKind.FOREIGN_KEY,
    errorcodes.UNIQUE_VIOLATION: ErrorKind.UNIQUE,
    errorcodes.NOT_NULL_VIOLATION: ErrorKind.NOT_NULL,
    errorcodes.CHECK_VIOLATION: ErrorKind.CHECK,
}


def quote_ident(name: str) -> str:
    """Quote a SQL identifier."""
    return '"' + name.replace('"', '""') + '"'


def quote_table(qualified: str) -> str:
    """Quote a "schema.table" reference."""
    return ".".join(quote_ident(part) for part in qualified.split("."))


def translate_error(error: Exception) -> Exception:
    """
    Map a psycopg2 exception onto the engine's error taxonomy.

    Args:
        error: Exception raised by psycopg2

    Returns:
        ConstraintViolationError for integrity errors, TransientIOError for
        connection-level failures, or the original exception otherwise
    """
    if isinstance(error, psycopg2.IntegrityError):
        diag = getattr(error, "diag", None)
        return ConstraintViolationError(
            kind=_CONSTRAINT_KINDS.get(getattr(error, "pgcode", None), ErrorKind.OTHER),
            constraint_name=getattr(diag, "constraint_name", None),
            detail=(getattr(error, "pgerror", None) or str(error)).strip()
        )

    if isinstance(error, (psycopg2.OperationalError, psycopg2.InterfaceError, pool.PoolError)):
        return TransientIOError(str(error).strip())

    return error


class DatabaseClient:
    """
    Thread-safe pooled access to one PostgreSQL database.

    Connections are borrowed per unit of work: the transaction commits when
    the block exits normally and rolls back when it raises.
    """

    def __init__(
        self,
        dsn: str,
        name: str,
        min_connections: int = 1,
        max_connections: int = 10,
        connect_timeout: int = 10,
        pool_factory=pool.ThreadedConnectionPool
    ):
        """
        Initialize the client and open the pool.

        Args:
            dsn: PostgreSQL connection string
            name: Label used in logs ("source" or "destination")
            min_connections: Connections opened eagerly
            max_connections: Upper bound on concurrent connections
            connect_timeout: Connection timeout in seconds
            pool_factory: Pool class (injectable for tests)

        Raises:
            TransientIOError: If the database cannot be reached
        """
        self.dsn = dsn
        self.name = name
        self.connect_timeout = connect_timeout
        self._slots = threading.BoundedSemaphore(max_connections)
        self._closed = False
        self._close_lock = threading.Lock()

        logger.info(f"Opening {name} connection pool ({min_connections}-{max_connections})")
        try:
            self._pool = pool_factory(
                min_connections,
                max_connections,
                dsn,
                connect_timeout=connect_timeout
            )
        except psycopg2.Error as e:
            raise translate_error(e) from e

    @property
    def closed(self) -> bool:
        return self._closed

    @contextmanager
    def connection(self) -> Iterator[Any]:
        """
        Borrow a pooled connection for one transaction.

        Blocks while every pooled connection is in use.

        Raises:
            TransientIOError: On connection loss or when the client is closed
            ConstraintViolationError: On integrity errors
        """
        if self._closed:
            raise TransientIOError(f"{self.name} client is closed")

        self._slots.acquire()
        conn = None
        try:
            try:
                conn = self._pool.getconn()
            except psycopg2.Error as e:
                raise translate_error(e) from e

            try:
                yield conn
                conn.commit()
            except psycopg2.Error as e:
                self._rollback(conn)
                raise translate_error(e) from e
            except BaseException:
                self._rollback(conn)
                raise
        finally:
            if conn is not None:
                self._pool.putconn(conn, close=bool(conn.closed))
            self._slots.release()

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        """Borrow a connection and yield a dict cursor inside one transaction."""
        with self.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                yield cursor

    def fetch_all(self, query: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        """Run a query and return every row as a dict."""
        with self.transaction() as cursor:
            cursor.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]

    def fetch_column(self, query: str, params: Optional[Sequence[Any]] = None) -> List[Any]:
        """Run a query and return the first column of every row."""
        with self.connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                return [row[0] for row in cursor.fetchall()]

    def execute(self, query: str, params: Optional[Sequence[Any]] = None) -> int:
        """Run a statement and return the affected row count."""
        with self.connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                return cursor.rowcount

    def open_listener_connection(self):
        """
        Open a dedicated autocommit connection outside the pool.

        Used for LISTEN, which needs a connection that stays idle between
        notifications and is never handed to another caller.

        Raises:
            TransientIOError: If the database cannot be reached
        """
        try:
            conn = psycopg2.connect(self.dsn, connect_timeout=self.connect_timeout)
            conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
            return conn
        except psycopg2.Error as e:
            raise translate_error(e) from e

    def close(self) -> None:
        """Close every pooled connection. Safe to call more than once."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._pool.closeall()
        logger.info(f"Closed {self.name} connection pool")

    def _rollback(self, conn) -> None:
        if conn.closed:
            return
        try:
            conn.rollback()
        except psycopg2.Error as e:
            logger.warning(f"Rollback failed on {self.name}: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
