"""
Unit tests for the database client and error translation.
"""

import pytest
from unittest.mock import MagicMock, Mock, patch

import psycopg2
from psycopg2 import errorcodes, pool
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT

from pgmirror.db.client import DatabaseClient, quote_ident, quote_table, translate_error
from pgmirror.errors import ConstraintViolationError, ErrorKind, TransientIOError


def integrity_error(pgcode, constraint_name=None, pgerror="ERROR: violation"):
    error = Mock(spec=psycopg2.IntegrityError)
    error.pgcode = pgcode
    error.pgerror = pgerror
    error.diag = Mock(constraint_name=constraint_name)
    return error


class TestTranslateError:
    """Test suite for translate_error."""

    @pytest.mark.parametrize("pgcode,kind", [
        (errorcodes.FOREIGN_KEY_VIOLATION, ErrorKind.FOREIGN_KEY),
        (errorcodes.UNIQUE_VIOLATION, ErrorKind.UNIQUE),
        (errorcodes.NOT_NULL_VIOLATION, ErrorKind.NOT_NULL),
        (errorcodes.CHECK_VIOLATION, ErrorKind.CHECK),
        ("23P01", ErrorKind.OTHER),
    ])
    def test_integrity_errors_classified_by_sqlstate(self, pgcode, kind):
        translated = translate_error(integrity_error(pgcode, "some_constraint"))

        assert isinstance(translated, ConstraintViolationError)
        assert translated.kind is kind
        assert translated.constraint_name == "some_constraint"

    def test_detail_preserved(self):
        translated = translate_error(integrity_error(
            errorcodes.FOREIGN_KEY_VIOLATION,
            "demandas_fiscalizado_id_fkey",
            'ERROR:  insert or update on table "demandas" violates foreign key constraint\n'
        ))

        assert translated.detail.startswith("ERROR:  insert or update")
        assert not translated.detail.endswith("\n")

    @pytest.mark.parametrize("error", [
        psycopg2.OperationalError("server closed the connection unexpectedly"),
        psycopg2.InterfaceError("connection already closed"),
        pool.PoolError("connection pool exhausted"),
    ])
    def test_connection_errors_are_transient(self, error):
        assert isinstance(translate_error(error), TransientIOError)

    def test_other_errors_pass_through(self):
        error = psycopg2.ProgrammingError("syntax error")

        assert translate_error(error) is error


class TestQuoting:
    """Test suite for identifier quoting."""

    def test_quote_ident_escapes_quotes(self):
        assert quote_ident('odd"name') == '"odd""name"'

    def test_quote_table(self):
        assert quote_table("fiscalizacao.demandas") == '"fiscalizacao"."demandas"'


class TestDatabaseClient:
    """Test suite for DatabaseClient with a mocked pool."""

    @pytest.fixture
    def conn(self):
        conn = MagicMock()
        conn.closed = 0
        return conn

    @pytest.fixture
    def pool_factory(self, conn):
        factory = Mock()
        factory.return_value.getconn.return_value = conn
        return factory

    @pytest.fixture
    def client(self, pool_factory):
        return DatabaseClient("postgres://test/db", name="destination", max_connections=2, pool_factory=pool_factory)

    def test_pool_created_with_bounds(self, client, pool_factory):
        pool_factory.assert_called_once_with(1, 2, "postgres://test/db", connect_timeout=10)

    def test_pool_creation_failure_is_transient(self):
        factory = Mock(side_effect=psycopg2.OperationalError("could not connect"))

        with pytest.raises(TransientIOError, match="could not connect"):
            DatabaseClient("postgres://down/db", name="source", pool_factory=factory)

    def test_connection_commits_and_returns_to_pool(self, client, pool_factory, conn):
        with client.connection() as borrowed:
            assert borrowed is conn

        conn.commit.assert_called_once()
        pool_factory.return_value.putconn.assert_called_once_with(conn, close=False)

    def test_connection_rolls_back_and_translates(self, client, pool_factory, conn):
        with pytest.raises(ConstraintViolationError):
            with client.connection():
                raise psycopg2.IntegrityError("duplicate key")

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()
        pool_factory.return_value.putconn.assert_called_once_with(conn, close=False)

    def test_broken_connection_discarded(self, client, pool_factory, conn):
        with pytest.raises(TransientIOError):
            with client.connection():
                conn.closed = 2
                raise psycopg2.OperationalError("terminating connection")

        conn.rollback.assert_not_called()
        pool_factory.return_value.putconn.assert_called_once_with(conn, close=True)

    def test_execute_returns_rowcount(self, client, conn):
        cursor = conn.cursor.return_value.__enter__.return_value
        cursor.rowcount = 3

        assert client.execute("UPDATE t SET ativo = false WHERE id = %s", (1,)) == 3
        cursor.execute.assert_called_once_with("UPDATE t SET ativo = false WHERE id = %s", (1,))

    def test_fetch_column(self, client, conn):
        cursor = conn.cursor.return_value.__enter__.return_value
        cursor.fetchall.return_value = [(3,), (2,)]

        assert client.fetch_column("SELECT id FROM t") == [3, 2]

    def test_fetch_all_returns_dicts(self, client, conn):
        cursor = conn.cursor.return_value.__enter__.return_value
        cursor.fetchall.return_value = [{"id": 1, "nome": "a"}]

        assert client.fetch_all("SELECT * FROM t") == [{"id": 1, "nome": "a"}]

    def test_close_is_idempotent(self, client, pool_factory):
        client.close()
        client.close()

        assert client.closed
        pool_factory.return_value.closeall.assert_called_once()

    def test_closed_client_rejects_work(self, client):
        client.close()

        with pytest.raises(TransientIOError, match="closed"):
            with client.connection():
                pass

    def test_context_manager_closes(self, pool_factory):
        with DatabaseClient("postgres://test/db", name="source", pool_factory=pool_factory):
            pass

        pool_factory.return_value.closeall.assert_called_once()

    @patch('pgmirror.db.client.psycopg2.connect')
    def test_listener_connection_is_autocommit(self, mock_connect, client):
        conn = mock_connect.return_value

        assert client.open_listener_connection() is conn
        mock_connect.assert_called_once_with("postgres://test/db", connect_timeout=10)
        conn.set_isolation_level.assert_called_once_with(ISOLATION_LEVEL_AUTOCOMMIT)

    @patch('pgmirror.db.client.psycopg2.connect')
    def test_listener_connection_failure_is_transient(self, mock_connect, client):
        mock_connect.side_effect = psycopg2.OperationalError("connection refused")

        with pytest.raises(TransientIOError):
            client.open_listener_connection()
