"""
Unit tests for the error taxonomy and transient retry helpers.
"""

import pytest
from unittest.mock import Mock

from pgmirror.errors import (
    ConstraintViolationError,
    ErrorKind,
    TransientIOError,
    UnresolvedDependencyError,
)
from pgmirror.utils.retry import retry_transient


class TestErrors:
    """Test suite for typed errors."""

    def test_constraint_violation_message(self):
        error = ConstraintViolationError(ErrorKind.UNIQUE, "demandas_pkey", "duplicate key")

        assert error.kind is ErrorKind.UNIQUE
        assert error.constraint_name == "demandas_pkey"
        assert "unique violation on demandas_pkey: duplicate key" == str(error)

    def test_is_foreign_key(self):
        assert ConstraintViolationError(ErrorKind.FOREIGN_KEY).is_foreign_key
        assert not ConstraintViolationError(ErrorKind.CHECK).is_foreign_key

    def test_unresolved_dependency_sorts_ids(self):
        error = UnresolvedDependencyError("pessoa", "fiscalizado_id", [9, 3, 9])

        assert error.ids == [3, 9]
        assert "fiscalizado_id" in str(error)


class TestRetryTransient:
    """Test suite for retry_transient."""

    def test_returns_on_first_success(self):
        func = Mock(return_value=42)
        sleep = Mock()

        assert retry_transient(func, sleep=sleep) == 42
        func.assert_called_once()
        sleep.assert_not_called()

    def test_retries_transient_then_succeeds(self):
        func = Mock(side_effect=[TransientIOError("timeout"), TransientIOError("timeout"), "ok"])
        sleep = Mock()

        assert retry_transient(func, attempts=3, delay=0.5, sleep=sleep) == "ok"
        assert func.call_count == 3
        assert sleep.call_count == 2
        sleep.assert_called_with(0.5)

    def test_raises_after_exhausting_attempts(self):
        func = Mock(side_effect=TransientIOError("down"))

        with pytest.raises(TransientIOError, match="down"):
            retry_transient(func, attempts=2, sleep=Mock())

        assert func.call_count == 2

    def test_does_not_retry_other_errors(self):
        func = Mock(side_effect=ConstraintViolationError(ErrorKind.FOREIGN_KEY))

        with pytest.raises(ConstraintViolationError):
            retry_transient(func, attempts=5, sleep=Mock())

        func.assert_called_once()

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            retry_transient(Mock(), attempts=0)
