"""
Correlation IDs for the Replication Engine

Every notification handled by the listener and every reconciliation pass
runs inside its own correlation context, so all log lines produced by one
unit of work can be grouped together.
"""

import uuid
import contextvars
from typing import Optional
import logging

logger = logging.getLogger(__name__)

_correlation_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'correlation_id',
    default=None
)


def generate_correlation_id(prefix: Optional[str] = None) -> str:
    """
    Generate a new correlation ID.

    Args:
        prefix: Optional label prepended to the UUID (e.g. "notify", "reconcile")

    Returns:
        UUID4 string, optionally prefixed as "<prefix>-<uuid>"
    """
    value = str(uuid.uuid4())
    return f"{prefix}-{value}" if prefix else value


def get_correlation_id() -> Optional[str]:
    """Return the correlation ID of the current context, if any."""
    return _correlation_id.get()


class CorrelationContext:
    """
    Context manager scoping a correlation ID to one unit of work.

    The previous ID (if any) is restored on exit, so nested contexts
    behave as expected.
    """

    def __init__(self, correlation_id: Optional[str] = None, prefix: Optional[str] = None):
        self.correlation_id = correlation_id
        self.prefix = prefix
        self._token = None

    def __enter__(self) -> str:
        if not self.correlation_id:
            self.correlation_id = generate_correlation_id(self.prefix)
        self._token = _correlation_id.set(self.correlation_id)
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb):
        _correlation_id.reset(self._token)


def correlation_id_filter(record):
    """Logging filter adding the current correlation ID to each record."""
    record.correlation_id = get_correlation_id() or "N/A"
    return True


def setup_correlation_logging(handler: logging.Handler) -> None:
    """Attach the correlation filter to a handler."""
    handler.addFilter(correlation_id_filter)
