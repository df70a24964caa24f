"""
Logging setup shared by the replication service and operator scripts.

Human-readable console output by default; one JSON document per line when
JSON_LOGGING=true.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from pgmirror.utils.correlation import setup_correlation_logging

EXTRA_FIELDS = ("entity_type", "entity_id", "event_type", "pass_number", "duration")


class StructuredJSONFormatter(logging.Formatter):
    """JSON formatter with correlation ID support."""

    def format(self, record):
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'correlation_id': getattr(record, 'correlation_id', 'N/A'),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        for field in EXTRA_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_logging(verbose: bool = False, json_logging: bool = None) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        verbose: Enable DEBUG level
        json_logging: Force JSON output on/off (defaults to JSON_LOGGING env var)

    Returns:
        The configured root logger
    """
    if json_logging is None:
        json_logging = os.getenv('JSON_LOGGING', 'false').lower() == 'true'

    handler = logging.StreamHandler(sys.stderr)
    setup_correlation_logging(handler)

    if json_logging:
        handler.setFormatter(StructuredJSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(correlation_id)s] %(name)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    return root
