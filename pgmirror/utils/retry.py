"""
Fixed-backoff retry for transient I/O failures.
"""

import logging
import time
from typing import Callable, TypeVar

from pgmirror.errors import TransientIOError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_DELAY_SECONDS = 1.0


def retry_transient(
    func: Callable[[], T],
    attempts: int = DEFAULT_ATTEMPTS,
    delay: float = DEFAULT_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep
) -> T:
    """
    Call func, retrying on TransientIOError with a fixed delay.

    Args:
        func: Zero-argument callable to run
        attempts: Total number of attempts (>= 1)
        delay: Seconds to wait between attempts
        sleep: Sleep function (injectable for tests)

    Returns:
        Whatever func returns

    Raises:
        TransientIOError: If every attempt failed
        ValueError: If attempts is less than 1
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    for attempt in range(1, attempts + 1):
        try:
            return func()
        except TransientIOError as e:
            if attempt == attempts:
                logger.error(f"Giving up after {attempts} attempts: {e}")
                raise
            logger.warning(
                f"Transient failure (attempt {attempt}/{attempts}): {e}. "
                f"Retrying in {delay}s"
            )
            sleep(delay)
