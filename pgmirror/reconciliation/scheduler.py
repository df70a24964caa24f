"""
Reconciliation Scheduler

Cancellable cron-driven timer for reconciliation passes. A pass is never
overlapped with itself: a trigger that arrives while a pass is still
running is skipped.
"""

import logging
import threading
from datetime import datetime, tzinfo
from typing import Any, Callable, Optional

from croniter import croniter

from pgmirror.monitoring.metrics import ReplicationMetrics

logger = logging.getLogger(__name__)


class ReconciliationScheduler:
    """
    Runs a job on a cron schedule in a background thread.

    Usage:
        scheduler = ReconciliationScheduler(engine.run_pass, "*/5 * * * *", config.tzinfo)
        scheduler.start()
        ...
        scheduler.stop()
    """

    def __init__(
        self,
        job: Callable[[], Any],
        cron_expression: str,
        tz: tzinfo,
        metrics: Optional[ReplicationMetrics] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize the scheduler.

        Args:
            job: Zero-argument callable run on every tick
            cron_expression: Five-field cron expression
            tz: Timezone the expression is evaluated in
            metrics: Metrics sink for skipped passes
            clock: Returns the current aware datetime (injectable for tests)

        Raises:
            ValueError: If the cron expression is invalid
        """
        if not croniter.is_valid(cron_expression):
            raise ValueError(f"Invalid cron expression: {cron_expression}")

        self.job = job
        self.cron_expression = cron_expression
        self.tz = tz
        self.metrics = metrics or ReplicationMetrics()
        self._clock = clock or (lambda: datetime.now(self.tz))

        self._stop = threading.Event()
        self._running = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def busy(self) -> bool:
        """Whether a pass is executing right now."""
        return self._running.locked()

    def next_run_time(self, after: Optional[datetime] = None) -> datetime:
        """Next fire time strictly after the given moment (default: now)."""
        base = after or self._clock()
        return croniter(self.cron_expression, base).get_next(datetime)

    def start(self) -> None:
        """Start the timer thread."""
        if self.running:
            return

        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="pgmirror-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Reconciliation scheduled with '{self.cron_expression}' ({self.tz})")

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Cancel the timer.

        A pass that is already running is allowed to finish within timeout.
        """
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Reconciliation pass still running after stop timeout")
            self._thread = None
        logger.info("Reconciliation scheduler stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            now = self._clock()
            next_run = self.next_run_time(now)
            delay = max((next_run - now).total_seconds(), 0.0)
            logger.debug(f"Next reconciliation pass at {next_run.isoformat()}")

            if self._stop.wait(delay):
                break
            self.trigger()

    def trigger(self) -> bool:
        """
        Run the job now unless a run is already in progress.

        Returns:
            True if the job ran, False if it was skipped
        """
        if not self._running.acquire(blocking=False):
            logger.warning("Previous reconciliation pass still running; skipping this one")
            self.metrics.record_skipped_pass()
            return False

        try:
            self.job()
        except Exception:
            logger.exception("Reconciliation pass failed")
        finally:
            self._running.release()
        return True
