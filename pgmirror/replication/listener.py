"""
Change Listener

Holds a LISTEN subscription on the source and applies every change
notification through the shared write pipeline. Notifications are handled
concurrently on a bounded worker pool; gaps while disconnected are left for
the reconciliation engine to close.
"""

import logging
import select
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Optional, Set

import psycopg2

from pgmirror.db.client import DatabaseClient, quote_ident
from pgmirror.errors import ReplicationError, TransientIOError
from pgmirror.monitoring.metrics import ReplicationMetrics
from pgmirror.replication.applier import RecordApplier
from pgmirror.replication.models import ChangeDescriptor, DivergenceKind, InvalidNotificationError, Operation
from pgmirror.replication.registry import EntityRegistry
from pgmirror.utils.correlation import CorrelationContext
from pgmirror.utils.retry import retry_transient

logger = logging.getLogger(__name__)

APPLIED = "applied"
FAILED = "failed"
NOT_FOUND = "not_found"
SKIPPED = "skipped"
DEACTIVATED = "deactivated"
INVALID = "invalid"


class ChangeListener:
    """
    Real-time propagation of source mutations.

    One thread owns the subscription; a ThreadPoolExecutor applies
    notifications, with a semaphore capping how many are in flight.
    """

    def __init__(
        self,
        source: DatabaseClient,
        registry: EntityRegistry,
        applier: RecordApplier,
        channel: str = "sync_channel",
        max_in_flight: int = 10,
        reconnect_delay: float = 5.0,
        poll_timeout: float = 1.0,
        metrics: Optional[ReplicationMetrics] = None
    ):
        """
        Initialize the listener.

        Args:
            source: Source client (a dedicated connection is opened for LISTEN)
            registry: Entity registry used to route notifications by table
            applier: Shared write pipeline
            channel: Notification channel name
            max_in_flight: Upper bound on concurrently applied notifications
            reconnect_delay: Seconds to wait before re-subscribing after a drop
            poll_timeout: Seconds between checks of the stop flag while idle
            metrics: Metrics sink
        """
        self.source = source
        self.registry = registry
        self.applier = applier
        self.writer = applier.writer
        self.channel = channel
        self.max_in_flight = max_in_flight
        self.reconnect_delay = reconnect_delay
        self.poll_timeout = poll_timeout
        self.metrics = metrics or applier.metrics

        self._stop = threading.Event()
        self._slots = threading.BoundedSemaphore(max_in_flight)
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._connected = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    def start(self) -> None:
        """Start the subscription thread and the worker pool."""
        if self.running:
            return

        self._stop.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_in_flight,
            thread_name_prefix="pgmirror-apply"
        )
        self._thread = threading.Thread(target=self._listen_loop, name="pgmirror-listener", daemon=True)
        self._thread.start()
        logger.info(f"Change listener started on channel '{self.channel}'")

    def stop(self, grace: float = 30.0) -> None:
        """
        Stop accepting notifications and drain in-flight applications.

        Args:
            grace: Seconds to wait for in-flight applications before giving up on them
        """
        self._stop.set()

        if self._thread is not None:
            self._thread.join(timeout=self.poll_timeout + 5)
            self._thread = None

        with self._pending_lock:
            pending = set(self._pending)

        if pending:
            logger.info(f"Waiting up to {grace}s for {len(pending)} in-flight notification(s)")
            _, not_done = wait(pending, timeout=grace)
            if not_done:
                logger.warning(f"{len(not_done)} notification(s) still running after grace period")

        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

        logger.info("Change listener stopped")

    def _listen_loop(self) -> None:
        while not self._stop.is_set():
            conn = None
            try:
                conn = self.source.open_listener_connection()
                with conn.cursor() as cursor:
                    cursor.execute(f"LISTEN {quote_ident(self.channel)}")
                self._connected.set()
                logger.info(f"Subscribed to '{self.channel}'")

                while not self._stop.is_set():
                    if select.select([conn], [], [], self.poll_timeout) == ([], [], []):
                        continue
                    conn.poll()
                    while conn.notifies:
                        notification = conn.notifies.pop(0)
                        self.dispatch(notification.payload)
            except (TransientIOError, psycopg2.Error, OSError) as e:
                logger.error(f"Subscription to '{self.channel}' lost: {e}")
            finally:
                self._connected.clear()
                if conn is not None and not conn.closed:
                    conn.close()

            if self._stop.is_set():
                break

            self.metrics.record_reconnect()
            logger.info(f"Reconnecting to '{self.channel}' in {self.reconnect_delay}s")
            self._stop.wait(self.reconnect_delay)

    def dispatch(self, payload: str) -> Optional[Future]:
        """
        Parse a notification payload and schedule it on the worker pool.

        Blocks while max_in_flight notifications are being applied.

        Returns:
            Future resolving to the outcome, or None for invalid payloads
        """
        try:
            descriptor = ChangeDescriptor.from_payload(payload)
        except InvalidNotificationError as e:
            logger.warning(f"Ignoring notification: {e}")
            self.metrics.record_notification("unknown", "unknown", INVALID)
            return None

        if self._executor is None:
            raise RuntimeError("Listener is not started")

        self._slots.acquire()
        self.metrics.in_flight.inc()
        try:
            future = self._executor.submit(self.handle, descriptor)
        except RuntimeError:
            self.metrics.in_flight.dec()
            self._slots.release()
            raise

        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._release)
        return future

    def _release(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)
        self.metrics.in_flight.dec()
        self._slots.release()

    def handle(self, descriptor: ChangeDescriptor) -> str:
        """
        Apply one change notification.

        Never raises: every failure is logged and, for writes, recorded as
        a divergence.

        Returns:
            Outcome label (applied, failed, not_found, skipped, deactivated)
        """
        with CorrelationContext(prefix="notify"):
            outcome = self._handle(descriptor)

        self.metrics.record_notification(descriptor.table, descriptor.operation.value, outcome)
        return outcome

    def _handle(self, descriptor: ChangeDescriptor) -> str:
        handler = self.registry.get_by_table(descriptor.table)
        if handler is None:
            logger.info(f"No entity registered for table {descriptor.table}; skipping")
            return SKIPPED

        entity_id = descriptor.entity_id
        logger.info(f"{descriptor.operation.value} {handler.entity_type} {entity_id}")

        try:
            if descriptor.operation is Operation.DELETED:
                if not handler.supports_soft_delete:
                    logger.info(f"{handler.entity_type} has no soft delete; ignoring delete of {entity_id}")
                    return SKIPPED
                self.writer.soft_delete(handler, entity_id)
                return DEACTIVATED

            row = retry_transient(
                lambda: handler.fetch_one(entity_id),
                attempts=self.writer.retry_attempts,
                delay=self.writer.retry_delay
            )
            if row is None:
                logger.info(f"{handler.entity_type} {entity_id} not found at source; nothing to apply")
                return NOT_FOUND
            if not handler.is_active(row):
                logger.info(f"{handler.entity_type} {entity_id} is inactive at source; skipping")
                return SKIPPED

            result = self.applier.apply_rows(handler, [row], path="realtime")
            return APPLIED if result.applied and not result.failed else FAILED

        except TransientIOError as e:
            self.writer.record_divergence(
                handler, entity_id, DivergenceKind.TRANSIENT_IO, str(e),
                {"operation": descriptor.operation.value, "path": "realtime"}
            )
        except ReplicationError as e:
            self.writer.record_divergence(
                handler, entity_id, DivergenceKind.UNEXPECTED, str(e),
                {"operation": descriptor.operation.value, "path": "realtime"}
            )
        except Exception as e:
            logger.exception(f"Unexpected error applying {handler.entity_type} {entity_id}")
            self.writer.record_divergence(
                handler, entity_id, DivergenceKind.UNEXPECTED, f"{type(e).__name__}: {e}",
                {"operation": descriptor.operation.value, "path": "realtime"}
            )
        return FAILED
