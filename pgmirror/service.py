"""
Replication Service

Wires the engine together from a SyncConfig: the two database clients,
the entity registry, the divergence ledger, metrics, the change listener
and the reconciliation scheduler. Owns their lifecycle: clients are opened
once in open() and closed exactly once in close().
"""

import logging
import signal
import threading
from typing import Callable, Optional

from pgmirror.db.client import DatabaseClient
from pgmirror.entities.fiscalizacao import build_default_registry
from pgmirror.monitoring.metrics import ReplicationMetrics, start_metrics_server
from pgmirror.reconciliation.engine import ReconciliationEngine
from pgmirror.reconciliation.scheduler import ReconciliationScheduler
from pgmirror.replication.applier import RecordApplier
from pgmirror.replication.ledger import DivergenceLedger
from pgmirror.replication.listener import ChangeListener
from pgmirror.replication.registry import EntityRegistry
from pgmirror.replication.reprocess import Reprocessor
from pgmirror.replication.resolver import DependencyResolver
from pgmirror.replication.writer import UpsertWriter
from pgmirror.utils.config import SyncConfig

logger = logging.getLogger(__name__)


class ReplicationService:
    """
    The assembled replication engine.

    Usage:
        with ReplicationService(SyncConfig.from_env()) as service:
            service.run_forever()
    """

    def __init__(
        self,
        config: SyncConfig,
        metrics: Optional[ReplicationMetrics] = None,
        client_factory: Callable[..., DatabaseClient] = DatabaseClient,
        registry_factory: Callable[[DatabaseClient, DatabaseClient], EntityRegistry] = build_default_registry
    ):
        """
        Initialize the service without touching the databases.

        Args:
            config: Startup configuration
            metrics: Metrics sink (a private one is created if not provided)
            client_factory: Builds a DatabaseClient (injectable for tests)
            registry_factory: Builds the entity registry from the two clients
        """
        self.config = config
        self.metrics = metrics or ReplicationMetrics()
        self._client_factory = client_factory
        self._registry_factory = registry_factory

        self.source: Optional[DatabaseClient] = None
        self.destination: Optional[DatabaseClient] = None
        self.registry: Optional[EntityRegistry] = None
        self.ledger = DivergenceLedger(config.ledger_path, on_change=self.metrics.set_ledger_size)
        self.resolver: Optional[DependencyResolver] = None
        self.writer: Optional[UpsertWriter] = None
        self.applier: Optional[RecordApplier] = None
        self.engine: Optional[ReconciliationEngine] = None
        self.reprocessor: Optional[Reprocessor] = None
        self.listener: Optional[ChangeListener] = None
        self.scheduler: Optional[ReconciliationScheduler] = None

        self._shutdown = threading.Event()
        self._initial_pass: Optional[threading.Thread] = None

    @property
    def opened(self) -> bool:
        return self.source is not None

    def open(self) -> "ReplicationService":
        """Open both clients and build every component. Safe to call twice."""
        if self.opened:
            return self

        config = self.config
        logger.info("Opening database clients")
        self.source = self._client_factory(
            config.source_url, name="source",
            min_connections=config.pool_min, max_connections=config.pool_max,
            connect_timeout=config.connect_timeout
        )
        try:
            self.destination = self._client_factory(
                config.destination_url, name="destination",
                min_connections=config.pool_min, max_connections=config.pool_max,
                connect_timeout=config.connect_timeout
            )
        except Exception:
            self.source.close()
            self.source = None
            raise

        self.registry = self._registry_factory(self.source, self.destination)
        self.resolver = DependencyResolver(self.registry, metrics=self.metrics)
        self.writer = UpsertWriter(self.resolver, self.ledger, metrics=self.metrics)
        self.applier = RecordApplier(self.resolver, self.writer, metrics=self.metrics)
        self.engine = ReconciliationEngine(
            self.registry, self.applier,
            batch_size=config.batch_size,
            default_window=config.window_size,
            resync_every=config.resync_every,
            metrics=self.metrics
        )
        self.reprocessor = Reprocessor(self.registry, self.applier, self.ledger)
        self.metrics.set_ledger_size(len(self.ledger))
        return self

    def start(self, initial_pass: bool = True) -> None:
        """
        Start real-time propagation and scheduled reconciliation.

        Args:
            initial_pass: Run a reconciliation pass right away to close the
                startup backlog
        """
        self.open()
        config = self.config

        start_metrics_server(self.metrics, config.metrics_port)

        self.listener = ChangeListener(
            self.source, self.registry, self.applier,
            channel=config.channel,
            max_in_flight=config.max_in_flight,
            reconnect_delay=config.reconnect_delay,
            metrics=self.metrics
        )
        self.listener.start()

        self.scheduler = ReconciliationScheduler(
            self.engine.run_pass, config.reconcile_cron, config.tzinfo, metrics=self.metrics
        )
        self.scheduler.start()

        if initial_pass:
            self._initial_pass = threading.Thread(
                target=self.scheduler.trigger, name="pgmirror-initial-pass", daemon=True
            )
            self._initial_pass.start()

        logger.info("Replication service started")

    def stop(self) -> None:
        """
        Stop accepting notifications, drain in-flight work, cancel the
        timer and close both clients.
        """
        grace = self.config.shutdown_grace
        logger.info(f"Stopping replication service (grace {grace}s)")

        if self.listener is not None:
            self.listener.stop(grace=grace)
            self.listener = None

        if self.scheduler is not None:
            self.scheduler.stop(timeout=grace)
            self.scheduler = None

        if self._initial_pass is not None:
            self._initial_pass.join(timeout=grace)
            self._initial_pass = None

        self.close()
        self._shutdown.set()

    def close(self) -> None:
        """Close both clients. Safe to call more than once."""
        for client in (self.source, self.destination):
            if client is not None:
                client.close()
        self.source = None
        self.destination = None

    def request_shutdown(self, signum=None, frame=None) -> None:
        if signum is not None:
            logger.info(f"Received signal {signum}")
        self._shutdown.set()

    def run_forever(self) -> None:
        """Start the service and block until SIGINT or SIGTERM."""
        signal.signal(signal.SIGINT, self.request_shutdown)
        signal.signal(signal.SIGTERM, self.request_shutdown)

        self.start()
        try:
            while not self._shutdown.wait(1.0):
                pass
        finally:
            self.stop()

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
