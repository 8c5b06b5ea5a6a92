"""
Operator manager: the long-running process.

This module implements the daemon that:
- Runs leader election continuously
- While leader, runs the watch layer and the scheduler's worker pool, and
  enqueues every existing cluster once so drift since the last leader is
  picked up
- On leadership loss, cancels the watch and worker tasks (in-flight passes
  are aborted; the next leader re-derives everything)
- Handles graceful shutdown on SIGINT/SIGTERM, releasing the lease

serve() wires the production adapters: kubernetes_asyncio for the platform,
httpx for the broker admin API, aiokafka for mirroring, boto3 for the warm
tier and aiosqlite for the event journal.
"""

import asyncio
import contextlib
import functools
import logging
import signal

import httpx

from shazamq_operator.broker_client import BrokerAdminClient
from shazamq_operator.config import OperatorSettings
from shazamq_operator.db.events import EventJournal, EventRecorder
from shazamq_operator.engine.api import GuardedPlatform
from shazamq_operator.engine.reconciler import ClusterReconciler
from shazamq_operator.kube.client import KubePlatformClient
from shazamq_operator.mirror.controller import MirrorController
from shazamq_operator.mirror.kafka import KafkaMirrorFactory
from shazamq_operator.runtime.leader import LeaderElector
from shazamq_operator.runtime.scheduler import Scheduler
from shazamq_operator.runtime.watch import ReconcileRequest, WatchSource
from shazamq_operator.tiered.controller import TieredStorageController
from shazamq_operator.tiered.s3 import S3StoreFactory
from shazamq_protocols.broker import BrokerAdminProtocol
from shazamq_protocols.errors import OperatorError
from shazamq_protocols.platform import PlatformClientProtocol
from shazamq_protocols.types import ObjectKind

logger = logging.getLogger(__name__)


class OperatorManager:
    """
    Leadership-gated reconcile loop for one watch scope.

    Example:
        manager = OperatorManager(settings, platform, broker, recorder)
        await manager.run()  # Runs until SIGINT/SIGTERM
    """

    def __init__(
        self,
        settings: OperatorSettings,
        platform: PlatformClientProtocol,
        broker: BrokerAdminProtocol,
        recorder: EventRecorder,
        mirror: bool = True,
        tiered: bool = True,
    ) -> None:
        """
        Initialize the manager.

        Args:
            settings: Process configuration
            platform: Raw platform client (leadership and watches use it directly)
            broker: Broker admin client
            recorder: Event recorder shared by every component
            mirror: Run the mirror controller (aiokafka adapters)
            tiered: Run the tiered-storage controller (boto3 adapter)
        """
        self.settings = settings
        self.platform = platform
        self.broker = broker
        self.recorder = recorder
        self.elector = LeaderElector(platform, settings, recorder)
        self.api = GuardedPlatform(platform, settings, guard=self.elector.ensure_leader)
        self.reconciler = ClusterReconciler(
            self.api,
            broker,
            settings,
            recorder,
            mirror=self._mirror_controller() if mirror else None,
            tiered=self._tiered_controller() if tiered else None,
        )
        self._shutdown = asyncio.Event()

    def _mirror_controller(self) -> MirrorController:
        factory = KafkaMirrorFactory(self.api)
        return MirrorController(
            factory.source,
            factory.target,
            self.recorder,
            batch_size=self.settings.mirror_batch_size,
        )

    def _tiered_controller(self) -> TieredStorageController:
        return TieredStorageController(self.broker, S3StoreFactory(self.api), self.recorder)

    def shutdown(self) -> None:
        self._shutdown.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signal by setting shutdown event."""
        logger.info("Received %s, shutting down", sig.name)
        self._shutdown.set()

    async def run(self) -> None:
        """
        Run until a shutdown signal.

        Registers SIGINT and SIGTERM handlers, then alternates between
        waiting for leadership and leading.
        """
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, functools.partial(self._handle_signal, sig))

        logger.info(
            "Operator %s starting (scope: %s)",
            self.settings.identity,
            self.settings.watch_namespace or "all namespaces",
        )
        election = asyncio.create_task(self.elector.run())
        try:
            while not self._shutdown.is_set():
                if not await self._wait_either(self.elector.acquired):
                    break
                await self.lead()
        finally:
            election.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await election
            try:
                await self.elector.release()
            except OperatorError as e:
                logger.warning("Could not release lease: %s", e)
        logger.info("Operator stopped")

    async def _wait_either(self, event: asyncio.Event) -> bool:
        """Wait for event or shutdown; True if event fired first."""
        waiter = asyncio.create_task(event.wait())
        stopper = asyncio.create_task(self._shutdown.wait())
        done, pending = await asyncio.wait(
            {waiter, stopper}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        return waiter in done and not self._shutdown.is_set()

    async def lead(self) -> None:
        """
        Reconcile while leadership lasts.

        Returns when leadership is lost, on shutdown, or when the scheduler
        or watch task stops on its own; run() then starts a fresh pair if
        this instance still holds the lease.
        """
        channel: asyncio.Queue[ReconcileRequest] = asyncio.Queue(
            maxsize=self.settings.request_channel_size
        )
        scheduler = Scheduler(self.reconciler.reconcile, self.settings, channel)
        watcher = WatchSource(self.platform, self.settings, channel)
        tasks = [
            asyncio.create_task(scheduler.run(), name="scheduler"),
            asyncio.create_task(watcher.run(), name="watch"),
        ]
        waiters = [
            asyncio.create_task(self.elector.lost.wait()),
            asyncio.create_task(self._shutdown.wait()),
        ]
        stopped: list[asyncio.Task] = []
        try:
            try:
                await self.enqueue_all(scheduler)
            except OperatorError as e:
                logger.warning("Initial cluster listing failed (%s); relying on watches", e)
            done, _ = await asyncio.wait(
                tasks + waiters, return_when=asyncio.FIRST_COMPLETED
            )
            stopped = [task for task in tasks if task in done]
        finally:
            for task in tasks + waiters:
                task.cancel()
            await asyncio.gather(*tasks, *waiters, return_exceptions=True)

        for task in stopped:
            error = None if task.cancelled() else task.exception()
            logger.error("%s task stopped unexpectedly: %r", task.get_name(), error, exc_info=error)
        if self._shutdown.is_set():
            return
        if stopped:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(
                    self._shutdown.wait(), timeout=self.settings.backoff_base_seconds
                )
        else:
            logger.warning("Leadership lost; reconciliation paused")

    async def enqueue_all(self, scheduler: Scheduler) -> int:
        """Enqueue every cluster in scope; returns how many."""
        clusters = await self.api.list_objects(
            ObjectKind.CLUSTER, self.settings.watch_namespace
        )
        for body in clusters:
            metadata = body.get("metadata", {})
            scheduler.enqueue(
                ReconcileRequest(
                    key=f"{metadata.get('namespace')}/{metadata.get('name')}",
                    reason="leadership acquired",
                    generation=metadata.get("generation"),
                )
            )
        logger.info("Enqueued %d cluster(s)", len(clusters))
        return len(clusters)


async def serve(settings: OperatorSettings, kubeconfig: str | None = None) -> None:
    """Build the production adapters and run the manager until shutdown."""
    platform = await KubePlatformClient.connect(kubeconfig)
    try:
        async with contextlib.AsyncExitStack() as stack:
            journal = None
            if settings.journal_path is not None:
                settings.journal_path.parent.mkdir(parents=True, exist_ok=True)
                journal = await stack.enter_async_context(
                    EventJournal(settings.journal_path)
                )
            http = await stack.enter_async_context(
                httpx.AsyncClient(timeout=settings.api_timeout_seconds)
            )
            recorder = EventRecorder(journal)
            manager = OperatorManager(
                settings, platform, BrokerAdminClient(http=http), recorder
            )
            await manager.run()
    finally:
        await platform.close()
