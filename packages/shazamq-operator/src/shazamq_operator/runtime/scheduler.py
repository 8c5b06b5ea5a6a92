"""
Reconcile scheduler: per-key queue, dedupe, worker pool and requeue.

Guarantees:
- at most one pass in flight per cluster key; passes for distinct keys run
  concurrently on a fixed-size worker pool
- duplicate pending requests for a key collapse into one (the most recent
  request is kept)
- a request arriving while the key is in flight marks it dirty, and the key
  runs again as soon as the current pass finishes
- failures requeue with exponential backoff, min(max, base * 2^n); success
  requeues after the handler's requested delay or the resync interval
- LeadershipLost and non-retryable errors are not requeued; only a new
  watch event brings the key back

A pass is bounded by pass_timeout_seconds. A pass that runs out of budget
is cancelled and requeued with backoff instead of being waited on.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from shazamq_operator.config import OperatorSettings
from shazamq_operator.engine.reconciler import ReconcileResult
from shazamq_operator.retry import RetryConfig
from shazamq_operator.runtime.watch import ReconcileRequest
from shazamq_protocols.errors import LeadershipLost, OperatorError

logger = logging.getLogger(__name__)

Handler = Callable[[str], Awaitable[ReconcileResult]]


class Scheduler:
    """
    Runs reconcile passes for cluster keys.

    Example:
        scheduler = Scheduler(reconciler.reconcile, settings, channel)
        task = asyncio.create_task(scheduler.run())
        scheduler.enqueue(ReconcileRequest("kafka/orders", "startup"))
    """

    def __init__(
        self,
        handler: Handler,
        settings: OperatorSettings,
        channel: "asyncio.Queue[ReconcileRequest] | None" = None,
    ) -> None:
        self.handler = handler
        self.channel = channel
        self.worker_count = settings.worker_count
        self.pass_timeout = settings.pass_timeout_seconds
        self.resync_interval = settings.resync_interval_seconds
        self.backoff = RetryConfig(
            min_wait_seconds=settings.backoff_base_seconds,
            max_wait_seconds=settings.backoff_max_seconds,
            jitter_fraction=0.0,
        )

        self._ready: asyncio.Queue[str] = asyncio.Queue()
        self._pending: dict[str, ReconcileRequest] = {}
        self._in_flight: set[str] = set()
        self._dirty: dict[str, ReconcileRequest] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._failures: dict[str, int] = {}
        self.next_delay: dict[str, float] = {}
        self.passes = 0

    # =========================================================================
    # Queueing
    # =========================================================================

    def enqueue(self, request: ReconcileRequest) -> None:
        """Queue a key for an immediate pass, collapsing duplicates."""
        key = request.key
        if key in self._in_flight:
            self._dirty[key] = request
            return
        self._cancel_timer(key)
        if key in self._pending:
            self._pending[key] = request
            return
        self._pending[key] = request
        self._ready.put_nowait(key)

    def schedule(self, key: str, delay: float, reason: str) -> None:
        """Queue a key after a delay, replacing any earlier timer for it."""
        self._cancel_timer(key)
        self.next_delay[key] = delay
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(
            delay, self._fire, ReconcileRequest(key=key, reason=reason)
        )

    def forget(self, key: str) -> None:
        """Drop every pending trace of a key."""
        self._cancel_timer(key)
        self._failures.pop(key, None)
        self.next_delay.pop(key, None)

    def is_pending(self, key: str) -> bool:
        return key in self._pending or key in self._dirty

    def is_scheduled(self, key: str) -> bool:
        return key in self._timers

    def _fire(self, request: ReconcileRequest) -> None:
        self._timers.pop(request.key, None)
        self.enqueue(request)

    def _cancel_timer(self, key: str) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    # =========================================================================
    # Workers
    # =========================================================================

    async def run(self) -> None:
        """Run the worker pool (and the channel pump) until cancelled."""
        tasks = [
            asyncio.create_task(self._worker(i)) for i in range(self.worker_count)
        ]
        if self.channel is not None:
            tasks.append(asyncio.create_task(self._pump()))
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()

    async def _pump(self) -> None:
        while True:
            request = await self.channel.get()
            self.enqueue(request)

    async def _worker(self, index: int) -> None:
        while True:
            key = await self._ready.get()
            request = self._pending.pop(key, None)
            if request is None:
                continue
            self._in_flight.add(key)
            try:
                await self.process(request)
            finally:
                self._in_flight.discard(key)
                dirty = self._dirty.pop(key, None)
                if dirty is not None:
                    self.enqueue(dirty)

    async def process(self, request: ReconcileRequest) -> None:
        """Run one pass for a request and decide when the key runs next."""
        key = request.key
        self.passes += 1
        logger.debug("Reconciling %s (%s)", key, request.reason or "requeue")
        try:
            result = await asyncio.wait_for(self.handler(key), timeout=self.pass_timeout)
        except LeadershipLost:
            logger.info("Leadership lost during pass for %s; not requeued", key)
            self.forget(key)
            return
        except asyncio.TimeoutError:
            logger.warning("Pass for %s exceeded %.0fs budget", key, self.pass_timeout)
            self._requeue_failure(key, "pass timeout")
            return
        except OperatorError as e:
            if not e.retryable:
                logger.warning("Pass for %s failed permanently: %s", key, e)
                self.forget(key)
                return
            logger.warning("Pass for %s failed: %s", key, e)
            self._requeue_failure(key, e.reason)
            return
        except Exception:
            logger.exception("Pass for %s failed unexpectedly", key)
            self._requeue_failure(key, "unexpected error")
            return

        self._failures.pop(key, None)
        if result.forget:
            self.forget(key)
            return
        delay = (
            result.requeue_after
            if result.requeue_after is not None
            else self.resync_interval
        )
        self.schedule(key, delay, "resync" if result.requeue_after is None else "progress")

    def _requeue_failure(self, key: str, reason: str) -> None:
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        self.schedule(key, self.backoff.delay_for(failures), f"retry after {reason}")
