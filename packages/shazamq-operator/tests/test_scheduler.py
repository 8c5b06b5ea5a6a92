"""Tests for the reconcile scheduler."""

import asyncio

import pytest

from shazamq_operator.engine.reconciler import ReconcileResult
from shazamq_operator.runtime.scheduler import Scheduler
from shazamq_operator.runtime.watch import ReconcileRequest
from shazamq_protocols.errors import LeadershipLost, SpecValidationError, TransientAPIError

KEY = "kafka/orders"


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


async def _stop(scheduler: Scheduler, task: asyncio.Task) -> None:
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


class TestRequeueDecisions:
    """Tests for what happens to a key after one pass."""

    @pytest.mark.asyncio
    async def test_progress_requeue(self, settings):
        async def handler(key):
            return ReconcileResult(requeue_after=5.0)

        scheduler = Scheduler(handler, settings)
        await scheduler.process(ReconcileRequest(KEY))

        assert scheduler.is_scheduled(KEY)
        assert scheduler.next_delay[KEY] == 5.0
        scheduler.forget(KEY)

    @pytest.mark.asyncio
    async def test_converged_cluster_waits_for_resync(self, make_settings):
        async def handler(key):
            return ReconcileResult()

        scheduler = Scheduler(handler, make_settings(resync_interval_seconds=120))
        await scheduler.process(ReconcileRequest(KEY))

        assert scheduler.next_delay[KEY] == 120
        scheduler.forget(KEY)

    @pytest.mark.asyncio
    async def test_failures_back_off_exponentially(self, settings):
        async def handler(key):
            raise TransientAPIError("connection reset")

        scheduler = Scheduler(handler, settings)
        await scheduler.process(ReconcileRequest(KEY))
        assert scheduler.next_delay[KEY] == pytest.approx(0.001)
        await scheduler.process(ReconcileRequest(KEY))
        assert scheduler.next_delay[KEY] == pytest.approx(0.002)
        await scheduler.process(ReconcileRequest(KEY))
        assert scheduler.next_delay[KEY] == pytest.approx(0.004)
        scheduler.forget(KEY)

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, make_settings):
        async def handler(key):
            raise TransientAPIError("connection reset")

        scheduler = Scheduler(
            handler, make_settings(backoff_base_seconds=1.0, backoff_max_seconds=3.0)
        )
        for _ in range(5):
            await scheduler.process(ReconcileRequest(KEY))
        assert scheduler.next_delay[KEY] == 3.0
        scheduler.forget(KEY)

    @pytest.mark.asyncio
    async def test_success_resets_backoff(self, settings):
        outcomes = [TransientAPIError("x"), TransientAPIError("x"), None, TransientAPIError("x")]

        async def handler(key):
            outcome = outcomes.pop(0)
            if outcome is not None:
                raise outcome
            return ReconcileResult(requeue_after=1.0)

        scheduler = Scheduler(handler, settings)
        for _ in range(4):
            await scheduler.process(ReconcileRequest(KEY))
        assert scheduler.next_delay[KEY] == pytest.approx(0.001)
        scheduler.forget(KEY)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [LeadershipLost("deposed"), SpecValidationError(["replicas must be at least 1"])],
    )
    async def test_non_retryable_errors_are_not_requeued(self, settings, error):
        async def handler(key):
            raise error

        scheduler = Scheduler(handler, settings)
        await scheduler.process(ReconcileRequest(KEY))

        assert not scheduler.is_scheduled(KEY)

    @pytest.mark.asyncio
    async def test_forget_result(self, settings):
        async def handler(key):
            return ReconcileResult(forget=True)

        scheduler = Scheduler(handler, settings)
        await scheduler.process(ReconcileRequest(KEY))

        assert not scheduler.is_scheduled(KEY)

    @pytest.mark.asyncio
    async def test_pass_budget(self, make_settings):
        async def handler(key):
            await asyncio.sleep(10)
            return ReconcileResult()

        scheduler = Scheduler(handler, make_settings(pass_timeout_seconds=0.01))
        await scheduler.process(ReconcileRequest(KEY))

        assert scheduler.next_delay[KEY] == pytest.approx(0.001)
        scheduler.forget(KEY)

    @pytest.mark.asyncio
    async def test_unexpected_error_is_requeued(self, settings):
        async def handler(key):
            raise RuntimeError("bug")

        scheduler = Scheduler(handler, settings)
        await scheduler.process(ReconcileRequest(KEY))

        assert scheduler.is_scheduled(KEY)
        scheduler.forget(KEY)


class TestWorkers:
    """Tests for dedupe, single-flight and concurrency."""

    @pytest.mark.asyncio
    async def test_duplicate_requests_collapse(self, settings):
        calls = []

        async def handler(key):
            calls.append(key)
            return ReconcileResult(forget=True)

        scheduler = Scheduler(handler, settings)
        for reason in ("added", "modified", "modified"):
            scheduler.enqueue(ReconcileRequest(KEY, reason))
        task = asyncio.create_task(scheduler.run())

        await _wait_for(lambda: scheduler.passes == 1)
        await asyncio.sleep(0.01)
        await _stop(scheduler, task)

        assert calls == [KEY]

    @pytest.mark.asyncio
    async def test_request_during_pass_runs_once_more(self, settings):
        started = asyncio.Event()
        release = asyncio.Event()
        active = {"now": 0, "max": 0}

        async def handler(key):
            active["now"] += 1
            active["max"] = max(active["max"], active["now"])
            try:
                if not started.is_set():
                    started.set()
                    await release.wait()
            finally:
                active["now"] -= 1
            return ReconcileResult(forget=True)

        scheduler = Scheduler(handler, settings)
        task = asyncio.create_task(scheduler.run())
        scheduler.enqueue(ReconcileRequest(KEY))
        await started.wait()

        scheduler.enqueue(ReconcileRequest(KEY, "modified"))
        scheduler.enqueue(ReconcileRequest(KEY, "modified"))
        assert scheduler.is_pending(KEY)
        release.set()

        await _wait_for(lambda: scheduler.passes == 2)
        await asyncio.sleep(0.01)
        await _stop(scheduler, task)

        assert scheduler.passes == 2
        assert active["max"] == 1

    @pytest.mark.asyncio
    async def test_distinct_keys_run_concurrently(self, make_settings):
        both = asyncio.Event()
        running = set()

        async def handler(key):
            running.add(key)
            if len(running) == 2:
                both.set()
            await asyncio.wait_for(both.wait(), timeout=1.0)
            return ReconcileResult(forget=True)

        scheduler = Scheduler(handler, make_settings(worker_count=2))
        task = asyncio.create_task(scheduler.run())
        scheduler.enqueue(ReconcileRequest("kafka/a"))
        scheduler.enqueue(ReconcileRequest("kafka/b"))

        await _wait_for(lambda: scheduler.passes == 2)
        await asyncio.wait_for(both.wait(), timeout=1.0)
        await _stop(scheduler, task)

    @pytest.mark.asyncio
    async def test_requeue_timer_fires(self, settings):
        results = [ReconcileResult(requeue_after=0.01), ReconcileResult(forget=True)]

        async def handler(key):
            return results.pop(0)

        scheduler = Scheduler(handler, settings)
        task = asyncio.create_task(scheduler.run())
        scheduler.enqueue(ReconcileRequest(KEY))

        await _wait_for(lambda: scheduler.passes == 2)
        await _stop(scheduler, task)

        assert not scheduler.is_scheduled(KEY)

    @pytest.mark.asyncio
    async def test_requests_arrive_through_channel(self, settings):
        channel: asyncio.Queue[ReconcileRequest] = asyncio.Queue(maxsize=4)

        async def handler(key):
            return ReconcileResult(forget=True)

        scheduler = Scheduler(handler, settings, channel)
        task = asyncio.create_task(scheduler.run())
        await channel.put(ReconcileRequest(KEY, "ShazamqCluster added"))

        await _wait_for(lambda: scheduler.passes == 1)
        await _stop(scheduler, task)
