"""
Watch layer: platform change events to reconcile requests.

One long-lived task per watched kind streams events and maps each to the
cluster it concerns:
- ShazamqCluster events map to the cluster itself
- owned objects map through their ShazamqCluster controller reference
- pods (owned by the StatefulSet, not the cluster) map through the
  shazamq.io/cluster label
- the engine's own state ConfigMap is ignored; the engine writes it on
  every pass and would otherwise requeue itself forever

Requests go into the bounded request channel read by the scheduler. The
channel applies backpressure: a full channel blocks the watch task rather
than dropping the signal. Delivery is at-least-once for "something changed"
and says nothing about individual diffs.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from shazamq_operator.cluster.model import GROUP, KIND
from shazamq_operator.config import OperatorSettings
from shazamq_operator.engine.compiler import CLUSTER_LABEL
from shazamq_operator.engine.state import STATE_ROLE, STATE_ROLE_LABEL
from shazamq_operator.retry import RetryConfig
from shazamq_protocols.errors import OperatorError
from shazamq_protocols.platform import PlatformClientProtocol
from shazamq_protocols.types import OWNED_KINDS, ObjectKind, WatchEvent

logger = logging.getLogger(__name__)

WATCHED_KINDS = (ObjectKind.CLUSTER, *OWNED_KINDS, ObjectKind.POD)


@dataclass(frozen=True)
class ReconcileRequest:
    """
    A request to reconcile one cluster.

    Attributes:
        key: Cluster identity, "namespace/name"
        reason: What triggered the request (for logs)
        generation: Cluster generation when known
    """

    key: str
    reason: str = ""
    generation: int | None = None


def _owner_cluster(metadata: dict[str, Any]) -> str | None:
    for ref in metadata.get("ownerReferences") or []:
        if (
            ref.get("kind") == KIND
            and str(ref.get("apiVersion", "")).startswith(f"{GROUP}/")
            and ref.get("controller")
        ):
            return ref.get("name")
    return None


def request_for(event: WatchEvent) -> ReconcileRequest | None:
    """Map one watch event to a reconcile request, or None if irrelevant."""
    if event.type == "BOOKMARK":
        return None
    metadata = event.object.get("metadata") or {}
    namespace = metadata.get("namespace")
    name = metadata.get("name")
    if not namespace or not name:
        return None
    reason = f"{event.kind.value} {event.type.lower()}"

    if event.kind == ObjectKind.CLUSTER:
        return ReconcileRequest(
            key=f"{namespace}/{name}",
            reason=reason,
            generation=metadata.get("generation"),
        )

    labels = metadata.get("labels") or {}
    if labels.get(STATE_ROLE_LABEL) == STATE_ROLE:
        return None

    if event.kind == ObjectKind.POD:
        cluster = labels.get(CLUSTER_LABEL)
    else:
        cluster = _owner_cluster(metadata)
    if not cluster:
        return None
    return ReconcileRequest(key=f"{namespace}/{cluster}", reason=f"{reason} {name}")


class WatchSource:
    """
    Streams platform events for every watched kind into the request channel.

    A stream that ends (server-side timeout) is reopened at once; a stream
    that fails is reopened after a backoff delay.

    Example:
        channel: asyncio.Queue[ReconcileRequest] = asyncio.Queue(maxsize=1024)
        watcher = WatchSource(platform, settings, channel)
        task = asyncio.create_task(watcher.run())
    """

    def __init__(
        self,
        platform: PlatformClientProtocol,
        settings: OperatorSettings,
        channel: "asyncio.Queue[ReconcileRequest]",
        kinds: tuple[ObjectKind, ...] = WATCHED_KINDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.platform = platform
        self.namespace = settings.watch_namespace
        self.channel = channel
        self.kinds = kinds
        self.sleep = sleep
        self._backoff = RetryConfig(
            min_wait_seconds=settings.backoff_base_seconds,
            max_wait_seconds=settings.backoff_max_seconds,
        )

    async def run(self) -> None:
        """Watch every kind until cancelled."""
        tasks = [asyncio.create_task(self.watch_kind(kind)) for kind in self.kinds]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def watch_kind(self, kind: ObjectKind) -> None:
        failures = 0
        while True:
            try:
                async for event in self.platform.watch(kind, self.namespace):
                    failures = 0
                    request = request_for(event)
                    if request is not None:
                        await self.channel.put(request)
            except OperatorError as e:
                delay = self._backoff.delay_for(failures)
                failures += 1
                logger.warning(
                    "Watch on %s failed (%s); reopening in %.1fs", kind.value, e, delay
                )
                await self.sleep(delay)
                continue
            logger.debug("Watch on %s ended; reopening", kind.value)
