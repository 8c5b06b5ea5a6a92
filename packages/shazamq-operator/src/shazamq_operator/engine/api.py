"""
Bounded, leadership-guarded access to the platform.

GuardedPlatform wraps a PlatformClientProtocol so that every engine call:
- is bounded by the per-call timeout and retried with backoff at the call
  site (call_with_retry)
- checks leadership before any mutating call, raising LeadershipLost so a
  deposed instance stops writing promptly
"""

from collections.abc import Callable
from typing import Any

from shazamq_operator.config import OperatorSettings
from shazamq_operator.retry import RetryConfig, call_with_retry
from shazamq_protocols.platform import PlatformClientProtocol
from shazamq_protocols.types import ObjectKind

LeaderGuard = Callable[[], None]
"""Raises LeadershipLost when this instance may no longer mutate."""


def always_leader() -> None:
    """Guard for single-instance use (CLI dry runs, tests)."""


class GuardedPlatform:
    """
    Platform access with call-site retries and a leadership guard.

    Example:
        api = GuardedPlatform(platform, settings, guard=elector.ensure_leader)
        body = await api.get(ObjectKind.WORKLOAD, "kafka", "orders")
    """

    def __init__(
        self,
        platform: PlatformClientProtocol,
        settings: OperatorSettings,
        guard: LeaderGuard = always_leader,
    ) -> None:
        self.platform = platform
        self.guard = guard
        self._retry = RetryConfig.from_settings(settings)
        self._timeout = settings.api_timeout_seconds

    async def _call(self, description: str, call: Callable[[], Any]) -> Any:
        return await call_with_retry(
            call, config=self._retry, timeout=self._timeout, description=description
        )

    async def get(
        self, kind: ObjectKind, namespace: str, name: str
    ) -> dict[str, Any] | None:
        return await self._call(
            f"get {kind.value} {namespace}/{name}",
            lambda: self.platform.get(kind, namespace, name),
        )

    async def list_objects(
        self,
        kind: ObjectKind,
        namespace: str | None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        return await self._call(
            f"list {kind.value}",
            lambda: self.platform.list_objects(kind, namespace, label_selector),
        )

    async def create(
        self, kind: ObjectKind, namespace: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        self.guard()
        return await self._call(
            f"create {kind.value} {namespace}/{body['metadata']['name']}",
            lambda: self.platform.create(kind, namespace, body),
        )

    async def patch(
        self, kind: ObjectKind, namespace: str, name: str, patch: dict[str, Any]
    ) -> dict[str, Any]:
        self.guard()
        return await self._call(
            f"patch {kind.value} {namespace}/{name}",
            lambda: self.platform.patch(kind, namespace, name, patch),
        )

    async def delete(self, kind: ObjectKind, namespace: str, name: str) -> None:
        self.guard()
        await self._call(
            f"delete {kind.value} {namespace}/{name}",
            lambda: self.platform.delete(kind, namespace, name),
        )

    async def replace_status(
        self, namespace: str, name: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        self.guard()
        return await self._call(
            f"replace status {namespace}/{name}",
            lambda: self.platform.replace_status(namespace, name, body),
        )
