"""
Platform protocol definition.

The PlatformClientProtocol is the engine's only view of the orchestration
platform. Objects are exchanged as plain dicts in the platform's wire shape
(camelCase keys), which keeps hashing and patch generation independent of any
client library's model classes.

Error contract for implementations:
- Absent objects are reported as None from get(), never as an exception
- HTTP 409 raises ConflictError
- Network failures, timeouts and 5xx raise TransientAPIError
"""

from collections.abc import AsyncIterator
from typing import Any, Protocol, runtime_checkable

from shazamq_protocols.types import ObjectKind, WatchEvent


@runtime_checkable
class PlatformClientProtocol(Protocol):
    """
    Protocol for orchestration platform access.

    Example:
        body = await platform.get(ObjectKind.WORKLOAD, "kafka", "orders")
        if body is None:
            await platform.create(ObjectKind.WORKLOAD, "kafka", desired)
    """

    async def get(
        self, kind: ObjectKind, namespace: str, name: str
    ) -> dict[str, Any] | None:
        """Read one object; None if it does not exist."""
        ...

    async def list_objects(
        self,
        kind: ObjectKind,
        namespace: str | None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        """List objects of a kind; namespace None means all namespaces."""
        ...

    async def create(
        self, kind: ObjectKind, namespace: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        """Create an object and return the stored body."""
        ...

    async def patch(
        self, kind: ObjectKind, namespace: str, name: str, patch: dict[str, Any]
    ) -> dict[str, Any]:
        """
        Apply a JSON merge patch.

        If the patch carries metadata.resourceVersion, a stale version
        raises ConflictError.
        """
        ...

    async def delete(self, kind: ObjectKind, namespace: str, name: str) -> None:
        """Delete an object; deleting an absent object is not an error."""
        ...

    async def replace_status(
        self, namespace: str, name: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        """Replace the status subresource of a cluster object."""
        ...

    def watch(
        self, kind: ObjectKind, namespace: str | None
    ) -> AsyncIterator[WatchEvent]:
        """Stream change events for a kind until the server closes the stream."""
        ...
