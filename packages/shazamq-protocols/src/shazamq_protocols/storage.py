"""
Object storage protocol for the warm tier.
"""

from typing import Protocol, runtime_checkable


@runtime_checkable
class ObjectStoreProtocol(Protocol):
    """
    Protocol for archival object storage.

    Implementations must make put_object idempotent for a given key: the
    archive key is derived deterministically, so a retried upload overwrites
    the same object.
    """

    async def put_object(self, key: str, data: bytes, sha256: str) -> None:
        """Upload data under key, asking the store to record its SHA-256."""
        ...

    async def object_sha256(self, key: str) -> str | None:
        """Return the hex SHA-256 the store holds for key, or None if absent."""
        ...
