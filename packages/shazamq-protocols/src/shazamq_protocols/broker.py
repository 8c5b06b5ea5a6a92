"""
Broker admin protocol.

The engine never speaks the broker's wire protocol. Replica readiness and
local segment management go through the broker's admin API, described here.
"""

from typing import Protocol, runtime_checkable

from shazamq_protocols.types import BrokerHealth, SegmentInfo


@runtime_checkable
class BrokerAdminProtocol(Protocol):
    """
    Protocol for per-replica broker administration.

    Every method addresses a single replica by cluster identity and ordinal.
    """

    def use_metrics_port(self, namespace: str, cluster: str, port: int) -> None:
        """Record the admin (metrics) port a cluster's replicas listen on."""
        ...

    async def health(
        self, namespace: str, cluster: str, ordinal: int
    ) -> BrokerHealth:
        """Return application-level health of one replica."""
        ...

    async def list_closed_segments(
        self, namespace: str, cluster: str, ordinal: int
    ) -> list[SegmentInfo]:
        """List closed (no longer written) segments still held locally."""
        ...

    async def read_segment(
        self, namespace: str, cluster: str, ordinal: int, segment: SegmentInfo
    ) -> bytes:
        """Read the raw bytes of a local segment."""
        ...

    async def reclaim_local(
        self, namespace: str, cluster: str, ordinal: int, segment: SegmentInfo
    ) -> None:
        """Delete the local bytes of an archived segment."""
        ...
