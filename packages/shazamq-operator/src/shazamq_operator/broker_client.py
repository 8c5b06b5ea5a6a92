"""
Broker admin API client.

This module provides the BrokerAdminClient class for querying each broker
replica's admin HTTP API: application-level health, closed local segments,
segment bytes, and local reclamation of archived segments.

BrokerAdminClient receives an injected httpx.AsyncClient. Replicas are
addressed through the cluster's headless service:
    http://<cluster>-<ordinal>.<cluster>-headless.<namespace>.svc:<metricsPort>

HTTP and validation failures are translated to ExternalDependencyError so
that a broken broker degrades only the sub-feature that needed it.
"""

from dataclasses import dataclass, field
from datetime import timezone
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from shazamq_operator.types import HealthResponse, SegmentItem, SegmentsResponse
from shazamq_protocols.errors import ExternalDependencyError
from shazamq_protocols.types import BrokerHealth, SegmentInfo

DEFAULT_ADMIN_PORT = 9090


@dataclass
class BrokerAdminClient:
    """
    Broker admin API client with injected httpx client.

    Attributes:
        http: Pre-configured httpx.AsyncClient (timeouts, TLS)
        cluster_domain: Service domain suffix
        default_port: Admin port used when a cluster has not registered one

    Example:
        async with httpx.AsyncClient(timeout=10.0) as http:
            client = BrokerAdminClient(http=http)
            health = await client.health("kafka", "orders", 2)
            if health.ready:
                ...
    """

    http: httpx.AsyncClient
    cluster_domain: str = "svc"
    default_port: int = DEFAULT_ADMIN_PORT
    _ports: dict[tuple[str, str], int] = field(default_factory=dict, repr=False)

    def use_metrics_port(self, namespace: str, cluster: str, port: int) -> None:
        self._ports[(namespace, cluster)] = port

    def base_url(self, namespace: str, cluster: str, ordinal: int) -> str:
        port = self._ports.get((namespace, cluster), self.default_port)
        return (
            f"http://{cluster}-{ordinal}.{cluster}-headless."
            f"{namespace}.{self.cluster_domain}:{port}"
        )

    def _segment_path(self, segment: SegmentInfo) -> str:
        return (
            f"/admin/v1/segments/{quote(segment.topic, safe='')}/"
            f"{segment.partition}/{segment.base_offset}"
        )

    async def _request(
        self, feature: str, method: str, url: str, **kwargs
    ) -> httpx.Response:
        try:
            response = await self.http.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalDependencyError(feature, f"{method} {url} failed: {e}") from e
        return response

    async def health(self, namespace: str, cluster: str, ordinal: int) -> BrokerHealth:
        """
        Get application-level health of one replica.

        Calls GET /admin/v1/health. A replica is ready only when it reports
        status "ready"; a running process that is still recovering its log
        reports something else.

        Raises:
            ExternalDependencyError: On HTTP errors or a malformed response
        """
        url = self.base_url(namespace, cluster, ordinal) + "/admin/v1/health"
        response = await self._request("broker", "GET", url)
        try:
            data = HealthResponse.model_validate(response.json())
        except (ValidationError, ValueError) as e:
            raise ExternalDependencyError("broker", f"malformed health from {url}: {e}") from e

        return BrokerHealth(
            ordinal=ordinal,
            ready=data.status == "ready",
            version=data.version,
            controller=data.controller,
        )

    async def list_closed_segments(
        self, namespace: str, cluster: str, ordinal: int
    ) -> list[SegmentInfo]:
        """
        List closed segments still held on the replica's local disk.

        Calls GET /admin/v1/segments?state=closed.

        Raises:
            ExternalDependencyError: On HTTP errors or a malformed response
        """
        url = self.base_url(namespace, cluster, ordinal) + "/admin/v1/segments"
        response = await self._request(
            "tieredStorage", "GET", url, params={"state": "closed"}
        )
        try:
            data = SegmentsResponse.model_validate(response.json())
        except (ValidationError, ValueError) as e:
            raise ExternalDependencyError(
                "tieredStorage", f"malformed segment list from {url}: {e}"
            ) from e

        return [self._segment_from_api(item) for item in data.segments]

    def _segment_from_api(self, item: SegmentItem) -> SegmentInfo:
        closed_at = item.closed_at
        # Naive timestamps from the broker are UTC
        if closed_at.tzinfo is None:
            closed_at = closed_at.replace(tzinfo=timezone.utc)
        return SegmentInfo(
            topic=item.topic,
            partition=item.partition,
            base_offset=item.base_offset,
            size_bytes=item.size_bytes,
            closed_at=closed_at,
            sha256=item.sha256.lower(),
        )

    async def read_segment(
        self, namespace: str, cluster: str, ordinal: int, segment: SegmentInfo
    ) -> bytes:
        """Read raw segment bytes via GET /admin/v1/segments/{topic}/{partition}/{base}."""
        url = self.base_url(namespace, cluster, ordinal) + self._segment_path(segment)
        response = await self._request("tieredStorage", "GET", url)
        return response.content

    async def reclaim_local(
        self, namespace: str, cluster: str, ordinal: int, segment: SegmentInfo
    ) -> None:
        """
        Delete the local bytes of an archived segment.

        Calls DELETE /admin/v1/segments/{topic}/{partition}/{base}/local.
        A 404 means the bytes are already gone and is not an error.
        """
        url = self.base_url(namespace, cluster, ordinal) + self._segment_path(segment) + "/local"
        try:
            response = await self.http.delete(url)
            if response.status_code == 404:
                return
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalDependencyError("tieredStorage", f"DELETE {url} failed: {e}") from e
