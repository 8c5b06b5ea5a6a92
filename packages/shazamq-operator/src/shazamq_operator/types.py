"""
Pydantic response types for the broker admin API.

These are API response types for external data validation. Internal types
(BrokerHealth, SegmentInfo) are dataclasses in shazamq_protocols.types.

Notes:
- The admin API uses camelCase keys
- closedAt is an ISO8601 timestamp; Pydantic parses it into a datetime
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Broker Admin API Response Types
# =============================================================================
# GET /admin/v1/health           -> {"status": "ready", "version": "...", "controller": false}
# GET /admin/v1/segments?state=closed -> {"segments": [{...}]}


class HealthResponse(BaseModel):
    """Replica health. Only status == "ready" means serving."""

    status: str
    version: str = ""
    controller: bool = False


class SegmentItem(BaseModel):
    """One closed local segment."""

    model_config = ConfigDict(populate_by_name=True)

    topic: str
    partition: int
    base_offset: int = Field(alias="baseOffset")
    size_bytes: int = Field(default=0, alias="sizeBytes")
    closed_at: datetime = Field(alias="closedAt")
    sha256: str


class SegmentsResponse(BaseModel):
    """Response from the closed-segments listing."""

    segments: list[SegmentItem] = Field(default_factory=list)
