"""
Pydantic models for the ShazamqCluster custom resource.

The custom resource is the one external document the engine parses, so it is
modeled with Pydantic (camelCase on the wire, snake_case in Python). Engine
internals use dataclasses.

Spec models are read-only to the engine: it never writes spec. Status models
are written exclusively by the status reporter.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

GROUP = "shazamq.io"
VERSION = "v1alpha1"
API_VERSION = f"{GROUP}/{VERSION}"
KIND = "ShazamqCluster"
PLURAL = "shazamqclusters"

DEFAULT_VERSION = "0.1.1-rc1"
DEFAULT_IMAGE = "shazamq/shazamq"

UPGRADE_OVERRIDE_ANNOTATION = "shazamq.io/upgrade-override"


class _Model(BaseModel):
    """Base for resource models: camelCase aliases, unknown fields ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the platform's camelCase shape, dropping unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# =============================================================================
# Spec
# =============================================================================


class StorageConfig(_Model):
    size: str = "100Gi"
    storage_class_name: str | None = None
    segment_bytes: int | None = None
    retention_hours: int | None = None
    retention_bytes: int | None = None


class S3Config(_Model):
    bucket: str
    region: str
    prefix: str = ""
    endpoint: str | None = None
    credentials_secret: str | None = None


class TieredStorageSpec(_Model):
    enabled: bool = False
    provider: str = "s3"
    hot_tier_retention_hours: int = 24
    dual_read_grace_minutes: int = 60
    s3: S3Config | None = None


class MirrorSourceSpec(_Model):
    """One external source cluster to mirror from."""

    name: str
    bootstrap_servers: str
    security_protocol: str = "PLAINTEXT"
    sasl_mechanism: str | None = None
    credentials_secret: str | None = None
    topic_whitelist: list[str] = Field(default_factory=list)
    topic_blacklist: list[str] = Field(default_factory=list)
    consumer_group_id: str
    num_consumers: int = 1
    exactly_once: bool = False


class MirrorSpec(_Model):
    enabled: bool = False
    sources: list[MirrorSourceSpec] = Field(default_factory=list)


class ReplicationConfig(_Model):
    default_replication_factor: int
    min_insync_replicas: int


class ResourceList(_Model):
    cpu: str | None = None
    memory: str | None = None


class ResourceRequirements(_Model):
    requests: ResourceList | None = None
    limits: ResourceList | None = None


class ServiceConfig(_Model):
    type: str = "ClusterIP"
    port: int = 9092
    metrics_port: int = 9090


class TlsConfig(_Model):
    enabled: bool = False
    secret_name: str | None = None


class AuthConfig(_Model):
    enabled: bool = False
    mechanism: str = "SCRAM-SHA-512"
    secret_name: str | None = None


class SecurityConfig(_Model):
    enabled: bool = False
    tls: TlsConfig | None = None
    auth: AuthConfig | None = None


class ServiceMonitorConfig(_Model):
    enabled: bool = False
    interval: str = "30s"
    scrape_timeout: str = "10s"


class MonitoringConfig(_Model):
    enabled: bool = False
    service_monitor: ServiceMonitorConfig | None = None


class ClusterSpec(_Model):
    """Desired state of a Shazamq cluster, as written by the user."""

    replicas: int
    version: str = DEFAULT_VERSION
    image: str = DEFAULT_IMAGE
    image_pull_policy: str = "IfNotPresent"
    storage: StorageConfig | None = None
    tiered_storage: TieredStorageSpec | None = None
    mirror: MirrorSpec | None = None
    replication: ReplicationConfig | None = None
    resources: ResourceRequirements | None = None
    pod_annotations: dict[str, str] | None = None
    pod_labels: dict[str, str] | None = None
    node_selector: dict[str, str] | None = None
    tolerations: list[dict[str, Any]] | None = None
    affinity: dict[str, Any] | None = None
    service: ServiceConfig | None = None
    security: SecurityConfig | None = None
    monitoring: MonitoringConfig | None = None

    @property
    def mirror_sources(self) -> list[MirrorSourceSpec]:
        """Sources to mirror, empty unless mirroring is enabled."""
        if self.mirror is None or not self.mirror.enabled:
            return []
        return self.mirror.sources

    @property
    def tiered_enabled(self) -> bool:
        return self.tiered_storage is not None and self.tiered_storage.enabled

    @property
    def service_or_default(self) -> ServiceConfig:
        return self.service or ServiceConfig()


# =============================================================================
# Status
# =============================================================================


class Phase(str, Enum):
    """
    Cluster lifecycle phase.

    Ordered by severity for worst-of aggregation: a later member dominates
    an earlier one.
    """

    READY = "Ready"
    PENDING = "Pending"
    CREATING = "Creating"
    SCALING = "Scaling"
    UPGRADING = "Upgrading"
    DEGRADED = "Degraded"
    DELETING = "Deleting"

    @property
    def severity(self) -> int:
        return list(Phase).index(self)


class Condition(_Model):
    type: str
    status: str
    reason: str
    message: str = ""
    last_transition_time: datetime


class BrokerStatus(_Model):
    id: int
    pod: str
    ready: bool
    leader: bool = False
    version: str = ""


class UpgradeStatus(_Model):
    """
    Progress of a rolling upgrade.

    Attributes:
        target_revision: Workload revision being rolled out
        ordinal: Ordinal currently replaced and awaiting readiness
        started_at: When the current ordinal was (re)replaced
        attempts: Replacement attempts for the current ordinal
        halted: True once readiness failed past the attempt budget
        failed_ordinal: Ordinal that failed readiness
        halted_generation: Spec generation the halt applies to
        override_token: Override annotation value observed at halt time
    """

    target_revision: str
    ordinal: int | None = None
    started_at: datetime | None = None
    attempts: int = 0
    halted: bool = False
    failed_ordinal: int | None = None
    halted_generation: int | None = None
    override_token: str | None = None


class ClusterStatus(_Model):
    phase: Phase = Phase.PENDING
    replicas: int | None = None
    ready_replicas: int | None = None
    conditions: list[Condition] = Field(default_factory=list)
    observed_generation: int | None = None
    brokers: list[BrokerStatus] = Field(default_factory=list)
    upgrade: UpgradeStatus | None = None


# =============================================================================
# Resource
# =============================================================================


class ClusterResource(BaseModel):
    """
    A ShazamqCluster object as observed on the platform.

    Only the metadata the engine uses is kept; spec is parsed lazily by
    the reconciler so that a malformed spec becomes a status condition
    instead of a crash.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    namespace: str
    uid: str
    generation: int = 0
    resource_version: str | None = None
    annotations: dict[str, str] = Field(default_factory=dict)
    deleting: bool = False
    raw_spec: dict[str, Any] = Field(default_factory=dict)
    status: ClusterStatus = Field(default_factory=ClusterStatus)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> "ClusterResource":
        """Build from a platform object body (camelCase dict)."""
        metadata = body.get("metadata", {})
        return cls(
            name=metadata["name"],
            namespace=metadata.get("namespace", "default"),
            uid=metadata.get("uid", ""),
            generation=metadata.get("generation", 0),
            resource_version=metadata.get("resourceVersion"),
            annotations=metadata.get("annotations") or {},
            deleting=metadata.get("deletionTimestamp") is not None,
            raw_spec=body.get("spec") or {},
            status=ClusterStatus.model_validate(body.get("status") or {}),
        )

    def owner_reference(self) -> dict[str, Any]:
        """Controller owner reference pointing back at this cluster."""
        return {
            "apiVersion": API_VERSION,
            "kind": KIND,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }
