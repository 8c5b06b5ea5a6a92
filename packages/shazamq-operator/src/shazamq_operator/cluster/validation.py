"""
Semantic validation of cluster specs.

Schema-level validation (types, required fields) is Pydantic's job; this
module catches specs that parse but contradict themselves. All problems are
collected and reported together so a single edit can fix them.
"""

from typing import Any

from pydantic import ValidationError

from shazamq_operator.cluster.model import ClusterSpec
from shazamq_protocols.errors import SpecValidationError

SUPPORTED_TIER_PROVIDERS = ("s3",)
MIRROR_SECURITY_PROTOCOLS = ("PLAINTEXT", "SSL", "SASL_PLAINTEXT", "SASL_SSL")


def parse_spec(raw: dict[str, Any]) -> ClusterSpec:
    """
    Parse and validate a raw spec dict.

    Args:
        raw: The custom resource's spec as found on the platform

    Returns:
        A validated ClusterSpec

    Raises:
        SpecValidationError: On schema or semantic errors
    """
    try:
        spec = ClusterSpec.model_validate(raw)
    except ValidationError as e:
        raise SpecValidationError(
            [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in e.errors()
            ]
        ) from e

    problems = validate_spec(spec)
    if problems:
        raise SpecValidationError(problems)
    return spec


def validate_spec(spec: ClusterSpec) -> list[str]:
    """Return every semantic problem found in spec (empty list if valid)."""
    problems: list[str] = []

    if spec.replicas < 1:
        problems.append("replicas must be at least 1")

    if spec.storage is not None:
        if spec.storage.segment_bytes is not None and spec.storage.segment_bytes <= 0:
            problems.append("storage.segmentBytes must be positive")
        if (
            spec.storage.retention_bytes is not None
            and spec.storage.retention_bytes <= 0
        ):
            problems.append("storage.retentionBytes must be positive")

    if spec.replication is not None:
        factor = spec.replication.default_replication_factor
        if factor < 1:
            problems.append("replication.defaultReplicationFactor must be at least 1")
        if factor > spec.replicas:
            problems.append(
                f"replication.defaultReplicationFactor ({factor}) exceeds "
                f"replicas ({spec.replicas})"
            )
        if spec.replication.min_insync_replicas > factor:
            problems.append(
                "replication.minInsyncReplicas exceeds defaultReplicationFactor"
            )

    if spec.tiered_enabled:
        tiered = spec.tiered_storage
        if tiered.provider not in SUPPORTED_TIER_PROVIDERS:
            problems.append(f"tieredStorage.provider '{tiered.provider}' is not supported")
        elif tiered.s3 is None or not tiered.s3.bucket:
            problems.append("tieredStorage.s3.bucket is required for provider 's3'")
        if tiered.hot_tier_retention_hours < 0:
            problems.append("tieredStorage.hotTierRetentionHours must not be negative")
        if tiered.dual_read_grace_minutes < 0:
            problems.append("tieredStorage.dualReadGraceMinutes must not be negative")

    seen: set[str] = set()
    for source in spec.mirror_sources:
        if source.name in seen:
            problems.append(f"mirror source name '{source.name}' is duplicated")
        seen.add(source.name)
        if not source.topic_whitelist:
            problems.append(f"mirror source '{source.name}' has an empty topicWhitelist")
        if source.num_consumers < 1:
            problems.append(f"mirror source '{source.name}' numConsumers must be at least 1")
        if source.security_protocol not in MIRROR_SECURITY_PROTOCOLS:
            problems.append(
                f"mirror source '{source.name}' securityProtocol "
                f"'{source.security_protocol}' is not supported"
            )
        elif source.security_protocol.startswith("SASL") and not source.credentials_secret:
            problems.append(
                f"mirror source '{source.name}' credentialsSecret is required for "
                f"{source.security_protocol}"
            )

    security = spec.security
    if security is not None and security.enabled:
        if security.tls is not None and security.tls.enabled and not security.tls.secret_name:
            problems.append("security.tls.secretName is required when TLS is enabled")
        if security.auth is not None and security.auth.enabled and not security.auth.secret_name:
            problems.append("security.auth.secretName is required when auth is enabled")

    return problems
