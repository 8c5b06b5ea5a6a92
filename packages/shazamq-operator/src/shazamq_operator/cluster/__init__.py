"""ShazamqCluster resource model and spec validation."""

from shazamq_operator.cluster.model import (
    API_VERSION,
    GROUP,
    KIND,
    PLURAL,
    VERSION,
    BrokerStatus,
    ClusterResource,
    ClusterSpec,
    ClusterStatus,
    Condition,
    MirrorSourceSpec,
    Phase,
    UpgradeStatus,
)
from shazamq_operator.cluster.validation import parse_spec, validate_spec

__all__ = [
    "API_VERSION",
    "GROUP",
    "KIND",
    "PLURAL",
    "VERSION",
    "BrokerStatus",
    "ClusterResource",
    "ClusterSpec",
    "ClusterStatus",
    "Condition",
    "MirrorSourceSpec",
    "Phase",
    "UpgradeStatus",
    "parse_spec",
    "validate_spec",
]
