"""
Desired-state compiler: cluster spec to owned objects.

compile_cluster() is a pure function. The same cluster resource and spec
always produce identical bodies: every default the platform would otherwise
apply implicitly (resource requests, anti-affinity, update strategy, ports) is
written out here so the diff against the last applied state is exact.

Objects are emitted in apply order: configuration first so replicas mount a
complete config, then services, then the workload, then monitoring.
"""

import base64
import hashlib
import json
from typing import Any

from shazamq_operator.cluster.model import ClusterResource, ClusterSpec
from shazamq_operator.engine.objects import DesiredObject, OwnedObjectSet
from shazamq_protocols.types import ObjectKind, ObjectRef

CONTAINER_NAME = "shazamq"
DATA_VOLUME = "data"
DATA_DIR = "/data/shazamq"
CONFIG_DIR = "/etc/shazamq"
CONFIG_FILE = "config.toml"
TLS_DIR = "/etc/shazamq/tls"
CLIENT_PROPERTIES = "client.properties"
MONITOR_API_VERSION = "monitoring.coreos.com/v1"
CLUSTER_LABEL = "shazamq.io/cluster"
CONFIG_HASH_ANNOTATION = "shazamq.io/config-hash"

DEFAULT_REQUESTS = {"cpu": "500m", "memory": "1Gi"}
DEFAULT_LIMITS = {"memory": "2Gi"}


# =============================================================================
# Naming and labels
# =============================================================================


def workload_name(name: str) -> str:
    return name


def headless_service_name(name: str) -> str:
    return f"{name}-headless"


def config_name(name: str) -> str:
    return f"{name}-config"


def client_secret_name(name: str) -> str:
    return f"{name}-client-config"


def pod_name(name: str, ordinal: int) -> str:
    return f"{name}-{ordinal}"


def selector_labels(name: str) -> dict[str, str]:
    return {"app": "shazamq", CLUSTER_LABEL: name}


def common_labels(name: str) -> dict[str, str]:
    return {
        **selector_labels(name),
        "app.kubernetes.io/managed-by": "shazamq-operator",
    }


def possible_refs(name: str, namespace: str) -> list[ObjectRef]:
    """Every owned object the compiler may emit for a cluster, optional ones included."""
    return [
        ObjectRef(ObjectKind.CONFIG, namespace, config_name(name)),
        ObjectRef(ObjectKind.SECRET, namespace, client_secret_name(name)),
        ObjectRef(ObjectKind.SERVICE, namespace, headless_service_name(name)),
        ObjectRef(ObjectKind.SERVICE, namespace, name),
        ObjectRef(ObjectKind.WORKLOAD, namespace, workload_name(name)),
        ObjectRef(ObjectKind.MONITOR, namespace, name),
    ]


def _metadata(cluster: ClusterResource, name: str) -> dict[str, Any]:
    return {
        "name": name,
        "namespace": cluster.namespace,
        "labels": common_labels(cluster.name),
        "annotations": {},
        "ownerReferences": [cluster.owner_reference()],
    }


# =============================================================================
# Configuration rendering
# =============================================================================


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(v) for v in value) + "]"
    # JSON string escaping is valid TOML basic-string escaping
    return json.dumps(str(value))


def _toml_table(header: str, values: dict[str, Any]) -> list[str]:
    lines = [header]
    lines.extend(f"{k} = {_toml_value(v)}" for k, v in values.items() if v is not None)
    lines.append("")
    return lines


def render_config_toml(spec: ClusterSpec) -> str:
    """
    Render the broker configuration file.

    Args:
        spec: Validated cluster spec

    Returns:
        config.toml contents, deterministic for a given spec
    """
    service = spec.service_or_default
    lines = _toml_table(
        "[broker]",
        {"host": "0.0.0.0", "port": service.port, "data_dir": DATA_DIR},
    )

    storage = spec.storage
    lines += _toml_table(
        "[storage]",
        {
            "segment_bytes": storage.segment_bytes if storage else None,
            "retention_hours": storage.retention_hours if storage else None,
            "retention_bytes": storage.retention_bytes if storage else None,
        },
    )

    if spec.replication is not None:
        lines += _toml_table(
            "[replication]",
            {
                "default_replication_factor": spec.replication.default_replication_factor,
                "min_insync_replicas": spec.replication.min_insync_replicas,
            },
        )

    lines += _toml_table(
        "[metrics]",
        {"enabled": True, "host": "0.0.0.0", "port": service.metrics_port},
    )

    security = spec.security
    if security is not None and security.enabled:
        tls = security.tls is not None and security.tls.enabled
        auth = security.auth is not None and security.auth.enabled
        lines += _toml_table(
            "[security]",
            {
                "tls_enabled": tls,
                "tls_dir": TLS_DIR if tls else None,
                "sasl_enabled": auth,
                "sasl_mechanism": security.auth.mechanism if auth else None,
            },
        )

    if spec.tiered_enabled:
        tiered = spec.tiered_storage
        lines += _toml_table(
            "[tiered_storage]",
            {
                "enabled": True,
                "provider": tiered.provider,
                "hot_tier_retention_hours": tiered.hot_tier_retention_hours,
            },
        )
        if tiered.s3 is not None:
            lines += _toml_table(
                "[tiered_storage.s3]",
                {
                    "bucket": tiered.s3.bucket,
                    "region": tiered.s3.region,
                    "prefix": tiered.s3.prefix,
                    "endpoint": tiered.s3.endpoint,
                },
            )

    if spec.mirror_sources:
        lines += _toml_table("[mirror]", {"enabled": True})
        for source in spec.mirror_sources:
            lines += _toml_table(
                "[[mirror.sources]]",
                {
                    "name": source.name,
                    "bootstrap_servers": source.bootstrap_servers,
                    "security_protocol": source.security_protocol,
                    "consumer_group_id": source.consumer_group_id,
                    "topic_whitelist": source.topic_whitelist,
                    "topic_blacklist": source.topic_blacklist,
                    "num_consumers": source.num_consumers,
                    "exactly_once": source.exactly_once,
                },
            )

    return "\n".join(lines)


def render_client_properties(cluster: ClusterResource, spec: ClusterSpec) -> str:
    """Client connection settings for in-cluster producers and consumers."""
    security = spec.security
    tls = security.tls is not None and security.tls.enabled
    auth = security.auth is not None and security.auth.enabled
    if tls and auth:
        protocol = "SASL_SSL"
    elif tls:
        protocol = "SSL"
    elif auth:
        protocol = "SASL_PLAINTEXT"
    else:
        protocol = "PLAINTEXT"

    port = spec.service_or_default.port
    lines = [
        f"bootstrap.servers={cluster.name}.{cluster.namespace}.svc:{port}",
        f"security.protocol={protocol}",
    ]
    if auth:
        lines.append(f"sasl.mechanism={security.auth.mechanism}")
    return "\n".join(lines) + "\n"


# =============================================================================
# Object builders
# =============================================================================


def config_hash(spec: ClusterSpec) -> str:
    """Digest of the rendered broker configuration."""
    return hashlib.sha256(render_config_toml(spec).encode()).hexdigest()[:16]


def _config_map(cluster: ClusterResource, spec: ClusterSpec) -> DesiredObject:
    name = config_name(cluster.name)
    body = {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _metadata(cluster, name),
        "data": {CONFIG_FILE: render_config_toml(spec)},
    }
    return DesiredObject(ObjectKind.CONFIG, name, cluster.namespace, body)


def _client_secret(cluster: ClusterResource, spec: ClusterSpec) -> DesiredObject:
    name = client_secret_name(cluster.name)
    encoded = base64.b64encode(render_client_properties(cluster, spec).encode())
    body = {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": _metadata(cluster, name),
        "type": "Opaque",
        "data": {CLIENT_PROPERTIES: encoded.decode()},
    }
    return DesiredObject(ObjectKind.SECRET, name, cluster.namespace, body)


def _ports(spec: ClusterSpec) -> list[dict[str, Any]]:
    service = spec.service_or_default
    return [
        {"name": "kafka", "port": service.port, "targetPort": "kafka", "protocol": "TCP"},
        {
            "name": "metrics",
            "port": service.metrics_port,
            "targetPort": "metrics",
            "protocol": "TCP",
        },
    ]


def _headless_service(cluster: ClusterResource, spec: ClusterSpec) -> DesiredObject:
    name = headless_service_name(cluster.name)
    body = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(cluster, name),
        "spec": {
            "clusterIP": "None",
            "publishNotReadyAddresses": True,
            "selector": selector_labels(cluster.name),
            "ports": _ports(spec),
        },
    }
    return DesiredObject(ObjectKind.SERVICE, name, cluster.namespace, body)


def _client_service(cluster: ClusterResource, spec: ClusterSpec) -> DesiredObject:
    body = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(cluster, cluster.name),
        "spec": {
            "type": spec.service_or_default.type,
            "selector": selector_labels(cluster.name),
            "ports": _ports(spec),
        },
    }
    return DesiredObject(ObjectKind.SERVICE, cluster.name, cluster.namespace, body)


def _resources(spec: ClusterSpec) -> dict[str, Any]:
    requests = dict(DEFAULT_REQUESTS)
    limits = dict(DEFAULT_LIMITS)
    if spec.resources is not None:
        if spec.resources.requests is not None:
            requests.update(spec.resources.requests.to_wire())
        if spec.resources.limits is not None:
            limits.update(spec.resources.limits.to_wire())
    return {"requests": requests, "limits": limits}


def _affinity(cluster: ClusterResource, spec: ClusterSpec) -> dict[str, Any]:
    if spec.affinity is not None:
        return spec.affinity
    return {
        "podAntiAffinity": {
            "preferredDuringSchedulingIgnoredDuringExecution": [
                {
                    "weight": 100,
                    "podAffinityTerm": {
                        "labelSelector": {"matchLabels": selector_labels(cluster.name)},
                        "topologyKey": "kubernetes.io/hostname",
                    },
                }
            ]
        }
    }


def _container(spec: ClusterSpec) -> dict[str, Any]:
    service = spec.service_or_default
    env = [{"name": "RUST_LOG", "value": "info"}]
    if spec.mirror_sources:
        env.append({"name": "SHAZAMQ_MIRROR_ENABLED", "value": "true"})

    mounts = [
        {"name": DATA_VOLUME, "mountPath": DATA_DIR},
        {"name": "config", "mountPath": CONFIG_DIR},
    ]
    security = spec.security
    if security is not None and security.enabled and security.tls and security.tls.enabled:
        mounts.append({"name": "tls", "mountPath": TLS_DIR, "readOnly": True})

    return {
        "name": CONTAINER_NAME,
        "image": f"{spec.image}:{spec.version}",
        "imagePullPolicy": spec.image_pull_policy,
        "args": ["--config", f"{CONFIG_DIR}/{CONFIG_FILE}"],
        "ports": [
            {"name": "kafka", "containerPort": service.port, "protocol": "TCP"},
            {"name": "metrics", "containerPort": service.metrics_port, "protocol": "TCP"},
        ],
        "env": env,
        "resources": _resources(spec),
        "volumeMounts": mounts,
        "readinessProbe": {
            "httpGet": {"path": "/admin/v1/health", "port": "metrics"},
            "periodSeconds": 10,
            "failureThreshold": 3,
        },
    }


def _workload(cluster: ClusterResource, spec: ClusterSpec) -> DesiredObject:
    name = workload_name(cluster.name)
    pod_labels = {**(spec.pod_labels or {}), **common_labels(cluster.name)}

    volumes: list[dict[str, Any]] = [
        {"name": "config", "configMap": {"name": config_name(cluster.name)}}
    ]
    security = spec.security
    if security is not None and security.enabled and security.tls and security.tls.enabled:
        volumes.append({"name": "tls", "secret": {"secretName": security.tls.secret_name}})

    pod_spec: dict[str, Any] = {
        "containers": [_container(spec)],
        "volumes": volumes,
        "affinity": _affinity(cluster, spec),
    }
    if spec.node_selector:
        pod_spec["nodeSelector"] = dict(spec.node_selector)
    if spec.tolerations:
        pod_spec["tolerations"] = list(spec.tolerations)

    claim_spec: dict[str, Any] = {
        "accessModes": ["ReadWriteOnce"],
        "resources": {"requests": {"storage": (spec.storage.size if spec.storage else "100Gi")}},
    }
    if spec.storage is not None and spec.storage.storage_class_name:
        claim_spec["storageClassName"] = spec.storage.storage_class_name

    body = {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": _metadata(cluster, name),
        "spec": {
            "replicas": spec.replicas,
            "serviceName": headless_service_name(cluster.name),
            "podManagementPolicy": "OrderedReady",
            # Replicas are replaced by the rollout state machine, one ordinal at a time
            "updateStrategy": {"type": "OnDelete"},
            "selector": {"matchLabels": selector_labels(cluster.name)},
            "template": {
                "metadata": {
                    "labels": pod_labels,
                    "annotations": {
                        **(spec.pod_annotations or {}),
                        # A config change must produce a new workload revision
                        CONFIG_HASH_ANNOTATION: config_hash(spec),
                    },
                },
                "spec": pod_spec,
            },
            "volumeClaimTemplates": [
                {"metadata": {"name": DATA_VOLUME}, "spec": claim_spec}
            ],
        },
    }
    return DesiredObject(ObjectKind.WORKLOAD, name, cluster.namespace, body)


def _service_monitor(cluster: ClusterResource, spec: ClusterSpec) -> DesiredObject:
    monitor = spec.monitoring.service_monitor
    body = {
        "apiVersion": MONITOR_API_VERSION,
        "kind": "ServiceMonitor",
        "metadata": _metadata(cluster, cluster.name),
        "spec": {
            "selector": {"matchLabels": selector_labels(cluster.name)},
            "endpoints": [
                {
                    "port": "metrics",
                    "interval": monitor.interval,
                    "scrapeTimeout": monitor.scrape_timeout,
                }
            ],
        },
    }
    return DesiredObject(ObjectKind.MONITOR, cluster.name, cluster.namespace, body)


def compile_cluster(cluster: ClusterResource, spec: ClusterSpec) -> OwnedObjectSet:
    """
    Compile a cluster spec into its desired owned objects.

    Args:
        cluster: The cluster resource (identity and owner reference)
        spec: Its validated spec

    Returns:
        OwnedObjectSet in apply order, with every possible object listed
        so that no-longer-desired optional objects can be retired

    Example:
        objects = compile_cluster(cluster, parse_spec(cluster.raw_spec))
        workload = objects.get(ObjectKind.WORKLOAD, cluster.name)
    """
    objects = [_config_map(cluster, spec)]
    if spec.security is not None and spec.security.enabled:
        objects.append(_client_secret(cluster, spec))
    objects.append(_headless_service(cluster, spec))
    objects.append(_client_service(cluster, spec))
    objects.append(_workload(cluster, spec))

    monitoring = spec.monitoring
    if (
        monitoring is not None
        and monitoring.enabled
        and monitoring.service_monitor is not None
        and monitoring.service_monitor.enabled
    ):
        objects.append(_service_monitor(cluster, spec))

    return OwnedObjectSet(
        objects=objects, possible=possible_refs(cluster.name, cluster.namespace)
    )
