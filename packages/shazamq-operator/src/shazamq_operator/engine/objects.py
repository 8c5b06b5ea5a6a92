"""
Typed desired objects, per-kind comparators and content hashing.

Each owned-object kind has an explicit extractor that selects the fields
the reconciler manages. Everything else on an observed object (status,
allocated cluster IPs, defaulted fields, other agents' annotations) is
outside the hash, so platform defaulting never shows up as drift.

The managed fields of the last successful apply are recorded on the object
itself (LAST_APPLIED_ANNOTATION) next to their hash (HASH_ANNOTATION). That
record lets the apply engine express a minimal JSON merge patch, including
removals, without diffing against platform-defaulted fields.
"""

import copy
import hashlib
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from shazamq_protocols.types import ObjectKind, ObjectRef

HASH_ANNOTATION = "shazamq.io/applied-hash"
LAST_APPLIED_ANNOTATION = "shazamq.io/last-applied"
STATE_ANNOTATIONS = (HASH_ANNOTATION, LAST_APPLIED_ANNOTATION)


@dataclass
class DesiredObject:
    """
    One object the compiler wants to exist.

    Attributes:
        kind: Owned-object variant
        name: Object name
        namespace: Object namespace
        body: Complete manifest (apiVersion, kind, metadata, spec/data)
    """

    kind: ObjectKind
    name: str
    namespace: str
    body: dict[str, Any]

    @property
    def ref(self) -> ObjectRef:
        return ObjectRef(self.kind, self.namespace, self.name)


@dataclass
class OwnedObjectSet:
    """
    The full set of owned objects desired for one cluster.

    Attributes:
        objects: Desired objects in apply order
        possible: Every object the compiler could emit for this cluster;
            those absent from objects are candidates for retirement
    """

    objects: list[DesiredObject] = field(default_factory=list)
    possible: list[ObjectRef] = field(default_factory=list)

    def get(self, kind: ObjectKind, name: str) -> DesiredObject | None:
        return next(
            (o for o in self.objects if o.kind == kind and o.name == name), None
        )

    def retired(self) -> list[ObjectRef]:
        """Possible objects that are not currently desired."""
        desired = {o.ref for o in self.objects}
        return [ref for ref in self.possible if ref not in desired]


# =============================================================================
# Per-kind comparators
# =============================================================================


def _managed_metadata(body: dict[str, Any]) -> dict[str, Any]:
    metadata = body.get("metadata", {})
    annotations = {
        k: v
        for k, v in (metadata.get("annotations") or {}).items()
        if k not in STATE_ANNOTATIONS
    }
    return {
        "labels": dict(metadata.get("labels") or {}),
        "annotations": annotations,
        "ownerReferences": list(metadata.get("ownerReferences") or []),
    }


def _pick(source: dict[str, Any], keys: tuple[str, ...]) -> dict[str, Any]:
    return {k: source[k] for k in keys if k in source}


def _workload_fields(body: dict[str, Any]) -> dict[str, Any]:
    return {
        "metadata": _managed_metadata(body),
        "spec": _pick(
            body.get("spec", {}),
            (
                "replicas",
                "selector",
                "serviceName",
                "podManagementPolicy",
                "updateStrategy",
                "template",
                "volumeClaimTemplates",
            ),
        ),
    }


def _service_fields(body: dict[str, Any]) -> dict[str, Any]:
    spec = body.get("spec", {})
    managed = _pick(spec, ("type", "selector", "ports", "publishNotReadyAddresses"))
    # Only a headless clusterIP is ours; allocated IPs belong to the platform
    if spec.get("clusterIP") == "None":
        managed["clusterIP"] = "None"
    return {"metadata": _managed_metadata(body), "spec": managed}


def _config_fields(body: dict[str, Any]) -> dict[str, Any]:
    return {"metadata": _managed_metadata(body), "data": body.get("data") or {}}


def _secret_fields(body: dict[str, Any]) -> dict[str, Any]:
    return {
        "metadata": _managed_metadata(body),
        "type": body.get("type", "Opaque"),
        "data": body.get("data") or {},
    }


def _monitor_fields(body: dict[str, Any]) -> dict[str, Any]:
    return {"metadata": _managed_metadata(body), "spec": body.get("spec", {})}


COMPARATORS: dict[ObjectKind, Callable[[dict[str, Any]], dict[str, Any]]] = {
    ObjectKind.WORKLOAD: _workload_fields,
    ObjectKind.SERVICE: _service_fields,
    ObjectKind.CONFIG: _config_fields,
    ObjectKind.SECRET: _secret_fields,
    ObjectKind.MONITOR: _monitor_fields,
}


def managed_fields(kind: ObjectKind, body: dict[str, Any]) -> dict[str, Any]:
    """Select the reconciler-managed fields of body for its kind."""
    try:
        extractor = COMPARATORS[kind]
    except KeyError:
        raise ValueError(f"{kind.value} is not an owned-object kind") from None
    return copy.deepcopy(extractor(body))


# =============================================================================
# Hashing and patches
# =============================================================================


def canonical_json(value: Any) -> str:
    """Serialize with sorted keys and no whitespace; stable across runs."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def content_hash(kind: ObjectKind, body: dict[str, Any]) -> str:
    """SHA-256 over the canonical managed fields of body."""
    digest = hashlib.sha256(canonical_json(managed_fields(kind, body)).encode())
    return digest.hexdigest()


def applied_hash(observed: dict[str, Any]) -> str | None:
    """Hash recorded on an observed object by the last apply, if any."""
    annotations = observed.get("metadata", {}).get("annotations") or {}
    return annotations.get(HASH_ANNOTATION)


def last_applied(observed: dict[str, Any]) -> dict[str, Any] | None:
    """Managed fields recorded on an observed object by the last apply."""
    annotations = observed.get("metadata", {}).get("annotations") or {}
    raw = annotations.get(LAST_APPLIED_ANNOTATION)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def stamp(desired: DesiredObject) -> dict[str, Any]:
    """Return desired.body with the applied-state annotations filled in."""
    body = copy.deepcopy(desired.body)
    managed = managed_fields(desired.kind, body)
    annotations = body.setdefault("metadata", {}).setdefault("annotations", {})
    annotations[HASH_ANNOTATION] = content_hash(desired.kind, body)
    annotations[LAST_APPLIED_ANNOTATION] = canonical_json(managed)
    return body


def merge_patch(old: dict[str, Any], new: dict[str, Any]) -> dict[str, Any]:
    """
    Compute an RFC 7386 JSON merge patch turning old into new.

    Removed keys map to None; nested dicts are diffed recursively; lists and
    scalars are replaced whole.
    """
    patch: dict[str, Any] = {}
    for key in old.keys() - new.keys():
        patch[key] = None
    for key, value in new.items():
        if key not in old:
            patch[key] = value
        elif isinstance(value, dict) and isinstance(old[key], dict):
            nested = merge_patch(old[key], value)
            if nested:
                patch[key] = nested
        elif value != old[key]:
            patch[key] = value
    return patch


def build_patch(
    desired: DesiredObject, observed: dict[str, Any]
) -> dict[str, Any]:
    """
    Build the minimal merge patch converging observed onto desired.

    Diffs against the managed fields recorded at the last apply; objects
    without that record get their full managed fields. The patch always
    refreshes the state annotations and pins metadata.resourceVersion so a
    concurrent writer produces a conflict instead of a lost update.
    """
    stamped = stamp(desired)
    new_managed = managed_fields(desired.kind, stamped)
    old_managed = last_applied(observed)
    patch = (
        merge_patch(old_managed, new_managed) if old_managed is not None else new_managed
    )

    metadata = patch.setdefault("metadata", {})
    annotations = metadata.setdefault("annotations", {})
    stamped_annotations = stamped["metadata"]["annotations"]
    for key in STATE_ANNOTATIONS:
        annotations[key] = stamped_annotations[key]
    resource_version = observed.get("metadata", {}).get("resourceVersion")
    if resource_version is not None:
        metadata["resourceVersion"] = resource_version
    return patch
