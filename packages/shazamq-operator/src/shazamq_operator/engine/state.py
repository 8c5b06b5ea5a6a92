"""
Persistence of the two non-recomputable tables.

Mirror checkpoints and segment archival states cannot be rebuilt from spec
and observed objects, so they live in an engine-owned ConfigMap
(`<cluster>-state`, owner-referenced for cascade deletion). Writes use
optimistic concurrency; on conflict the remote tables are re-read and
max-merged into the local ones before retrying, so neither table regresses
even if two writers race.
"""

import json
import logging
from dataclasses import dataclass, field

from shazamq_operator.cluster.model import ClusterResource
from shazamq_operator.engine.api import GuardedPlatform
from shazamq_operator.engine.compiler import common_labels
from shazamq_operator.engine.objects import canonical_json
from shazamq_operator.mirror.checkpoint import CheckpointTable
from shazamq_operator.tiered.archive import ArchiveTable
from shazamq_protocols.errors import ConflictError, TransientAPIError
from shazamq_protocols.types import ObjectKind

logger = logging.getLogger(__name__)

CHECKPOINTS_KEY = "mirror-checkpoints.json"
SEGMENTS_KEY = "tiered-segments.json"
STATE_ROLE_LABEL = "shazamq.io/role"
STATE_ROLE = "state"


def state_config_name(name: str) -> str:
    return f"{name}-state"


@dataclass
class PersistentState:
    """
    Loaded tables plus the version they were read at.

    Attributes:
        checkpoints: Mirror checkpoint table
        segments: Archival-state table
        resource_version: ConfigMap version at load time (None if absent)
    """

    checkpoints: CheckpointTable = field(default_factory=CheckpointTable)
    segments: ArchiveTable = field(default_factory=ArchiveTable)
    resource_version: str | None = None
    _saved: dict[str, str] = field(default_factory=dict, repr=False)

    def data(self) -> dict[str, str]:
        return {
            CHECKPOINTS_KEY: canonical_json(self.checkpoints.to_dict()),
            SEGMENTS_KEY: canonical_json(self.segments.to_dict()),
        }

    @property
    def changed(self) -> bool:
        return self.data() != self._saved


class StateStore:
    """
    Loads and saves PersistentState for a cluster.

    Example:
        state = await store.load(cluster)
        state.checkpoints.advance(...)
        await store.save(cluster, state)
    """

    def __init__(self, api: GuardedPlatform, conflict_retry_attempts: int = 3) -> None:
        self.api = api
        self.conflict_retry_attempts = conflict_retry_attempts

    async def load(self, cluster: ClusterResource) -> PersistentState:
        body = await self.api.get(
            ObjectKind.CONFIG, cluster.namespace, state_config_name(cluster.name)
        )
        if body is None:
            return PersistentState(_saved={})
        data = body.get("data") or {}
        state = PersistentState(
            checkpoints=CheckpointTable.from_dict(json.loads(data.get(CHECKPOINTS_KEY) or "{}")),
            segments=ArchiveTable.from_dict(json.loads(data.get(SEGMENTS_KEY) or "{}")),
            resource_version=body.get("metadata", {}).get("resourceVersion"),
        )
        state._saved = state.data()
        return state

    async def save(self, cluster: ClusterResource, state: PersistentState) -> None:
        """
        Persist state if it changed since load or the last save.

        Raises:
            TransientAPIError: If conflicts persisted past the retry budget
        """
        if not state.changed:
            return

        name = state_config_name(cluster.name)
        for attempt in range(1, self.conflict_retry_attempts + 1):
            data = state.data()
            try:
                if state.resource_version is None:
                    stored = await self.api.create(
                        ObjectKind.CONFIG,
                        cluster.namespace,
                        {
                            "apiVersion": "v1",
                            "kind": "ConfigMap",
                            "metadata": {
                                "name": name,
                                "namespace": cluster.namespace,
                                "labels": {
                                    **common_labels(cluster.name),
                                    STATE_ROLE_LABEL: STATE_ROLE,
                                },
                                "ownerReferences": [cluster.owner_reference()],
                            },
                            "data": data,
                        },
                    )
                else:
                    stored = await self.api.patch(
                        ObjectKind.CONFIG,
                        cluster.namespace,
                        name,
                        {
                            "metadata": {"resourceVersion": state.resource_version},
                            "data": data,
                        },
                    )
            except ConflictError:
                logger.debug("State conflict for %s (attempt %d); merging", cluster.key, attempt)
                remote = await self.load(cluster)
                state.checkpoints.merge(remote.checkpoints)
                state.segments.merge(remote.segments)
                state.resource_version = remote.resource_version
                continue

            state.resource_version = stored.get("metadata", {}).get("resourceVersion")
            state._saved = data
            return

        raise TransientAPIError(
            f"state for {cluster.key} kept conflicting after "
            f"{self.conflict_retry_attempts} attempt(s)"
        )
