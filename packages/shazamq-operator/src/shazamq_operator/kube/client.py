"""
kubernetes_asyncio implementation of PlatformClientProtocol.

Objects cross this boundary as plain camelCase dicts: typed API responses
are converted with ApiClient.sanitize_for_serialization, and custom objects
(ShazamqCluster, ServiceMonitor) are dicts already.

Error translation:
- 404: None from get(), ignored by delete()
- 409: ConflictError
- 429, 5xx, timeouts, connection errors: TransientAPIError
- any other status: OperatorError (the request itself is wrong)
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import aiohttp
from kubernetes_asyncio import client, config, watch
from kubernetes_asyncio.client.api_client import ApiClient
from kubernetes_asyncio.client.rest import ApiException

from shazamq_operator.cluster.model import GROUP, PLURAL, VERSION
from shazamq_protocols.errors import ConflictError, OperatorError, TransientAPIError
from shazamq_protocols.types import ObjectKind, WatchEvent

logger = logging.getLogger(__name__)

MERGE_PATCH = "application/merge-patch+json"
WATCH_TIMEOUT_SECONDS = 300
OWNED_SELECTOR = "app=shazamq"


@dataclass(frozen=True)
class _TypedKind:
    api: str
    resource: str
    all_namespaces_list: str


@dataclass(frozen=True)
class _CustomKind:
    group: str
    version: str
    plural: str


KINDS: dict[ObjectKind, _TypedKind | _CustomKind] = {
    ObjectKind.WORKLOAD: _TypedKind("apps", "stateful_set", "list_stateful_set_for_all_namespaces"),
    ObjectKind.SERVICE: _TypedKind("core", "service", "list_service_for_all_namespaces"),
    ObjectKind.CONFIG: _TypedKind("core", "config_map", "list_config_map_for_all_namespaces"),
    ObjectKind.SECRET: _TypedKind("core", "secret", "list_secret_for_all_namespaces"),
    ObjectKind.POD: _TypedKind("core", "pod", "list_pod_for_all_namespaces"),
    ObjectKind.LEASE: _TypedKind("coordination", "lease", "list_lease_for_all_namespaces"),
    ObjectKind.CLUSTER: _CustomKind(GROUP, VERSION, PLURAL),
    ObjectKind.MONITOR: _CustomKind("monitoring.coreos.com", "v1", "servicemonitors"),
}


def _translate(e: ApiException, action: str) -> OperatorError:
    if e.status == 409:
        return ConflictError(f"{action}: conflict ({e.reason})")
    if e.status == 429 or (e.status or 0) >= 500 or not e.status:
        return TransientAPIError(f"{action}: HTTP {e.status} {e.reason}")
    return OperatorError(f"{action}: HTTP {e.status} {e.reason}")


class KubePlatformClient:
    """
    Platform access through the Kubernetes API.

    Example:
        platform = await KubePlatformClient.connect()
        try:
            body = await platform.get(ObjectKind.WORKLOAD, "kafka", "orders")
        finally:
            await platform.close()
    """

    def __init__(self, api_client: ApiClient) -> None:
        self.api_client = api_client
        self._apis = {
            "core": client.CoreV1Api(api_client),
            "apps": client.AppsV1Api(api_client),
            "coordination": client.CoordinationV1Api(api_client),
        }
        self._custom = client.CustomObjectsApi(api_client)

    @classmethod
    async def connect(cls, kubeconfig: str | None = None) -> "KubePlatformClient":
        """Load in-cluster config, falling back to a kubeconfig file."""
        if kubeconfig:
            await config.load_kube_config(config_file=kubeconfig)
        else:
            try:
                config.load_incluster_config()
            except config.ConfigException:
                await config.load_kube_config()
        logger.info("Kubernetes API client initialized")
        return cls(ApiClient())

    async def close(self) -> None:
        await self.api_client.close()

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self.api_client.sanitize_for_serialization(obj)

    async def _call(self, action: str, coro: Any) -> Any:
        try:
            return await coro
        except ApiException as e:
            raise _translate(e, action) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientAPIError(f"{action}: {e}") from e

    def _typed(self, spec: _TypedKind, verb: str) -> Any:
        return getattr(self._apis[spec.api], f"{verb}_namespaced_{spec.resource}")

    # =========================================================================
    # PlatformClientProtocol
    # =========================================================================

    async def get(
        self, kind: ObjectKind, namespace: str, name: str
    ) -> dict[str, Any] | None:
        spec = KINDS[kind]
        action = f"get {kind.value} {namespace}/{name}"
        try:
            if isinstance(spec, _CustomKind):
                obj = await self._custom.get_namespaced_custom_object(
                    spec.group, spec.version, namespace, spec.plural, name
                )
            else:
                obj = await self._typed(spec, "read")(name, namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise _translate(e, action) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientAPIError(f"{action}: {e}") from e
        return self._to_dict(obj)

    async def list_objects(
        self,
        kind: ObjectKind,
        namespace: str | None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        spec = KINDS[kind]
        kwargs = {"label_selector": label_selector} if label_selector else {}
        action = f"list {kind.value}"
        if isinstance(spec, _CustomKind):
            if namespace is None:
                coro = self._custom.list_cluster_custom_object(
                    spec.group, spec.version, spec.plural, **kwargs
                )
            else:
                coro = self._custom.list_namespaced_custom_object(
                    spec.group, spec.version, namespace, spec.plural, **kwargs
                )
            result = await self._call(action, coro)
            return list(result.get("items", []))

        if namespace is None:
            coro = getattr(self._apis[spec.api], spec.all_namespaces_list)(**kwargs)
        else:
            coro = self._typed(spec, "list")(namespace, **kwargs)
        result = self._to_dict(await self._call(action, coro))
        return list(result.get("items", []))

    async def create(
        self, kind: ObjectKind, namespace: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        spec = KINDS[kind]
        action = f"create {kind.value} {namespace}/{body['metadata']['name']}"
        if isinstance(spec, _CustomKind):
            coro = self._custom.create_namespaced_custom_object(
                spec.group, spec.version, namespace, spec.plural, body
            )
        else:
            coro = self._typed(spec, "create")(namespace, body)
        return self._to_dict(await self._call(action, coro))

    async def patch(
        self, kind: ObjectKind, namespace: str, name: str, patch: dict[str, Any]
    ) -> dict[str, Any]:
        spec = KINDS[kind]
        action = f"patch {kind.value} {namespace}/{name}"
        if isinstance(spec, _CustomKind):
            coro = self._custom.patch_namespaced_custom_object(
                spec.group,
                spec.version,
                namespace,
                spec.plural,
                name,
                patch,
                _content_type=MERGE_PATCH,
            )
        else:
            coro = self._typed(spec, "patch")(
                name, namespace, patch, _content_type=MERGE_PATCH
            )
        return self._to_dict(await self._call(action, coro))

    async def delete(self, kind: ObjectKind, namespace: str, name: str) -> None:
        spec = KINDS[kind]
        action = f"delete {kind.value} {namespace}/{name}"
        try:
            if isinstance(spec, _CustomKind):
                await self._custom.delete_namespaced_custom_object(
                    spec.group, spec.version, namespace, spec.plural, name
                )
            else:
                await self._typed(spec, "delete")(name, namespace)
        except ApiException as e:
            if e.status == 404:
                return
            raise _translate(e, action) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientAPIError(f"{action}: {e}") from e

    async def replace_status(
        self, namespace: str, name: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._call(
            f"replace status {namespace}/{name}",
            self._custom.replace_namespaced_custom_object_status(
                GROUP, VERSION, namespace, PLURAL, name, body
            ),
        )

    async def watch(
        self, kind: ObjectKind, namespace: str | None
    ) -> AsyncIterator[WatchEvent]:
        """
        Stream events for one kind until the server ends the watch.

        Owned kinds are filtered to objects carrying the app=shazamq label.
        """
        spec = KINDS[kind]
        kwargs: dict[str, Any] = {"timeout_seconds": WATCH_TIMEOUT_SECONDS}
        if kind not in (ObjectKind.CLUSTER, ObjectKind.LEASE):
            kwargs["label_selector"] = OWNED_SELECTOR

        if isinstance(spec, _CustomKind):
            if namespace is None:
                func = self._custom.list_cluster_custom_object
                args = (spec.group, spec.version, spec.plural)
            else:
                func = self._custom.list_namespaced_custom_object
                args = (spec.group, spec.version, namespace, spec.plural)
        elif namespace is None:
            func = getattr(self._apis[spec.api], spec.all_namespaces_list)
            args = ()
        else:
            func = self._typed(spec, "list")
            args = (namespace,)

        watcher = watch.Watch()
        try:
            async with watcher.stream(func, *args, **kwargs) as stream:
                async for event in stream:
                    raw = event.get("raw_object") or self._to_dict(event.get("object"))
                    yield WatchEvent(type=event["type"], kind=kind, object=raw)
        except ApiException as e:
            raise _translate(e, f"watch {kind.value}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientAPIError(f"watch {kind.value}: {e}") from e
        finally:
            watcher.stop()
