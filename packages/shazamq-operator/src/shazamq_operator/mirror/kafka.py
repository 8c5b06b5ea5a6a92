"""
aiokafka adapters for mirror sources and the target cluster.

The source consumer uses manual partition assignment and explicit seeks;
it never joins a consumer group or commits offsets, because the checkpoint
table is the only record of progress. The target producer is idempotent
with acks="all" for exactly-once sources, and acks=1 otherwise.

Every aiokafka failure is translated into ExternalDependencyError for the
mirror sub-feature.
"""

import asyncio
import base64
import fnmatch
import logging
from typing import Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.errors import KafkaError
from aiokafka.helpers import create_ssl_context

from shazamq_operator.cluster.model import ClusterResource, ClusterSpec, MirrorSourceSpec
from shazamq_operator.engine.api import GuardedPlatform
from shazamq_operator.mirror.controller import IDEMPOTENCY_HEADER
from shazamq_protocols.errors import ExternalDependencyError
from shazamq_protocols.types import (
    MirrorRecord,
    ObjectKind,
    SourcePartition,
    TargetWrite,
    WriteAck,
)

logger = logging.getLogger(__name__)

FETCH_TIMEOUT_MS = 1000


def topic_matches(topic: str, whitelist: list[str], blacklist: list[str]) -> bool:
    """fnmatch-style whitelist/blacklist filtering of topic names."""
    if not any(fnmatch.fnmatchcase(topic, pattern) for pattern in whitelist):
        return False
    return not any(fnmatch.fnmatchcase(topic, pattern) for pattern in blacklist)


def _security_options(
    protocol: str, mechanism: str | None, username: str | None, password: str | None
) -> dict[str, Any]:
    options: dict[str, Any] = {"security_protocol": protocol}
    if protocol in ("SSL", "SASL_SSL"):
        options["ssl_context"] = create_ssl_context()
    if protocol.startswith("SASL"):
        options["sasl_mechanism"] = mechanism or "PLAIN"
        options["sasl_plain_username"] = username
        options["sasl_plain_password"] = password
    return options


class KafkaMirrorSource:
    """
    Reads a source cluster at native offsets.

    Example:
        source = KafkaMirrorSource("dc1-kafka:9092")
        await source.start()
        partitions = await source.list_partitions(["orders.*"], [])
        records = await source.fetch(partitions[0], 0, 500)
    """

    def __init__(self, bootstrap_servers: str, **options: Any) -> None:
        self._consumer = AIOKafkaConsumer(
            bootstrap_servers=bootstrap_servers,
            group_id=None,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
            **options,
        )
        # One consumer serves every worker of the source
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        try:
            await self._consumer.start()
        except KafkaError as e:
            raise ExternalDependencyError("mirror", f"source unreachable: {e}") from e

    async def list_partitions(
        self, whitelist: list[str], blacklist: list[str]
    ) -> list[SourcePartition]:
        try:
            topics = await self._consumer.topics()
        except KafkaError as e:
            raise ExternalDependencyError("mirror", f"listing topics failed: {e}") from e

        partitions = []
        for topic in sorted(topics):
            if not topic_matches(topic, whitelist, blacklist):
                continue
            for partition in sorted(self._consumer.partitions_for_topic(topic) or ()):
                partitions.append(SourcePartition(topic, partition))

        self._consumer.assign([TopicPartition(p.topic, p.partition) for p in partitions])
        return partitions

    async def fetch(
        self, partition: SourcePartition, from_offset: int, max_records: int
    ) -> list[MirrorRecord]:
        tp = TopicPartition(partition.topic, partition.partition)
        async with self._lock:
            try:
                self._consumer.seek(tp, from_offset)
                batches = await self._consumer.getmany(
                    tp, timeout_ms=FETCH_TIMEOUT_MS, max_records=max_records
                )
            except KafkaError as e:
                raise ExternalDependencyError(
                    "mirror", f"fetch {partition}@{from_offset} failed: {e}"
                ) from e

        return [
            MirrorRecord(
                topic=partition.topic,
                partition=partition.partition,
                offset=msg.offset,
                key=msg.key,
                value=msg.value,
                headers=list(msg.headers or []),
                timestamp_ms=msg.timestamp,
            )
            for msg in batches.get(tp, [])
            if msg.offset >= from_offset
        ]

    async def close(self) -> None:
        await self._consumer.stop()


class KafkaMirrorTarget:
    """
    Writes mirrored records into the managed cluster.

    Records keep their source topic and key; the target partitioner places
    them. Writes are enqueued in order and awaited together, so a batch
    either acknowledges completely or raises.
    """

    def __init__(self, bootstrap_servers: str, exactly_once: bool, **options: Any) -> None:
        self.exactly_once = exactly_once
        self._producer = AIOKafkaProducer(
            bootstrap_servers=bootstrap_servers,
            acks="all" if exactly_once else 1,
            enable_idempotence=exactly_once,
            **options,
        )

    async def start(self) -> None:
        try:
            await self._producer.start()
        except KafkaError as e:
            raise ExternalDependencyError("mirror", f"target unreachable: {e}") from e

    async def write(self, writes: list[TargetWrite], durable: bool = True) -> list[WriteAck]:
        if durable and not self.exactly_once:
            raise ValueError("durable writes need a producer built with exactly_once=True")

        try:
            pending = []
            for write in writes:
                record = write.record
                headers = list(record.headers)
                if write.idempotency_key is not None:
                    headers.append((IDEMPOTENCY_HEADER, write.idempotency_key.encode()))
                pending.append(
                    await self._producer.send(
                        record.topic,
                        value=record.value,
                        key=record.key,
                        headers=headers,
                        timestamp_ms=record.timestamp_ms,
                    )
                )
            metadata = await asyncio.gather(*pending)
        except KafkaError as e:
            raise ExternalDependencyError("mirror", f"target write failed: {e}") from e

        return [WriteAck(m.topic, m.partition, m.offset) for m in metadata]

    async def close(self) -> None:
        await self._producer.stop()


class KafkaMirrorFactory:
    """
    Builds started source and target adapters for a mirror source spec.

    Credentials are read from the referenced Secret (`username` and
    `password` keys) and never written back.
    """

    def __init__(self, api: GuardedPlatform) -> None:
        self.api = api

    async def _credentials(
        self, namespace: str, secret_name: str | None
    ) -> tuple[str | None, str | None]:
        if not secret_name:
            return None, None
        secret = await self.api.get(ObjectKind.SECRET, namespace, secret_name)
        if secret is None:
            raise ExternalDependencyError("mirror", f"credentials secret {secret_name} not found")
        data = secret.get("data") or {}
        try:
            username = base64.b64decode(data["username"]).decode()
            password = base64.b64decode(data["password"]).decode()
        except (KeyError, ValueError) as e:
            raise ExternalDependencyError(
                "mirror", f"credentials secret {secret_name} is malformed"
            ) from e
        return username, password

    async def source(
        self, cluster: ClusterResource, spec: MirrorSourceSpec
    ) -> KafkaMirrorSource:
        username, password = await self._credentials(cluster.namespace, spec.credentials_secret)
        try:
            source = KafkaMirrorSource(
                spec.bootstrap_servers,
                client_id=f"shazamq-mirror-{cluster.name}-{spec.name}",
                **_security_options(
                    spec.security_protocol, spec.sasl_mechanism, username, password
                ),
            )
        except (ValueError, KafkaError) as e:
            # aiokafka rejects bad client options at construction time
            raise ExternalDependencyError(
                "mirror", f"source {spec.name} client rejected: {e}"
            ) from e
        await source.start()
        return source

    async def target(
        self, cluster: ClusterResource, spec: MirrorSourceSpec
    ) -> KafkaMirrorTarget:
        port = ClusterSpec.model_validate(cluster.raw_spec).service_or_default.port
        try:
            target = KafkaMirrorTarget(
                f"{cluster.name}.{cluster.namespace}.svc:{port}",
                exactly_once=spec.exactly_once,
                client_id=f"shazamq-mirror-{cluster.name}-{spec.name}",
            )
        except (ValueError, KafkaError) as e:
            raise ExternalDependencyError(
                "mirror", f"target client for {spec.name} rejected: {e}"
            ) from e
        await target.start()
        return target
