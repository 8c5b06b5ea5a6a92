"""
S3 object store for the warm tier, via boto3.

boto3 is synchronous, so every call runs in a worker thread
(asyncio.to_thread). Uploads ask S3 to verify and record a SHA-256 checksum;
object_sha256() reads it back (S3 reports it base64-encoded) as hex. The same
digest is stored as user metadata for S3-compatible stores that do not
record additional checksums.

Credentials come from the Secret named by tieredStorage.s3.credentialsSecret
(`AWS_ACCESS_KEY_ID` and `AWS_SECRET_ACCESS_KEY` keys). Without one, boto3's
default credential chain applies.
"""

import asyncio
import base64
import logging
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from shazamq_operator.cluster.model import ClusterResource, S3Config
from shazamq_operator.engine.api import GuardedPlatform
from shazamq_protocols.errors import ExternalDependencyError
from shazamq_protocols.types import ObjectKind

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
METADATA_SHA256 = "sha256"


class S3ObjectStore:
    """
    ObjectStoreProtocol implementation over a boto3 S3 client.

    Example:
        store = S3ObjectStore(boto3.client("s3", region_name="us-east-1"), "archive")
        await store.put_object(key, data, sha256=hashlib.sha256(data).hexdigest())
        assert await store.object_sha256(key) == hashlib.sha256(data).hexdigest()
    """

    def __init__(self, client: Any, bucket: str) -> None:
        self.client = client
        self.bucket = bucket

    async def put_object(self, key: str, data: bytes, sha256: str) -> None:
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ChecksumAlgorithm="SHA256",
                ChecksumSHA256=base64.b64encode(bytes.fromhex(sha256)).decode(),
                Metadata={METADATA_SHA256: sha256},
            )
        except (BotoCoreError, ClientError) as e:
            raise ExternalDependencyError(
                "tieredStorage", f"upload s3://{self.bucket}/{key} failed: {e}"
            ) from e

    async def object_sha256(self, key: str) -> str | None:
        try:
            response = await asyncio.to_thread(
                self.client.head_object,
                Bucket=self.bucket,
                Key=key,
                ChecksumMode="ENABLED",
            )
        except ClientError as e:
            if str(e.response.get("Error", {}).get("Code")) in NOT_FOUND_CODES:
                return None
            raise ExternalDependencyError(
                "tieredStorage", f"head s3://{self.bucket}/{key} failed: {e}"
            ) from e
        except BotoCoreError as e:
            raise ExternalDependencyError(
                "tieredStorage", f"head s3://{self.bucket}/{key} failed: {e}"
            ) from e

        checksum = response.get("ChecksumSHA256")
        if checksum:
            return base64.b64decode(checksum).hex()

        stored = (response.get("Metadata") or {}).get(METADATA_SHA256)
        if stored:
            logger.debug(
                "s3://%s/%s has no ChecksumSHA256; using object metadata", self.bucket, key
            )
            return stored
        logger.warning(
            "s3://%s/%s carries no SHA-256 checksum; the store may not support "
            "additional checksums",
            self.bucket,
            key,
        )
        return None


class S3StoreFactory:
    """Builds an S3ObjectStore for a cluster's tiered-storage configuration."""

    def __init__(self, api: GuardedPlatform) -> None:
        self.api = api

    async def _credentials(self, namespace: str, secret_name: str | None) -> dict[str, str]:
        if not secret_name:
            return {}
        secret = await self.api.get(ObjectKind.SECRET, namespace, secret_name)
        if secret is None:
            raise ExternalDependencyError(
                "tieredStorage", f"credentials secret {secret_name} not found"
            )
        data = secret.get("data") or {}
        try:
            return {
                "aws_access_key_id": base64.b64decode(data["AWS_ACCESS_KEY_ID"]).decode(),
                "aws_secret_access_key": base64.b64decode(
                    data["AWS_SECRET_ACCESS_KEY"]
                ).decode(),
            }
        except (KeyError, ValueError) as e:
            raise ExternalDependencyError(
                "tieredStorage", f"credentials secret {secret_name} is malformed"
            ) from e

    async def __call__(self, cluster: ClusterResource, config: S3Config) -> S3ObjectStore:
        credentials = await self._credentials(cluster.namespace, config.credentials_secret)
        try:
            client = boto3.client(
                "s3",
                region_name=config.region,
                endpoint_url=config.endpoint,
                **credentials,
            )
        except BotoCoreError as e:
            raise ExternalDependencyError("tieredStorage", f"S3 client setup failed: {e}") from e
        return S3ObjectStore(client, config.bucket)
