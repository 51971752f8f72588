"""
Object Storage — Tenant-Prefixed Raw File Bytes

Contract used by intake and the extraction stage:

    upload(org_id, filename, data, content_type) -> storage_path
    download(storage_path)                       -> bytes
    delete(storage_path, hard=False)

Isolation model:
  Every object lives under
      tenants/<org_id>/documents/<uuid>-<sanitized filename>
  The prefix is built server-side from the verified org_id, never accepted
  from the client. Readers re-check the prefix against the document's org
  before downloading (tenant_prefix_matches).

Implementations:
  S3ObjectStorage        — aioboto3, SSE-KMS on every PutObject
  InMemoryObjectStorage  — dict-backed, for tests and single-process runs

Deletion is soft by default on S3 (object tagged deleted=true; a bucket
lifecycle rule expires it). Hard delete requires the explicit flag.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional
from uuid import UUID, uuid4

from docintel.core.errors import NotFound

logger = logging.getLogger(__name__)

RESOURCE_PREFIX = "documents"


def build_storage_path(org_id: UUID, filename: str) -> str:
    """tenants/<org_id>/documents/<uuid>-<name>; directory components are stripped."""
    safe_name = filename.replace("\\", "_").replace("/", "_").replace("..", "_") or "upload"
    return f"tenants/{org_id}/{RESOURCE_PREFIX}/{uuid4().hex}-{safe_name}"


def tenant_prefix_matches(storage_path: str, org_id: UUID) -> bool:
    return storage_path.startswith(f"tenants/{org_id}/")


class ObjectStorage(ABC):

    @abstractmethod
    async def upload(self, org_id: UUID, filename: str, data: bytes, content_type: str) -> str:
        """Store bytes under the tenant prefix; returns the opaque storage path."""

    @abstractmethod
    async def download(self, storage_path: str) -> bytes:
        """Raises NotFound when the object does not exist."""

    @abstractmethod
    async def delete(self, storage_path: str, hard: bool = False) -> None:
        ...

    async def ping(self) -> bool:
        return True


# ---------------------------------------------------------------------------
# S3
# ---------------------------------------------------------------------------

class S3ObjectStorage(ObjectStorage):
    """
    Async S3 via aioboto3. One client context per call; the session is shared.
    In production credentials come from the task role; locally from the
    AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY settings when set.
    """

    def __init__(
        self,
        bucket:            str,
        region:            str = "us-east-1",
        kms_key_arn:       str = "",
        access_key_id:     str = "",
        secret_access_key: str = "",
    ) -> None:
        import aioboto3

        self._bucket      = bucket
        self._region      = region
        self._kms_key_arn = kms_key_arn
        self._session = aioboto3.Session(
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
        )

    def _client(self):
        return self._session.client("s3", region_name=self._region)

    def _sse_params(self) -> dict:
        if not self._kms_key_arn:
            return {"ServerSideEncryption": "aws:kms"}
        return {"ServerSideEncryption": "aws:kms", "SSEKMSKeyId": self._kms_key_arn}

    async def upload(self, org_id: UUID, filename: str, data: bytes, content_type: str) -> str:
        key = build_storage_path(org_id, filename)
        async with self._client() as s3:
            await s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata={"org_id": str(org_id), "resource": RESOURCE_PREFIX},
                Tagging=f"org_id={org_id}&resource={RESOURCE_PREFIX}",
                **self._sse_params(),
            )
        logger.info("S3 upload ok | org=%s key=%s size=%d", org_id, key, len(data))
        return key

    async def download(self, storage_path: str) -> bytes:
        from botocore.exceptions import ClientError

        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=storage_path)
                return await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise NotFound(f"Object not found: {storage_path}") from exc
                raise

    async def delete(self, storage_path: str, hard: bool = False) -> None:
        async with self._client() as s3:
            if hard:
                await s3.delete_object(Bucket=self._bucket, Key=storage_path)
                logger.warning("S3 hard delete | key=%s", storage_path)
            else:
                await s3.put_object_tagging(
                    Bucket=self._bucket,
                    Key=storage_path,
                    Tagging={"TagSet": [{"Key": "deleted", "Value": "true"}]},
                )
                logger.info("S3 soft delete | key=%s", storage_path)

    async def ping(self) -> bool:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            async with self._client() as s3:
                await s3.head_bucket(Bucket=self._bucket)
            return True
        except (BotoCoreError, ClientError) as exc:
            logger.error("S3 health check failed: %s", exc)
            return False


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class InMemoryObjectStorage(ObjectStorage):

    def __init__(self) -> None:
        self._objects: dict[str, bytes] = {}
        self.deleted: set[str] = set()

    async def upload(self, org_id: UUID, filename: str, data: bytes, content_type: str) -> str:
        key = build_storage_path(org_id, filename)
        self._objects[key] = bytes(data)
        return key

    def put(self, storage_path: str, data: bytes) -> None:
        """Seed an object at a known path."""
        self._objects[storage_path] = bytes(data)

    async def download(self, storage_path: str) -> bytes:
        data: Optional[bytes] = self._objects.get(storage_path)
        if data is None or storage_path in self.deleted:
            raise NotFound(f"Object not found: {storage_path}")
        return data

    async def delete(self, storage_path: str, hard: bool = False) -> None:
        if hard:
            self._objects.pop(storage_path, None)
        self.deleted.add(storage_path)
