"""Batch artifact storage on object storage or the local filesystem."""
import asyncio
import hashlib
import os
import tempfile
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Optional, Protocol

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel

from agency_billing.config import Settings
from agency_billing.errors import InvalidBillingInput, NotFound

logger = structlog.get_logger(__name__)


class StorageProvider(str, Enum):
    """Supported artifact backends."""

    LOCAL = "local"
    S3 = "s3"


class StoredArtifact(BaseModel):
    """Result of a put: normalized key plus content digest."""

    key: str
    sha256: str
    size: int
    content_type: str


class ArtifactStore(Protocol):
    """Put/get of bank file artifacts by key."""

    provider: StorageProvider

    async def put(self, key: str, data: bytes, content_type: str) -> StoredArtifact:
        ...

    async def get(self, key: str) -> bytes:
        ...


def sha256_of(data: bytes) -> str:
    """Hex SHA-256 of the content, independent of the backend."""
    return hashlib.sha256(data).hexdigest()


def normalize_key(key: str) -> str:
    """
    Normalize a storage key.

    Leading slashes are stripped; empty keys and ``..`` segments are rejected.
    """
    normalized = (key or "").replace("\\", "/").lstrip("/")
    parts = PurePosixPath(normalized).parts
    if not normalized or any(part == ".." for part in parts):
        raise InvalidBillingInput(f"Invalid storage key: {key!r}")
    return "/".join(part for part in parts if part != ".")


class LocalArtifactStore:
    """Artifacts under a local root directory. Writes are atomic."""

    provider = StorageProvider.LOCAL

    def __init__(self, root: str):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root / normalize_key(key)

    def _write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def put(self, key: str, data: bytes, content_type: str) -> StoredArtifact:
        normalized = normalize_key(key)
        await asyncio.to_thread(self._write, self._path(normalized), data)
        logger.info("artifact_stored", provider=self.provider.value, key=normalized, size=len(data))
        return StoredArtifact(key=normalized, sha256=sha256_of(data), size=len(data), content_type=content_type)

    async def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise NotFound(f"Artifact {normalize_key(key)} not found") from None


class S3ArtifactStore:
    """Artifacts in an S3-compatible bucket (AWS, DigitalOcean Spaces, MinIO)."""

    provider = StorageProvider.S3

    def __init__(
        self,
        bucket: str,
        access_key: str,
        secret_key: str,
        region: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        client=None,
    ):
        self.bucket = bucket
        self._client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            region_name=region,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
        )

    async def put(self, key: str, data: bytes, content_type: str) -> StoredArtifact:
        normalized = normalize_key(key)
        await asyncio.to_thread(
            self._client.put_object,
            Bucket=self.bucket,
            Key=normalized,
            Body=data,
            ContentType=content_type,
        )
        logger.info("artifact_stored", provider=self.provider.value, key=normalized, size=len(data))
        return StoredArtifact(key=normalized, sha256=sha256_of(data), size=len(data), content_type=content_type)

    async def get(self, key: str) -> bytes:
        normalized = normalize_key(key)
        try:
            response = await asyncio.to_thread(self._client.get_object, Bucket=self.bucket, Key=normalized)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise NotFound(f"Artifact {normalized} not found") from None
            raise
        return await asyncio.to_thread(response["Body"].read)


def build_artifact_store(settings: Settings) -> ArtifactStore:
    """Object storage when bucket and credentials are configured, local root otherwise."""
    if settings.has_object_storage:
        try:
            return S3ArtifactStore(
                bucket=settings.batches_bucket,
                access_key=settings.s3_access_key,
                secret_key=settings.s3_secret_key,
                region=settings.s3_region,
                endpoint_url=settings.s3_endpoint_url,
            )
        except BotoCoreError as e:
            logger.error("artifact_store_init_failed", provider="s3", error=str(e))
            raise
    return LocalArtifactStore(settings.batches_local_root)
