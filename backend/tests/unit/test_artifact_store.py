"""Unit tests for batch artifact storage."""
import io

import pytest
from botocore.exceptions import ClientError

from agency_billing.config import Settings
from agency_billing.errors import InvalidBillingInput, NotFound
from agency_billing.storage.artifact_store import (
    LocalArtifactStore,
    S3ArtifactStore,
    StorageProvider,
    build_artifact_store,
    normalize_key,
    sha256_of,
)


class FakeS3Client:
    """In-memory stand-in for a boto3 S3 client."""

    def __init__(self):
        self.objects = {}

    def put_object(self, Bucket, Key, Body, ContentType):
        self.objects[(Bucket, Key)] = (Body, ContentType)

    def get_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)][0])}


def test_normalize_key() -> None:
    assert normalize_key("/billing//direct-debit/./a.txt") == "billing/direct-debit/a.txt"
    assert normalize_key("billing\\inbound\\a.txt") == "billing/inbound/a.txt"


@pytest.mark.parametrize("key", ["", "/", "billing/../secrets.txt", "../a.txt"])
def test_normalize_key_rejects_unsafe_keys(key: str) -> None:
    with pytest.raises(InvalidBillingInput):
        normalize_key(key)


async def test_local_store_put_and_get(artifact_store: LocalArtifactStore) -> None:
    """Test that the local store writes atomically and reports the content hash."""
    data = b"H|GALICIA_PD|v1.0\n"

    stored = await artifact_store.put("/billing/direct-debit/outbound/a.txt", data, "text/plain")

    assert stored.key == "billing/direct-debit/outbound/a.txt"
    assert stored.sha256 == sha256_of(data)
    assert stored.size == len(data)
    assert await artifact_store.get("billing/direct-debit/outbound/a.txt") == data
    # No temporary files left behind
    assert [p.name for p in (artifact_store.root / "billing/direct-debit/outbound").iterdir()] == ["a.txt"]


async def test_local_store_missing_key(artifact_store: LocalArtifactStore) -> None:
    with pytest.raises(NotFound):
        await artifact_store.get("billing/nothing.txt")


async def test_s3_store_with_injected_client() -> None:
    client = FakeS3Client()
    store = S3ArtifactStore("batches", "key", "secret", client=client)

    stored = await store.put("billing/a.txt", b"abc", "text/plain")

    assert stored.sha256 == sha256_of(b"abc")
    assert client.objects[("batches", "billing/a.txt")] == (b"abc", "text/plain")
    assert await store.get("/billing/a.txt") == b"abc"
    with pytest.raises(NotFound):
        await store.get("billing/b.txt")


def test_build_artifact_store_selects_backend(settings: Settings) -> None:
    assert build_artifact_store(settings).provider == StorageProvider.LOCAL

    s3_settings = settings.model_copy(
        update={"batches_bucket": "batches", "s3_access_key": "key", "s3_secret_key": "secret"}
    )
    assert build_artifact_store(s3_settings).provider == StorageProvider.S3
