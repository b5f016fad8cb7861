"""Shared fixtures for the registry test suite."""

import json
from collections import Counter
from pathlib import Path

import pytest

from hangar.backend import ChunkedObjectDriver, MemoryObjectPool
from hangar.blobs import BlobReferenceStore
from hangar.config import Config
from hangar.errors import StorageError
from hangar.index import TagIndex
from hangar.manifest import MEDIA_TYPE_V2
from hangar.records import MemoryRecordStore
from hangar.routes import create_app
from hangar.uploads import UploadSessionManager
from hangar.validation import compute_sha256

CHUNK_SIZE = 16


# ============================================================================
# Manifest builders
# ============================================================================


def build_v2(config_digest, layer_digests) -> bytes:
    doc = {
        "schemaVersion": 2,
        "mediaType": MEDIA_TYPE_V2,
        "config": {
            "mediaType": "application/vnd.docker.container.image.v1+json",
            "digest": config_digest,
            "size": 7,
        },
        "layers": [
            {
                "mediaType": "application/vnd.docker.image.rootfs.diff.tar.gzip",
                "digest": digest,
                "size": 1,
            }
            for digest in layer_digests
        ],
    }
    return json.dumps(doc, indent=3).encode()


def build_v1(blob_sums, name="library/busybox", tag="latest") -> bytes:
    """Schema 1 manifest; ``blob_sums`` are newest layer first, like fsLayers."""
    count = len(blob_sums)
    history = []
    for index in range(count):
        image = {"id": f"img{count - index}"}
        if index < count - 1:
            image["parent"] = f"img{count - index - 1}"
        history.append({"v1Compatibility": json.dumps(image)})
    doc = {
        "schemaVersion": 1,
        "name": name,
        "tag": tag,
        "architecture": "amd64",
        "fsLayers": [{"blobSum": digest} for digest in blob_sums],
        "history": history,
    }
    return json.dumps(doc).encode()


@pytest.fixture
def v2_manifest():
    return build_v2


@pytest.fixture
def v1_manifest():
    return build_v1


# ============================================================================
# Fault injection
# ============================================================================


class FlakyBackend:
    """Wraps a backend and fails ``save`` from the ``fail_on``-th call on."""

    def __init__(self, inner, fail_on=1, fail_delete=False):
        self.inner = inner
        self.name = f"flaky-{inner.name}"
        self.fail_on = fail_on
        self.fail_delete = fail_delete
        self.saves = 0
        self.saved: list[str] = []
        self.deleted: list[str] = []

    def save(self, local_path):
        self.saves += 1
        if self.fail_on is not None and self.saves >= self.fail_on:
            raise StorageError(f"injected save failure for {Path(local_path).name}")
        locator = self.inner.save(local_path)
        self.saved.append(locator)
        return locator

    def get(self, locator):
        return self.inner.get(locator)

    def open(self, locator):
        return self.inner.open(locator)

    def delete(self, locator):
        if self.fail_delete:
            raise StorageError(f"injected delete failure for {locator}")
        self.inner.delete(locator)
        self.deleted.append(locator)


@pytest.fixture
def flaky_backend():
    return FlakyBackend


class FailingPool(MemoryObjectPool):
    """Memory pool failing every non-empty write to chunk ``fail_chunk``; ``None`` disables it."""

    def __init__(self, fail_chunk=None, max_object_size=CHUNK_SIZE):
        super().__init__(max_object_size=max_object_size)
        self.fail_chunk = fail_chunk

    def write(self, name, data, offset):
        if self.fail_chunk is not None and data and name.endswith(f"-{self.fail_chunk}"):
            raise StorageError(f"injected failure writing {name}")
        super().write(name, data, offset)


@pytest.fixture
def failing_pool():
    return FailingPool


class FaultyRecordStore(MemoryRecordStore):
    """Memory record store whose methods named in ``faults`` fail from their n-th call on."""

    def __init__(self):
        super().__init__()
        self.faults: dict[str, int] = {}
        self.calls: Counter = Counter()

    def _fault(self, method):
        self.calls[method] += 1
        fail_on = self.faults.get(method)
        if fail_on is not None and self.calls[method] >= fail_on:
            raise RuntimeError(f"injected {method} failure")

    def insert_blob(self, blob):
        self._fault("insert_blob")
        super().insert_blob(blob)

    def insert_tag(self, tag):
        self._fault("insert_tag")
        super().insert_tag(tag)

    def delete_tag(self, namespace, repository, tag):
        self._fault("delete_tag")
        super().delete_tag(namespace, repository, tag)


@pytest.fixture
def faulty_records() -> FaultyRecordStore:
    return FaultyRecordStore()


# ============================================================================
# Components
# ============================================================================


@pytest.fixture
def cfg(tmp_path: Path, monkeypatch) -> Config:
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "data"))
    monkeypatch.setenv("STORAGE_DRIVER", "chunked")
    monkeypatch.setenv("CHUNK_SIZE", str(CHUNK_SIZE))
    monkeypatch.setenv("REGISTRY_DOMAIN", "registry.test")
    monkeypatch.setenv("LISTEN_MODE", "https")
    for name in ("BACKEND_ROOT", "DATABASE_URL", "CACHABLE", "UPLOAD_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)
    return Config()


@pytest.fixture
def pool() -> MemoryObjectPool:
    return MemoryObjectPool(max_object_size=CHUNK_SIZE)


@pytest.fixture
def driver(pool) -> ChunkedObjectDriver:
    return ChunkedObjectDriver(pool, chunk_size=CHUNK_SIZE)


@pytest.fixture
def records() -> MemoryRecordStore:
    return MemoryRecordStore()


@pytest.fixture
def blobs(records, driver) -> BlobReferenceStore:
    return BlobReferenceStore(records, backend=driver)


@pytest.fixture
def uploads(tmp_path: Path, blobs) -> UploadSessionManager:
    return UploadSessionManager(tmp_path / "data", blobs)


@pytest.fixture
def index(records, blobs) -> TagIndex:
    return TagIndex(records, blobs)


@pytest.fixture
def push_blob(uploads):
    """Upload ``data`` monolithically and return its digest."""

    def _push(data: bytes, namespace="library", repository="busybox") -> str:
        digest = compute_sha256(data)
        uploads.upload(namespace, repository, digest, data)
        return digest

    return _push


@pytest.fixture
def app(cfg):
    return create_app(cfg)


@pytest.fixture
def client(app):
    return app.test_client()
