"""Tests for the tag/repository index and its reference counting."""

from pathlib import Path

import pytest

from hangar.backend import ChunkedObjectDriver
from hangar.blobs import BlobReferenceStore
from hangar.errors import (
    BlobUnknownError,
    BlobUploadInvalidError,
    ManifestBlobUnknownError,
    ManifestInvalidError,
    ManifestUnknownError,
    NameUnknownError,
    StorageError,
)
from hangar.index import TagIndex
from hangar.manifest import SCHEMA_V2_IMAGE_ID
from hangar.records import MemoryRecordStore
from hangar.uploads import UploadSessionManager
from hangar.validation import compute_sha256


def _stack(tmp_path: Path, backend, cachable=True):
    records = MemoryRecordStore()
    blobs = BlobReferenceStore(records, backend=backend, cachable=cachable)
    uploads = UploadSessionManager(tmp_path / "stack", blobs)
    return blobs, uploads, TagIndex(records, blobs)


def _upload(uploads, *payloads):
    digests = []
    for data in payloads:
        digest = compute_sha256(data)
        uploads.upload("library", "busybox", digest, data)
        digests.append(digest)
    return digests


def _count(blobs, digest):
    return blobs.require(digest).count


def test_put_v2_references_every_blob(index, blobs, push_blob, v2_manifest) -> None:
    config, layer1, layer2 = push_blob(b"config"), push_blob(b"layer1"), push_blob(b"layer2")
    body = v2_manifest(config, [layer1, layer2])

    result = index.put_manifest("library", "busybox", "latest", body)

    assert result.digest == compute_sha256(body)
    assert result.schema == 2
    assert result.status == 201
    assert [_count(blobs, d) for d in (config, layer1, layer2)] == [1, 1, 1]
    assert all(blobs.require(d).locator for d in (config, layer1, layer2))


def test_put_v1_status_and_images(index, records, push_blob, v1_manifest) -> None:
    old, new = push_blob(b"old layer"), push_blob(b"new layer")
    result = index.put_manifest("library", "busybox", "v1", v1_manifest([new, old]), agent="docker/1.9")

    assert result.status == 202
    assert result.schema == 1
    repo = records.get_repository("library", "busybox")
    assert repo.images == ["img1", "img2"]
    assert repo.agent == "docker/1.9"
    tag = records.get_tag("library", "busybox", "v1")
    assert tag.image_id == "img2"
    assert tag.digest == new


def test_get_manifest_by_tag_and_digest(index, push_blob, v2_manifest) -> None:
    layer = push_blob(b"layer")
    body = v2_manifest(layer, [layer])
    result = index.put_manifest("library", "busybox", "latest", body)

    assert index.get_manifest("library", "busybox", "latest").manifest == body
    by_digest = index.get_manifest("library", "busybox", result.digest)
    assert by_digest.tag == "latest"
    assert by_digest.image_id == SCHEMA_V2_IMAGE_ID


def test_get_unknown_manifest(index) -> None:
    with pytest.raises(ManifestUnknownError):
        index.get_manifest("library", "busybox", "nope")
    with pytest.raises(ManifestUnknownError):
        index.get_manifest("library", "busybox", compute_sha256(b"nope"))


def test_put_is_idempotent(index, blobs, push_blob, v2_manifest) -> None:
    config, layer = push_blob(b"config"), push_blob(b"layer")
    body = v2_manifest(config, [layer])
    index.put_manifest("library", "busybox", "latest", body)
    index.put_manifest("library", "busybox", "latest", body)
    assert _count(blobs, config) == 1
    assert _count(blobs, layer) == 1


def test_repeated_layer_counts_once(index, blobs, push_blob, v2_manifest) -> None:
    config, layer = push_blob(b"config"), push_blob(b"layer")
    index.put_manifest("library", "busybox", "latest", v2_manifest(config, [layer, layer, layer]))
    assert _count(blobs, layer) == 1


def test_unknown_blob_rejects_manifest(index, blobs, records, push_blob, v2_manifest) -> None:
    config = push_blob(b"config")
    missing = compute_sha256(b"never uploaded")

    with pytest.raises(ManifestBlobUnknownError) as excinfo:
        index.put_manifest("library", "busybox", "latest", v2_manifest(config, [missing]))

    assert excinfo.value.detail["Digest"] == missing
    assert _count(blobs, config) == 0
    assert records.get_tag("library", "busybox", "latest") is None


def test_invalid_manifest_changes_nothing(index) -> None:
    with pytest.raises(ManifestInvalidError):
        index.put_manifest("library", "busybox", "latest", b'{"schemaVersion": 5}')
    assert index.catalog() == []


def test_shared_layer_counts_per_tag(index, blobs, push_blob, v2_manifest) -> None:
    base = push_blob(b"base")
    app1, app2 = push_blob(b"app one"), push_blob(b"app two")
    index.put_manifest("library", "one", "latest", v2_manifest(app1, [base]))
    index.put_manifest("library", "two", "latest", v2_manifest(app2, [base]))
    assert _count(blobs, base) == 2

    index.delete_manifest("library", "one", "latest")

    assert _count(blobs, base) == 1
    with pytest.raises(BlobUnknownError):
        blobs.require(app1)
    assert _count(blobs, app2) == 1


def test_overwrite_moves_references(index, blobs, push_blob, v2_manifest) -> None:
    shared, old_config, new_config = push_blob(b"shared"), push_blob(b"old config"), push_blob(b"new config")
    index.put_manifest("library", "busybox", "latest", v2_manifest(old_config, [shared]))

    result = index.put_manifest("library", "busybox", "latest", v2_manifest(new_config, [shared]))

    assert _count(blobs, shared) == 1
    assert _count(blobs, new_config) == 1
    with pytest.raises(BlobUnknownError):
        blobs.require(old_config)
    assert index.get_manifest("library", "busybox", "latest").reference == result.digest
    assert index.list_tags("library", "busybox") == ["latest"]


def test_delete_collects_blobs_and_repository(index, blobs, push_blob, v2_manifest) -> None:
    config, layer = push_blob(b"config"), push_blob(b"layer")
    paths = [Path(blobs.require(d).path) for d in (config, layer)]
    index.put_manifest("library", "busybox", "latest", v2_manifest(config, [layer]))

    assert index.delete_manifest("library", "busybox", "latest") == ["latest"]

    for digest in (config, layer):
        with pytest.raises(BlobUnknownError):
            blobs.require(digest)
    assert not any(path.exists() for path in paths)
    with pytest.raises(ManifestUnknownError):
        index.get_manifest("library", "busybox", "latest")
    with pytest.raises(NameUnknownError):
        index.list_tags("library", "busybox")
    assert index.catalog() == []


def test_delete_keeps_repository_with_other_tags(index, push_blob, v2_manifest) -> None:
    config, layer = push_blob(b"config"), push_blob(b"layer")
    index.put_manifest("library", "busybox", "latest", v2_manifest(config, [layer]))
    index.put_manifest("library", "busybox", "stable", v2_manifest(layer, [config]))

    index.delete_manifest("library", "busybox", "latest")

    assert index.list_tags("library", "busybox") == ["stable"]
    assert index.catalog() == ["library/busybox"]


def test_delete_by_digest_removes_every_tag(index, blobs, push_blob, v2_manifest) -> None:
    config, layer = push_blob(b"config"), push_blob(b"layer")
    body = v2_manifest(config, [layer])
    digest = index.put_manifest("library", "busybox", "latest", body).digest
    index.put_manifest("library", "busybox", "1.0", body)
    assert _count(blobs, layer) == 2

    deleted = index.delete_manifest("library", "busybox", digest)

    assert sorted(deleted) == ["1.0", "latest"]
    with pytest.raises(BlobUnknownError):
        blobs.require(layer)


def test_delete_unknown_manifest(index) -> None:
    with pytest.raises(ManifestUnknownError):
        index.delete_manifest("library", "busybox", "latest")


def test_list_tags_keeps_push_order(index, push_blob, v2_manifest) -> None:
    config, layer = push_blob(b"config"), push_blob(b"layer")
    for tag in ("b", "a", "c"):
        index.put_manifest("library", "busybox", tag, v2_manifest(config, [layer]))
    assert index.list_tags("library", "busybox") == ["b", "a", "c"]


def test_catalog_is_sorted(index, push_blob, v2_manifest) -> None:
    config = push_blob(b"config")
    for name in ("zeta", "alpha", "mid"):
        index.put_manifest("library", name, "latest", v2_manifest(config, []))
    assert index.catalog() == ["library/alpha", "library/mid", "library/zeta"]


def test_push_failure_rolls_back(tmp_path: Path, driver, flaky_backend, v2_manifest) -> None:
    backend = flaky_backend(driver, fail_on=3)
    blobs, uploads, index = _stack(tmp_path, backend)
    digests = _upload(uploads, b"config", b"layer1", b"layer2")
    body = v2_manifest(digests[0], digests[1:])

    with pytest.raises(BlobUploadInvalidError) as excinfo:
        index.put_manifest("library", "busybox", "latest", body)

    assert excinfo.value.status == 500
    assert isinstance(excinfo.value.__cause__, StorageError)
    assert [blobs.require(d).count for d in digests] == [0, 0, 0]
    assert [blobs.require(d).locator for d in digests] == ["", "", ""]
    assert len(backend.saved) == 2
    assert all(driver.resolve(locator) is None for locator in backend.saved)
    with pytest.raises(ManifestUnknownError):
        index.get_manifest("library", "busybox", "latest")

    backend.fail_on = None
    assert index.put_manifest("library", "busybox", "latest", body).status == 201
    assert [blobs.require(d).count for d in digests] == [1, 1, 1]


def test_not_cachable_evicts_after_push(tmp_path: Path, driver, v2_manifest) -> None:
    blobs, uploads, index = _stack(tmp_path, driver, cachable=False)
    config, layer = _upload(uploads, b"config", b"layer")
    local = Path(blobs.require(layer).path)

    index.put_manifest("library", "busybox", "latest", v2_manifest(config, [layer]))

    assert not local.exists()
    assert blobs.require(layer).path == ""
    assert blobs.open(layer) == b"layer"


def test_failed_collection_surfaces_and_keeps_records(tmp_path: Path, driver, flaky_backend, v2_manifest) -> None:
    backend = flaky_backend(driver, fail_on=None, fail_delete=True)
    blobs, uploads, index = _stack(tmp_path, backend)
    config, layer = _upload(uploads, b"config", b"layer")
    index.put_manifest("library", "busybox", "latest", v2_manifest(config, [layer]))

    with pytest.raises(StorageError):
        index.delete_manifest("library", "busybox", "latest")

    # The tag is gone; the blobs stay tracked, unreferenced.
    with pytest.raises(ManifestUnknownError):
        index.get_manifest("library", "busybox", "latest")
    assert blobs.require(config).count == 0
    assert blobs.require(layer).count == 0


def test_push_failure_mid_blob_leaves_backend_empty(tmp_path: Path, failing_pool, v2_manifest) -> None:
    pool = failing_pool(fail_chunk=1)
    driver = ChunkedObjectDriver(pool, chunk_size=pool.max_object_size)
    blobs, uploads, index = _stack(tmp_path, driver)
    # The config fits one chunk; the layer fails on its second.
    config, layer = _upload(uploads, b"small", bytes(range(40)))

    with pytest.raises(BlobUploadInvalidError):
        index.put_manifest("library", "busybox", "latest", v2_manifest(config, [layer]))

    assert pool.names() == []
    for digest in (config, layer):
        assert driver.resolve(f"blobs/{digest.split(':', 1)[1]}") is None
        blobs.delete_unreferenced(digest)
    assert pool.names() == []


def _faulty_stack(tmp_path: Path, records):
    blobs = BlobReferenceStore(records)
    uploads = UploadSessionManager(tmp_path / "stack", blobs)
    return blobs, uploads, TagIndex(records, blobs)


def test_partial_delete_by_digest_releases_deleted_tags(tmp_path: Path, faulty_records, v2_manifest) -> None:
    blobs, uploads, index = _faulty_stack(tmp_path, faulty_records)
    config, layer = _upload(uploads, b"config", b"layer")
    body = v2_manifest(config, [layer])
    digest = index.put_manifest("library", "busybox", "latest", body).digest
    index.put_manifest("library", "busybox", "1.0", body)

    faulty_records.faults["delete_tag"] = 2
    with pytest.raises(StorageError):
        index.delete_manifest("library", "busybox", digest)

    remaining = [tag for tag in ("latest", "1.0") if faulty_records.get_tag("library", "busybox", tag)]
    assert len(remaining) == 1
    assert index.list_tags("library", "busybox") == remaining
    assert _count(blobs, layer) == 1

    faulty_records.faults.clear()
    assert index.delete_manifest("library", "busybox", digest) == remaining
    with pytest.raises(BlobUnknownError):
        blobs.require(layer)
    assert index.catalog() == []


def test_failed_tag_save_removes_new_repository(tmp_path: Path, faulty_records, v2_manifest) -> None:
    blobs, uploads, index = _faulty_stack(tmp_path, faulty_records)
    config, layer = _upload(uploads, b"config", b"layer")

    faulty_records.faults["insert_tag"] = 1
    with pytest.raises(StorageError):
        index.put_manifest("library", "busybox", "latest", v2_manifest(config, [layer]))

    assert faulty_records.get_repository("library", "busybox") is None
    assert index.catalog() == []
    assert [_count(blobs, d) for d in (config, layer)] == [0, 0]


def test_failed_tag_save_restores_repository(tmp_path: Path, faulty_records, v2_manifest) -> None:
    blobs, uploads, index = _faulty_stack(tmp_path, faulty_records)
    config, layer = _upload(uploads, b"config", b"layer")
    index.put_manifest("library", "busybox", "stable", v2_manifest(config, []), agent="docker/23")

    faulty_records.faults["insert_tag"] = 2
    with pytest.raises(StorageError):
        index.put_manifest("library", "busybox", "latest", v2_manifest(layer, [config]), agent="docker/24")

    repo = faulty_records.get_repository("library", "busybox")
    assert repo.tags == ["stable"]
    assert repo.agent == "docker/23"
    assert index.list_tags("library", "busybox") == ["stable"]
    assert _count(blobs, config) == 1
    assert _count(blobs, layer) == 0


def test_lock_table_drops_idle_repositories(index, push_blob, v2_manifest) -> None:
    config = push_blob(b"config")
    for name in ("one", "two", "three"):
        index.put_manifest("library", name, "latest", v2_manifest(config, []))
        index.delete_manifest("library", name, "latest")
    assert len(index._locks) == 0
