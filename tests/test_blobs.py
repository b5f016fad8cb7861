"""Tests for the reference-counted blob store."""

import threading
from pathlib import Path

import pytest

from hangar.blobs import BlobReferenceStore
from hangar.errors import (
    BlobUnknownError,
    ContentInconsistencyError,
    ManifestBlobUnknownError,
    StorageError,
)
from hangar.records import MemoryRecordStore
from hangar.validation import compute_sha256


def _stored(blobs: BlobReferenceStore, tmp_path: Path, data: bytes) -> str:
    digest = compute_sha256(data)
    path = tmp_path / digest.split(":", 1)[1]
    path.write_bytes(data)
    blobs.record_upload(digest, path, len(data))
    return digest


def test_new_blob_starts_unreferenced(blobs, tmp_path: Path) -> None:
    digest = _stored(blobs, tmp_path, b"layer")
    exists, blob = blobs.get(digest)
    assert exists
    assert blob.count == 0
    assert blob.size == 5


def test_get_unknown_digest(blobs) -> None:
    exists, blob = blobs.get(compute_sha256(b"nothing"))
    assert not exists
    assert blob is None


def test_reupload_keeps_count(blobs, tmp_path: Path) -> None:
    digest = _stored(blobs, tmp_path, b"layer")
    blobs.increment_for_tag(digest)
    _stored(blobs, tmp_path, b"layer")
    assert blobs.require(digest).count == 1


def test_increment_unknown_digest(blobs) -> None:
    with pytest.raises(ManifestBlobUnknownError):
        blobs.increment_for_tag(compute_sha256(b"never uploaded"))


def test_count_tracks_increments_and_decrements(blobs, tmp_path: Path) -> None:
    digest = _stored(blobs, tmp_path, b"shared")
    assert [blobs.increment_for_tag(digest) for _ in range(3)] == [1, 2, 3]
    assert blobs.decrement_for_tag(digest) == 2
    assert blobs.decrement_for_tag(digest) == 1
    exists, blob = blobs.get(digest)
    assert exists
    assert blob.count == 1


def test_decrement_to_zero_collects_blob(blobs, tmp_path: Path) -> None:
    digest = _stored(blobs, tmp_path, b"short lived")
    local = Path(blobs.require(digest).path)
    blobs.increment_for_tag(digest)

    assert blobs.decrement_for_tag(digest) == 0

    assert not local.exists()
    assert blobs.get(digest) == (False, None)


def test_decrement_to_zero_deletes_backend_copy(blobs, driver, tmp_path: Path) -> None:
    digest = _stored(blobs, tmp_path, b"pushed bytes")
    blobs.increment_for_tag(digest)
    assert blobs.push(digest)
    locator = blobs.require(digest).locator

    blobs.decrement_for_tag(digest)

    assert driver.resolve(locator) is None
    assert blobs.get(digest) == (False, None)


def test_decrement_below_zero(blobs, tmp_path: Path) -> None:
    digest = _stored(blobs, tmp_path, b"orphan")
    with pytest.raises(ContentInconsistencyError):
        blobs.decrement_for_tag(digest)
    assert blobs.require(digest).count == 0


def test_decrement_unknown_digest(blobs) -> None:
    with pytest.raises(BlobUnknownError):
        blobs.decrement_for_tag(compute_sha256(b"nothing"))


def test_failed_physical_delete_keeps_record(driver, flaky_backend, tmp_path: Path) -> None:
    backend = flaky_backend(driver, fail_on=None, fail_delete=True)
    blobs = BlobReferenceStore(MemoryRecordStore(), backend=backend)
    digest = _stored(blobs, tmp_path, b"stubborn")
    blobs.increment_for_tag(digest)
    blobs.push(digest)

    with pytest.raises(StorageError):
        blobs.decrement_for_tag(digest)

    exists, blob = blobs.get(digest)
    assert exists
    assert blob.count == 0
    assert blob.locator

    backend.fail_delete = False
    blobs.delete_unreferenced(digest)
    assert blobs.get(digest) == (False, None)
    assert backend.deleted == [blob.locator]


def test_missing_backend_copy_is_tolerated(blobs, driver, tmp_path: Path) -> None:
    digest = _stored(blobs, tmp_path, b"already gone")
    blobs.increment_for_tag(digest)
    blobs.push(digest)
    driver.delete(blobs.require(digest).locator)

    blobs.decrement_for_tag(digest)
    assert blobs.get(digest) == (False, None)


def test_revert_increment_does_not_collect(blobs, tmp_path: Path) -> None:
    digest = _stored(blobs, tmp_path, b"kept")
    blobs.increment_for_tag(digest)
    assert blobs.revert_increment(digest) == 0
    blob = blobs.require(digest)
    assert blob.count == 0
    assert Path(blob.path).exists()


def test_delete_unreferenced_refuses_referenced_blob(blobs, tmp_path: Path) -> None:
    digest = _stored(blobs, tmp_path, b"in use")
    blobs.increment_for_tag(digest)
    with pytest.raises(ContentInconsistencyError) as excinfo:
        blobs.delete_unreferenced(digest)
    assert excinfo.value.status == 400
    assert blobs.require(digest).count == 1


def test_push_once(blobs, driver, tmp_path: Path) -> None:
    digest = _stored(blobs, tmp_path, b"to the backend")
    assert blobs.push(digest) is True
    assert blobs.push(digest) is False
    locator = blobs.require(digest).locator
    assert driver.get(locator) == b"to the backend"


def test_push_without_backend(records, tmp_path: Path) -> None:
    blobs = BlobReferenceStore(records)
    digest = _stored(blobs, tmp_path, b"local only")
    assert blobs.push(digest) is False
    assert blobs.open(digest) == b"local only"


def test_unpush_removes_backend_copy(blobs, driver, tmp_path: Path) -> None:
    digest = _stored(blobs, tmp_path, b"undo me")
    blobs.push(digest)
    locator = blobs.require(digest).locator
    blobs.unpush(digest)
    assert driver.resolve(locator) is None
    assert blobs.require(digest).locator == ""


def test_evict_keeps_backend_copy_readable(records, driver, tmp_path: Path) -> None:
    blobs = BlobReferenceStore(records, backend=driver, cachable=False)
    digest = _stored(blobs, tmp_path, b"remote only")
    local = Path(blobs.require(digest).path)
    blobs.push(digest)

    blobs.evict(digest)

    assert not local.exists()
    assert blobs.require(digest).path == ""
    assert blobs.open(digest) == b"remote only"


def test_evict_is_noop_when_cachable(blobs, tmp_path: Path) -> None:
    digest = _stored(blobs, tmp_path, b"cached")
    blobs.push(digest)
    blobs.evict(digest)
    assert Path(blobs.require(digest).path).exists()


def test_open_unknown_digest(blobs) -> None:
    with pytest.raises(BlobUnknownError):
        blobs.open(compute_sha256(b"nothing"))


def test_concurrent_count_updates(blobs, tmp_path: Path) -> None:
    digest = _stored(blobs, tmp_path, b"contended")
    workers, rounds = 8, 50

    def bump(fn):
        for _ in range(rounds):
            fn(digest)

    threads = [threading.Thread(target=bump, args=(blobs.increment_for_tag,)) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert blobs.require(digest).count == workers * rounds

    threads = [threading.Thread(target=bump, args=(blobs.decrement_for_tag,)) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert blobs.get(digest) == (False, None)


def test_lock_table_drops_collected_digests(blobs, tmp_path: Path) -> None:
    for n in range(50):
        digest = _stored(blobs, tmp_path, f"blob {n}".encode())
        blobs.increment_for_tag(digest)
        blobs.decrement_for_tag(digest)
    assert len(blobs._locks) == 0


def test_stream_prefers_local_copy(blobs, tmp_path: Path) -> None:
    digest = _stored(blobs, tmp_path, b"local bytes")
    blob, f = blobs.stream(digest)
    with f:
        assert f.read() == b"local bytes"
    assert blob.size == len(b"local bytes")
