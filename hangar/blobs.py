"""
Reference-counted blob store.

Maps a content digest to one stored blob and the number of tags that
reference it. Counts move by one per tag under a per-digest lock. A blob
whose count drops to zero is deleted on the spot: bytes first, record last,
so a failed physical delete leaves an unreferenced record behind.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from .errors import (
    BlobUnknownError,
    BlobUploadInvalidError,
    ContentInconsistencyError,
    ManifestBlobUnknownError,
    PathNotFoundError,
    StorageError,
    wrap_errors,
)
from .locks import LockTable
from .records import Blob

logger = logging.getLogger(__name__)


class BlobReferenceStore:
    """
    Blob records plus their physical bytes.

    Args:
        records: RecordStore holding Blob records
        backend: optional StorageBackend blobs are pushed to
        cachable: keep the local copy of a blob once it is in the backend
    """

    def __init__(self, records, backend=None, cachable=True):
        self.records = records
        self.backend = backend
        self.cachable = cachable
        self._locks = LockTable()

    def lock(self, digest: str):
        """Context manager serializing all changes to ``digest``."""
        return self._locks.hold(digest)

    def get(self, digest: str) -> tuple[bool, Blob | None]:
        with wrap_errors("get blob", digest=digest):
            blob = self.records.get_blob(digest)
        return blob is not None, blob

    def require(self, digest: str) -> Blob:
        exists, blob = self.get(digest)
        if not exists:
            raise BlobUnknownError(detail={"Digest": digest})
        return blob

    def record_upload(self, digest: str, path, size: int) -> Blob:
        """
        Register the bytes committed for ``digest``.

        A new record starts with count 0. An existing record keeps its count;
        only its local path and size are refreshed.
        """
        with self.lock(digest):
            exists, blob = self.get(digest)
            with wrap_errors("record upload", digest=digest):
                if not exists:
                    blob = Blob(digest=digest, path=str(path), size=size)
                    self.records.insert_blob(blob)
                    logger.info(f"Blob registered: {digest} ({size} bytes)")
                else:
                    blob.path, blob.size = str(path), size
                    self.records.update_blob(blob)
                    logger.info(f"Blob re-uploaded: {digest} (count={blob.count})")
            return blob

    def increment_for_tag(self, digest: str) -> int:
        """
        Add one tag reference to ``digest`` and return the new count.

        Raises:
            ManifestBlobUnknownError: if the digest was never uploaded
        """
        with self.lock(digest):
            exists, blob = self.get(digest)
            if not exists:
                raise ManifestBlobUnknownError(detail={"Digest": digest})
            blob.count += 1
            with wrap_errors("increment blob", digest=digest):
                self.records.update_blob(blob)
            logger.debug(f"Blob {digest} count -> {blob.count}")
            return blob.count

    def decrement_for_tag(self, digest: str) -> int:
        """
        Drop one tag reference from ``digest`` and return the new count.

        At zero the blob is deleted from the local cache, the backend and the
        record store, in that order.

        Raises:
            BlobUnknownError: if the digest has no record
            ContentInconsistencyError: if the count is already zero
            StorageError: if the bytes could not be deleted; the record is
                kept with count 0 and can be removed later with
                ``delete_unreferenced``
        """
        with self.lock(digest):
            exists, blob = self.get(digest)
            if not exists:
                raise BlobUnknownError(detail={"Digest": digest})
            if blob.count <= 0:
                logger.error(f"Reference count underflow for {digest}")
                raise ContentInconsistencyError(detail={"Digest": digest, "Count": blob.count})

            blob.count -= 1
            if blob.count == 0:
                self._destroy(blob)
            else:
                with wrap_errors("decrement blob", digest=digest):
                    self.records.update_blob(blob)
                logger.debug(f"Blob {digest} count -> {blob.count}")
            return blob.count

    def revert_increment(self, digest: str) -> int:
        """Undo one increment without collecting the blob at zero."""
        with self.lock(digest):
            blob = self.require(digest)
            if blob.count <= 0:
                raise ContentInconsistencyError(detail={"Digest": digest, "Count": blob.count})
            blob.count -= 1
            with wrap_errors("revert blob increment", digest=digest):
                self.records.update_blob(blob)
            return blob.count

    def delete_unreferenced(self, digest: str) -> None:
        """Delete a blob that no tag references."""
        with self.lock(digest):
            blob = self.require(digest)
            if blob.count > 0:
                raise ContentInconsistencyError(
                    "blob is still referenced",
                    detail={"Digest": digest, "Count": blob.count},
                    status=400,
                )
            self._destroy(blob)

    def _remove_bytes(self, blob: Blob) -> None:
        if blob.path:
            try:
                Path(blob.path).unlink(missing_ok=True)
            except OSError as exc:
                logger.error(f"Failed to remove local copy of {blob.digest}: {exc}")
                raise StorageError(
                    f"failed to delete blob {blob.digest}: {exc}", detail={"Digest": blob.digest}
                ) from exc
            blob.path = ""

        if blob.locator and self.backend is not None:
            try:
                with wrap_errors("delete blob from backend", digest=blob.digest, locator=blob.locator):
                    self.backend.delete(blob.locator)
            except PathNotFoundError:
                logger.warning(f"Blob {blob.digest} already absent from backend at {blob.locator}")
            blob.locator = ""

    def _destroy(self, blob: Blob) -> None:
        try:
            self._remove_bytes(blob)
        except StorageError:
            # Keep the record, unreferenced, so the bytes stay tracked.
            with wrap_errors("update blob", digest=blob.digest):
                self.records.update_blob(blob)
            raise

        with wrap_errors("delete blob record", digest=blob.digest):
            self.records.delete_blob(blob.digest)
        logger.info(f"Blob garbage-collected: {blob.digest}")

    # Backend

    def push(self, digest: str) -> bool:
        """
        Copy the local bytes of ``digest`` to the backend.

        Returns:
            True if the blob was pushed by this call, False if there is no
            backend or it was already pushed
        """
        if self.backend is None:
            return False

        with self.lock(digest):
            blob = self.require(digest)
            if blob.locator:
                return False
            if not blob.path or not os.path.exists(blob.path):
                raise BlobUploadInvalidError(
                    "local blob content missing", detail={"Digest": digest}, status=500
                )

            with wrap_errors("push blob", digest=digest, backend=self.backend.name):
                blob.locator = self.backend.save(blob.path)
                self.records.update_blob(blob)
            logger.info(f"Blob pushed: {digest} -> {self.backend.name}:{blob.locator}")
            return True

    def unpush(self, digest: str) -> None:
        """Remove a pushed blob from the backend, keeping the record."""
        if self.backend is None:
            return

        with self.lock(digest):
            blob = self.require(digest)
            if not blob.locator:
                return
            with wrap_errors("unpush blob", digest=digest, locator=blob.locator):
                self.backend.delete(blob.locator)
                blob.locator = ""
                self.records.update_blob(blob)
            logger.info(f"Blob removed from backend: {digest}")

    def evict(self, digest: str) -> None:
        """Drop the local copy of a pushed blob unless the cache is kept."""
        if self.cachable or self.backend is None:
            return

        with self.lock(digest):
            blob = self.require(digest)
            if not blob.locator or not blob.path:
                return
            with wrap_errors("evict blob", digest=digest):
                Path(blob.path).unlink(missing_ok=True)
                blob.path = ""
                self.records.update_blob(blob)
            logger.debug(f"Local copy evicted: {digest}")

    def stream(self, digest: str):
        """
        Open the bytes of ``digest`` for reading, local cache first.

        Returns:
            (Blob, binary file object); the caller closes the file

        Raises:
            BlobUnknownError: if the digest has no record
            StorageError: if the record exists but its bytes cannot be read
        """
        blob = self.require(digest)
        if blob.path and os.path.exists(blob.path):
            with wrap_errors("read blob", digest=digest):
                return blob, open(blob.path, "rb")

        if blob.locator and self.backend is not None:
            with wrap_errors("download blob", digest=digest, locator=blob.locator):
                return blob, self.backend.open(blob.locator)

        logger.error(f"Blob {digest} has a record but no content")
        raise StorageError("blob content missing", detail={"Digest": digest})

    def open(self, digest: str) -> bytes:
        """Return the whole content of ``digest``; see ``stream``."""
        _, f = self.stream(digest)
        with wrap_errors("read blob", digest=digest), f:
            return f.read()
