"""
Chunked object driver.

Maps one logical blob of arbitrary length onto fixed-size objects of an
ObjectPool. Chunk ``k`` of object ``oid`` is the pool object ``<oid>-<k>`` and
holds bytes ``[k * chunk_size, (k + 1) * chunk_size)`` of the blob. The true
length of the blob is kept as an 8-byte little-endian ``total-size`` xattr on
chunk 0, since a chunk's own length says nothing about the blob's.

Human paths are resolved to object ids through the omap of the directory
object: ``blobs/<name>`` is looked up as key ``<name>`` in the omap of
``blobs``.

Errors raised by the pool are not retried here.
"""

from __future__ import annotations

import io
import logging
import posixpath
import struct
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from ..errors import InvalidOffsetError, PartialWriteError, PathNotFoundError, StorageError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 4 << 20
XATTR_TOTAL_SIZE = "total-size"
_SIZE = struct.Struct("<Q")


@dataclass(frozen=True)
class FileInfo:
    path: str
    size: int
    is_dir: bool = False
    mod_time: datetime | None = None


def _read_full(reader, size):
    """Read up to ``size`` bytes, stopping early only at end of input."""
    parts = []
    remaining = size
    while remaining > 0:
        data = reader.read(remaining)
        if not data:
            break
        parts.append(data)
        remaining -= len(data)
    return b"".join(parts)


class ChunkedReader(io.RawIOBase):
    """Sequential reader over a chunked object, starting at a given offset."""

    def __init__(self, driver: ChunkedObjectDriver, oid: str, size: int, offset: int) -> None:
        super().__init__()
        self._driver = driver
        self.oid = oid
        self.size = size
        self.offset = offset

    def readable(self):
        return True

    def readinto(self, b):
        view = memoryview(b).cast("B")
        wanted = min(len(view), self.size - self.offset)
        filled = 0
        while filled < wanted:
            chunk, chunk_offset = self._driver.chunk_name(self.oid, self.offset)
            length = min(wanted - filled, self._driver.chunk_size - chunk_offset)
            data = self._driver.pool.read(chunk, length, chunk_offset)
            if not data:
                raise StorageError(
                    f"short read from {chunk} at {chunk_offset}",
                    detail={"object": chunk, "offset": chunk_offset},
                )
            view[filled:filled + len(data)] = data
            filled += len(data)
            self.offset += len(data)
        return filled


class ChunkedObjectDriver:
    """
    Storage backend that splits blobs into fixed-size pool objects.

    Besides the stream interface (``write_stream``, ``read_stream``, ``stat``,
    ``delete``) it implements the flat backend capability used by the blob
    store: ``save(local_path)``, ``get(locator)``, ``open(locator)`` and
    ``delete(locator)``.
    """

    name = "chunked"

    def __init__(self, pool, chunk_size: int = DEFAULT_CHUNK_SIZE, prefix: str = "blobs") -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.pool = pool
        self.chunk_size = chunk_size
        self.prefix = prefix

    def __repr__(self):
        return f"ChunkedObjectDriver(pool={type(self.pool).__name__}, chunk_size={self.chunk_size})"

    # Chunk bookkeeping

    def chunk_name(self, oid: str, offset: int) -> tuple[str, int]:
        """Return the chunk object name and the offset inside it for a blob offset."""
        return f"{oid}-{offset // self.chunk_size}", offset % self.chunk_size

    def get_total_size(self, oid: str) -> int:
        raw = self.pool.get_xattr(f"{oid}-0", XATTR_TOTAL_SIZE)
        if len(raw) != _SIZE.size:
            logger.error(f"Object {oid} size attribute has length {len(raw)}, expected {_SIZE.size}")
            raise PathNotFoundError(oid)
        return _SIZE.unpack(raw)[0]

    def set_total_size(self, oid: str, size: int) -> None:
        self.pool.set_xattr(f"{oid}-0", XATTR_TOTAL_SIZE, _SIZE.pack(size))

    def resolve(self, path: str) -> str | None:
        """Return the object id stored for ``path``, or None."""
        directory = posixpath.dirname(path) or "."
        value = self.pool.get_omap(directory, posixpath.basename(path))
        return value.decode() if value else None

    def _create(self, path: str) -> str:
        oid = uuid.uuid4().hex
        self.pool.write(f"{oid}-0", b"", 0)
        self.set_total_size(oid, 0)
        directory = posixpath.dirname(path) or "."
        self.pool.set_omap(directory, posixpath.basename(path), oid.encode())
        logger.debug(f"Created chunked object {oid} for {path}")
        return oid

    def _require(self, path: str) -> str:
        oid = self.resolve(path)
        if oid is None:
            raise PathNotFoundError(path)
        return oid

    # Stream interface

    def write_stream(self, path: str, offset: int, reader) -> int:
        """
        Write everything ``reader`` yields into ``path`` starting at ``offset``.

        Any gap between the current size and ``offset`` is zero-filled first.
        After each chunk write the total size becomes ``offset + written``.

        Returns:
            Number of bytes taken from ``reader`` and persisted

        Raises:
            PartialWriteError: on the first pool or reader failure, carrying
                the number of bytes persisted so far; written chunks are kept
        """
        if offset < 0:
            raise InvalidOffsetError(path, offset)

        oid = self.resolve(path) or self._create(path)
        written = 0
        try:
            total = self.get_total_size(oid)
            if total < offset:
                zeros = bytes(self.chunk_size)
                while total < offset:
                    chunk, chunk_offset = self.chunk_name(oid, total)
                    length = min(self.chunk_size - chunk_offset, offset - total)
                    self.pool.write(chunk, zeros[:length], chunk_offset)
                    total += length
                    self.set_total_size(oid, total)
                logger.debug(f"Zero-filled {path} up to offset {offset}")

            while True:
                position = offset + written
                wanted = self.chunk_size - position % self.chunk_size
                data = _read_full(reader, wanted)
                if not data:
                    break

                chunk, chunk_offset = self.chunk_name(oid, position)
                self.pool.write(chunk, data, chunk_offset)
                self.set_total_size(oid, position + len(data))
                written += len(data)

                if len(data) < wanted:
                    break
        except (StorageError, OSError) as exc:
            logger.error(f"Write to {path} failed after {written} bytes: {exc}")
            raise PartialWriteError(path, written, exc) from exc

        logger.debug(f"Wrote {written} bytes to {path} at offset {offset}")
        return written

    def read_stream(self, path: str, offset: int = 0) -> ChunkedReader:
        """
        Open a reader over ``path`` starting at ``offset``.

        Raises:
            PathNotFoundError: if the path does not resolve to an object
            InvalidOffsetError: if ``offset`` is beyond the object size
        """
        oid = self._require(path)
        size = self.get_total_size(oid)
        if offset < 0 or offset > size:
            raise InvalidOffsetError(path, offset)
        return ChunkedReader(self, oid, size, offset)

    def stat(self, path: str) -> FileInfo:
        """Stat ``path``; an unknown path is reported as an empty virtual directory."""
        oid = self.resolve(path)
        if oid is None:
            return FileInfo(path=path, size=0, is_dir=True)

        st = self.pool.stat(f"{oid}-0")
        return FileInfo(
            path=path,
            size=self.get_total_size(oid),
            mod_time=datetime.fromtimestamp(st.mtime, tz=timezone.utc),
        )

    def delete(self, path: str) -> None:
        """Remove every chunk of ``path`` and its directory entry."""
        oid = self._require(path)
        size = self.get_total_size(oid)
        count = max(1, -(-size // self.chunk_size))

        # Chunks past the current size may survive an earlier shorter rewrite.
        index = count
        while True:
            try:
                self.pool.stat(f"{oid}-{index}")
            except PathNotFoundError:
                break
            index += 1

        for k in reversed(range(index)):
            self.pool.remove(f"{oid}-{k}")

        directory = posixpath.dirname(path) or "."
        self.pool.remove_omap(directory, posixpath.basename(path))
        logger.debug(f"Deleted {path} ({index} chunks)")

    # Flat backend capability

    def save(self, local_path) -> str:
        """
        Store a local file and return its locator.

        A failed write removes whatever part of the object was written, so
        the backend never keeps bytes no locator points at.
        """
        locator = posixpath.join(self.prefix, Path(local_path).name)
        if self.resolve(locator) is not None:
            self.delete(locator)

        try:
            with open(local_path, "rb") as f:
                written = self.write_stream(locator, 0, f)
        except (StorageError, OSError):
            self._discard(locator)
            raise

        logger.info(f"Saved {local_path} as {locator} ({written} bytes)")
        return locator

    def _discard(self, locator: str) -> None:
        if self.resolve(locator) is None:
            return
        try:
            self.delete(locator)
        except StorageError as exc:
            logger.error(f"Failed to remove partial object {locator}: {exc}")
        else:
            logger.warning(f"Removed partial object {locator}")

    def get(self, locator: str) -> bytes:
        with self.read_stream(locator, 0) as reader:
            return reader.read()

    def open(self, locator: str) -> ChunkedReader:
        return self.read_stream(locator, 0)
