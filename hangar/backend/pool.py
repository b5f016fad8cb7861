"""
Object pools for the chunked driver.

An object pool stores named objects of bounded size with per-object extended
attributes and a key/value map (omap), in the manner of a RADOS pool. Pools
never create sparse holes: writing at an offset past the end of an object is
an error, so every byte of every object is written explicitly.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable
from urllib.parse import quote

from ..errors import PathNotFoundError, StorageError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolStat:
    size: int
    mtime: float


@runtime_checkable
class ObjectPool(Protocol):
    def read(self, name: str, length: int, offset: int) -> bytes: ...

    def write(self, name: str, data: bytes, offset: int) -> None: ...

    def stat(self, name: str) -> PoolStat: ...

    def remove(self, name: str) -> None: ...

    def get_xattr(self, name: str, key: str) -> bytes: ...

    def set_xattr(self, name: str, key: str, value: bytes) -> None: ...

    def get_omap(self, name: str, key: str) -> bytes | None: ...

    def set_omap(self, name: str, key: str, value: bytes) -> None: ...

    def remove_omap(self, name: str, key: str) -> None: ...


def _check_write(name, current, offset):
    if offset > current:
        raise StorageError(
            f"write to {name} at offset {offset} past object end {current}",
            detail={"object": name, "offset": offset, "size": current},
        )


class MemoryObjectPool:
    """Object pool held in process memory."""

    def __init__(self, max_object_size=None):
        self.max_object_size = max_object_size
        self._lock = threading.Lock()
        self._objects: dict[str, bytearray] = {}
        self._mtimes: dict[str, float] = {}
        self._xattrs: dict[str, dict[str, bytes]] = {}
        self._omaps: dict[str, dict[str, bytes]] = {}

    def __contains__(self, name):
        return name in self._objects

    def names(self):
        with self._lock:
            return sorted(self._objects)

    def read(self, name, length, offset):
        with self._lock:
            if name not in self._objects:
                raise PathNotFoundError(name)
            return bytes(self._objects[name][offset:offset + length])

    def write(self, name, data, offset):
        with self._lock:
            obj = self._objects.get(name, bytearray())
            _check_write(name, len(obj), offset)
            end = offset + len(data)
            if self.max_object_size is not None and end > self.max_object_size:
                raise StorageError(f"object {name} would exceed {self.max_object_size} bytes")
            obj[offset:end] = data
            self._objects[name] = obj
            self._mtimes[name] = time.time()

    def stat(self, name):
        with self._lock:
            if name not in self._objects:
                raise PathNotFoundError(name)
            return PoolStat(size=len(self._objects[name]), mtime=self._mtimes[name])

    def remove(self, name):
        with self._lock:
            if name not in self._objects:
                raise PathNotFoundError(name)
            del self._objects[name]
            self._mtimes.pop(name, None)
            self._xattrs.pop(name, None)

    def get_xattr(self, name, key):
        with self._lock:
            try:
                return self._xattrs[name][key]
            except KeyError:
                raise PathNotFoundError(f"{name}@{key}") from None

    def set_xattr(self, name, key, value):
        with self._lock:
            if name not in self._objects:
                raise PathNotFoundError(name)
            self._xattrs.setdefault(name, {})[key] = bytes(value)

    def get_omap(self, name, key):
        with self._lock:
            return self._omaps.get(name, {}).get(key)

    def set_omap(self, name, key, value):
        with self._lock:
            self._omaps.setdefault(name, {})[key] = bytes(value)

    def remove_omap(self, name, key):
        with self._lock:
            omap = self._omaps.get(name, {})
            omap.pop(key, None)
            if not omap:
                self._omaps.pop(name, None)


class DirectoryObjectPool:
    """
    Object pool persisted under a local directory.

    Layout:
        <root>/objects/<quoted name>   object bytes
        <root>/xattrs/<quoted name>    JSON map of hex-encoded attributes
        <root>/omap/<quoted name>      JSON map of hex-encoded omap values
    """

    def __init__(self, root, max_object_size=None):
        self.root = Path(root)
        self.max_object_size = max_object_size
        self._lock = threading.Lock()
        for sub in ("objects", "xattrs", "omap"):
            (self.root / sub).mkdir(parents=True, exist_ok=True)
        logger.debug(f"Object pool directory: {self.root}")

    def _path(self, kind, name):
        return self.root / kind / quote(name, safe="")

    def _load_map(self, path):
        if not path.exists():
            return {}
        return {k: bytes.fromhex(v) for k, v in json.loads(path.read_text()).items()}

    def _store_map(self, path, values):
        if not values:
            path.unlink(missing_ok=True)
            return
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(json.dumps({k: v.hex() for k, v in values.items()}))
        os.replace(tmp, path)

    def read(self, name, length, offset):
        path = self._path("objects", name)
        try:
            with open(path, "rb") as f:
                f.seek(offset)
                return f.read(length)
        except FileNotFoundError:
            raise PathNotFoundError(name) from None

    def write(self, name, data, offset):
        path = self._path("objects", name)
        with self._lock:
            current = path.stat().st_size if path.exists() else 0
            _check_write(name, current, offset)
            if self.max_object_size is not None and offset + len(data) > self.max_object_size:
                raise StorageError(f"object {name} would exceed {self.max_object_size} bytes")
            with open(path, "r+b" if path.exists() else "wb") as f:
                f.seek(offset)
                f.write(data)

    def stat(self, name):
        try:
            st = self._path("objects", name).stat()
        except FileNotFoundError:
            raise PathNotFoundError(name) from None
        return PoolStat(size=st.st_size, mtime=st.st_mtime)

    def remove(self, name):
        with self._lock:
            try:
                self._path("objects", name).unlink()
            except FileNotFoundError:
                raise PathNotFoundError(name) from None
            self._path("xattrs", name).unlink(missing_ok=True)

    def get_xattr(self, name, key):
        with self._lock:
            values = self._load_map(self._path("xattrs", name))
        if key not in values:
            raise PathNotFoundError(f"{name}@{key}")
        return values[key]

    def set_xattr(self, name, key, value):
        if not self._path("objects", name).exists():
            raise PathNotFoundError(name)
        path = self._path("xattrs", name)
        with self._lock:
            values = self._load_map(path)
            values[key] = bytes(value)
            self._store_map(path, values)

    def get_omap(self, name, key):
        with self._lock:
            return self._load_map(self._path("omap", name)).get(key)

    def set_omap(self, name, key, value):
        path = self._path("omap", name)
        with self._lock:
            values = self._load_map(path)
            values[key] = bytes(value)
            self._store_map(path, values)

    def remove_omap(self, name, key):
        path = self._path("omap", name)
        with self._lock:
            values = self._load_map(path)
            values.pop(key, None)
            self._store_map(path, values)
