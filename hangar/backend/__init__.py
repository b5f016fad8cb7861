"""
Storage backend adapters.

A backend stores whole blobs handed over as local files and gives back a
locator: ``save(local_path) -> locator``, ``get(locator) -> bytes``,
``open(locator) -> binary file`` and ``delete(locator)``. Backends are selected by name through an explicit
BackendRegistry built by the application factory.
"""

from __future__ import annotations

import logging
import os
from typing import Callable, Protocol, runtime_checkable

from .chunked import DEFAULT_CHUNK_SIZE, ChunkedObjectDriver, ChunkedReader, FileInfo
from .filesystem import FilesystemBackend
from .pool import DirectoryObjectPool, MemoryObjectPool, ObjectPool, PoolStat

logger = logging.getLogger(__name__)


@runtime_checkable
class StorageBackend(Protocol):
    name: str

    def save(self, local_path) -> str: ...

    def get(self, locator: str) -> bytes: ...

    def open(self, locator: str): ...

    def delete(self, locator: str) -> None: ...


class BackendRegistry:
    """Name to factory mapping for storage backends.

    A factory takes the application Config and returns a backend.
    """

    def __init__(self) -> None:
        self._factories: dict[str, Callable] = {}

    def register(self, name: str, factory: Callable) -> None:
        if name in self._factories:
            raise ValueError(f"Storage driver already registered: {name}")
        self._factories[name] = factory

    def names(self) -> list[str]:
        return sorted(self._factories)

    def create(self, name: str, cfg) -> StorageBackend | None:
        """Build the backend called ``name``; an empty name means no backend."""
        if not name:
            return None
        try:
            factory = self._factories[name]
        except KeyError:
            raise ValueError(f"Unknown storage driver {name!r}, expected one of {self.names()}") from None

        backend = factory(cfg)
        logger.info(f"Storage driver ready: {backend!r}")
        return backend


def _chunked(cfg):
    pool = DirectoryObjectPool(os.path.join(cfg.BACKEND_ROOT, "pool"), max_object_size=cfg.CHUNK_SIZE)
    return ChunkedObjectDriver(pool, chunk_size=cfg.CHUNK_SIZE)


def _filesystem(cfg):
    return FilesystemBackend(cfg.BACKEND_ROOT)


def default_registry() -> BackendRegistry:
    """Return a registry that knows the built-in drivers."""
    registry = BackendRegistry()
    registry.register("chunked", _chunked)
    registry.register("filesystem", _filesystem)
    return registry


__all__ = [
    "DEFAULT_CHUNK_SIZE",
    "BackendRegistry",
    "ChunkedObjectDriver",
    "ChunkedReader",
    "DirectoryObjectPool",
    "FileInfo",
    "FilesystemBackend",
    "MemoryObjectPool",
    "ObjectPool",
    "PoolStat",
    "StorageBackend",
    "default_registry",
]
