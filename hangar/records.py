"""
Record types and the record store port.

Blob, Tag and Repository are plain dataclasses; persistence goes through a
``RecordStore`` passed into each component. ``MemoryRecordStore`` keeps
everything in process, ``hangar.sqlstore.SqlRecordStore`` in a relational
database.
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Return the current timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class DuplicateRecordError(KeyError):
    """Raised when inserting a record whose key already exists."""


class RecordNotFoundError(KeyError):
    """Raised when updating or deleting a record that does not exist."""


@dataclass
class Blob:
    """A content-addressed blob and its live reference count."""

    digest: str
    path: str
    size: int
    count: int = 0
    locator: str = ""


@dataclass
class Tag:
    """A (namespace, repository, tag) pointer to a stored manifest."""

    namespace: str
    repository: str
    tag: str
    manifest: bytes = b""
    schema: int = 0
    digest: str = ""
    image_id: str = ""
    reference: str = ""
    memo: str = ""
    created: datetime = field(default_factory=utc_now)
    updated: datetime = field(default_factory=utc_now)

    @property
    def key(self):
        return (self.namespace, self.repository, self.tag)


@dataclass
class Repository:
    """A namespace/repository and the tags currently pushed to it."""

    namespace: str
    repository: str
    tags: list[str] = field(default_factory=list)
    images: list[str] = field(default_factory=list)
    agent: str = ""
    version: str = "v2"
    created: datetime = field(default_factory=utc_now)
    updated: datetime = field(default_factory=utc_now)

    @property
    def name(self) -> str:
        return f"{self.namespace}/{self.repository}"


@runtime_checkable
class RecordStore(Protocol):
    """Keyed record storage for blobs, tags and repositories.

    ``get_*`` return None for a missing key, ``insert_*`` raise
    DuplicateRecordError for an existing key, ``update_*`` and ``delete_*``
    raise RecordNotFoundError for a missing key.
    """

    def get_blob(self, digest: str) -> Blob | None: ...

    def insert_blob(self, blob: Blob) -> None: ...

    def update_blob(self, blob: Blob) -> None: ...

    def delete_blob(self, digest: str) -> None: ...

    def get_tag(self, namespace: str, repository: str, tag: str) -> Tag | None: ...

    def find_tag_by_reference(self, namespace: str, repository: str, reference: str) -> Tag | None: ...

    def insert_tag(self, tag: Tag) -> None: ...

    def update_tag(self, tag: Tag) -> None: ...

    def delete_tag(self, namespace: str, repository: str, tag: str) -> None: ...

    def get_repository(self, namespace: str, repository: str) -> Repository | None: ...

    def insert_repository(self, repo: Repository) -> None: ...

    def update_repository(self, repo: Repository) -> None: ...

    def delete_repository(self, namespace: str, repository: str) -> None: ...

    def list_repositories(self) -> list[Repository]: ...


class MemoryRecordStore:
    """In-process record store.

    Records are copied on the way in and out so callers never share state
    with the store.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._blobs: dict[str, Blob] = {}
        self._tags: dict[tuple[str, str, str], Tag] = {}
        self._repos: dict[tuple[str, str], Repository] = {}

    def _insert(self, table, key, record):
        with self._lock:
            if key in table:
                raise DuplicateRecordError(key)
            table[key] = copy.deepcopy(record)

    def _update(self, table, key, record):
        with self._lock:
            if key not in table:
                raise RecordNotFoundError(key)
            table[key] = copy.deepcopy(record)

    def _delete(self, table, key):
        with self._lock:
            if key not in table:
                raise RecordNotFoundError(key)
            del table[key]

    def _get(self, table, key):
        with self._lock:
            record = table.get(key)
            return copy.deepcopy(record) if record is not None else None

    # Blob

    def get_blob(self, digest):
        return self._get(self._blobs, digest)

    def insert_blob(self, blob):
        self._insert(self._blobs, blob.digest, blob)

    def update_blob(self, blob):
        self._update(self._blobs, blob.digest, blob)

    def delete_blob(self, digest):
        self._delete(self._blobs, digest)

    # Tag

    def get_tag(self, namespace, repository, tag):
        return self._get(self._tags, (namespace, repository, tag))

    def find_tag_by_reference(self, namespace, repository, reference):
        with self._lock:
            for (ns, repo, _), record in self._tags.items():
                if ns == namespace and repo == repository and record.reference == reference:
                    return copy.deepcopy(record)
        return None

    def insert_tag(self, tag):
        self._insert(self._tags, tag.key, tag)

    def update_tag(self, tag):
        tag.updated = utc_now()
        self._update(self._tags, tag.key, tag)

    def delete_tag(self, namespace, repository, tag):
        self._delete(self._tags, (namespace, repository, tag))

    # Repository

    def get_repository(self, namespace, repository):
        return self._get(self._repos, (namespace, repository))

    def insert_repository(self, repo):
        self._insert(self._repos, (repo.namespace, repo.repository), repo)

    def update_repository(self, repo):
        repo.updated = utc_now()
        self._update(self._repos, (repo.namespace, repo.repository), repo)

    def delete_repository(self, namespace, repository):
        self._delete(self._repos, (namespace, repository))

    def list_repositories(self):
        with self._lock:
            return [copy.deepcopy(repo) for repo in self._repos.values()]
