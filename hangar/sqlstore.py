"""Relational record store backed by SQLAlchemy."""

from __future__ import annotations

import json
import logging
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Integer, LargeBinary, String, Text, UniqueConstraint, create_engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .records import Blob, DuplicateRecordError, RecordNotFoundError, Repository, Tag, utc_now

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class BlobRow(Base):
    __tablename__ = "blob"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    digest: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    path: Mapped[str] = mapped_column(Text, default="")
    size: Mapped[int] = mapped_column(BigInteger, default=0)
    count: Mapped[int] = mapped_column(Integer, default=0)
    locator: Mapped[str] = mapped_column(Text, default="")


class TagRow(Base):
    __tablename__ = "tag"
    __table_args__ = (UniqueConstraint("namespace", "repository", "tag", name="uq_tag_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    namespace: Mapped[str] = mapped_column(String(255))
    repository: Mapped[str] = mapped_column(String(255))
    tag: Mapped[str] = mapped_column(String(255))
    image_id: Mapped[str] = mapped_column(String(255), default="")
    manifest: Mapped[bytes] = mapped_column(LargeBinary, default=b"")
    schema: Mapped[int] = mapped_column(Integer, default=0)
    digest: Mapped[str] = mapped_column(String(100), default="")
    memo: Mapped[str] = mapped_column(Text, default="")
    reference: Mapped[str] = mapped_column(String(255), default="", index=True)
    created: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class RepositoryRow(Base):
    __tablename__ = "repository"
    __table_args__ = (UniqueConstraint("namespace", "repository", name="uq_repository_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    namespace: Mapped[str] = mapped_column(String(255))
    repository: Mapped[str] = mapped_column(String(255))
    tags: Mapped[str] = mapped_column(Text, default="[]")
    images: Mapped[str] = mapped_column(Text, default="[]")
    agent: Mapped[str] = mapped_column(Text, default="")
    version: Mapped[str] = mapped_column(String(20), default="v2")
    created: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


def _blob(row: BlobRow) -> Blob:
    return Blob(digest=row.digest, path=row.path, size=row.size, count=row.count, locator=row.locator)


def _tag(row: TagRow) -> Tag:
    return Tag(
        namespace=row.namespace,
        repository=row.repository,
        tag=row.tag,
        manifest=row.manifest,
        schema=row.schema,
        digest=row.digest,
        image_id=row.image_id,
        reference=row.reference,
        memo=row.memo,
        created=row.created,
        updated=row.updated,
    )


def _repository(row: RepositoryRow) -> Repository:
    return Repository(
        namespace=row.namespace,
        repository=row.repository,
        tags=json.loads(row.tags),
        images=json.loads(row.images),
        agent=row.agent,
        version=row.version,
        created=row.created,
        updated=row.updated,
    )


class SqlRecordStore:
    """RecordStore over any SQLAlchemy-supported database.

    Each call runs in its own session and transaction. Tables are created on
    construction.
    """

    def __init__(self, url: str) -> None:
        kwargs = {}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(url, **kwargs)
        Base.metadata.create_all(self.engine)
        self._session = sessionmaker(self.engine, expire_on_commit=False)
        logger.info(f"SQL record store ready: {self.engine.url.render_as_string(hide_password=True)}")

    def _insert(self, row, key):
        try:
            with self._session.begin() as session:
                session.add(row)
        except IntegrityError as exc:
            raise DuplicateRecordError(key) from exc

    def _blob_row(self, session, digest):
        return session.scalars(select(BlobRow).where(BlobRow.digest == digest)).one_or_none()

    def _tag_row(self, session, namespace, repository, tag):
        stmt = select(TagRow).where(
            TagRow.namespace == namespace, TagRow.repository == repository, TagRow.tag == tag
        )
        return session.scalars(stmt).one_or_none()

    def _repo_row(self, session, namespace, repository):
        stmt = select(RepositoryRow).where(
            RepositoryRow.namespace == namespace, RepositoryRow.repository == repository
        )
        return session.scalars(stmt).one_or_none()

    # Blob

    def get_blob(self, digest):
        with self._session() as session:
            row = self._blob_row(session, digest)
            return _blob(row) if row is not None else None

    def insert_blob(self, blob):
        row = BlobRow(digest=blob.digest, path=blob.path, size=blob.size, count=blob.count, locator=blob.locator)
        self._insert(row, blob.digest)

    def update_blob(self, blob):
        with self._session.begin() as session:
            row = self._blob_row(session, blob.digest)
            if row is None:
                raise RecordNotFoundError(blob.digest)
            row.path, row.size, row.count, row.locator = blob.path, blob.size, blob.count, blob.locator

    def delete_blob(self, digest):
        with self._session.begin() as session:
            row = self._blob_row(session, digest)
            if row is None:
                raise RecordNotFoundError(digest)
            session.delete(row)

    # Tag

    def get_tag(self, namespace, repository, tag):
        with self._session() as session:
            row = self._tag_row(session, namespace, repository, tag)
            return _tag(row) if row is not None else None

    def find_tag_by_reference(self, namespace, repository, reference):
        stmt = select(TagRow).where(
            TagRow.namespace == namespace, TagRow.repository == repository, TagRow.reference == reference
        )
        with self._session() as session:
            row = session.scalars(stmt).first()
            return _tag(row) if row is not None else None

    def insert_tag(self, tag):
        row = TagRow(
            namespace=tag.namespace,
            repository=tag.repository,
            tag=tag.tag,
            image_id=tag.image_id,
            manifest=tag.manifest,
            schema=tag.schema,
            digest=tag.digest,
            memo=tag.memo,
            reference=tag.reference,
            created=tag.created,
            updated=tag.updated,
        )
        self._insert(row, tag.key)

    def update_tag(self, tag):
        with self._session.begin() as session:
            row = self._tag_row(session, tag.namespace, tag.repository, tag.tag)
            if row is None:
                raise RecordNotFoundError(tag.key)
            row.image_id, row.manifest, row.schema = tag.image_id, tag.manifest, tag.schema
            row.digest, row.memo, row.reference = tag.digest, tag.memo, tag.reference
            row.updated = utc_now()

    def delete_tag(self, namespace, repository, tag):
        with self._session.begin() as session:
            row = self._tag_row(session, namespace, repository, tag)
            if row is None:
                raise RecordNotFoundError((namespace, repository, tag))
            session.delete(row)

    # Repository

    def get_repository(self, namespace, repository):
        with self._session() as session:
            row = self._repo_row(session, namespace, repository)
            return _repository(row) if row is not None else None

    def insert_repository(self, repo):
        row = RepositoryRow(
            namespace=repo.namespace,
            repository=repo.repository,
            tags=json.dumps(repo.tags),
            images=json.dumps(repo.images),
            agent=repo.agent,
            version=repo.version,
            created=repo.created,
            updated=repo.updated,
        )
        self._insert(row, (repo.namespace, repo.repository))

    def update_repository(self, repo):
        with self._session.begin() as session:
            row = self._repo_row(session, repo.namespace, repo.repository)
            if row is None:
                raise RecordNotFoundError((repo.namespace, repo.repository))
            row.tags, row.images = json.dumps(repo.tags), json.dumps(repo.images)
            row.agent, row.version = repo.agent, repo.version
            row.updated = utc_now()

    def delete_repository(self, namespace, repository):
        with self._session.begin() as session:
            row = self._repo_row(session, namespace, repository)
            if row is None:
                raise RecordNotFoundError((namespace, repository))
            session.delete(row)

    def list_repositories(self):
        with self._session() as session:
            return [_repository(row) for row in session.scalars(select(RepositoryRow))]
