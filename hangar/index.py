"""
Tag and repository index.

Binds (namespace, repository, tag) to a stored manifest and keeps the blob
reference counts in step with what tags reference. Put and delete for one
repository name run under a per-name lock; counts themselves are serialized
per digest by the BlobReferenceStore.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from .errors import (
    BlobUploadInvalidError,
    ManifestBlobUnknownError,
    ManifestUnknownError,
    NameUnknownError,
    RegistryError,
    StorageError,
    wrap_errors,
)
from .locks import LockTable
from .manifest import (
    ManifestV2,
    accepted_status,
    digest_manifest,
    extract_digests,
    image_records,
    parse_manifest,
    unique_digests,
)
from .records import Repository, Tag
from .validation import is_digest

logger = logging.getLogger(__name__)

API_VERSION = "v2"


@dataclass(frozen=True)
class PutResult:
    digest: str
    schema: int
    status: int


def referenced_digests(body: bytes) -> list[str]:
    """Unique blob digests a stored manifest holds references on."""
    return unique_digests(extract_digests(parse_manifest(body)))


class TagIndex:
    """
    Manifest storage keyed by repository name and tag.

    Args:
        records: RecordStore holding Tag and Repository records
        blobs: BlobReferenceStore whose counts track tag references
    """

    def __init__(self, records, blobs):
        self.records = records
        self.blobs = blobs
        self._locks = LockTable()

    def lock(self, namespace: str, repository: str):
        return self._locks.hold((namespace, repository))

    def put_manifest(self, namespace: str, repository: str, tag: str, body: bytes, agent: str = "") -> PutResult:
        """
        Store a manifest under ``tag`` and take references on its blobs.

        Re-submitting the manifest a tag already points at changes nothing.
        Pointing a tag at a different manifest references the new blobs before
        releasing the old ones, so blobs shared by both never reach zero.

        Args:
            namespace: repository namespace
            repository: repository name
            tag: tag to bind
            body: manifest bytes exactly as submitted
            agent: client user agent, recorded on the repository

        Returns:
            PutResult with the manifest digest, schema version and HTTP status

        Raises:
            ManifestInvalidError: if the manifest cannot be decoded
            ManifestBlobUnknownError: if a referenced blob was never uploaded
            BlobUploadInvalidError: if pushing a blob to the backend failed;
                nothing is left referenced or pushed by this call
        """
        manifest = parse_manifest(body)
        digest = digest_manifest(body)
        digests = unique_digests(extract_digests(manifest))
        name = f"{namespace}/{repository}"

        with self.lock(namespace, repository):
            for blob_digest in digests:
                exists, _ = self.blobs.get(blob_digest)
                if not exists:
                    logger.warning(f"Manifest {name}:{tag} references unknown blob {blob_digest}")
                    raise ManifestBlobUnknownError(detail={"Name": name, "Tag": tag, "Digest": blob_digest})

            with wrap_errors("get tag", name=name, tag=tag):
                current = self.records.get_tag(namespace, repository, tag)

            if current is not None and current.reference == digest:
                logger.info(f"Manifest unchanged: {name}:{tag} {digest}")
                return PutResult(digest, manifest.schema_version, accepted_status(manifest))

            pushed = self._reference(digests, name, tag)
            try:
                self._save(namespace, repository, tag, manifest, body, digest, agent, current)
            except RegistryError:
                self._rollback(digests, pushed)
                raise

            for blob_digest in digests:
                self.blobs.evict(blob_digest)

            if current is not None:
                logger.info(f"Tag {name}:{tag} moved from {current.reference} to {digest}")
                self._release(referenced_digests(current.manifest))

        logger.info(f"Manifest stored: {name}:{tag} {digest} (schema {manifest.schema_version})")
        return PutResult(digest, manifest.schema_version, accepted_status(manifest))

    def _reference(self, digests, name, tag):
        incremented, pushed = [], []
        try:
            for blob_digest in digests:
                self.blobs.increment_for_tag(blob_digest)
                incremented.append(blob_digest)
            for blob_digest in digests:
                if self.blobs.push(blob_digest):
                    pushed.append(blob_digest)
        except StorageError as exc:
            self._rollback(incremented, pushed)
            raise BlobUploadInvalidError(
                f"failed to store blobs of {name}:{tag}: {exc.message}",
                detail={"Name": name, "Tag": tag},
                status=500,
            ) from exc
        except RegistryError:
            self._rollback(incremented, pushed)
            raise
        return pushed

    def _rollback(self, incremented, pushed):
        for blob_digest in pushed:
            try:
                self.blobs.unpush(blob_digest)
            except RegistryError as exc:
                logger.error(f"Rollback could not remove {blob_digest} from backend: {exc}")
        for blob_digest in incremented:
            try:
                self.blobs.revert_increment(blob_digest)
            except RegistryError as exc:
                logger.error(f"Rollback could not revert count of {blob_digest}: {exc}")

    def _release(self, digests):
        """Drop one reference from each digest, raising the first failure."""
        failure = None
        for blob_digest in digests:
            try:
                self.blobs.decrement_for_tag(blob_digest)
            except RegistryError as exc:
                logger.error(f"Failed to release {blob_digest}: {exc}")
                failure = failure or exc
        if failure is not None:
            raise failure

    def _save(self, namespace, repository, tag, manifest, body, digest, agent, current):
        images = image_records(manifest, tag)
        image_id = next(record.image_id for record in images if record.tag == tag)
        if isinstance(manifest, ManifestV2):
            image_digest = manifest.config.digest
        else:
            image_digest = manifest.fs_layers[0]

        previous = self._save_repository(namespace, repository, tag, images, agent)
        try:
            with wrap_errors("save tag", name=f"{namespace}/{repository}", tag=tag):
                if current is None:
                    self.records.insert_tag(
                        Tag(
                            namespace=namespace,
                            repository=repository,
                            tag=tag,
                            manifest=body,
                            schema=manifest.schema_version,
                            digest=image_digest,
                            image_id=image_id,
                            reference=digest,
                        )
                    )
                else:
                    self.records.update_tag(
                        replace(
                            current,
                            manifest=body,
                            schema=manifest.schema_version,
                            digest=image_digest,
                            image_id=image_id,
                            reference=digest,
                        )
                    )
        except RegistryError:
            self._restore_repository(namespace, repository, previous)
            raise

    def _save_repository(self, namespace, repository, tag, images, agent):
        """Upsert the repository record and return its state before the change."""
        with wrap_errors("save repository", name=f"{namespace}/{repository}"):
            repo = self.records.get_repository(namespace, repository)
            if repo is None:
                self.records.insert_repository(
                    Repository(
                        namespace=namespace,
                        repository=repository,
                        tags=[tag],
                        images=unique_digests(record.image_id for record in images),
                        agent=agent,
                        version=API_VERSION,
                    )
                )
                return None

            previous = replace(repo, tags=list(repo.tags), images=list(repo.images))
            if tag not in repo.tags:
                repo.tags.append(tag)
            for record in images:
                if record.image_id not in repo.images:
                    repo.images.append(record.image_id)
            repo.agent = agent or repo.agent
            repo.version = API_VERSION
            self.records.update_repository(repo)
            return previous

    def _restore_repository(self, namespace, repository, previous):
        try:
            with wrap_errors("restore repository", name=f"{namespace}/{repository}"):
                if previous is None:
                    self.records.delete_repository(namespace, repository)
                else:
                    self.records.update_repository(previous)
        except RegistryError as exc:
            logger.error(f"Rollback could not restore repository {namespace}/{repository}: {exc}")

    def get_manifest(self, namespace: str, repository: str, reference: str) -> Tag:
        """
        Return the Tag for a tag name or a manifest digest.

        Raises:
            ManifestUnknownError: if nothing matches
        """
        with wrap_errors("get manifest", name=f"{namespace}/{repository}", reference=reference):
            if is_digest(reference):
                found = self.records.find_tag_by_reference(namespace, repository, reference)
            else:
                found = self.records.get_tag(namespace, repository, reference)
        if found is None:
            raise ManifestUnknownError(detail={"Name": f"{namespace}/{repository}", "Reference": reference})
        return found

    def delete_manifest(self, namespace: str, repository: str, reference: str) -> list[str]:
        """
        Delete a tag, or every tag pointing at a manifest digest.

        Tag records go first, then the blob references are released, so a
        failing blob delete can never be counted twice by a retry. The
        references of every tag actually deleted are released even when a
        later tag fails.

        Returns:
            the deleted tag names

        Raises:
            ManifestUnknownError: if nothing matches
            StorageError: if a record or a blob reaching zero could not be deleted
        """
        name = f"{namespace}/{repository}"
        with self.lock(namespace, repository):
            tags = [self.get_manifest(namespace, repository, reference)]
            if is_digest(reference):
                with wrap_errors("list tags", name=name):
                    repo = self.records.get_repository(namespace, repository)
                    for other in repo.tags if repo is not None else []:
                        found = self.records.get_tag(namespace, repository, other)
                        if found is not None and found.reference == reference and found.tag != tags[0].tag:
                            tags.append(found)

            released = []
            try:
                for found in tags:
                    with wrap_errors("delete tag", name=name, tag=found.tag):
                        self.records.delete_tag(namespace, repository, found.tag)
                    # One reference was taken per tag, so release once per tag.
                    released.extend(referenced_digests(found.manifest))
                    logger.info(f"Tag deleted: {name}:{found.tag} ({found.reference})")
                    self._prune(found)
            finally:
                self._release(released)
            return [found.tag for found in tags]

    def _prune(self, tag: Tag) -> None:
        """Drop ``tag`` from its repository, deleting the repository once empty."""
        name = f"{tag.namespace}/{tag.repository}"
        with wrap_errors("prune repository", name=name, tag=tag.tag):
            repo = self.records.get_repository(tag.namespace, tag.repository)
            if repo is None:
                return
            repo.tags = [other for other in repo.tags if other != tag.tag]
            if repo.tags:
                self.records.update_repository(repo)
            else:
                self.records.delete_repository(tag.namespace, tag.repository)
                logger.info(f"Repository deleted: {name}")

    def list_tags(self, namespace: str, repository: str) -> list[str]:
        with wrap_errors("list tags", name=f"{namespace}/{repository}"):
            repo = self.records.get_repository(namespace, repository)
        if repo is None or not repo.tags:
            raise NameUnknownError(detail={"Name": f"{namespace}/{repository}"})
        return list(repo.tags)

    def catalog(self) -> list[str]:
        with wrap_errors("list repositories"):
            repos = self.records.list_repositories()
        return sorted(repo.name for repo in repos)
