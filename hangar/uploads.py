"""
Chunked, resumable blob uploads.

A session is opened per upload, accumulates byte ranges in a temporary file
scoped to its namespace/repository, and is finally committed under its
content digest or aborted. Sessions never share buffers: each token owns its
temporary file and a lock, so two requests for the same token serialize and
requests for different tokens never touch each other's state.

States:
    OPENED -> ACCUMULATING -> COMMITTED
                           -> ABORTED
"""

from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .errors import (
    BlobUploadInvalidError,
    BlobUploadUnknownError,
    DigestInvalidError,
    RangeInvalidError,
    RegistryError,
)
from .records import Blob
from .validation import compute_sha256, validate_digest

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    OPENED = "opened"
    ACCUMULATING = "accumulating"
    COMMITTED = "committed"
    ABORTED = "aborted"


@dataclass
class UploadSession:
    token: str
    namespace: str
    repository: str
    path: Path
    offset: int = 0
    state: SessionState = SessionState.OPENED
    touched: float = field(default_factory=time.monotonic, compare=False)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def name(self) -> str:
        return f"{self.namespace}/{self.repository}"

    @property
    def live(self) -> bool:
        return self.state in (SessionState.OPENED, SessionState.ACCUMULATING)


def range_header(session: UploadSession) -> str:
    """Inclusive byte range received so far, ``0-0`` before the first byte."""
    return f"0-{max(session.offset - 1, 0)}"


class UploadSessionManager:
    """
    Tracks in-flight uploads and turns them into blobs.

    Sessions idle for longer than ``timeout`` seconds are expired the next
    time a session is opened; ``None`` keeps them until finished.

    Layout under ``root``:
        uploads/<namespace>/<repository>/<token>   accumulating bytes
        blobs/sha256/<first2>/<hex>                committed blobs
    """

    def __init__(self, root, blobs, timeout=None):
        self.root = Path(root)
        self.blobs = blobs
        self.timeout = timeout
        self._lock = threading.Lock()
        self._sessions: dict[str, UploadSession] = {}

    def blob_path(self, digest: str) -> Path:
        """Content-addressed location of a committed blob."""
        hexdigest = digest.split(":", 1)[1]
        return self.root / "blobs" / "sha256" / hexdigest[:2] / hexdigest

    def open(self, namespace: str, repository: str) -> UploadSession:
        self.expire()
        token = uuid.uuid4().hex
        path = self.root / "uploads" / namespace / repository / token
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(b"")
        except OSError as exc:
            logger.error(f"Failed to create upload file {path}: {exc}")
            raise BlobUploadInvalidError(
                f"failed to start upload: {exc}", detail={"Name": f"{namespace}/{repository}"}, status=500
            ) from exc

        session = UploadSession(token=token, namespace=namespace, repository=repository, path=path)
        with self._lock:
            self._sessions[token] = session
        logger.info(f"Upload opened: {session.name} token={token}")
        return session

    def get(self, token: str) -> UploadSession:
        with self._lock:
            session = self._sessions.get(token)
        if session is None or not session.live:
            raise BlobUploadUnknownError(detail={"Upload": token})
        return session

    def _forget(self, session: UploadSession) -> None:
        with self._lock:
            self._sessions.pop(session.token, None)

    def _check_live(self, session: UploadSession) -> None:
        # State may have changed while waiting for the session lock.
        if not session.live:
            raise BlobUploadUnknownError(detail={"Upload": session.token})

    def _read(self, session: UploadSession) -> bytes:
        try:
            return session.path.read_bytes()
        except OSError as exc:
            logger.error(f"Failed to read upload {session.token}: {exc}")
            raise BlobUploadInvalidError(
                f"failed to read upload: {exc}", detail={"Upload": session.token}, status=500
            ) from exc

    def append(self, token: str, data: bytes, start: int | None = None) -> UploadSession:
        """
        Append ``data`` to the session.

        Args:
            token: session token
            data: next byte range
            start: offset the range claims to start at; defaults to the
                current offset

        Raises:
            BlobUploadUnknownError: if the session is unknown or finished
            RangeInvalidError: if ``start`` is not the current offset
        """
        session = self.get(token)
        with session.lock:
            self._check_live(session)
            if start is not None and start != session.offset:
                logger.warning(f"Upload {token}: range starts at {start}, expected {session.offset}")
                raise RangeInvalidError(detail={"Upload": token, "Start": start, "Offset": session.offset})

            content = self._read(session) + data
            tmp = session.path.with_name(session.path.name + ".part")
            try:
                tmp.write_bytes(content)
                os.replace(tmp, session.path)
            except OSError as exc:
                tmp.unlink(missing_ok=True)
                logger.error(f"Failed to save upload {token}: {exc}")
                raise BlobUploadInvalidError(
                    f"failed to save upload: {exc}", detail={"Upload": token}, status=500
                ) from exc

            session.offset = len(content)
            session.state = SessionState.ACCUMULATING
            session.touched = time.monotonic()
            logger.debug(f"Upload {token}: {len(data)} bytes appended, offset={session.offset}")
            return session

    def commit(self, token: str, digest: str, data: bytes = b"") -> Blob:
        """
        Finish the session and register its content under ``digest``.

        Trailing ``data`` is appended first. A digest mismatch leaves the
        session open with its previous content.

        Raises:
            DigestInvalidError: if ``digest`` is malformed or does not match
            BlobUploadUnknownError: if the session is unknown or finished
        """
        validate_digest(digest)
        session = self.get(token)
        with session.lock:
            self._check_live(session)
            content = self._read(session) + data
            actual = compute_sha256(content)
            if actual != digest:
                logger.warning(f"Upload {token}: digest mismatch, claimed {digest}, got {actual}")
                raise DigestInvalidError(detail={"Digest": digest, "Actual": actual})

            final = self.blob_path(digest)
            with self.blobs.lock(digest):
                known, _ = self.blobs.get(digest)
                tmp = final.with_name(f"{final.name}.{token}")
                try:
                    final.parent.mkdir(parents=True, exist_ok=True)
                    if final.exists():
                        logger.debug(f"Replacing stored copy of {digest}")
                    tmp.write_bytes(content)
                    os.replace(tmp, final)
                except OSError as exc:
                    tmp.unlink(missing_ok=True)
                    logger.error(f"Failed to store blob {digest}: {exc}")
                    raise BlobUploadInvalidError(
                        f"failed to store blob: {exc}", detail={"Digest": digest}, status=500
                    ) from exc

                try:
                    blob = self.blobs.record_upload(digest, final, len(content))
                except RegistryError:
                    if not known:
                        # No record points at the stored copy.
                        final.unlink(missing_ok=True)
                    raise

            session.offset = len(content)
            self._discard(session, SessionState.COMMITTED)
            logger.info(f"Upload committed: {session.name} {digest} ({len(content)} bytes)")
            return blob

    def abort(self, token: str) -> None:
        session = self.get(token)
        with session.lock:
            self._check_live(session)
            self._discard(session, SessionState.ABORTED)
            logger.info(f"Upload aborted: {session.name} token={token}")

    def expire(self, now: float | None = None) -> list[str]:
        """
        Abort every session idle for longer than ``timeout`` seconds.

        Args:
            now: monotonic clock reading to compare against; defaults to now

        Returns:
            tokens of the expired sessions
        """
        if self.timeout is None:
            return []
        now = time.monotonic() if now is None else now
        with self._lock:
            idle = [s for s in self._sessions.values() if now - s.touched > self.timeout]

        expired = []
        for session in idle:
            # Busy in another request, so not idle.
            if not session.lock.acquire(blocking=False):
                continue
            try:
                if session.live:
                    self._discard(session, SessionState.ABORTED)
                    expired.append(session.token)
            finally:
                session.lock.release()

        if expired:
            logger.info(f"Expired {len(expired)} idle upload sessions")
        return expired

    def _discard(self, session: UploadSession, state: SessionState) -> None:
        """Remove the temporary files of a finished session and forget it."""
        for path in (session.path, session.path.with_name(session.path.name + ".part")):
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning(f"Failed to remove upload file {path}: {exc}")
        session.state = state
        self._forget(session)

    def upload(self, namespace: str, repository: str, digest: str, data: bytes) -> Blob:
        """Monolithic upload: open and commit in one call."""
        validate_digest(digest)
        session = self.open(namespace, repository)
        try:
            return self.commit(session.token, digest, data)
        except Exception:
            self.abort(session.token)
            raise
