"""
Error taxonomy for the artifact registry.

Every failure a client can observe is a RegistryError carrying a registry
error code, a human readable message, structured detail and the HTTP status
it maps to. Flask renders them with ``RegistryError.payload()``:

    {"errors": [{"code": "BLOB_UNKNOWN", "message": "...", "detail": {...}}]}
"""

import logging
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    """Base exception for all registry errors."""

    code = "UNKNOWN"
    message = "unknown error"
    status = 500

    def __init__(self, message=None, detail=None, status=None):
        self.message = message or self.message
        self.detail = detail
        if status is not None:
            self.status = status
        super().__init__(self.message)

    def payload(self) -> dict:
        """Return the wire representation of this error."""
        return {
            "errors": [
                {
                    "code": self.code,
                    "message": self.message,
                    "detail": self.detail,
                }
            ]
        }


class DigestInvalidError(RegistryError):
    code = "DIGEST_INVALID"
    message = "provided digest did not match uploaded content"
    status = 400


class NameInvalidError(RegistryError):
    code = "NAME_INVALID"
    message = "invalid repository name"
    status = 400


class TagInvalidError(RegistryError):
    code = "TAG_INVALID"
    message = "manifest tag did not match URI"
    status = 400


class NameUnknownError(RegistryError):
    code = "NAME_UNKNOWN"
    message = "repository name not known to registry"
    status = 404


class ManifestInvalidError(RegistryError):
    code = "MANIFEST_INVALID"
    message = "manifest invalid"
    status = 400


class InvalidSchemaError(ManifestInvalidError):
    code = "INVALID_SCHEMA"
    message = "unsupported manifest schema version"


class ManifestUnknownError(RegistryError):
    code = "MANIFEST_UNKNOWN"
    message = "manifest unknown"
    status = 404


class ManifestBlobUnknownError(RegistryError):
    code = "MANIFEST_BLOB_UNKNOWN"
    message = "blob unknown to registry"
    status = 400


class BlobUnknownError(RegistryError):
    code = "BLOB_UNKNOWN"
    message = "blob unknown to registry"
    status = 404


class BlobUploadUnknownError(RegistryError):
    code = "BLOB_UPLOAD_UNKNOWN"
    message = "blob upload unknown to registry"
    status = 404


class BlobUploadInvalidError(RegistryError):
    code = "BLOB_UPLOAD_INVALID"
    message = "blob upload invalid"
    status = 400


class RangeInvalidError(RegistryError):
    code = "RANGE_INVALID"
    message = "invalid content range"
    status = 400


class ContentInconsistencyError(RegistryError):
    """Raised when a blob reference count would drop below zero."""

    code = "CONTENT_INCONSISTENCY"
    message = "blob reference count is inconsistent"
    status = 500


class StorageError(RegistryError):
    """Raised when a storage backend or record store operation fails."""

    code = "UNKNOWN"
    message = "storage backend failure"
    status = 500


class InvalidOffsetError(StorageError):
    code = "INVALID_OFFSET"
    message = "invalid offset"
    status = 400

    def __init__(self, path, offset):
        self.path = path
        self.offset = offset
        super().__init__(f"invalid offset {offset} for {path}", detail={"path": path, "offset": offset})


class PathNotFoundError(StorageError):
    code = "PATH_NOT_FOUND"
    message = "path not found"
    status = 404

    def __init__(self, path):
        self.path = path
        super().__init__(f"path not found: {path}", detail={"path": path})


class PartialWriteError(StorageError):
    """Raised when a stream write fails after persisting ``written`` bytes."""

    def __init__(self, path, written, cause):
        self.path = path
        self.written = written
        super().__init__(
            f"write to {path} failed after {written} bytes: {cause}",
            detail={"path": path, "written": written},
        )


@contextmanager
def wrap_errors(operation, **detail):
    """
    Re-raise anything but a RegistryError as StorageError with context.

    Example:
        >>> with wrap_errors("update blob", digest=digest):
        ...     records.update_blob(blob)
    """
    try:
        yield
    except RegistryError:
        raise
    except Exception as exc:
        logger.error(f"{operation} failed: {exc!r} {detail}")
        raise StorageError(f"{operation} failed: {exc}", detail=detail or None) from exc
