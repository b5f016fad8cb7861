"""
Content-addressable artifact registry speaking the Docker Registry v2 API.

Clients push blobs through resumable chunked uploads, then push manifests
that bind a tag to an ordered set of blob digests. Every blob carries a
reference count of the tags that use it and is deleted as soon as that count
drops to zero.

Features:
    - Chunked, resumable blob uploads with per-session state
    - Reference-counted blob store with synchronous garbage collection
    - Manifest schema 1 and schema 2 support
    - Pluggable storage backends: local filesystem and a fixed-chunk object
      driver that stores its total size in an extended attribute
    - In-memory or SQLAlchemy record storage
    - Configurable via environment variables

Components:
    uploads.UploadSessionManager  open / append / commit / abort sessions
    blobs.BlobReferenceStore      digest -> blob, counts, push and GC
    manifest                      parse manifests, extract digests
    index.TagIndex                tags, repositories, catalog
    backend                       storage drivers and their registry
    routes.create_app             Flask application factory
"""

__version__ = "0.1.0"

from .blobs import BlobReferenceStore
from .config import Config
from .errors import RegistryError
from .index import PutResult, TagIndex
from .manifest import ManifestV1, ManifestV2, extract_digests, parse_manifest
from .records import Blob, MemoryRecordStore, Repository, Tag
from .routes import create_app
from .uploads import UploadSessionManager
from .validation import compute_sha256, validate_digest, validate_name, validate_tag

__all__ = [
    "Blob",
    "BlobReferenceStore",
    "Config",
    "ManifestV1",
    "ManifestV2",
    "MemoryRecordStore",
    "PutResult",
    "RegistryError",
    "Repository",
    "Tag",
    "TagIndex",
    "UploadSessionManager",
    "compute_sha256",
    "create_app",
    "extract_digests",
    "parse_manifest",
    "validate_digest",
    "validate_name",
    "validate_tag",
]
