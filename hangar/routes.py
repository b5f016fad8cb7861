"""
Flask application and registry endpoints.

Implements the Docker Registry HTTP API v2 on top of the upload sessions,
the reference-counted blob store and the tag index. ``create_app`` wires the
components together and keeps them in ``app.extensions["hangar"]``.
"""

import logging
from dataclasses import dataclass

from flask import Blueprint, Flask, Response, current_app, jsonify, make_response, request, send_file
from werkzeug.exceptions import HTTPException

from .backend import default_registry
from .blobs import BlobReferenceStore
from .config import config
from .errors import BlobUploadUnknownError, DigestInvalidError, RangeInvalidError, RegistryError
from .index import TagIndex
from .manifest import content_type, parse_manifest
from .records import MemoryRecordStore
from .sqlstore import SqlRecordStore
from .uploads import UploadSessionManager, range_header
from .validation import compute_sha256, is_digest, parse_content_range, validate_digest, validate_name, validate_tag

logger = logging.getLogger(__name__)

API_VERSION_HEADER = ("Docker-Distribution-API-Version", "registry/2.0")

registry = Blueprint("registry", __name__)


@dataclass
class Components:
    config: object
    records: object
    backend: object
    blobs: BlobReferenceStore
    uploads: UploadSessionManager
    index: TagIndex


def create_app(cfg=None, backends=None, records=None, backend=None) -> Flask:
    """
    Build the registry application.

    Args:
        cfg: Config to use; defaults to the environment-loaded global config
        backends: BackendRegistry to resolve ``STORAGE_DRIVER`` with
        records: RecordStore to use instead of the one ``DATABASE_URL`` selects
        backend: StorageBackend to use instead of resolving ``STORAGE_DRIVER``

    Returns:
        Flask application with the registry blueprint registered
    """
    cfg = cfg or config

    if records is None:
        if cfg.DATABASE_URL:
            records = SqlRecordStore(cfg.DATABASE_URL)
        else:
            records = MemoryRecordStore()

    if backend is None:
        backend = (backends or default_registry()).create(cfg.STORAGE_DRIVER, cfg)

    blobs = BlobReferenceStore(records, backend=backend, cachable=cfg.CACHABLE)
    components = Components(
        config=cfg,
        records=records,
        backend=backend,
        blobs=blobs,
        uploads=UploadSessionManager(cfg.STORAGE_ROOT, blobs, timeout=cfg.UPLOAD_TIMEOUT or None),
        index=TagIndex(records, blobs),
    )

    app = Flask(__name__)
    app.extensions["hangar"] = components
    app.register_blueprint(registry)
    app.register_error_handler(RegistryError, handle_registry_error)
    app.register_error_handler(Exception, handle_unexpected_error)

    logger.info(f"Registry app created: {cfg!r}")
    return app


def _components() -> Components:
    return current_app.extensions["hangar"]


def _url(path: str) -> str:
    cfg = _components().config
    return f"{cfg.LISTEN_MODE}://{cfg.REGISTRY_DOMAIN}{path}"


def _upload_location(namespace, repository, token):
    return _url(f"/v2/{namespace}/{repository}/blobs/uploads/{token}")


def _empty(status: int) -> Response:
    resp = Response(status=status)
    resp.headers["Content-Length"] = "0"
    return resp


def handle_registry_error(exc: RegistryError):
    logger.info(f"{request.method} {request.path} -> {exc.status} {exc.code}: {exc.message}")
    resp = jsonify(exc.payload())
    resp.status_code = exc.status
    return resp


def handle_unexpected_error(exc: Exception):
    if isinstance(exc, HTTPException):
        return exc
    logger.exception(f"Unhandled error on {request.method} {request.path}")
    resp = jsonify(RegistryError(str(exc) or None).payload())
    resp.status_code = 500
    return resp


@registry.after_request
def add_api_version(resp):
    resp.headers[API_VERSION_HEADER[0]] = API_VERSION_HEADER[1]
    return resp


# -------------------------------
# Base and catalog
# -------------------------------


@registry.route("/v2/")
def v2_root():
    """
    API version check endpoint.

    Clients call this endpoint before any push or pull.

    Returns:
        Response with status 200, body ``{}`` and the
        Docker-Distribution-API-Version header
    """
    logger.info("Registry v2 API root accessed")
    return jsonify({})


@registry.route("/v2/_catalog")
def catalog():
    """List every ``namespace/repository`` with at least one tag."""
    repositories = _components().index.catalog()
    logger.info(f"Catalog requested: {len(repositories)} repositories")
    return jsonify({"repositories": repositories})


# -------------------------------
# Blob uploads
# -------------------------------


@registry.route("/v2/<namespace>/<repository>/blobs/uploads/", methods=["POST"])
def start_upload(namespace, repository):
    """
    Open an upload session.

    With a ``digest`` query parameter the request body is the whole blob and
    is committed at once (monolithic upload).

    Args:
        namespace: repository namespace (validated)
        repository: repository name (validated)

    Response Headers:
        Location: URL of the session (or of the blob, for monolithic uploads)
        Docker-Upload-UUID: session token
        Range: ``0-0`` for a new session

    Returns:
        202 for a new session, 201 for a monolithic upload

    Raises:
        400: invalid name or digest, digest mismatch
    """
    validate_name(namespace, repository)
    uploads = _components().uploads

    digest = request.args.get("digest")
    if digest:
        blob = uploads.upload(namespace, repository, digest, request.get_data())
        resp = _empty(201)
        resp.headers["Location"] = _url(f"/v2/{namespace}/{repository}/blobs/{blob.digest}")
        resp.headers["Docker-Content-Digest"] = blob.digest
        logger.info(f"Monolithic upload: {namespace}/{repository} {blob.digest} ({blob.size} bytes)")
        return resp

    session = uploads.open(namespace, repository)
    resp = _empty(202)
    resp.headers["Location"] = _upload_location(namespace, repository, session.token)
    resp.headers["Docker-Upload-UUID"] = session.token
    resp.headers["Range"] = range_header(session)
    return resp


def _session(namespace, repository, token):
    validate_name(namespace, repository)
    session = _components().uploads.get(token)
    if (session.namespace, session.repository) != (namespace, repository):
        logger.warning(f"Upload {token} does not belong to {namespace}/{repository}")
        raise BlobUploadUnknownError(detail={"Upload": token, "Name": f"{namespace}/{repository}"})
    return session


def _upload_status(namespace, repository, session, status):
    resp = _empty(status)
    resp.headers["Location"] = _upload_location(namespace, repository, session.token)
    resp.headers["Docker-Upload-UUID"] = session.token
    resp.headers["Range"] = range_header(session)
    return resp


@registry.route("/v2/<namespace>/<repository>/blobs/uploads/<token>", methods=["GET"])
def upload_status(namespace, repository, token):
    """Report how many bytes a session has received, as ``Range: 0-<last>``."""
    session = _session(namespace, repository, token)
    return _upload_status(namespace, repository, session, 204)


@registry.route("/v2/<namespace>/<repository>/blobs/uploads/<token>", methods=["PATCH"])
def patch_upload(namespace, repository, token):
    """
    Append one chunk to an upload session.

    Request Headers:
        Content-Range: optional ``<start>-<end>`` (inclusive); ``start`` must
            equal the bytes received so far and the range must match the
            body length

    Returns:
        202 with the updated Range header

    Raises:
        400: malformed or out-of-order range
        404: unknown session
    """
    _session(namespace, repository, token)
    data = request.get_data()

    start = None
    content_range = parse_content_range(request.headers.get("Content-Range"))
    if content_range is not None:
        start, end = content_range
        if end - start + 1 != len(data):
            logger.warning(f"Upload {token}: range {start}-{end} does not match {len(data)} body bytes")
            raise RangeInvalidError(detail={"Upload": token, "Range": f"{start}-{end}", "Length": len(data)})

    session = _components().uploads.append(token, data, start=start)
    return _upload_status(namespace, repository, session, 202)


@registry.route("/v2/<namespace>/<repository>/blobs/uploads/<token>", methods=["PUT"])
def commit_upload(namespace, repository, token):
    """
    Complete an upload session under the ``digest`` query parameter.

    A request body is appended as the final chunk before the digest check.

    Response Headers:
        Location: URL of the committed blob
        Docker-Content-Digest: the blob digest

    Returns:
        201 on success

    Raises:
        400: missing, malformed or mismatching digest
        404: unknown session
    """
    _session(namespace, repository, token)
    digest = request.args.get("digest")
    if not digest:
        raise DigestInvalidError("digest query parameter is required", detail={"Upload": token})

    blob = _components().uploads.commit(token, digest, request.get_data())
    resp = _empty(201)
    resp.headers["Location"] = _url(f"/v2/{namespace}/{repository}/blobs/{blob.digest}")
    resp.headers["Docker-Content-Digest"] = blob.digest
    return resp


@registry.route("/v2/<namespace>/<repository>/blobs/uploads/<token>", methods=["DELETE"])
def cancel_upload(namespace, repository, token):
    _session(namespace, repository, token)
    _components().uploads.abort(token)
    return _empty(204)


# -------------------------------
# Blobs
# -------------------------------


@registry.route("/v2/<namespace>/<repository>/blobs/<digest>", methods=["GET", "HEAD"])
def get_blob(namespace, repository, digest):
    """
    Get or check a blob by digest.

    Methods:
        GET: streams the blob bytes, from the local cache or the backend
        HEAD: returns only headers

    Response Headers:
        Content-Length: blob size in bytes
        Docker-Content-Digest: the blob digest

    Raises:
        400: invalid name or digest
        404: unknown blob
    """
    validate_name(namespace, repository)
    validate_digest(digest)
    blobs = _components().blobs

    if request.method == "HEAD":
        blob = blobs.require(digest)
        resp = Response(status=200, content_type="application/octet-stream")
        resp.headers["Content-Length"] = str(blob.size)
        resp.headers["Docker-Content-Digest"] = digest
        return resp

    blob, stream = blobs.stream(digest)
    resp = send_file(stream, mimetype="application/octet-stream", conditional=False)
    resp.headers["Content-Length"] = str(blob.size)
    resp.headers["Docker-Content-Digest"] = digest
    logger.info(f"Blob sent: {namespace}/{repository} {digest} ({blob.size} bytes)")
    return resp


@registry.route("/v2/<namespace>/<repository>/blobs/<digest>", methods=["DELETE"])
def delete_blob(namespace, repository, digest):
    """Delete a blob no tag references; referenced blobs are refused with 400."""
    validate_name(namespace, repository)
    validate_digest(digest)
    _components().blobs.delete_unreferenced(digest)
    return _empty(202)


# -------------------------------
# Manifests
# -------------------------------


@registry.route("/v2/<namespace>/<repository>/manifests/<reference>", methods=["PUT"])
def put_manifest(namespace, repository, reference):
    """
    Store a manifest under a tag.

    The body is stored byte for byte. Every blob it references must have
    been uploaded first; their reference counts go up by one.

    Response Headers:
        Docker-Content-Digest: digest of the submitted manifest bytes
        Location: URL of the manifest by digest

    Returns:
        201 for a schema 2 manifest, 202 for schema 1

    Raises:
        400: invalid name, tag or manifest, or unknown referenced blob
        500: backend failure while pushing the blobs
    """
    validate_name(namespace, repository)
    validate_tag(reference)

    result = _components().index.put_manifest(
        namespace,
        repository,
        reference,
        request.get_data(),
        agent=request.headers.get("User-Agent", ""),
    )
    resp = _empty(result.status)
    resp.headers["Docker-Content-Digest"] = result.digest
    resp.headers["Location"] = _url(f"/v2/{namespace}/{repository}/manifests/{result.digest}")
    return resp


def _validate_reference(reference):
    if is_digest(reference):
        return
    if reference.startswith("sha256:"):
        validate_digest(reference)
    validate_tag(reference)


@registry.route("/v2/<namespace>/<repository>/manifests/<reference>", methods=["GET", "HEAD"])
def get_manifest(namespace, repository, reference):
    """
    Get or check a manifest by tag or digest.

    The stored bytes are returned verbatim; the digest header is computed
    from them.

    Response Headers:
        Content-Type: media type of the stored schema
        Content-Length: manifest size in bytes
        Docker-Content-Digest: SHA256 digest of the manifest

    Raises:
        400: invalid name or reference
        404: unknown manifest
    """
    validate_name(namespace, repository)
    _validate_reference(reference)

    tag = _components().index.get_manifest(namespace, repository, reference)
    body = tag.manifest
    digest = compute_sha256(body)
    media_type = content_type(parse_manifest(body))

    if request.method == "HEAD":
        resp = Response(status=200, content_type=media_type)
        resp.headers["Content-Length"] = str(len(body))
        resp.headers["Docker-Content-Digest"] = digest
        return resp

    resp = make_response(body)
    resp.headers["Content-Type"] = media_type
    resp.headers["Content-Length"] = str(len(body))
    resp.headers["Docker-Content-Digest"] = digest
    logger.info(f"Manifest sent: {namespace}/{repository}:{tag.tag} {digest}")
    return resp


@registry.route("/v2/<namespace>/<repository>/manifests/<reference>", methods=["DELETE"])
def delete_manifest(namespace, repository, reference):
    """
    Delete a manifest by tag, or every tag pointing at a manifest digest.

    Blobs whose reference count reaches zero are deleted with it.
    """
    validate_name(namespace, repository)
    _validate_reference(reference)
    _components().index.delete_manifest(namespace, repository, reference)
    return _empty(202)


# -------------------------------
# Tags
# -------------------------------


@registry.route("/v2/<namespace>/<repository>/tags/list")
def list_tags(namespace, repository):
    validate_name(namespace, repository)
    tags = _components().index.list_tags(namespace, repository)
    return jsonify({"name": f"{namespace}/{repository}", "tags": tags})
