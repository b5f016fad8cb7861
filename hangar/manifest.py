"""
Manifest schema interpreter.

Decodes image manifests once into typed structures and normalizes both
supported encodings into the same list of referenced blob digests:

    Schema 1: ``fsLayers`` (one ``blobSum`` per layer, newest first) plus a
              parallel ``history`` of ``v1Compatibility`` JSON strings.
    Schema 2: one ``config`` descriptor plus an ordered ``layers`` list.

Digest order is oldest layer first for schema 1 and document order (config,
then layers) for schema 2, so equivalent manifests of either schema normalize
to the same sequence.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import ClassVar, Union

from .errors import InvalidSchemaError, ManifestInvalidError
from .validation import compute_sha256, validate_digest

logger = logging.getLogger(__name__)

# Image id recorded for schema 2 manifests, which carry no per-layer image ids.
SCHEMA_V2_IMAGE_ID = "schemaV2"

MEDIA_TYPE_V1 = "application/vnd.docker.distribution.manifest.v1+json"
MEDIA_TYPE_V2 = "application/vnd.docker.distribution.manifest.v2+json"
MEDIA_TYPE_OCI = "application/vnd.oci.image.manifest.v1+json"


@dataclass(frozen=True)
class Descriptor:
    media_type: str
    digest: str
    size: int


@dataclass(frozen=True)
class V1Image:
    """One decoded ``v1Compatibility`` history entry."""

    id: str
    parent: str
    raw: str


@dataclass(frozen=True)
class ManifestV1:
    schema_version: ClassVar[int] = 1

    name: str
    tag: str
    architecture: str
    fs_layers: tuple[str, ...]
    history: tuple[V1Image, ...]


@dataclass(frozen=True)
class ManifestV2:
    schema_version: ClassVar[int] = 2

    media_type: str
    config: Descriptor
    layers: tuple[Descriptor, ...]


Manifest = Union[ManifestV1, ManifestV2]


@dataclass(frozen=True)
class ImageRecord:
    """An image id to chain onto a repository; ``tag`` is set on the tagged image."""

    image_id: str
    tag: str | None = None


def _invalid(message, **detail):
    logger.warning(f"Invalid manifest: {message}")
    return ManifestInvalidError(message, detail=detail or None)


def _field(doc, key, kind, where, default=None, required=True):
    value = doc.get(key, default)
    if value is None and not required:
        return default
    # bool is an int subclass and never a valid size or version
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise _invalid(f"{where}: field {key!r} must be {kind.__name__}", field=key)
    return value


def _digest(value):
    validate_digest(value)
    return value


def _descriptor(doc, where) -> Descriptor:
    if not isinstance(doc, dict):
        raise _invalid(f"{where} must be an object")
    digest = _digest(_field(doc, "digest", str, where))
    size = _field(doc, "size", int, where, default=0, required=False)
    if size < 0:
        raise _invalid(f"{where}: size must not be negative", field="size")
    media_type = _field(doc, "mediaType", str, where, default="", required=False)
    return Descriptor(media_type=media_type, digest=digest, size=size)


def _parse_v1(doc) -> ManifestV1:
    fs_layers = _field(doc, "fsLayers", list, "manifest")
    history = _field(doc, "history", list, "manifest")
    if not fs_layers:
        raise _invalid("manifest has no layers")
    if len(fs_layers) != len(history):
        raise _invalid("fsLayers and history lengths differ", fsLayers=len(fs_layers), history=len(history))

    blob_sums = []
    for index, layer in enumerate(fs_layers):
        if not isinstance(layer, dict):
            raise _invalid(f"fsLayers[{index}] must be an object")
        blob_sums.append(_digest(_field(layer, "blobSum", str, f"fsLayers[{index}]")))

    images = []
    for index, entry in enumerate(history):
        where = f"history[{index}]"
        if not isinstance(entry, dict):
            raise _invalid(f"{where} must be an object")
        raw = _field(entry, "v1Compatibility", str, where)
        try:
            image = json.loads(raw)
        except ValueError as exc:
            raise _invalid(f"{where}: v1Compatibility is not JSON: {exc}") from exc
        if not isinstance(image, dict):
            raise _invalid(f"{where}: v1Compatibility must be an object")
        images.append(
            V1Image(
                id=_field(image, "id", str, where),
                parent=_field(image, "parent", str, where, default="", required=False),
                raw=raw,
            )
        )

    return ManifestV1(
        name=_field(doc, "name", str, "manifest", default="", required=False),
        tag=_field(doc, "tag", str, "manifest", default="", required=False),
        architecture=_field(doc, "architecture", str, "manifest", default="", required=False),
        fs_layers=tuple(blob_sums),
        history=tuple(images),
    )


def _parse_v2(doc) -> ManifestV2:
    layers = _field(doc, "layers", list, "manifest")
    return ManifestV2(
        media_type=_field(doc, "mediaType", str, "manifest", default=MEDIA_TYPE_V2, required=False),
        config=_descriptor(doc.get("config"), "config"),
        layers=tuple(_descriptor(layer, f"layers[{index}]") for index, layer in enumerate(layers)),
    )


def parse_manifest(data: bytes) -> Manifest:
    """
    Decode a manifest document.

    Args:
        data: raw manifest bytes as submitted

    Returns:
        ManifestV1 or ManifestV2

    Raises:
        ManifestInvalidError: if the document is not JSON or misses fields
        InvalidSchemaError: if ``schemaVersion`` is neither 1 nor 2
        DigestInvalidError: if a referenced digest is malformed
    """
    try:
        doc = json.loads(data)
    except (ValueError, UnicodeDecodeError) as exc:
        raise _invalid(f"manifest is not JSON: {exc}") from exc
    if not isinstance(doc, dict):
        raise _invalid("manifest must be a JSON object")

    version = doc.get("schemaVersion")
    if version == 1 and not isinstance(version, bool):
        manifest = _parse_v1(doc)
    elif version == 2 and not isinstance(version, bool):
        manifest = _parse_v2(doc)
    else:
        logger.warning(f"Unsupported manifest schema version: {version!r}")
        raise InvalidSchemaError(detail={"schemaVersion": version})

    logger.debug(f"Parsed schema {manifest.schema_version} manifest with {len(extract_digests(manifest))} blobs")
    return manifest


def extract_digests(manifest: Manifest) -> list[str]:
    """
    Return the blob digests referenced by ``manifest``, oldest layer first.

    Schema 2 lists the config digest before the layers. A digest used by more
    than one layer appears once per use.
    """
    if isinstance(manifest, ManifestV2):
        return [manifest.config.digest] + [layer.digest for layer in manifest.layers]
    return list(reversed(manifest.fs_layers))


def unique_digests(digests) -> list[str]:
    """Drop repeated digests, keeping first occurrences in order."""
    return list(dict.fromkeys(digests))


def image_records(manifest: Manifest, tag: str) -> list[ImageRecord]:
    """
    Return the image ids a manifest chains onto its repository.

    Schema 1 yields one record per history entry, oldest first; the newest
    entry carries ``tag``. Schema 2 yields a single sentinel record.
    """
    if isinstance(manifest, ManifestV2):
        return [ImageRecord(SCHEMA_V2_IMAGE_ID, tag)]

    records = []
    for index in reversed(range(len(manifest.history))):
        records.append(ImageRecord(manifest.history[index].id, tag if index == 0 else None))
    return records


def digest_manifest(data: bytes) -> str:
    """Digest of the exact manifest bytes, whatever their schema."""
    return compute_sha256(data)


def content_type(manifest: Manifest) -> str:
    if isinstance(manifest, ManifestV2):
        return manifest.media_type or MEDIA_TYPE_V2
    return MEDIA_TYPE_V1


def accepted_status(manifest: Manifest) -> int:
    """HTTP status for a stored manifest: 202 for schema 1, 201 for schema 2."""
    return 201 if isinstance(manifest, ManifestV2) else 202
