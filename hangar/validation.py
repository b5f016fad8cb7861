"""
Input validation module for the artifact registry.

Provides digest computation and validation functions for repository names,
tags, digests and upload ranges.
"""

import hashlib
import logging
import re

from .config import config
from .errors import DigestInvalidError, NameInvalidError, RangeInvalidError, TagInvalidError

logger = logging.getLogger(__name__)

NAME_COMPONENT_RE = re.compile(r"^[a-z0-9]+(?:[._-][a-z0-9]+)*$")
TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$")
DIGEST_RE = re.compile(r"^sha256:[a-f0-9]{64}$")
CONTENT_RANGE_RE = re.compile(r"^(?:bytes[ =])?(\d+)-(\d+)$")


def compute_sha256(data: bytes) -> str:
    """
    Compute SHA256 digest in OCI/Docker format.

    Args:
        data: Bytes to hash

    Returns:
        String in format "sha256:<64 hex chars>"

    Example:
        >>> compute_sha256(b"hello")
        'sha256:2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824'
    """
    h = hashlib.sha256()
    h.update(data)
    return "sha256:" + h.hexdigest()


def validate_name(namespace: str, repository: str) -> None:
    """
    Validate a namespace/repository pair.

    Raises:
        NameInvalidError: if either component is empty, too long, or contains
            characters outside ``[a-z0-9]`` joined by single ``.``, ``_`` or ``-``

    Examples:
        >>> validate_name("library", "busybox")  # OK
        >>> validate_name("library", "Busy;box")  # Raises NameInvalidError
    """
    name = f"{namespace}/{repository}"
    if len(name) > config.MAX_NAME_LENGTH:
        logger.warning(f"Invalid repository name length: {len(name)}")
        raise NameInvalidError(
            f"Invalid repository name: must be at most {config.MAX_NAME_LENGTH} characters",
            detail={"Name": name},
        )

    for component in (namespace, repository):
        if not component or not NAME_COMPONENT_RE.match(component):
            logger.warning(f"Invalid repository name format: {name}")
            raise NameInvalidError(detail={"Name": name})

    logger.debug(f"Repository name validated: {name}")


def validate_tag(tag: str) -> None:
    """
    Validate an image tag.

    Raises:
        TagInvalidError: if the tag is empty, longer than MAX_TAG_LENGTH or
            not made of word characters, dots and hyphens
    """
    if not tag or len(tag) > config.MAX_TAG_LENGTH:
        logger.warning(f"Invalid tag length: {len(tag)}")
        raise TagInvalidError(f"Invalid tag: must be 1-{config.MAX_TAG_LENGTH} characters", detail={"Tag": tag})

    if not TAG_RE.match(tag):
        logger.warning(f"Invalid tag format: {tag}")
        raise TagInvalidError(
            "Invalid tag: only alphanumeric, dots, hyphens, and underscores allowed",
            detail={"Tag": tag},
        )

    logger.debug(f"Tag validated: {tag}")


def is_digest(value: str) -> bool:
    """Return whether ``value`` is a well-formed sha256 digest."""
    return bool(value) and DIGEST_RE.match(value) is not None


def validate_digest(digest: str) -> None:
    """
    Validate the sha256 digest format used for blobs and manifests.

    Raises:
        DigestInvalidError: if the digest is not ``sha256:<64 lowercase hex>``
    """
    if not is_digest(digest):
        logger.warning(f"Invalid digest format: {digest}")
        raise DigestInvalidError("Invalid digest: must be sha256:<64 hex characters>", detail={"Digest": digest})

    logger.debug(f"Digest validated: {digest}")


def parse_content_range(value):
    """
    Parse a ``Content-Range`` header into an inclusive ``(start, end)`` pair.

    Returns None for an absent header.

    Raises:
        RangeInvalidError: if the header is malformed or ``end < start``
    """
    if not value:
        return None

    match = CONTENT_RANGE_RE.match(value.strip())
    if match is None:
        logger.warning(f"Invalid content range: {value}")
        raise RangeInvalidError(detail={"Range": value})

    start, end = int(match.group(1)), int(match.group(2))
    if end < start:
        logger.warning(f"Invalid content range bounds: {value}")
        raise RangeInvalidError(detail={"Range": value})
    return start, end
