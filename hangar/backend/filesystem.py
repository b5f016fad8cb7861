"""Flat filesystem backend: one file per blob, no chunking."""

import logging
import os
import shutil
from pathlib import Path

from ..errors import PathNotFoundError, StorageError

logger = logging.getLogger(__name__)


class FilesystemBackend:
    """
    Object-store style backend that copies blobs under a root directory.

    Locators are ``<first two chars>/<file name>`` relative to the root.
    """

    name = "filesystem"

    def __init__(self, root):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, locator):
        root = self.root.resolve()
        candidate = (self.root / locator).resolve()
        try:
            candidate.relative_to(root)
        except ValueError:
            raise PathNotFoundError(locator) from None
        return candidate

    def save(self, local_path) -> str:
        name = Path(local_path).name
        locator = f"{name[:2]}/{name}"
        dest = self._resolve(locator)
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(dest.name + ".tmp")
        try:
            shutil.copyfile(local_path, tmp)
            os.replace(tmp, dest)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise StorageError(f"failed to save {local_path}: {exc}", detail={"path": str(local_path)}) from exc

        logger.info(f"Saved {local_path} as {locator}")
        return locator

    def get(self, locator: str) -> bytes:
        try:
            return self._resolve(locator).read_bytes()
        except FileNotFoundError:
            raise PathNotFoundError(locator) from None

    def open(self, locator: str):
        try:
            return self._resolve(locator).open("rb")
        except FileNotFoundError:
            raise PathNotFoundError(locator) from None

    def delete(self, locator: str) -> None:
        try:
            self._resolve(locator).unlink()
        except FileNotFoundError:
            raise PathNotFoundError(locator) from None
        logger.debug(f"Deleted {locator}")
