from __future__ import annotations

import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)


class FileCache:
    """
    Byte blobs stored as files in one directory, one file per key.

    There is a single writer per process, so writes go to a temp file that is
    then renamed over the old entry and no locking is done.
    """

    def __init__(self, directory: str) -> None:
        self.directory = os.path.expanduser(directory)

    def _path(self, key: str) -> str:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in key)
        return os.path.join(self.directory, f"{safe}.cache")

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            with open(path, "rb") as fh:
                data = fh.read()
        except FileNotFoundError:
            return None
        logger.debug("Cache hit %s (%d bytes)", key, len(data))
        return data

    def set(self, key: str, data: bytes) -> None:
        os.makedirs(self.directory, exist_ok=True)
        path = self._path(key)
        tmp = path + ".tmp"
        with open(tmp, "wb") as fh:
            fh.write(data)
        os.replace(tmp, path)
        logger.info("Cached %s (%d bytes) at %s", key, len(data), path)

    def delete(self, key: str) -> None:
        try:
            os.remove(self._path(key))
        except FileNotFoundError:
            return
        logger.info("Cleared cache entry %s", key)
