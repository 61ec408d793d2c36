"""Disk-backed, content-addressable cache for compressed artifacts."""

import hashlib
import logging
import os
import tempfile
import time
from typing import Optional


CACHE_SUFFIX = ".cache"


def cache_key(url: str, size_raw: str) -> str:
    """Derive the cache key for a (source url, size parameter) pair."""
    return hashlib.sha1((url + size_raw).encode("utf-8")).hexdigest()


class CacheStore:
    """One file per key under a shared directory.

    The file mtime is the only staleness signal. Stale entries are
    reported as misses but left on disk until the same key is written
    again or ``sweep`` is called.
    """

    def __init__(self, directory: str, ttl_seconds: int = 3600) -> None:
        self.directory = directory
        self.ttl_seconds = ttl_seconds
        os.makedirs(self.directory, exist_ok=True)

    def path_for(self, key: str) -> str:
        return os.path.join(self.directory, key + CACHE_SUFFIX)

    def _is_fresh(self, path: str, now: float) -> bool:
        return now - os.path.getmtime(path) <= self.ttl_seconds

    def get(self, key: str) -> Optional[bytes]:
        path = self.path_for(key)
        try:
            if not self._is_fresh(path, time.time()):
                logging.info("Cache entry %s is stale", key)
                return None
            with open(path, "rb") as fh:
                data = fh.read()
        except FileNotFoundError:
            return None

        logging.info("Cache hit for %s (%d bytes)", key, len(data))
        return data

    def put(self, key: str, data: bytes) -> None:
        """Write the entry atomically: temp file in the same directory, then rename."""
        path = self.path_for(key)
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=".tmp-", suffix=CACHE_SUFFIX)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logging.info("Cached %s (%d bytes)", key, len(data))

    def sweep(self) -> int:
        """Delete stale entries. Returns the number of files removed."""
        now = time.time()
        removed = 0
        for name in os.listdir(self.directory):
            if not name.endswith(CACHE_SUFFIX) or name.startswith(".tmp-"):
                continue
            path = os.path.join(self.directory, name)
            try:
                if self._is_fresh(path, now):
                    continue
                os.unlink(path)
                removed += 1
            except FileNotFoundError:
                continue
        return removed
