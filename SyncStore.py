"""
JSON file backed key/value store used for mappings, maps, overrides, progress
and the global cursor.
"""

import json
import logging
import os
import time
from typing import Dict, Iterable, Optional

import config
from SyncErrors import PersistenceWriteError, SyncAlreadyRunning


class SyncStore(object):
    """
    Small key/value store with optional per-key TTL.

    Every value must be JSON-serializable. The whole file is loaded once and
    rewritten on each `set` through a temp file and an atomic replace, so an
    interrupted write never leaves a truncated store behind.
    """

    def __init__(self, store_file: Optional[str] = None):
        self.store_file = store_file or config.STORE_FILE
        self._data: Dict[str, dict] = {}
        self.hits = 0
        self.misses = 0
        if os.path.exists(self.store_file):
            try:
                with open(self.store_file, "r", encoding="utf-8") as f:
                    self._data = json.load(f)
            except json.JSONDecodeError:
                logging.warning(f"Store file {self.store_file} is not valid JSON, starting empty")
                self._data = {}

    @staticmethod
    def _is_expired(entry: dict, now: float) -> bool:
        expires_at = entry.get("expires_at")
        return expires_at is not None and expires_at <= now

    def get(self, key: str):
        """Return the stored value for key, or None when missing or expired"""
        entry = self._data.get(key)
        if entry is None or self._is_expired(entry, time.time()):
            self.misses += 1
            return None
        self.hits += 1
        return entry.get("value")

    def getMany(self, keys: Iterable[str]) -> Dict[str, object]:
        """Bulk read. Missing or expired keys map to None."""
        return {key: self.get(key) for key in keys}

    def set(self, key: str, value, ttl: Optional[int] = None):
        """
        Store value under key, optionally expiring after ttl seconds.

        Raises PersistenceWriteError when the store file cannot be written. The
        in-memory copy is rolled back in that case so later reads do not see a
        value that was never persisted.
        """
        previous = self._data.get(key)
        entry = {"value": value, "expires_at": (time.time() + ttl) if ttl else None}
        self._data[key] = entry
        try:
            self._flush()
        except (OSError, TypeError, ValueError) as e:
            if previous is None:
                self._data.pop(key, None)
            else:
                self._data[key] = previous
            raise PersistenceWriteError(f"Failed writing '{key}' to {self.store_file}: {e}") from e

    def delete(self, key: str):
        if self._data.pop(key, None) is not None:
            try:
                self._flush()
            except (OSError, TypeError, ValueError) as e:
                raise PersistenceWriteError(f"Failed deleting '{key}' from {self.store_file}: {e}") from e

    def keys(self, prefix: str = ""):
        now = time.time()
        return [
            key for key, entry in self._data.items()
            if key.startswith(prefix) and not self._is_expired(entry, now)
        ]

    def _flush(self):
        tmp_path = self.store_file + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.store_file)
        finally:
            if os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError as cleanup_err:
                    logging.debug(f"Temp store cleanup failed: {cleanup_err}")

    def runLock(self, ttl: Optional[int] = None) -> "RunLock":
        return RunLock(self.store_file + ".lock", ttl if ttl is not None else config.RUN_LOCK_TTL)

    def log_summary(self):
        """Log cache efficiency summary"""
        total = self.hits + self.misses
        if total > 0:
            hit_rate = (self.hits / total) * 100
            logging.info(f"Store summary: hits={self.hits} misses={self.misses} "
                         f"hit_rate={hit_rate:.1f}% entries={len(self._data)}")


class RunLock(object):
    """
    Run-scoped lock so only one sync run commits watermarks at a time.

    The lock is a file created with O_EXCL. A lock file older than ttl seconds
    is treated as left behind by a crashed run and is taken over.
    """

    def __init__(self, path: str, ttl: int):
        self.path = path
        self.ttl = ttl
        self.acquired = False

    def acquire(self):
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            age = time.time() - os.path.getmtime(self.path)
            if age < self.ttl:
                raise SyncAlreadyRunning(f"Another sync run holds {self.path} ({int(age)}s old)")
            logging.warning(f"Taking over stale run lock {self.path} ({int(age)}s old)")
            os.remove(self.path)
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        self.acquired = True

    def release(self):
        if self.acquired:
            try:
                os.remove(self.path)
            except FileNotFoundError:
                pass
            self.acquired = False

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
