"""Disk-backed content cache with access-time expiry."""

from __future__ import annotations

import asyncio
import os
import tempfile
import time
from pathlib import Path
from typing import Callable, Optional

import structlog

from .errors import StorageFailed
from .identifier import is_identifier


LOGGER = structlog.get_logger("tubeproxy.store")

PARTIAL_SUFFIX = ".part"


class ContentStore:
    """One file per identifier inside ``storage_path``; the file name is the identifier.

    Writes go to a hidden temporary file in the same directory and are renamed
    into place, so a reader sees either the previous content, nothing, or the
    complete new content.
    """

    def __init__(
        self,
        storage_path: Path,
        ttl_seconds: float = 1200.0,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._root = Path(storage_path)
        self._ttl = ttl_seconds
        self._clock = clock

    @property
    def storage_path(self) -> Path:
        return self._root

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def ensure_directory(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)

    def path_for(self, identifier: str) -> Path:
        if not is_identifier(identifier):
            raise ValueError(f"Invalid identifier: {identifier!r}")
        return self._root / identifier

    def is_writable(self) -> bool:
        self.ensure_directory()
        return os.access(self._root, os.W_OK)

    async def lookup(self, identifier: str) -> Optional[bytes]:
        return await asyncio.to_thread(self.lookup_sync, identifier)

    async def put(self, identifier: str, data: bytes) -> None:
        await asyncio.to_thread(self.put_sync, identifier, data)

    async def sweep(self, is_busy: Callable[[str], bool] | None = None) -> list[str]:
        return await asyncio.to_thread(self.sweep_sync, is_busy)

    def lookup_sync(self, identifier: str) -> Optional[bytes]:
        path = self.path_for(identifier)
        try:
            with path.open("rb") as handle:
                data = handle.read()
                stat = os.fstat(handle.fileno())
        except FileNotFoundError:
            return None
        try:
            os.utime(path, (self._clock(), stat.st_mtime))
        except FileNotFoundError:
            # Swept between read and touch; the bytes we hold are still complete.
            pass
        except OSError as exc:
            LOGGER.warning("cache_touch_failed", identifier=identifier, error=str(exc))
        return data

    def put_sync(self, identifier: str, data: bytes) -> None:
        path = self.path_for(identifier)
        temp_name: Optional[str] = None
        try:
            self.ensure_directory()
            fd, temp_name = tempfile.mkstemp(prefix=f".{identifier}.", suffix=PARTIAL_SUFFIX, dir=self._root)
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            now = self._clock()
            os.utime(temp_name, (now, now))
            os.replace(temp_name, path)
            temp_name = None
        except OSError as exc:
            raise StorageFailed(identifier, f"Failed to write cache entry: {exc}") from exc
        finally:
            if temp_name is not None:
                try:
                    os.unlink(temp_name)
                except OSError:
                    LOGGER.warning("cache_partial_cleanup_failed", identifier=identifier, path=temp_name)
        LOGGER.debug("cache_write", identifier=identifier, bytes=len(data))

    def sweep_sync(self, is_busy: Callable[[str], bool] | None = None) -> list[str]:
        """Delete entries not accessed within the TTL; returns the identifiers removed."""

        removed: list[str] = []
        if not self._root.is_dir():
            return removed
        now = self._clock()
        failures = 0
        with os.scandir(self._root) as entries:
            for entry in entries:
                try:
                    if not entry.is_file(follow_symlinks=False):
                        continue
                    stat = entry.stat(follow_symlinks=False)
                except OSError:
                    continue
                if entry.name.startswith(".") and entry.name.endswith(PARTIAL_SUFFIX):
                    if now - stat.st_mtime > self._ttl:
                        self._remove(entry.path, entry.name)
                    continue
                if not is_identifier(entry.name):
                    continue
                if now - stat.st_atime <= self._ttl:
                    continue
                if is_busy is not None and is_busy(entry.name):
                    LOGGER.debug("cache_expire_deferred", identifier=entry.name)
                    continue
                LOGGER.info("cache_expired", identifier=entry.name, path=entry.path)
                if self._remove(entry.path, entry.name):
                    removed.append(entry.name)
                else:
                    failures += 1
        LOGGER.info("cache_sweep_completed", removed=len(removed), failures=failures)
        return removed

    @staticmethod
    def _remove(path: str, name: str) -> bool:
        try:
            os.unlink(path)
        except FileNotFoundError:
            return True
        except OSError as exc:
            LOGGER.error("cache_expire_failed", identifier=name, path=path, error=str(exc))
            return False
        return True
