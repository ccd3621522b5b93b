"""Cache stores: map a cache key to a byte payload on disk.

Two backends implement the :class:`CacheStore` protocol:

* :class:`FileStore` -- one file per key under the cache root, laid out
  as ``<root>/<key[:2]>/<key>.json``. The file's mtime is the entry's
  last-modified time. Writes go to a temp file in the same directory
  and are moved into place with :func:`os.replace`, so a reader sees the
  old content or the new content, never a partial file.
* :class:`DiskcacheStore` -- entries kept in a :mod:`diskcache`
  directory as ``(written_at, payload)`` tuples. diskcache's own
  transactions provide the atomicity guarantee.

Keys must be SHA-256 hex digests (see :func:`cache_serde.keys.validate_key`),
so a key can never address a path outside the root. Blocking filesystem
calls run in a worker thread via :func:`asyncio.to_thread`.

Every I/O failure surfaces as :class:`~cache_serde.exceptions.StorageError`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import sqlite3
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Protocol

import diskcache

from cache_serde.exceptions import StorageError
from cache_serde.keys import validate_key
from cache_serde.models import EntryInfo

logger = logging.getLogger(__name__)

ENTRY_SUFFIX = ".json"


class CacheStore(Protocol):
    """Async storage contract used by the orchestrator and the CLI."""

    async def exists(self, key: str) -> bool: ...

    async def last_modified(self, key: str) -> datetime: ...

    async def read(self, key: str) -> bytes: ...

    async def write(self, key: str, data: bytes) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def clear(self) -> int: ...

    async def entries(self) -> list[EntryInfo]: ...


def _timestamp_to_datetime(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


# --- Atomic file writes ---


def _atomic_write(path: Path, data: bytes) -> None:
    """Replace *path* with *data* in one step.

    The bytes are written and fsynced to a sibling temp file which is then
    renamed over *path*. If anything fails the temp file is removed and
    the previous entry, if any, is left untouched.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = tempfile.NamedTemporaryFile(
        mode="wb", dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
    )
    try:
        with tmp:
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp.name, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp.name)
        raise


# --- File backend ---


class FileStore:
    """One-file-per-key store rooted at a directory.

    The root is created lazily on the first write; reading from a root
    that does not exist yet simply finds no entries.

    Args:
        root: Cache root directory. ``~`` is expanded.

    Example::

        store = FileStore("~/.cache/weather")
        await store.write(key, b"...")
        if await store.exists(key):
            data = await store.read(key)
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).expanduser()

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, key: str) -> Path:
        """Return the entry path for *key*, always inside :attr:`root`."""
        key = validate_key(key)
        return self._root / key[:2] / f"{key}{ENTRY_SUFFIX}"

    async def exists(self, key: str) -> bool:
        path = self.path_for(key)
        return await asyncio.to_thread(_is_readable_file, path)

    async def last_modified(self, key: str) -> datetime:
        path = self.path_for(key)
        try:
            stat_result = await asyncio.to_thread(path.stat)
        except OSError as exc:
            raise StorageError(f"Cannot stat cache entry {path}: {exc}") from exc
        return _timestamp_to_datetime(stat_result.st_mtime)

    async def read(self, key: str) -> bytes:
        path = self.path_for(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise StorageError(f"Cannot read cache entry {path}: {exc}") from exc

    async def write(self, key: str, data: bytes) -> None:
        path = self.path_for(key)
        try:
            await asyncio.to_thread(_atomic_write, path, data)
        except OSError as exc:
            raise StorageError(f"Cannot write cache entry {path}: {exc}") from exc
        logger.debug("Wrote %d bytes to %s", len(data), path)

    async def delete(self, key: str) -> bool:
        path = self.path_for(key)
        try:
            return await asyncio.to_thread(_unlink_if_present, path)
        except OSError as exc:
            raise StorageError(f"Cannot delete cache entry {path}: {exc}") from exc

    async def clear(self) -> int:
        try:
            return await asyncio.to_thread(self._clear_sync)
        except OSError as exc:
            raise StorageError(f"Cannot clear cache root {self._root}: {exc}") from exc

    async def entries(self) -> list[EntryInfo]:
        try:
            return await asyncio.to_thread(self._entries_sync)
        except OSError as exc:
            raise StorageError(f"Cannot list cache root {self._root}: {exc}") from exc

    def _entry_paths(self) -> list[Path]:
        if not self._root.is_dir():
            return []
        return sorted(self._root.glob(f"??/*{ENTRY_SUFFIX}"))

    def _entries_sync(self) -> list[EntryInfo]:
        infos: list[EntryInfo] = []
        for path in self._entry_paths():
            try:
                stat_result = path.stat()
            except FileNotFoundError:
                continue  # removed concurrently
            infos.append(
                EntryInfo(
                    key=path.name[: -len(ENTRY_SUFFIX)],
                    size=stat_result.st_size,
                    last_modified=_timestamp_to_datetime(stat_result.st_mtime),
                )
            )
        return infos

    def _clear_sync(self) -> int:
        removed = 0
        for path in self._entry_paths():
            if _unlink_if_present(path):
                removed += 1
        if self._root.is_dir():
            # Leftover temp files from interrupted writes.
            for tmp in self._root.glob("??/.*.tmp"):
                _unlink_if_present(tmp)
        return removed


def _is_readable_file(path: Path) -> bool:
    return path.is_file() and os.access(path, os.R_OK)


def _unlink_if_present(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


# --- diskcache backend ---


_DISKCACHE_ERRORS = (OSError, sqlite3.Error, diskcache.Timeout)


class DiskcacheStore:
    """Store backed by a :class:`diskcache.Cache` directory.

    Each entry is a ``(written_at, payload)`` tuple; ``written_at`` is a
    POSIX timestamp taken from *clock* at write time and serves as the
    entry's last-modified time. The directory is only created on the
    first write.

    Args:
        directory: Directory for the diskcache database.
        clock: Returns the current POSIX timestamp.
    """

    def __init__(self, directory: str | Path, clock: Callable[[], float] = time.time) -> None:
        self._directory = Path(directory).expanduser()
        self._clock = clock
        self._cache: Optional[diskcache.Cache] = None

    @property
    def root(self) -> Path:
        return self._directory

    def _open(self, create: bool) -> Optional[diskcache.Cache]:
        if self._cache is None:
            if not create and not self._directory.is_dir():
                return None
            self._cache = diskcache.Cache(str(self._directory))
        return self._cache

    def _get_sync(self, key: str) -> Optional[tuple[float, bytes]]:
        cache = self._open(create=False)
        if cache is None:
            return None
        return cache.get(validate_key(key))

    async def _run(self, description: str, func: Callable[..., object], *args: object) -> object:
        try:
            return await asyncio.to_thread(func, *args)
        except _DISKCACHE_ERRORS as exc:
            raise StorageError(f"Cannot {description} in {self._directory}: {exc}") from exc

    async def exists(self, key: str) -> bool:
        return await self._run("look up entry", self._get_sync, key) is not None

    async def last_modified(self, key: str) -> datetime:
        item = await self._run("stat entry", self._get_sync, key)
        if item is None:
            raise StorageError(f"No cache entry for key {key} in {self._directory}")
        written_at, _ = item
        return _timestamp_to_datetime(written_at)

    async def read(self, key: str) -> bytes:
        item = await self._run("read entry", self._get_sync, key)
        if item is None:
            raise StorageError(f"No cache entry for key {key} in {self._directory}")
        _, data = item
        return data

    async def write(self, key: str, data: bytes) -> None:
        key = validate_key(key)
        item = (self._clock(), bytes(data))
        await self._run("write entry", self._set_sync, key, item)
        logger.debug("Wrote %d bytes for %s to %s", len(data), key, self._directory)

    def _set_sync(self, key: str, item: tuple[float, bytes]) -> None:
        cache = self._open(create=True)
        assert cache is not None  # create=True always opens
        cache.set(key, item)

    async def delete(self, key: str) -> bool:
        return bool(await self._run("delete entry", self._delete_sync, key))

    def _delete_sync(self, key: str) -> bool:
        cache = self._open(create=False)
        if cache is None:
            return False
        return cache.delete(validate_key(key))

    async def clear(self) -> int:
        return int(await self._run("clear entries", self._clear_sync))

    def _clear_sync(self) -> int:
        cache = self._open(create=False)
        if cache is None:
            return 0
        return cache.clear()

    async def entries(self) -> list[EntryInfo]:
        return await self._run("list entries", self._entries_sync)  # type: ignore[return-value]

    def _entries_sync(self) -> list[EntryInfo]:
        cache = self._open(create=False)
        if cache is None:
            return []
        infos: list[EntryInfo] = []
        for key in sorted(cache.iterkeys()):
            item = cache.get(key)
            if item is None:
                continue
            written_at, data = item
            infos.append(
                EntryInfo(
                    key=key,
                    size=len(data),
                    last_modified=_timestamp_to_datetime(written_at),
                )
            )
        return infos

    def close(self) -> None:
        """Release the diskcache handle; the store reopens it on next use."""
        if self._cache is not None:
            self._cache.close()
            self._cache = None


def open_store(backend: str, root: str | Path) -> FileStore | DiskcacheStore:
    """Create the store for *backend* (``"file"`` or ``"diskcache"``) at *root*."""
    if backend == "file":
        return FileStore(root)
    if backend == "diskcache":
        return DiskcacheStore(root)
    raise ValueError(f"Unknown cache backend: {backend!r}")
