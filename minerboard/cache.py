"""Durable key/value cache for scan progress and leaderboard snapshots.

The pipeline only relies on :class:`KeyValueStore` (``get``/``set`` plus a
reachability check).  :class:`DurableCache` layers an in-memory mirror on top
so it keeps working when the backend is down or not configured at all.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol
from urllib.parse import quote, urlparse

import redis.asyncio as aioredis

from . import jsonutil
from .errors import CacheBackendError, ConfigError
from .logging_utils import warn_once_per

logger = logging.getLogger(__name__)

KEY_PREFIX = "minerboard"
SCAN_KEY = f"{KEY_PREFIX}:scan"
LEADERBOARD_KEY = f"{KEY_PREFIX}:leaderboard"
PARTIAL_KEY = f"{KEY_PREFIX}:leaderboard:partial"


class KeyValueStore(Protocol):
    """Protocol describing the minimal async KV operations we rely on."""

    name: str

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str) -> None:
        ...

    async def reachable(self) -> bool:
        ...

    async def close(self) -> None:
        ...


class MemoryStore:
    """Process-local store used for tests and when no backend is configured."""

    name = "memory"

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            self._data[key] = value

    async def reachable(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class FileStore:
    """One JSON document per key inside ``root``; writes are atomic replaces."""

    name = "file"

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(root)
        self._lock = asyncio.Lock()

    def _path(self, key: str) -> Path:
        return self.root / f"{quote(key, safe='')}.json"

    async def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        async with self._lock:
            try:
                return await asyncio.to_thread(path.read_text, encoding="utf-8")
            except FileNotFoundError:
                return None
            except OSError as exc:
                raise CacheBackendError(f"read {path}: {exc}") from exc

    async def set(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".json.tmp")

        def _write() -> None:
            self.root.mkdir(parents=True, exist_ok=True)
            tmp.write_text(value, encoding="utf-8")
            tmp.replace(path)

        async with self._lock:
            try:
                await asyncio.to_thread(_write)
            except OSError as exc:
                raise CacheBackendError(f"write {path}: {exc}") from exc

    async def reachable(self) -> bool:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        return os.access(self.root, os.W_OK)

    async def close(self) -> None:
        return None


class RedisStore:
    """Redis-backed store (``redis://`` / ``rediss://`` URLs)."""

    name = "redis"

    def __init__(self, url: str, *, timeout: float = 3.0, client: Any | None = None) -> None:
        self.url = url
        self._client = client or aioredis.from_url(
            url,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
            decode_responses=True,
        )

    async def get(self, key: str) -> Optional[str]:
        try:
            value = await self._client.get(key)
        except Exception as exc:
            raise CacheBackendError(f"redis get {key}: {exc}") from exc
        if value is None:
            return None
        return value if isinstance(value, str) else value.decode("utf-8")

    async def set(self, key: str, value: str) -> None:
        try:
            await self._client.set(key, value)
        except Exception as exc:
            raise CacheBackendError(f"redis set {key}: {exc}") from exc

    async def reachable(self) -> bool:
        try:
            return bool(await self._client.ping())
        except Exception:
            return False

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except Exception as exc:  # pragma: no cover - shutdown best effort
            logger.debug("Error closing redis client: %s", exc)


def build_store(url: str | None) -> KeyValueStore | None:
    """Return a store for ``url`` or ``None`` when persistence is disabled."""

    if not url or url in {"none", "off"}:
        return None
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    if scheme == "memory":
        return MemoryStore()
    if scheme == "file":
        path = parsed.path or parsed.netloc
        if parsed.netloc and parsed.path:
            path = parsed.netloc + parsed.path
        if not path:
            raise ConfigError(f"file cache URL needs a path: {url}")
        return FileStore(path)
    if scheme in {"redis", "rediss"}:
        return RedisStore(url)
    raise ConfigError(f"unsupported cache URL scheme: {url}")


@dataclass(frozen=True, slots=True)
class CacheEntry:
    timestamp: float
    payload: Dict[str, Any]

    def age(self, now: float | None = None) -> float:
        return max(0.0, (time.time() if now is None else now) - self.timestamp)

    def is_stale(self, max_age: float, now: float | None = None) -> bool:
        return self.age(now) > max_age

    def to_json(self) -> str:
        return jsonutil.dumps({"timestamp": self.timestamp, "payload": self.payload})

    @classmethod
    def from_json(cls, raw: str) -> Optional["CacheEntry"]:
        try:
            data = jsonutil.loads(raw)
        except Exception:
            return None
        if not isinstance(data, Mapping):
            return None
        payload = data.get("payload")
        try:
            timestamp = float(data.get("timestamp"))
        except (TypeError, ValueError):
            return None
        if not isinstance(payload, Mapping):
            return None
        return cls(timestamp=timestamp, payload=dict(payload))


class DurableCache:
    """Snapshot and checkpoint persistence with an in-memory mirror."""

    def __init__(self, store: KeyValueStore | None = None) -> None:
        self.store = store
        self._mirror: dict[str, CacheEntry] = {}
        self._last_error: str | None = None

    @property
    def backend_name(self) -> str:
        return self.store.name if self.store is not None else "none"

    async def _read(self, key: str) -> Optional[CacheEntry]:
        if self.store is not None:
            try:
                raw = await self.store.get(key)
            except CacheBackendError as exc:
                self._last_error = str(exc)
                warn_once_per(5.0, f"cache-read:{key}", "Cache read failed (%s); using local mirror", exc, logger=logger)
            else:
                self._last_error = None
                if raw is not None:
                    entry = CacheEntry.from_json(raw)
                    if entry is None:
                        logger.warning("Discarding malformed cache entry under %s", key)
                    else:
                        mirrored = self._mirror.get(key)
                        if mirrored is None or entry.timestamp >= mirrored.timestamp:
                            self._mirror[key] = entry
                        return self._mirror[key]
        return self._mirror.get(key)

    async def _write(self, key: str, payload: Mapping[str, Any], timestamp: float | None = None) -> bool:
        entry = CacheEntry(timestamp=time.time() if timestamp is None else timestamp, payload=dict(payload))
        self._mirror[key] = entry
        if self.store is None:
            return False
        try:
            await self.store.set(key, entry.to_json())
        except CacheBackendError as exc:
            self._last_error = str(exc)
            warn_once_per(5.0, f"cache-write:{key}", "Cache write failed (%s); kept local copy", exc, logger=logger)
            return False
        self._last_error = None
        return True

    async def load_checkpoint(self) -> Optional[Dict[str, Any]]:
        entry = await self._read(SCAN_KEY)
        return entry.payload if entry else None

    async def save_checkpoint(self, payload: Mapping[str, Any]) -> bool:
        return await self._write(SCAN_KEY, payload)

    async def load_snapshot(self, *, partial: bool = False) -> Optional[CacheEntry]:
        return await self._read(PARTIAL_KEY if partial else LEADERBOARD_KEY)

    async def save_snapshot(
        self, payload: Mapping[str, Any], *, partial: bool = False, timestamp: float | None = None
    ) -> bool:
        return await self._write(PARTIAL_KEY if partial else LEADERBOARD_KEY, payload, timestamp)

    async def status(self) -> Dict[str, Any]:
        reachable = False
        if self.store is not None:
            try:
                reachable = await self.store.reachable()
            except Exception:
                reachable = False
        return {
            "backend": self.backend_name,
            "configured": self.store is not None,
            "reachable": reachable,
            "localCacheAvailable": LEADERBOARD_KEY in self._mirror,
            "lastError": self._last_error,
        }

    async def close(self) -> None:
        if self.store is not None:
            await self.store.close()


__all__ = [
    "KeyValueStore",
    "MemoryStore",
    "FileStore",
    "RedisStore",
    "CacheEntry",
    "DurableCache",
    "build_store",
    "SCAN_KEY",
    "LEADERBOARD_KEY",
    "PARTIAL_KEY",
]
