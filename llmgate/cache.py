"""Response cache for the execution layer.

LRUCache – bounded in-memory cache with lazy TTL expiry and
least-recently-used eviction.
FileCache – LRUCache backed by a directory of JSON files, one per entry,
named by the SHA256 of the key.  Memory is authoritative; disk is consulted
on a memory miss and written through on every set.  File I/O runs in a
worker thread.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import shutil
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Optional, TypeVar, Union

from core.errors import CacheMiss
from core.logging import logger
from core.monitoring import CACHE_EVENTS

from .types import GenerateRequest

__all__ = [
    "compute_cache_key",
    "CacheEntry",
    "CacheMetrics",
    "BaseCache",
    "LRUCache",
    "FileCache",
]

T = TypeVar("T")

# Request fields that change what the provider is asked to do.
_KEY_FIELDS = (
    "model",
    "prompt",
    "system_prompt",
    "temperature",
    "max_tokens",
    "top_p",
    "frequency_penalty",
    "presence_penalty",
    "stop_sequences",
    "json_mode",
    "provider_options",
)


def compute_cache_key(request: GenerateRequest) -> str:
    """SHA256 over the canonical JSON of the request's semantic fields."""
    payload: Dict[str, Any] = {field: getattr(request, field) for field in _KEY_FIELDS}
    payload["tools"] = [asdict(tool) for tool in request.tools]
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry(Generic[T]):
    value: T
    created_at: float
    ttl: float
    hit_count: int = 0
    last_access: int = 0

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl


@dataclass
class CacheMetrics:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class BaseCache(ABC, Generic[T]):
    """Key/value store contract shared by all cache backends."""

    @abstractmethod
    async def get(self, key: str) -> Optional[T]:
        """Return the live value for ``key`` or None on miss/expiry."""

    @abstractmethod
    async def set(self, key: str, value: T, ttl: Optional[float] = None) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abstractmethod
    async def clear(self) -> None: ...

    @abstractmethod
    def size(self) -> int: ...

    @abstractmethod
    def metrics(self) -> CacheMetrics: ...


# ---------------------------------------------------------------------------
# In-memory LRU
# ---------------------------------------------------------------------------


class LRUCache(BaseCache[T]):
    """asyncio-safe LRU cache with per-entry TTL."""

    def __init__(
        self,
        max_size: int = 1000,
        default_ttl: float = 3600.0,
        name: str = "memory",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be positive")
        self._max_size = max_size
        self._default_ttl = default_ttl
        self._name = name
        self._clock = clock
        self._entries: Dict[str, CacheEntry[T]] = {}
        self._access_counter = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def get(self, key: str) -> Optional[T]:
        async with self._lock:
            try:
                entry = await self._lookup(key)
            except CacheMiss:
                self._misses += 1
                CACHE_EVENTS.labels(cache=self._name, event="miss").inc()
                return None
            entry.hit_count += 1
            entry.last_access = self._next_access()
            self._hits += 1
            CACHE_EVENTS.labels(cache=self._name, event="hit").inc()
            return entry.value

    async def set(self, key: str, value: T, ttl: Optional[float] = None) -> None:
        entry = CacheEntry(
            value=value,
            created_at=self._clock(),
            ttl=ttl if ttl is not None else self._default_ttl,
        )
        async with self._lock:
            self._insert(key, entry)
            await self._persist(key, entry)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            removed = self._entries.pop(key, None) is not None
            return await self._remove_persisted(key) or removed

    async def clear(self) -> None:
        """Drop every entry and reset the metrics counters."""
        async with self._lock:
            self._entries.clear()
            self._access_counter = 0
            self._hits = 0
            self._misses = 0
            self._evictions = 0
            await self._clear_persisted()

    def size(self) -> int:
        return len(self._entries)

    def metrics(self) -> CacheMetrics:
        return CacheMetrics(
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            size=len(self._entries),
        )

    # ------------------------------------------------------------------
    async def _lookup(self, key: str) -> CacheEntry[T]:
        entry = self._entries.get(key)
        promoted = False
        if entry is None:
            entry = await self._load_missing(key)
            if entry is None:
                raise CacheMiss(key)
            promoted = True
        if entry.is_expired(self._clock()):
            self._entries.pop(key, None)
            await self._remove_persisted(key)
            raise CacheMiss(key)
        if promoted:
            self._insert(key, entry)
        return entry

    def _insert(self, key: str, entry: CacheEntry[T]) -> None:
        # Replacing a key resets its position in the access order.
        self._entries.pop(key, None)
        while len(self._entries) >= self._max_size:
            self._evict_lru()
        entry.last_access = self._next_access()
        self._entries[key] = entry

    def _evict_lru(self) -> None:
        lru_key = min(self._entries.items(), key=lambda kv: kv[1].last_access)[0]
        del self._entries[lru_key]
        self._evictions += 1
        CACHE_EVENTS.labels(cache=self._name, event="eviction").inc()

    def _next_access(self) -> int:
        self._access_counter += 1
        return self._access_counter

    # Persistence hooks, no-ops for the pure memory cache.
    async def _load_missing(self, key: str) -> Optional[CacheEntry[T]]:
        return None

    async def _persist(self, key: str, entry: CacheEntry[T]) -> None:
        pass

    async def _remove_persisted(self, key: str) -> bool:
        return False

    async def _clear_persisted(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Hybrid memory + file cache
# ---------------------------------------------------------------------------


class FileCache(LRUCache[T]):
    """LRU cache with write-through JSON files as a persistent backup.

    Disk failures are logged and tolerated; the memory layer keeps working.
    """

    def __init__(
        self,
        cache_dir: Union[str, Path] = ".cache/llmgate",
        max_size: int = 1000,
        default_ttl: float = 3600.0,
        serializer: Callable[[T], Any] = lambda value: value,
        deserializer: Callable[[Any], T] = lambda data: data,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(max_size=max_size, default_ttl=default_ttl, name="file", clock=clock)
        self._dir = Path(cache_dir)
        self._serialize = serializer
        self._deserialize = deserializer
        self._ensure_dir()

    def _path_for(self, key: str) -> Path:
        return self._dir / f"{hashlib.sha256(key.encode('utf-8')).hexdigest()}.json"

    def _ensure_dir(self) -> None:
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Cache directory {self._dir} unavailable: {e}")

    # ------------------------------------------------------------------
    async def _load_missing(self, key: str) -> Optional[CacheEntry[T]]:
        path = self._path_for(key)
        try:
            data = await asyncio.to_thread(self._read, path)
            if data is None or data.get("key") != key:
                return None
            raw = data["entry"]
            return CacheEntry(
                value=self._deserialize(raw["value"]),
                created_at=float(raw["created_at"]),
                ttl=float(raw["ttl"]),
                hit_count=int(raw.get("hit_count", 0)),
            )
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Failed to read cache file {path.name}: {e}")
            return None

    async def _persist(self, key: str, entry: CacheEntry[T]) -> None:
        path = self._path_for(key)
        record = {
            "key": key,
            "entry": {
                "value": self._serialize(entry.value),
                "created_at": entry.created_at,
                "ttl": entry.ttl,
                "hit_count": entry.hit_count,
            },
        }
        try:
            payload = json.dumps(record)
            await asyncio.to_thread(path.write_text, payload, encoding="utf-8")
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Failed to write cache file {path.name}: {e}")

    async def _remove_persisted(self, key: str) -> bool:
        path = self._path_for(key)
        try:
            await asyncio.to_thread(path.unlink)
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Failed to delete cache file {path.name}: {e}")
            return False

    async def _clear_persisted(self) -> None:
        await asyncio.to_thread(self._reset_dir)

    # Blocking helpers, run in a worker thread.
    @staticmethod
    def _read(path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def _reset_dir(self) -> None:
        try:
            shutil.rmtree(self._dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to clear cache directory {self._dir}: {e}")
        self._ensure_dir()
