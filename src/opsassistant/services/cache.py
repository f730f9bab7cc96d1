"""Response cache for reasoning engine calls.

Keys are content addressed: ``{namespace}{agent_type}:{sha256}`` where the
digest covers a canonical JSON rendering of the prompt or message list, so
the same conversation maps to the same key in any process. The cache is
advisory: every backend failure is logged and read as a miss.
"""

import asyncio
import hashlib
import json
import logging
import time
from collections import OrderedDict, defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Protocol, Tuple, TypeVar

from redis.exceptions import RedisError

from ..errors import CacheUnavailable, ForeignCacheKey
from ..settings import get_settings
from .redis import get_redis_cache_backend

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "ai:"

_CACHE_FAILURES = (CacheUnavailable, RedisError, OSError, asyncio.TimeoutError)

T = TypeVar("T")


class CacheBackend(Protocol):
    """String key/value store with per-key expiry."""

    name: str

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def keys(self, prefix: str) -> List[str]: ...

    async def ttl(self, key: str) -> int | None: ...


class InMemoryCacheBackend:
    """Process-local backend bounded by ``max_entries`` (least recently used first out).

    Expired entries are dropped when touched, and every write sweeps the whole
    map at most once per ``sweep_interval_seconds``.
    """

    name = "memory"

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 10000,
        sweep_interval_seconds: float = 1.0,
    ) -> None:
        self._clock = clock
        self._max_entries = max_entries
        self._sweep_interval = sweep_interval_seconds
        self._entries: "OrderedDict[str, Tuple[str, float | None]]" = OrderedDict()
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._entries)

    def _live(self, key: str) -> Tuple[str, float | None] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return None
        return entry

    def sweep(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self._clock()
        expired = [
            key
            for key, (_, expires_at) in self._entries.items()
            if expires_at is not None and now >= expires_at
        ]
        for key in expired:
            del self._entries[key]
        self._last_sweep = now
        return len(expired)

    async def get(self, key: str) -> str | None:
        entry = self._live(key)
        if entry is None:
            return None
        self._entries.move_to_end(key)
        return entry[0]

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        now = self._clock()
        if now - self._last_sweep >= self._sweep_interval:
            self.sweep()
        expires_at = now + ttl_seconds if ttl_seconds > 0 else None
        self._entries[key] = (value, expires_at)
        self._entries.move_to_end(key)
        if self._max_entries > 0:
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    async def delete(self, key: str) -> bool:
        return self._live(key) is not None and self._entries.pop(key, None) is not None

    async def keys(self, prefix: str) -> List[str]:
        return [k for k in list(self._entries) if k.startswith(prefix) and self._live(k)]

    async def ttl(self, key: str) -> int | None:
        entry = self._live(key)
        if entry is None or entry[1] is None:
            return None
        return max(0, int(entry[1] - self._clock()))


def serialize_prompt(prompt: str | List[Dict[str, Any]] | Dict[str, Any]) -> str:
    """Canonical text form of a prompt or message list used for hashing."""
    if isinstance(prompt, str):
        return prompt
    return json.dumps(
        prompt,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


class ResponseCache:
    """TTL memoization of reasoning results, restricted to one key namespace."""

    def __init__(
        self,
        backend: CacheBackend,
        namespace: str = DEFAULT_NAMESPACE,
        enabled: bool = True,
        timeout_seconds: float = 1.0,
    ) -> None:
        self._backend = backend
        self._namespace = namespace
        self._enabled = enabled
        self._timeout = timeout_seconds
        self._hits: Dict[str, int] = defaultdict(int)
        self._misses: Dict[str, int] = defaultdict(int)

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def enabled(self) -> bool:
        return self._enabled

    def key(self, agent_type: str, prompt: str | List[Dict[str, Any]] | Dict[str, Any]) -> str:
        """Derive the cache key for (agent_type, prompt). Pure and deterministic."""
        digest = hashlib.sha256(serialize_prompt(prompt).encode("utf-8")).hexdigest()
        return f"{self._namespace}{agent_type}:{digest}"

    def agent_type_of(self, key: str) -> str:
        """Agent type segment of a namespaced key ("unknown" if it has none)."""
        rest = key[len(self._namespace):] if key.startswith(self._namespace) else key
        agent_type, sep, _ = rest.rpartition(":")
        return agent_type if sep and agent_type else "unknown"

    def _check_namespace(self, key: str) -> None:
        if not key.startswith(self._namespace):
            raise ForeignCacheKey(
                f"Only keys under '{self._namespace}' can be managed by this cache"
            )

    async def _with_timeout(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, self._timeout)

    async def get(self, key: str) -> Dict[str, Any] | None:
        """Return the cached value for key, or None on miss, expiry or failure."""
        if not self._enabled:
            return None
        agent_type = self.agent_type_of(key)
        try:
            raw = await self._with_timeout(self._backend.get(key))
        except _CACHE_FAILURES as e:
            logger.warning("Cache read %s failed, treating as miss: %s", key, e)
            self._misses[agent_type] += 1
            return None
        except Exception as e:
            logger.exception("Unexpected cache read error for %s, treating as miss: %r", key, e)
            self._misses[agent_type] += 1
            return None
        if raw is None:
            self._misses[agent_type] += 1
            return None
        try:
            value = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning("Invalid cache entry for %s: %s", key, e)
            self._misses[agent_type] += 1
            return None
        self._hits[agent_type] += 1
        return value

    async def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> bool:
        """Store value under key for ttl_seconds. Returns True on success."""
        if not self._enabled:
            return False
        try:
            payload = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.warning("Cache serialization failed for %s: %s", key, e)
            return False
        try:
            await self._with_timeout(self._backend.set(key, payload, ttl_seconds))
        except _CACHE_FAILURES as e:
            logger.warning("Cache write %s failed: %s", key, e)
            return False
        except Exception as e:
            logger.exception("Unexpected cache write error for %s: %r", key, e)
            return False
        return True

    async def delete(self, key: str) -> bool:
        """Remove one key from the namespace. Returns True if it existed."""
        self._check_namespace(key)
        try:
            return await self._with_timeout(self._backend.delete(key))
        except _CACHE_FAILURES as e:
            logger.warning("Cache delete %s failed: %s", key, e)
            return False
        except Exception as e:
            logger.exception("Unexpected cache delete error for %s: %r", key, e)
            return False

    async def flush(self, prefix: str | None = None) -> int:
        """Delete every namespace key, or only those under namespace + prefix.

        Returns:
            int: number of keys removed.
        """
        match = f"{self._namespace}{prefix or ''}"
        removed = 0
        try:
            for key in await self._with_timeout(self._backend.keys(match)):
                if await self._with_timeout(self._backend.delete(key)):
                    removed += 1
        except _CACHE_FAILURES as e:
            logger.warning("Cache flush %s* failed after %d keys: %s", match, removed, e)
        logger.info("Cache flush %s* removed %d keys", match, removed)
        return removed

    async def list_keys(self, pattern: str | None = None, limit: int = 100) -> Dict[str, Any]:
        """List namespace keys whose remainder starts with pattern.

        Returns:
            Dict[str, Any]: {"keys": [{"key", "ttl", "type"}], "totalFound", "showing", "pattern"}.
        """
        match = f"{self._namespace}{pattern or ''}"
        try:
            found = sorted(await self._with_timeout(self._backend.keys(match)))
        except _CACHE_FAILURES as e:
            logger.warning("Cache key listing %s* failed: %s", match, e)
            found = []
        details: List[Dict[str, Any]] = []
        for key in found[: max(0, limit)]:
            try:
                ttl = await self._with_timeout(self._backend.ttl(key))
            except _CACHE_FAILURES as e:
                logger.debug("Cache ttl %s failed: %s", key, e)
                ttl = None
            details.append(
                {
                    "key": key,
                    "ttl": ttl if ttl is not None else "permanent",
                    "type": self.agent_type_of(key),
                }
            )
        return {
            "keys": details,
            "totalFound": len(found),
            "showing": len(details),
            "pattern": f"{match}*",
        }

    async def stats(self) -> Dict[str, Any]:
        """Key counts per agent type and hit/miss counters since start."""
        try:
            keys = await self._with_timeout(self._backend.keys(self._namespace))
        except _CACHE_FAILURES as e:
            logger.warning("Cache stats unavailable: %s", e)
            keys = []
        by_type: Dict[str, int] = defaultdict(int)
        for key in keys:
            by_type[self.agent_type_of(key)] += 1
        hits = sum(self._hits.values())
        misses = sum(self._misses.values())
        lookups = hits + misses
        return {
            "backend": self._backend.name,
            "enabled": self._enabled,
            "namespace": self._namespace,
            "keys": {"total": len(keys), "byAgentType": dict(by_type)},
            "hits": hits,
            "misses": misses,
            "hitRate": round(hits / lookups, 4) if lookups else None,
        }


async def build_response_cache() -> ResponseCache:
    """Build the cache from settings; falls back to memory if Redis is unreachable."""
    settings = get_settings()
    backend: CacheBackend = InMemoryCacheBackend(max_entries=settings.cache_max_entries)
    if settings.cache_backend == "redis":
        redis_backend = get_redis_cache_backend()
        if redis_backend is None:
            logger.warning("cache_backend=redis but REDIS_URL is empty; using memory cache")
        else:
            try:
                await redis_backend.connect()
                backend = redis_backend
            except (RedisError, ConnectionError, TimeoutError) as e:
                logger.warning("Redis cache unavailable, using memory cache: %s", e)
    logger.info("Response cache backend: %s (enabled=%s)", backend.name, settings.use_cache)
    return ResponseCache(
        backend=backend,
        namespace=settings.cache_namespace,
        enabled=settings.use_cache,
        timeout_seconds=settings.cache_timeout_seconds,
    )


async def close_response_cache(cache: ResponseCache) -> None:
    """Close the backend connection if it has one. Idempotent."""
    close = getattr(cache.backend, "close", None)
    if close is not None:
        await close()
