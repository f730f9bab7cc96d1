import logging
import re
from typing import List

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..errors import CacheUnavailable
from ..settings import get_settings

logger = logging.getLogger(__name__)

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def escape_glob(text: str) -> str:
    """Escape Redis glob metacharacters so text matches literally in SCAN MATCH."""
    return _GLOB_SPECIAL.sub(r"\\\1", text)


class RedisCacheBackend:
    """Async cache backend storing string values in Redis with native expiry."""

    name = "redis"

    def __init__(self, url: str) -> None:
        """Create a Redis backend for the given URL (e.g. redis://localhost:6379/0)."""
        self._url = url
        self._client: Redis | None = None

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(
            self._url,
            decode_responses=True,
        )
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    @property
    def client(self) -> Redis | None:
        """Return the underlying Redis client, or None if not connected."""
        return self._client

    def _require_client(self) -> Redis:
        if self._client is None:
            raise CacheUnavailable("Redis client is not connected")
        return self._client

    async def get(self, key: str) -> str | None:
        """Return the value for key, or None if missing."""
        client = self._require_client()
        try:
            value = await client.get(key)
        except RedisError as e:
            raise CacheUnavailable(f"Redis get {key} failed: {e}") from e
        return value if value is None else str(value)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Set key to value, expiring after ttl_seconds."""
        client = self._require_client()
        try:
            if ttl_seconds > 0:
                await client.setex(key, ttl_seconds, value)
            else:
                await client.set(key, value)
        except RedisError as e:
            raise CacheUnavailable(f"Redis set {key} failed: {e}") from e

    async def delete(self, key: str) -> bool:
        """Delete key. Returns True if a key was removed."""
        client = self._require_client()
        try:
            return bool(await client.delete(key))
        except RedisError as e:
            raise CacheUnavailable(f"Redis delete {key} failed: {e}") from e

    async def keys(self, prefix: str) -> List[str]:
        """Return every key starting with prefix (SCAN, never KEYS)."""
        client = self._require_client()
        try:
            return [str(k) async for k in client.scan_iter(match=f"{escape_glob(prefix)}*")]
        except RedisError as e:
            raise CacheUnavailable(f"Redis scan {prefix}* failed: {e}") from e

    async def ttl(self, key: str) -> int | None:
        """Seconds left before key expires; None if missing or persistent."""
        client = self._require_client()
        try:
            remaining = await client.ttl(key)
        except RedisError as e:
            raise CacheUnavailable(f"Redis ttl {key} failed: {e}") from e
        return remaining if remaining >= 0 else None


def get_redis_cache_backend() -> RedisCacheBackend | None:
    """Return a Redis backend if redis_url is configured, else None."""
    settings = get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return RedisCacheBackend(settings.redis_url.strip())
