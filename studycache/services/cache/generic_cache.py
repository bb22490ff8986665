"""Prefix-scoped key/value cache for miscellaneous derived data."""

import json
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, TypeVar

from studycache.core.config import Settings, settings
from studycache.core.errors import guarded
from studycache.core.logging import get_logger
from studycache.services.cache.base import RedisBackedCache
from studycache.services.cache.keys import CacheKeys
from studycache.services.cache.redis_client import RedisClient

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_PREFIX = "learnsynth:cache:"


def _empty_generic_stats() -> Dict[str, Any]:
    return {"total_entries": 0, "memory_usage": "0 KB"}


class GenericCache(RedisBackedCache, Generic[T]):
    """JSON values of type T stored under ``{prefix}{key}``.

    Each operation fails independently to a neutral value: False, None,
    a list of None, -1 or 0.
    """

    def __init__(
        self,
        redis_client: RedisClient,
        prefix: str = DEFAULT_PREFIX,
        default_ttl: Optional[int] = None,
    ):
        super().__init__(redis_client, logger)
        self.prefix = prefix
        self.default_ttl = default_ttl or settings.cache_default_ttl

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    @guarded(fallback=False)
    async def set(self, key: str, value: T, ttl: Optional[int] = None) -> bool:
        client = self._client()
        if client is None:
            logger.warning("Redis not available, data not cached")
            return False
        await client.set(self._key(key), json.dumps(value), ex=ttl or self.default_ttl)
        return True

    @guarded(fallback=None)
    async def get(self, key: str) -> Optional[T]:
        client = self._client()
        if client is None:
            return None

        cached = await client.get(self._key(key))
        if cached is None:
            self._stats.record_miss()
            return None

        value = json.loads(cached)
        self._stats.record_hit(len(cached.encode("utf-8")))
        return value

    @guarded(fallback=False)
    async def delete(self, key: str) -> bool:
        client = self._client()
        if client is None:
            return False
        return await client.delete(self._key(key)) == 1

    @guarded(fallback=False)
    async def exists(self, key: str) -> bool:
        client = self._client()
        if client is None:
            return False
        return await client.exists(self._key(key)) == 1

    async def mget(self, keys: List[str]) -> List[Optional[T]]:
        """Get several keys at once; missing or unparsable values come back as None."""
        client = self._client()
        if client is None or not keys:
            return [None] * len(keys)

        try:
            values = await client.mget([self._key(key) for key in keys])
            return [json.loads(value) if value is not None else None for value in values]
        except Exception as e:
            self._handle_error("mget", e)
            return [None] * len(keys)

    @guarded(fallback=False)
    async def mset(self, items: Dict[str, T], ttl: Optional[int] = None) -> bool:
        """Set several keys in one pipeline round-trip."""
        client = self._client()
        if client is None:
            return False

        ttl = ttl or self.default_ttl
        async with client.pipeline(transaction=False) as pipe:
            for key, value in items.items():
                pipe.set(self._key(key), json.dumps(value), ex=ttl)
            await pipe.execute()
        return True

    @guarded(fallback=None)
    async def incr(self, key: str, by: int = 1) -> Optional[int]:
        """Increment a counter and re-apply the default TTL."""
        client = self._client()
        if client is None:
            return None

        cache_key = self._key(key)
        result = await client.incrby(cache_key, by)
        await client.expire(cache_key, self.default_ttl)
        return result

    @guarded(fallback=-1, operation="get_ttl")
    async def get_ttl(self, key: str) -> int:
        client = self._client()
        if client is None:
            return -1
        return await client.ttl(self._key(key))

    @guarded(fallback=False)
    async def expire(self, key: str, ttl: int) -> bool:
        client = self._client()
        if client is None:
            return False
        return bool(await client.expire(self._key(key), ttl))

    @guarded(fallback=0)
    async def clear(self) -> int:
        client = self._client()
        if client is None:
            return 0

        pattern = CacheKeys.prefix_pattern(self.prefix)
        keys = [key async for key in client.scan_iter(match=pattern)]
        if not keys:
            return 0
        return await client.delete(*keys)

    @guarded(fallback=_empty_generic_stats)
    async def get_stats(self) -> Dict[str, Any]:
        client = self._client()
        if client is None:
            return _empty_generic_stats()

        pattern = CacheKeys.prefix_pattern(self.prefix)
        keys = [key async for key in client.scan_iter(match=pattern)]
        return {
            "total_entries": len(keys),
            "memory_usage": await self._redis.memory_usage(),
            **self._stats.to_dict(),
        }


@dataclass
class NamedCaches:
    """The pre-configured generic caches used across the platform."""

    user_preferences: GenericCache[Dict[str, Any]]
    api_responses: GenericCache[Any]
    content_metadata: GenericCache[Dict[str, Any]]

    def all(self) -> Dict[str, GenericCache[Any]]:
        return {
            "user_preferences": self.user_preferences,
            "api_responses": self.api_responses,
            "content_metadata": self.content_metadata,
        }


def create_named_caches(redis_client: RedisClient, config: Optional[Settings] = None) -> NamedCaches:
    """Build the named caches with prefixes and TTLs from settings."""
    config = config or settings
    return NamedCaches(
        user_preferences=GenericCache(
            redis_client, config.user_preferences_prefix, config.user_preferences_ttl
        ),
        api_responses=GenericCache(
            redis_client, config.api_response_prefix, config.api_response_ttl
        ),
        content_metadata=GenericCache(
            redis_client, config.content_metadata_prefix, config.content_metadata_ttl
        ),
    )
