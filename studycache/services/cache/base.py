"""Shared plumbing for caches backed by the durable Redis tier."""

import logging
from typing import Any, Optional

from redis.exceptions import ConnectionError as RedisConnectionError

from studycache.core.errors import CacheError, log_cache_error
from studycache.services.cache.models import CacheStats
from studycache.services.cache.redis_client import RedisClient


class RedisBackedCache:
    """Base class for caches that store their data through a RedisClient.

    The live handle is resolved from the client on every call, so a cache
    keeps working across reconnects and reports itself unavailable (returns
    None from ``_client()``) while the connection is down.
    """

    def __init__(self, redis_client: RedisClient, logger: logging.Logger):
        self._redis = redis_client
        self._logger = logger
        self._stats = CacheStats()

    @property
    def stats(self) -> CacheStats:
        """Get cache statistics."""
        return self._stats

    def _client(self) -> Optional[Any]:
        return self._redis.get_client()

    def _handle_error(self, operation: str, error: Exception) -> CacheError:
        """Log a failed operation and feed connection failures back to the client."""
        self._stats.record_error()
        if isinstance(error, (RedisConnectionError, ConnectionError)):
            self._redis.report_failure(error)
        return log_cache_error(self._logger, operation, error)
