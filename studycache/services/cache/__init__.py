"""Tiered cache services.

Tiers:
- Durable: Redis, shared across processes, native TTL expiry
- Fallback: bounded in-process map, used when Redis is disabled or down

Usage:
    from studycache.services.cache import CacheManager, RedisClient

    client = RedisClient()
    manager = CacheManager(client, rag_redis, rag_memory, sessions, named_caches)
    await manager.initialize()

    await manager.set_rag_results("what is entropy", "user-1", "physics", results, context)
    record = await manager.get_rag_results("what is entropy", "user-1", "physics")
"""

from studycache.services.cache.cache_manager import (
    CacheHealthReport,
    CacheManager,
    CacheManagerConfig,
    CacheMetrics,
)
from studycache.services.cache.generic_cache import GenericCache, NamedCaches, create_named_caches
from studycache.services.cache.keys import CacheKeys
from studycache.services.cache.models import (
    CacheEntry,
    CacheStats,
    QueryType,
    RAGCacheRecord,
    SessionRecord,
)
from studycache.services.cache.rag_cache_memory import (
    InMemoryRAGCache,
    SearchHistoryRow,
    SearchHistoryStore,
)
from studycache.services.cache.rag_cache_redis import RedisRAGCache
from studycache.services.cache.redis_client import (
    ConnectionState,
    HealthReport,
    RedisClient,
    RedisConfig,
    ServerStats,
)
from studycache.services.cache.session_cache import SessionCache

__all__ = [
    "CacheEntry",
    "CacheHealthReport",
    "CacheKeys",
    "CacheManager",
    "CacheManagerConfig",
    "CacheMetrics",
    "CacheStats",
    "ConnectionState",
    "GenericCache",
    "HealthReport",
    "InMemoryRAGCache",
    "NamedCaches",
    "QueryType",
    "RAGCacheRecord",
    "RedisClient",
    "RedisConfig",
    "RedisRAGCache",
    "SearchHistoryRow",
    "SearchHistoryStore",
    "ServerStats",
    "SessionCache",
    "SessionRecord",
    "create_named_caches",
]
