"""Durable RAG result cache stored in Redis.

Entries live under ``{prefix}{user_id}:{query_hash}:{query_type}`` with a
native TTL. Small Redis sets under ``{prefix}metadata:`` group query hashes
by subject and by user so that a subject's or user's entries can be
invalidated without scanning the whole keyspace by value.
"""

import json
import math
import uuid
from typing import Any, Dict, List, Optional

from studycache.core.config import settings
from studycache.core.logging import get_logger
from studycache.services.cache.base import RedisBackedCache
from studycache.services.cache.keys import CacheKeys, normalize_query_type
from studycache.services.cache.models import QueryType, QueryTypeLike, RAGCacheRecord, utcnow
from studycache.services.cache.redis_client import RedisClient

logger = get_logger(__name__)

EVICTION_FRACTION = 0.1


def _empty_type_counts() -> Dict[str, int]:
    return {query_type.value: 0 for query_type in QueryType}


class RedisRAGCache(RedisBackedCache):
    """Caches retrieval-augmented query results in Redis.

    Every public method is non-throwing: a store failure is logged and the
    call returns a miss, a no-op or zero.
    """

    def __init__(
        self,
        redis_client: RedisClient,
        prefix: Optional[str] = None,
        default_ttl: Optional[int] = None,
        max_entries: Optional[int] = None,
    ):
        super().__init__(redis_client, logger)
        self.prefix = prefix or settings.rag_cache_prefix
        self.default_ttl = default_ttl or settings.cache_default_ttl
        self.max_entries = max_entries or settings.rag_cache_max_entries

    async def _scan(self, client: Any, pattern: str) -> List[str]:
        return [key async for key in client.scan_iter(match=pattern)]

    async def _entry_keys(self, client: Any) -> List[str]:
        keys = await self._scan(client, CacheKeys.prefix_pattern(self.prefix))
        return [key for key in keys if CacheKeys.is_rag_entry(self.prefix, key)]

    async def get(
        self,
        query: str,
        user_id: str,
        subject_id: Optional[str] = None,
        query_type: QueryTypeLike = QueryType.SIMILARITY,
    ) -> Optional[RAGCacheRecord]:
        """Get cached RAG results, or None on a miss."""
        client = self._client()
        if client is None:
            self._stats.record_miss()
            return None

        try:
            query_hash = CacheKeys.query_hash(query, user_id, subject_id, query_type)
            cache_key = CacheKeys.rag_entry(self.prefix, user_id, query_hash, query_type)

            cached = await client.get(cache_key)
            if cached is None:
                self._stats.record_miss()
                return None

            record = RAGCacheRecord.from_dict(json.loads(cached))
        except Exception as e:
            self._stats.record_miss()
            self._handle_error("rag_get", e)
            return None

        self._stats.record_hit(len(cached.encode("utf-8")))
        return record

    async def set(
        self,
        query: str,
        user_id: str,
        subject_id: Optional[str],
        results: List[Any],
        context: Any,
        query_type: QueryTypeLike = QueryType.SIMILARITY,
        ttl: Optional[int] = None,
        response_time_ms: Optional[float] = None,
    ) -> bool:
        """Store RAG results and register them in the grouping indices.

        Returns:
            True if the entry was written.
        """
        client = self._client()
        if client is None:
            logger.warning("Redis not available, RAG results not cached")
            return False

        try:
            query_type_value = normalize_query_type(query_type)
            query_hash = CacheKeys.query_hash(query, user_id, subject_id, query_type_value)
            cache_key = CacheKeys.rag_entry(self.prefix, user_id, query_hash, query_type_value)
            ttl = ttl or self.default_ttl

            record = RAGCacheRecord(
                id=f"cache-{uuid.uuid4().hex}",
                user_id=user_id,
                subject_id=subject_id,
                query=query,
                query_hash=query_hash,
                results=results,
                context=context,
                timestamp=utcnow(),
                ttl_seconds=ttl,
                query_type=query_type_value,
                response_time_ms=response_time_ms,
            )

            await self._enforce_size_limit(client)
            await client.set(cache_key, json.dumps(record.to_dict()), ex=ttl)
        except Exception as e:
            self._handle_error("rag_set", e)
            return False

        await self._store_metadata(client, user_id, subject_id, query_hash, ttl)
        logger.debug(f"RAG result cached: {query_hash} for user {user_id}")
        return True

    async def _store_metadata(
        self,
        client: Any,
        user_id: str,
        subject_id: Optional[str],
        query_hash: str,
        ttl: int,
    ) -> None:
        try:
            if subject_id:
                subject_key = CacheKeys.subject_index(self.prefix, subject_id)
                await client.sadd(subject_key, query_hash)
                await client.expire(subject_key, ttl)

                subject_users_key = CacheKeys.subject_users_index(self.prefix, subject_id)
                await client.sadd(subject_users_key, user_id)
                await client.expire(subject_users_key, ttl)

            user_key = CacheKeys.user_index(self.prefix, user_id)
            await client.sadd(user_key, query_hash)
            await client.expire(user_key, ttl)
        except Exception as e:
            self._handle_error("rag_store_metadata", e)

    async def _enforce_size_limit(self, client: Any) -> None:
        """Drop a tenth of the entries once the entry count reaches the limit.

        Which entries go is whatever order the store lists them in; this is
        not LRU.
        """
        try:
            keys = await self._entry_keys(client)
            if len(keys) < self.max_entries:
                return

            to_remove = math.ceil(self.max_entries * EVICTION_FRACTION)
            victims = keys[:to_remove]
            if victims:
                await client.delete(*victims)
                self._stats.evictions += len(victims)
                logger.info(f"Evicted {len(victims)} RAG cache entries (limit {self.max_entries})")
        except Exception as e:
            self._handle_error("rag_size_guard", e)

    async def invalidate_subject(self, subject_id: str) -> int:
        """Remove every entry stored under a subject, for every user that queried it."""
        client = self._client()
        if client is None:
            return 0

        try:
            subject_key = CacheKeys.subject_index(self.prefix, subject_id)
            subject_users_key = CacheKeys.subject_users_index(self.prefix, subject_id)

            query_hashes = await client.smembers(subject_key)
            if not query_hashes:
                return 0
            user_ids = await client.smembers(subject_users_key)

            deleted = 0
            for user_id in user_ids:
                for query_hash in query_hashes:
                    pattern = CacheKeys.user_hash_pattern(self.prefix, user_id, query_hash)
                    keys = [
                        key for key in await self._scan(client, pattern)
                        if CacheKeys.is_rag_entry(self.prefix, key, user_id)
                    ]
                    if keys:
                        deleted += await client.delete(*keys)

            await client.delete(subject_key, subject_users_key)
        except Exception as e:
            self._handle_error("rag_invalidate_subject", e)
            return 0

        logger.info(f"Invalidated {deleted} cached entries for subject {subject_id}")
        return deleted

    async def invalidate_user(self, user_id: str) -> int:
        """Remove every entry and the hash index belonging to exactly one user.

        Entries are found both through the user's hash index and by a scan
        filtered on the exact key shape, so ids such as ``a`` never reach
        ``a:b``'s entries.
        """
        client = self._client()
        if client is None:
            return 0

        try:
            user_key = CacheKeys.user_index(self.prefix, user_id)
            keys = {
                CacheKeys.rag_entry(self.prefix, user_id, query_hash, query_type)
                for query_hash in await client.smembers(user_key)
                for query_type in QueryType
            }
            pattern = CacheKeys.user_pattern(self.prefix, user_id)
            keys.update(
                key for key in await self._scan(client, pattern)
                if CacheKeys.is_rag_entry(self.prefix, key, user_id)
            )
            deleted = await client.delete(*keys) if keys else 0
            await client.delete(user_key)
        except Exception as e:
            self._handle_error("rag_invalidate_user", e)
            return 0

        logger.info(f"Invalidated {deleted} cached entries for user {user_id}")
        return deleted

    async def invalidate_by_type(self, query_type: QueryTypeLike) -> int:
        """Remove every entry of one query type across all users."""
        client = self._client()
        if client is None:
            return 0

        try:
            query_type_value = normalize_query_type(query_type)
            keys = [
                key for key in await self._scan(client, CacheKeys.type_pattern(self.prefix, query_type_value))
                if CacheKeys.is_rag_entry(self.prefix, key)
            ]
            deleted = await client.delete(*keys) if keys else 0
        except Exception as e:
            self._handle_error("rag_invalidate_by_type", e)
            return 0

        logger.info(f"Invalidated {deleted} cached entries of type {query_type_value}")
        return deleted

    async def clear(self) -> int:
        """Delete everything under the prefix, indices included."""
        client = self._client()
        if client is None:
            return 0

        try:
            keys = await self._scan(client, CacheKeys.prefix_pattern(self.prefix))
            if not keys:
                return 0
            deleted = await client.delete(*keys)
        except Exception as e:
            self._handle_error("rag_clear", e)
            return 0

        logger.info(f"Cleared {deleted} cached RAG entries")
        return deleted

    def get_stats(self) -> Dict[str, Any]:
        return self._stats.to_dict()

    def reset_stats(self) -> None:
        self._stats.reset()

    async def get_size_info(self) -> Dict[str, Any]:
        """Entry count, server memory usage and entries per query type."""
        empty = {"total_entries": 0, "memory_usage": "0 KB", "entries_by_type": _empty_type_counts()}
        client = self._client()
        if client is None:
            return empty

        try:
            keys = await self._entry_keys(client)
        except Exception as e:
            self._handle_error("rag_size_info", e)
            return empty

        entries_by_type = _empty_type_counts()
        for key in keys:
            query_type = key.rsplit(":", 1)[-1]
            if query_type in entries_by_type:
                entries_by_type[query_type] += 1

        return {
            "total_entries": len(keys),
            "memory_usage": await self._redis.memory_usage(),
            "entries_by_type": entries_by_type,
        }

    async def warm_up(self, items: List[Dict[str, Any]]) -> int:
        """Populate the cache with known-common queries.

        Each item carries ``query``, ``user_id``, ``results`` and ``context``,
        and optionally ``subject_id`` and ``query_type``.

        Returns:
            Number of entries written.
        """
        if self._client() is None:
            logger.warning("Redis not available, cannot warm up RAG cache")
            return 0

        logger.info(f"Warming up RAG cache with {len(items)} queries")
        written = 0
        for item in items:
            ok = await self.set(
                item["query"],
                item["user_id"],
                item.get("subject_id"),
                item.get("results") or [],
                item.get("context"),
                item.get("query_type", QueryType.SIMILARITY),
                self.default_ttl,
            )
            written += int(ok)

        logger.info(f"RAG cache warm-up completed ({written}/{len(items)})")
        return written
