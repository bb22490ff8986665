"""Bounded in-process RAG result cache.

Used when Redis is disabled or unreachable. Entries are keyed by
``{query_hash}:{user_id}`` using the same hash as the durable tier, so an
entry can be correlated across tiers.
"""

import asyncio
import json
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from studycache.core.config import settings
from studycache.core.errors import log_cache_error
from studycache.core.logging import get_logger
from studycache.services.cache.background import PeriodicTask, SleepFunc
from studycache.services.cache.keys import CacheKeys, normalize_query_type
from studycache.services.cache.models import (
    CacheEntry,
    CacheStats,
    QueryType,
    QueryTypeLike,
    RAGCacheRecord,
    format_bytes,
    from_timestamp,
)

logger = get_logger(__name__)


@dataclass
class SearchHistoryRow:
    """A past search as recorded by the source of record."""

    id: str
    user_id: str
    query: str
    created_at: datetime
    subject_id: Optional[str] = None


class SearchHistoryStore(ABC):
    """Slower source of record consulted when the in-memory tier misses."""

    @abstractmethod
    async def find_recent(
        self,
        user_id: str,
        query: str,
        subject_id: Optional[str] = None,
    ) -> Optional[SearchHistoryRow]:
        """Return the most recent matching search, or None."""
        pass

    @abstractmethod
    async def record_search(
        self,
        user_id: str,
        subject_id: Optional[str],
        query: str,
        results_count: int,
        response_time_ms: Optional[float] = None,
    ) -> None:
        """Record that a search was performed."""
        pass


class InMemoryRAGCache:
    """Process-local RAG cache with oldest-first eviction and TTL sweeps."""

    def __init__(
        self,
        max_items: Optional[int] = None,
        default_ttl: Optional[int] = None,
        history: Optional[SearchHistoryStore] = None,
        clock: Callable[[], float] = time.time,
        sweep_interval: Optional[float] = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        """Initialize the cache.

        Args:
            max_items: Capacity; inserting a new key at capacity evicts the
                entry with the oldest creation time.
            default_ttl: TTL in seconds for every entry.
            history: Optional source of record for the miss path.
            clock: Wall clock in epoch seconds.
            sweep_interval: Seconds between expiry sweeps.
            sleep: Sleep function used by the sweep task.
        """
        self.max_items = max_items or settings.cache_max_memory_items
        self.default_ttl = default_ttl or settings.cache_default_ttl
        self._history = history
        self._clock = clock
        self._entries: Dict[str, CacheEntry[RAGCacheRecord]] = {}
        self._stats = CacheStats()
        self._sweeper = PeriodicTask(
            "rag-memory-sweep",
            sweep_interval or settings.memory_sweep_interval_seconds,
            self._sweep,
            sleep=sleep,
        )

    @property
    def stats(self) -> CacheStats:
        return self._stats

    def __len__(self) -> int:
        return len(self._entries)

    def start(self) -> None:
        """Start the periodic expiry sweep."""
        self._sweeper.start()

    async def stop(self) -> None:
        await self._sweeper.stop()

    async def get(
        self,
        query: str,
        user_id: str,
        subject_id: Optional[str] = None,
        query_type: QueryTypeLike = QueryType.SIMILARITY,
    ) -> Optional[RAGCacheRecord]:
        """Get a cached record, falling back to the search history store."""
        try:
            query_hash = CacheKeys.query_hash(query, user_id, subject_id, query_type)
        except ValueError as e:
            self._stats.record_error()
            self._stats.record_miss()
            log_cache_error(logger, "rag_memory_get", e)
            return None
        key = CacheKeys.memory_entry(query_hash, user_id)

        entry = self._entries.get(key)
        if entry is not None:
            if not entry.is_expired(self._clock()):
                self._stats.record_hit()
                return entry.value
            del self._entries[key]

        record = await self._load_from_history(query, user_id, subject_id, query_type, query_hash)
        if record is None:
            self._stats.record_miss()
            return None

        self._stats.record_hit()
        return record

    async def _load_from_history(
        self,
        query: str,
        user_id: str,
        subject_id: Optional[str],
        query_type: QueryTypeLike,
        query_hash: str,
    ) -> Optional[RAGCacheRecord]:
        if self._history is None:
            return None

        try:
            row = await self._history.find_recent(user_id, query, subject_id)
        except Exception as e:
            self._stats.record_error()
            log_cache_error(logger, "search_history_lookup", e)
            return None

        if row is None:
            return None

        created = row.created_at.timestamp()
        if self._clock() - created > self.default_ttl:
            return None

        # The history only knows that the search happened, not what it returned.
        record = RAGCacheRecord(
            id=row.id,
            user_id=row.user_id,
            subject_id=row.subject_id,
            query=row.query,
            query_hash=query_hash,
            results=[],
            context=None,
            timestamp=row.created_at,
            ttl_seconds=self.default_ttl,
            query_type=normalize_query_type(query_type),
        )
        self._put(CacheEntry(value=record, created_at=created, ttl_seconds=self.default_ttl))
        return record

    async def set(
        self,
        query: str,
        user_id: str,
        subject_id: Optional[str],
        results: List[Any],
        context: Any = None,
        query_type: QueryTypeLike = QueryType.SIMILARITY,
        response_time_ms: Optional[float] = None,
    ) -> bool:
        """Store results in memory and record the search in the history store."""
        try:
            query_type_value = normalize_query_type(query_type)
        except ValueError as e:
            self._stats.record_error()
            log_cache_error(logger, "rag_memory_set", e)
            return False
        query_hash = CacheKeys.query_hash(query, user_id, subject_id, query_type_value)
        now = self._clock()

        record = RAGCacheRecord(
            id=f"mem-{uuid.uuid4().hex}",
            user_id=user_id,
            subject_id=subject_id,
            query=query,
            query_hash=query_hash,
            results=results,
            context=context,
            timestamp=from_timestamp(now),
            ttl_seconds=self.default_ttl,
            query_type=query_type_value,
            response_time_ms=response_time_ms,
        )
        self._put(CacheEntry(value=record, created_at=now, ttl_seconds=self.default_ttl))

        if self._history is not None:
            try:
                await self._history.record_search(
                    user_id, subject_id, query, len(results), response_time_ms
                )
            except Exception as e:
                self._stats.record_error()
                log_cache_error(logger, "search_history_record", e)

        return True

    def _put(self, entry: CacheEntry[RAGCacheRecord]) -> None:
        key = CacheKeys.memory_entry(entry.value.query_hash, entry.value.user_id)
        if key not in self._entries and len(self._entries) >= self.max_items:
            self._evict_oldest()
        self._entries[key] = entry

    def _evict_oldest(self) -> None:
        if not self._entries:
            return
        oldest_key = min(self._entries, key=lambda k: self._entries[k].created_at)
        del self._entries[oldest_key]
        self._stats.evictions += 1

    async def invalidate_user(self, user_id: str) -> int:
        """Drop every entry belonging to a user."""
        keys = [key for key, entry in self._entries.items() if entry.value.user_id == user_id]
        for key in keys:
            del self._entries[key]
        if keys:
            logger.info(f"Invalidated {len(keys)} in-memory entries for user {user_id}")
        return len(keys)

    async def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def cleanup(self) -> int:
        """Remove expired entries.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def _sweep(self) -> None:
        removed = self.cleanup()
        if removed:
            logger.info(f"In-memory RAG cache cleanup: removed {removed} expired entries")

    def get_stats(self) -> Dict[str, Any]:
        return self._stats.to_dict()

    def reset_stats(self) -> None:
        self._stats.reset()

    def get_size_info(self) -> Dict[str, Any]:
        return {
            "memory_items": len(self._entries),
            "max_memory_items": self.max_items,
            "memory_usage": self._estimate_memory_usage(),
        }

    def _estimate_memory_usage(self) -> str:
        size = 0
        for key, entry in self._entries.items():
            size += len(key.encode("utf-8"))
            size += len(json.dumps(entry.value.to_dict(), default=str).encode("utf-8"))
        return format_bytes(size)
