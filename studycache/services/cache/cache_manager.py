"""Cache manager: the single entry point for tiered RAG caching.

Coordinates the durable Redis tier and the in-memory fallback tier, and
aggregates health and metrics across every cache (RAG, sessions, named
generic caches).

Read path:  Redis (if enabled) -> in-memory (if enabled) -> miss
Write path: every enabled tier, independently and best-effort
"""

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from studycache.core.config import Settings, settings
from studycache.core.errors import CacheConnectionError
from studycache.core.logging import get_logger
from studycache.services.cache.generic_cache import NamedCaches
from studycache.services.cache.models import QueryType, QueryTypeLike, RAGCacheRecord
from studycache.services.cache.rag_cache_memory import InMemoryRAGCache
from studycache.services.cache.rag_cache_redis import RedisRAGCache
from studycache.services.cache.redis_client import RedisClient
from studycache.services.cache.session_cache import SessionCache

logger = get_logger(__name__)


@dataclass
class CacheManagerConfig:
    """Runtime-adjustable tier configuration."""

    enable_redis: bool = True
    enable_in_memory: bool = True
    default_ttl: int = 3600
    max_memory_items: int = 1000

    @classmethod
    def from_settings(cls, config: Settings) -> "CacheManagerConfig":
        return cls(
            enable_redis=config.enable_redis,
            enable_in_memory=config.enable_in_memory,
            default_ttl=config.cache_default_ttl,
            max_memory_items=config.cache_max_memory_items,
        )


@dataclass
class CacheMetrics:
    """Snapshot of every cache's counters."""

    redis: Dict[str, Any]
    rag: Dict[str, Any]
    sessions: Dict[str, Any]
    generic: Dict[str, int]

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class CacheHealthReport:
    """Overall cache health."""

    status: str  # healthy | degraded | unhealthy
    message: str
    issues: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def overall_hit_rate(*stats: Dict[str, Any]) -> float:
    """Combined hit rate in percent across tiers, rounded to two decimals."""
    total_requests = sum(s["total_requests"] for s in stats)
    total_hits = sum(s["hits"] for s in stats)
    if total_requests == 0:
        return 0.0
    return round(total_hits / total_requests * 100, 2)


class CacheManager:
    """Facade over the RAG tiers plus the session and named generic caches."""

    def __init__(
        self,
        redis_client: RedisClient,
        rag_redis: RedisRAGCache,
        rag_memory: InMemoryRAGCache,
        sessions: SessionCache,
        named_caches: NamedCaches,
        config: Optional[CacheManagerConfig] = None,
        min_hit_rate: Optional[float] = None,
    ):
        self.redis_client = redis_client
        self.rag_redis = rag_redis
        self.rag_memory = rag_memory
        self.sessions = sessions
        self.named_caches = named_caches
        self._config = config or CacheManagerConfig.from_settings(settings)
        self._min_hit_rate = settings.rag_min_hit_rate if min_hit_rate is None else min_hit_rate
        self._initialized = False
        self._apply_memory_config()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        """Probe Redis once and start background tasks.

        If Redis is unreachable here, the durable tier stays disabled for the
        rest of the process lifetime even if Redis comes back later.
        """
        if self._initialized:
            return

        logger.info("Initializing cache systems...")

        if self._config.enable_redis:
            try:
                await self.redis_client.connect()
            except CacheConnectionError as e:
                logger.warning(f"Redis connection failed during initialization: {e.message}")

            if await self.redis_client.is_available():
                logger.info("Redis cache is available and ready")
                self.redis_client.start_monitor()
                self.sessions.start()
            else:
                logger.warning("Redis cache is not available, falling back to in-memory cache")
                self._config.enable_redis = False

        if self._config.enable_in_memory:
            self.rag_memory.start()

        tier = "Redis" if self._config.enable_redis else "in-memory cache"
        logger.info(f"Using {tier} for RAG caching")
        self._initialized = True
        logger.info("Cache systems initialized")

    async def shutdown(self) -> None:
        """Stop background tasks. The Redis connection is closed by its owner."""
        await self.rag_memory.stop()
        await self.sessions.stop()
        self._initialized = False
        logger.info("Cache manager shut down")

    def get_config(self) -> CacheManagerConfig:
        return dataclasses.replace(self._config)

    def update_config(self, **changes: Any) -> CacheManagerConfig:
        """Update tier configuration.

        Raises:
            TypeError: If a change names an unknown field.
        """
        self._config = dataclasses.replace(self._config, **changes)
        self._apply_memory_config()
        logger.info(f"Cache configuration updated: {changes}")
        return self.get_config()

    def _apply_memory_config(self) -> None:
        self.rag_memory.default_ttl = self._config.default_ttl
        self.rag_memory.max_items = self._config.max_memory_items

    # -------------------------------------------------------------------------
    # RAG results
    # -------------------------------------------------------------------------

    async def get_rag_results(
        self,
        query: str,
        user_id: str,
        subject_id: Optional[str] = None,
        query_type: QueryTypeLike = QueryType.SIMILARITY,
    ) -> Optional[RAGCacheRecord]:
        """Look up a RAG result, durable tier first. No cross-tier promotion."""
        if self._config.enable_redis:
            record = await self.rag_redis.get(query, user_id, subject_id, query_type)
            if record is not None:
                logger.debug(f"RAG cache hit (Redis): {query[:50]}")
                return record

        if self._config.enable_in_memory:
            record = await self.rag_memory.get(query, user_id, subject_id, query_type)
            if record is not None:
                logger.debug(f"RAG cache hit (memory): {query[:50]}")
                return record

        logger.debug(f"RAG cache miss: {query[:50]}")
        return None

    async def set_rag_results(
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
        """Write a RAG result to every enabled tier.

        Returns:
            True if at least one tier accepted the write.
        """
        stored = False
        if self._config.enable_redis:
            stored = await self.rag_redis.set(
                query, user_id, subject_id, results, context, query_type, ttl, response_time_ms
            ) or stored

        if self._config.enable_in_memory:
            stored = await self.rag_memory.set(
                query, user_id, subject_id, results, context, query_type, response_time_ms
            ) or stored

        logger.debug(f"RAG results cached: {query[:50]}")
        return stored

    async def invalidate_subject(self, subject_id: str) -> int:
        """Invalidate a subject. Only the durable tier tracks subjects."""
        logger.info(f"Invalidating RAG cache for subject: {subject_id}")
        removed = 0
        if self._config.enable_redis:
            removed = await self.rag_redis.invalidate_subject(subject_id)
        return removed

    async def invalidate_user(self, user_id: str) -> int:
        logger.info(f"Invalidating RAG cache for user: {user_id}")
        removed = 0
        if self._config.enable_redis:
            removed += await self.rag_redis.invalidate_user(user_id)
        if self._config.enable_in_memory:
            removed += await self.rag_memory.invalidate_user(user_id)
        return removed

    async def invalidate_by_type(self, query_type: QueryTypeLike) -> int:
        removed = 0
        if self._config.enable_redis:
            removed = await self.rag_redis.invalidate_by_type(query_type)
        return removed

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    async def get_metrics(self) -> CacheMetrics:
        server = await self.redis_client.get_stats()
        redis_stats = self.rag_redis.get_stats()
        memory_stats = self.rag_memory.get_stats()
        session_stats = await self.sessions.get_stats()

        generic: Dict[str, int] = {}
        for name, cache in self.named_caches.all().items():
            generic[f"{name}_entries"] = (await cache.get_stats())["total_entries"]

        return CacheMetrics(
            redis={
                "connected": server.connected,
                "memory_usage": server.memory_usage,
                "connected_clients": server.connected_clients,
                "state": self.redis_client.state.value,
            },
            rag={
                "redis_hits": redis_stats["hits"],
                "redis_misses": redis_stats["misses"],
                "memory_hits": memory_stats["hits"],
                "memory_misses": memory_stats["misses"],
                "hit_rate": overall_hit_rate(redis_stats, memory_stats),
            },
            sessions={
                "total_sessions": session_stats["total_sessions"],
                "total_users": session_stats["total_users"],
            },
            generic=generic,
        )

    async def health_check(self) -> CacheHealthReport:
        redis_health = await self.redis_client.health_check()
        rag_stats = self.rag_redis.get_stats()
        session_stats = await self.sessions.get_stats()

        status = "healthy"
        issues: List[str] = []

        if redis_health.status == "unhealthy":
            status = "unhealthy"
            issues.append("Redis is unhealthy")
        elif redis_health.status == "degraded":
            status = "degraded"
            issues.append(f"Redis latency: {redis_health.latency_ms}ms")

        if rag_stats["hit_rate"] < self._min_hit_rate:
            issues.append(f"Low RAG cache hit rate: {rag_stats['hit_rate']}%")

        if issues and status == "healthy":
            status = "degraded"

        return CacheHealthReport(
            status=status,
            message=f"Issues: {', '.join(issues)}" if issues else "All cache systems healthy",
            issues=issues,
            details={
                "redis": redis_health.to_dict(),
                "rag": rag_stats,
                "sessions": session_stats,
            },
        )

    # -------------------------------------------------------------------------
    # Administration
    # -------------------------------------------------------------------------

    async def clear_all(self) -> Dict[str, int]:
        """Clear every cache."""
        logger.warning("Clearing all caches...")
        redis_cleared = 0
        if self._config.enable_redis:
            redis_cleared += await self.rag_redis.clear()
            for cache in self.named_caches.all().values():
                redis_cleared += await cache.clear()

        memory_cleared = await self.rag_memory.clear()
        sessions_deleted = await self.sessions.clear()

        logger.info("All caches cleared")
        return {
            "redis_cleared": redis_cleared,
            "memory_cleared": memory_cleared,
            "sessions_deleted": sessions_deleted,
        }

    async def warm_up(
        self,
        rag: Optional[List[Dict[str, Any]]] = None,
        sessions: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, int]:
        """Pre-populate the durable RAG tier and sessions.

        Session items carry ``user_id``, ``session_id`` and ``data``.
        """
        logger.info("Warming up caches...")
        rag_written = 0
        sessions_written = 0

        if rag and self._config.enable_redis:
            rag_written = await self.rag_redis.warm_up(rag)

        for item in sessions or []:
            ok = await self.sessions.set_session(item["user_id"], item["session_id"], item.get("data") or {})
            sessions_written += int(ok)

        logger.info("Cache warm-up completed")
        return {"rag": rag_written, "sessions": sessions_written}

    async def cleanup(self) -> Dict[str, int]:
        """Sweep the in-memory tier and count live durable entries.

        Redis expires entries natively, so the durable figure is the number
        of entries still live rather than a number removed.
        """
        redis_entries = 0
        memory_cleaned = 0

        if self._config.enable_redis:
            size_info = await self.rag_redis.get_size_info()
            redis_entries = size_info["total_entries"]

        if self._config.enable_in_memory:
            memory_cleaned = self.rag_memory.cleanup()

        if redis_entries or memory_cleaned:
            logger.info(f"Cache cleanup completed: Redis={redis_entries}, Memory={memory_cleaned}")
        return {"redis_entries": redis_entries, "memory_cleaned": memory_cleaned}
