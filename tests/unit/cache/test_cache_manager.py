"""Tests for the cache manager facade."""

import pytest

from studycache.services.cache import (
    CacheManager,
    CacheManagerConfig,
    InMemoryRAGCache,
    RedisRAGCache,
    SessionCache,
    create_named_caches,
)

RESULTS = [{"id": "r1"}, {"id": "r2"}]


class TestInitialization:
    """Tests for startup probing."""

    @pytest.mark.asyncio
    async def test_redis_available(self, cache_manager, connected_client):
        assert cache_manager.get_config().enable_redis is True
        assert connected_client._monitor.running is True
        assert cache_manager.rag_memory._sweeper.running is True
        assert cache_manager.sessions._sweeper.running is True

    @pytest.mark.asyncio
    async def test_unreachable_redis_falls_back_to_memory(self, redis_client, fake_redis, clock):
        """With Redis down at startup, RAG caching works through memory only."""
        fake_redis.available = False
        manager = CacheManager(
            redis_client,
            RedisRAGCache(redis_client),
            InMemoryRAGCache(clock=clock),
            SessionCache(redis_client, clock=clock),
            create_named_caches(redis_client),
            config=CacheManagerConfig(),
        )

        await manager.initialize()
        try:
            assert manager.get_config().enable_redis is False

            assert await manager.set_rag_results("ml basics", "userA", None, RESULTS, None) is True
            record = await manager.get_rag_results("ml basics", "userA")
            assert record.results == RESULTS
            assert await manager.get_rag_results("ml basics", "userB") is None

            # Redis coming back later does not re-enable the durable tier
            fake_redis.available = True
            assert manager.get_config().enable_redis is False
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, cache_manager):
        await cache_manager.initialize()
        assert cache_manager.get_config().enable_redis is True


class TestTieredLookup:
    """Tests for read and write paths across tiers."""

    @pytest.mark.asyncio
    async def test_write_reaches_both_tiers(self, cache_manager, rag_redis, rag_memory):
        await cache_manager.set_rag_results("q", "userA", "S1", RESULTS, {"c": 1}, "hybrid")

        assert await rag_redis.get("q", "userA", "S1", "hybrid") is not None
        assert await rag_memory.get("q", "userA", "S1", "hybrid") is not None

    @pytest.mark.asyncio
    async def test_redis_hit_wins(self, cache_manager, rag_memory):
        await cache_manager.set_rag_results("q", "userA", None, RESULTS, None)

        record = await cache_manager.get_rag_results("q", "userA")

        assert record.id.startswith("cache-")
        assert rag_memory.get_stats()["total_requests"] == 0

    @pytest.mark.asyncio
    async def test_falls_back_to_memory_without_promotion(self, cache_manager, rag_redis):
        await cache_manager.set_rag_results("q", "userA", None, RESULTS, None)
        await rag_redis.clear()

        record = await cache_manager.get_rag_results("q", "userA")

        assert record.id.startswith("mem-")
        assert await rag_redis.get("q", "userA") is None

    @pytest.mark.asyncio
    async def test_miss_in_both_tiers(self, cache_manager):
        assert await cache_manager.get_rag_results("never stored", "userA") is None

    @pytest.mark.asyncio
    async def test_unknown_query_type_is_a_miss(self, cache_manager, rag_memory):
        assert await cache_manager.set_rag_results("q", "userA", None, RESULTS, None, "semantic") is False
        assert await cache_manager.get_rag_results("q", "userA", None, "semantic") is None
        assert len(rag_memory) == 0
        assert rag_memory.get_stats()["errors"] == 2


class TestInvalidation:
    """Tests for invalidation routing."""

    @pytest.mark.asyncio
    async def test_subject_invalidation_is_durable_only(self, cache_manager, rag_redis):
        await cache_manager.set_rag_results("q", "userA", "S1", RESULTS, None)

        assert await cache_manager.invalidate_subject("S1") == 1

        assert await rag_redis.get("q", "userA", "S1") is None
        # The in-memory copy survives and still answers
        record = await cache_manager.get_rag_results("q", "userA", "S1")
        assert record.id.startswith("mem-")

    @pytest.mark.asyncio
    async def test_user_invalidation_covers_both_tiers(self, cache_manager):
        await cache_manager.set_rag_results("q1", "userA", None, RESULTS, None)
        await cache_manager.set_rag_results("q2", "userA", "S1", RESULTS, None)
        await cache_manager.set_rag_results("q1", "userB", None, RESULTS, None)

        assert await cache_manager.invalidate_user("userA") == 4

        assert await cache_manager.get_rag_results("q1", "userA") is None
        assert await cache_manager.get_rag_results("q1", "userB") is not None

    @pytest.mark.asyncio
    async def test_type_invalidation(self, cache_manager, rag_redis):
        await cache_manager.set_rag_results("q", "userA", None, RESULTS, None, "keyword")

        assert await cache_manager.invalidate_by_type("keyword") == 1
        assert await rag_redis.get("q", "userA", None, "keyword") is None


class TestObservability:
    """Tests for metrics and health."""

    @pytest.mark.asyncio
    async def test_metrics(self, cache_manager, named_caches):
        await cache_manager.set_rag_results("q", "userA", None, RESULTS, None)
        await cache_manager.get_rag_results("q", "userA")
        await cache_manager.get_rag_results("other", "userA")
        await cache_manager.sessions.set_session("u1", "s1", {})
        await named_caches.api_responses.set("GET /subjects", {"items": []})

        metrics = (await cache_manager.get_metrics()).to_dict()

        assert metrics["redis"]["connected"] is True
        assert metrics["redis"]["state"] == "connected"
        assert metrics["rag"] == {
            "redis_hits": 1,
            "redis_misses": 1,
            "memory_hits": 0,
            "memory_misses": 1,
            "hit_rate": 33.33,
        }
        assert metrics["sessions"] == {"total_sessions": 2, "total_users": 1}
        assert metrics["generic"] == {
            "user_preferences_entries": 0,
            "api_responses_entries": 1,
            "content_metadata_entries": 0,
        }

    @pytest.mark.asyncio
    async def test_hit_rate_without_requests(self, cache_manager):
        metrics = await cache_manager.get_metrics()
        assert metrics.rag["hit_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_healthy(self, cache_manager):
        await cache_manager.set_rag_results("q", "userA", None, RESULTS, None)
        await cache_manager.get_rag_results("q", "userA")

        report = await cache_manager.health_check()

        assert report.status == "healthy"
        assert report.message == "All cache systems healthy"
        assert report.issues == []

    @pytest.mark.asyncio
    async def test_low_hit_rate_is_degraded(self, cache_manager):
        report = await cache_manager.health_check()

        assert report.status == "degraded"
        assert report.issues == ["Low RAG cache hit rate: 0.0%"]

    @pytest.mark.asyncio
    async def test_slow_redis_is_degraded(self, cache_manager, fake_redis):
        await cache_manager.set_rag_results("q", "userA", None, RESULTS, None)
        await cache_manager.get_rag_results("q", "userA")
        fake_redis.ping_latency = 2.0

        report = await cache_manager.health_check()

        assert report.status == "degraded"
        assert report.issues == ["Redis latency: 2000.0ms"]

    @pytest.mark.asyncio
    async def test_unreachable_redis_is_unhealthy(self, cache_manager, fake_redis):
        fake_redis.available = False

        report = await cache_manager.health_check()

        assert report.status == "unhealthy"
        assert "Redis is unhealthy" in report.issues
        assert report.details["redis"]["status"] == "unhealthy"


class TestAdministration:
    """Tests for bulk operations and configuration."""

    @pytest.mark.asyncio
    async def test_clear_all(self, cache_manager, named_caches, fake_redis):
        await cache_manager.set_rag_results("q", "userA", "S1", RESULTS, None)
        await named_caches.user_preferences.set("userA", {"theme": "dark"})
        await cache_manager.sessions.set_session("u1", "s1", {})

        result = await cache_manager.clear_all()

        assert result == {"redis_cleared": 5, "memory_cleared": 1, "sessions_deleted": 2}
        assert fake_redis.keys() == []

    @pytest.mark.asyncio
    async def test_warm_up(self, cache_manager):
        result = await cache_manager.warm_up(
            rag=[{"query": "q", "user_id": "userA", "results": RESULTS, "context": None}],
            sessions=[{"user_id": "u1", "session_id": "s1", "data": {"step": 1}}],
        )

        assert result == {"rag": 1, "sessions": 1}
        assert await cache_manager.get_rag_results("q", "userA") is not None
        assert (await cache_manager.sessions.get_session("u1", "s1")).data == {"step": 1}

    @pytest.mark.asyncio
    async def test_cleanup(self, cache_manager, rag_memory, clock):
        await cache_manager.set_rag_results("old", "userA", None, RESULTS, None, ttl=7200)
        clock.advance(3600)
        await cache_manager.set_rag_results("new", "userA", None, RESULTS, None)

        result = await cache_manager.cleanup()

        assert result == {"redis_entries": 2, "memory_cleaned": 1}
        assert len(rag_memory) == 1

    @pytest.mark.asyncio
    async def test_update_config(self, rag_redis, rag_memory, sessions, named_caches, connected_client):
        manager = CacheManager(connected_client, rag_redis, rag_memory, sessions, named_caches,
                               config=CacheManagerConfig())

        updated = manager.update_config(enable_in_memory=False, default_ttl=60)

        assert updated.enable_in_memory is False
        assert updated.default_ttl == 60
        assert rag_memory.default_ttl == 60
        assert manager.get_config().enable_redis is True
        with pytest.raises(TypeError):
            manager.update_config(no_such_field=True)

    @pytest.mark.asyncio
    async def test_disabled_memory_tier_is_skipped(self, cache_manager, rag_memory):
        cache_manager.update_config(enable_in_memory=False)

        await cache_manager.set_rag_results("q", "userA", None, RESULTS, None)

        assert len(rag_memory) == 0

    @pytest.mark.asyncio
    async def test_config_sizes_the_memory_tier(self, cache_manager, rag_memory):
        cache_manager.update_config(max_memory_items=1)

        await cache_manager.set_rag_results("q1", "userA", None, RESULTS, None)
        await cache_manager.set_rag_results("q2", "userA", None, RESULTS, None)

        assert len(rag_memory) == 1
