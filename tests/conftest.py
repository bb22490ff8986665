"""Shared test fixtures for the cache services."""

import pytest
import pytest_asyncio

from studycache.services.cache import (
    CacheManager,
    CacheManagerConfig,
    InMemoryRAGCache,
    RedisClient,
    RedisConfig,
    RedisRAGCache,
    SessionCache,
    create_named_caches,
)
from tests.fakes import FakeClock, FakeRedis, FakeSearchHistory, FakeSleep

RAG_PREFIX = "learnsynth:rag:"
SESSION_PREFIX = "learnsynth:session:"


# ============================================================================
# Infrastructure Fixtures
# ============================================================================

@pytest.fixture
def clock():
    """Virtual clock shared by the fake store and the caches."""
    return FakeClock()


@pytest.fixture
def fake_sleep(clock):
    return FakeSleep(clock)


@pytest.fixture
def fake_redis(clock):
    """In-memory Redis double."""
    return FakeRedis(clock)


@pytest.fixture
def redis_config():
    return RedisConfig(host="localhost", port=6379)


@pytest.fixture
def redis_client(fake_redis, redis_config, clock, fake_sleep):
    """A Redis client wired to the fake store, not yet connected."""
    return RedisClient(
        redis_config,
        client_factory=lambda: fake_redis,
        clock=clock,
        sleep=fake_sleep,
    )


@pytest_asyncio.fixture
async def connected_client(redis_client):
    """A connected Redis client."""
    await redis_client.connect()
    yield redis_client
    await redis_client.disconnect()


@pytest.fixture
def search_history(clock):
    return FakeSearchHistory(clock)


# ============================================================================
# Cache Fixtures
# ============================================================================

@pytest.fixture
def rag_redis(connected_client):
    return RedisRAGCache(connected_client, prefix=RAG_PREFIX, default_ttl=3600, max_entries=10000)


@pytest.fixture
def rag_memory(clock):
    return InMemoryRAGCache(max_items=1000, default_ttl=3600, clock=clock)


@pytest.fixture
def sessions(connected_client, clock):
    return SessionCache(connected_client, prefix=SESSION_PREFIX, default_ttl=3600, clock=clock)


@pytest.fixture
def named_caches(connected_client):
    return create_named_caches(connected_client)


@pytest_asyncio.fixture
async def cache_manager(connected_client, rag_redis, rag_memory, sessions, named_caches):
    """An initialized cache manager with both tiers enabled."""
    manager = CacheManager(
        connected_client,
        rag_redis,
        rag_memory,
        sessions,
        named_caches,
        config=CacheManagerConfig(),
        min_hit_rate=50.0,
    )
    await manager.initialize()
    yield manager
    await manager.shutdown()
