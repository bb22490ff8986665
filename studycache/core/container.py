"""Wiring for the cache subsystem.

Builds the Redis client and every cache from settings, in dependency order,
and tears them down again. Nothing here is a module-level singleton: the
host process creates one container at startup and passes it around.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional

from studycache.core.logging import get_logger

if TYPE_CHECKING:
    from studycache.core.config import Settings
    from studycache.services.cache import (
        CacheManager,
        NamedCaches,
        RedisClient,
        SearchHistoryStore,
        SessionCache,
    )

logger = get_logger(__name__)


class ServiceNotInitializedError(Exception):
    """Raised when accessing a service that hasn't been initialized."""

    def __init__(self, service_name: str):
        super().__init__(f"Service '{service_name}' has not been initialized. "
                         f"Call container.initialize() first.")
        self.service_name = service_name


@dataclass
class CacheContainer:
    """Owns the Redis client and every cache built on it.

    Usage:
        container = CacheContainer()
        await container.initialize(settings)

        record = await container.cache_manager.get_rag_results("query", "user-1")

        await container.shutdown()
    """

    client_factory: Optional[Callable[[], Any]] = field(default=None, repr=False)
    search_history: Optional[SearchHistoryStore] = field(default=None, repr=False)
    _redis_client: Optional[RedisClient] = field(default=None, repr=False)
    _cache_manager: Optional[CacheManager] = field(default=None, repr=False)
    _initialized: bool = field(default=False, repr=True)
    _settings: Optional[Settings] = field(default=None, repr=False)

    async def initialize(self, settings: Settings, install_signal_handlers: bool = False) -> None:
        """Build and initialize all caches.

        Args:
            settings: Application settings.
            install_signal_handlers: Close the Redis connection on SIGINT/SIGTERM.
        """
        if self._initialized:
            logger.warning("Container already initialized, skipping")
            return

        self._settings = settings
        logger.info("Initializing cache container...")

        # Import here to keep the settings-only import path light
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

        try:
            self._redis_client = RedisClient(
                RedisConfig.from_settings(settings), client_factory=self.client_factory
            )
            self._cache_manager = CacheManager(
                redis_client=self._redis_client,
                rag_redis=RedisRAGCache(
                    self._redis_client,
                    prefix=settings.rag_cache_prefix,
                    default_ttl=settings.cache_default_ttl,
                    max_entries=settings.rag_cache_max_entries,
                ),
                rag_memory=InMemoryRAGCache(
                    max_items=settings.cache_max_memory_items,
                    default_ttl=settings.cache_default_ttl,
                    history=self.search_history,
                    sweep_interval=settings.memory_sweep_interval_seconds,
                ),
                sessions=SessionCache(
                    self._redis_client,
                    prefix=settings.session_prefix,
                    default_ttl=settings.session_default_ttl,
                    sweep_interval=settings.session_sweep_interval_seconds,
                ),
                named_caches=create_named_caches(self._redis_client, settings),
                config=CacheManagerConfig.from_settings(settings),
                min_hit_rate=settings.rag_min_hit_rate,
            )
            await self._cache_manager.initialize()

            if install_signal_handlers:
                self._redis_client.install_signal_handlers()

            self._initialized = True
            logger.info("Cache container initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize cache container: {e}")
            await self.shutdown()
            raise

    async def shutdown(self) -> None:
        """Stop background tasks and close the Redis connection."""
        logger.info("Shutting down cache container...")

        if self._cache_manager:
            try:
                await self._cache_manager.shutdown()
            except Exception as e:
                logger.error(f"Error shutting down cache manager: {e}")

        if self._redis_client and not self._redis_client.is_shutting_down:
            try:
                await self._redis_client.disconnect()
            except Exception as e:
                logger.error(f"Error disconnecting Redis: {e}")

        self._initialized = False
        logger.info("Cache container shut down")

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            raise ServiceNotInitializedError("settings")
        return self._settings

    @property
    def redis_client(self) -> RedisClient:
        if self._redis_client is None:
            raise ServiceNotInitializedError("redis_client")
        return self._redis_client

    @property
    def cache_manager(self) -> CacheManager:
        if self._cache_manager is None:
            raise ServiceNotInitializedError("cache_manager")
        return self._cache_manager

    @property
    def sessions(self) -> SessionCache:
        return self.cache_manager.sessions

    @property
    def named_caches(self) -> NamedCaches:
        return self.cache_manager.named_caches
