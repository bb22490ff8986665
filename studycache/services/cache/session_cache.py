"""User session state cache stored in Redis."""

import asyncio
import json
import time
from typing import Any, Callable, Dict, List, Optional

from studycache.core.config import settings
from studycache.core.errors import guarded
from studycache.core.logging import get_logger
from studycache.services.cache.background import PeriodicTask, SleepFunc
from studycache.services.cache.base import RedisBackedCache
from studycache.services.cache.keys import CacheKeys
from studycache.services.cache.models import SessionRecord, from_timestamp
from studycache.services.cache.redis_client import RedisClient

logger = get_logger(__name__)


def _empty_session_stats() -> Dict[str, Any]:
    return {"total_sessions": 0, "total_users": 0, "memory_usage": "0 KB"}


class SessionCache(RedisBackedCache):
    """Stores one SessionRecord per (user, session) plus a per-user index.

    Reading a session touches it: ``last_accessed`` is updated and the
    record is rewritten with the default TTL, whatever TTL it was
    originally written with.
    """

    def __init__(
        self,
        redis_client: RedisClient,
        prefix: Optional[str] = None,
        default_ttl: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        sweep_interval: Optional[float] = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        super().__init__(redis_client, logger)
        self.prefix = prefix or settings.session_prefix
        self.default_ttl = default_ttl or settings.session_default_ttl
        self._clock = clock
        self._sweeper = PeriodicTask(
            "session-cache-sweep",
            sweep_interval or settings.session_sweep_interval_seconds,
            self._sweep,
            sleep=sleep,
        )

    def start(self) -> None:
        """Start the periodic cleanup sweep."""
        self._sweeper.start()

    async def stop(self) -> None:
        await self._sweeper.stop()

    async def _write(self, client: Any, record: SessionRecord, ttl: int) -> None:
        key = CacheKeys.session(self.prefix, record.user_id, record.session_id)
        await client.set(key, json.dumps(record.to_dict()), ex=ttl)

        user_sessions_key = CacheKeys.user_sessions(self.prefix, record.user_id)
        await client.sadd(user_sessions_key, record.session_id)
        await client.expire(user_sessions_key, ttl)

    async def set_session(
        self,
        user_id: str,
        session_id: str,
        data: Dict[str, Any],
        ttl: Optional[int] = None,
    ) -> bool:
        """Store session data.

        Returns:
            True if the session was written.
        """
        client = self._client()
        if client is None:
            logger.warning("Redis not available, session not cached")
            return False

        ttl = ttl or self.default_ttl
        now = self._clock()
        record = SessionRecord(
            user_id=user_id,
            session_id=session_id,
            data=data,
            created_at=from_timestamp(now),
            last_accessed=from_timestamp(now),
            expires_at=from_timestamp(now + ttl),
        )

        try:
            await self._write(client, record, ttl)
        except Exception as e:
            self._handle_error("set_session", e)
            return False

        logger.debug(f"Session cached: {session_id} for user {user_id}")
        return True

    async def _load(self, client: Any, user_id: str, session_id: str) -> Optional[SessionRecord]:
        cached = await client.get(CacheKeys.session(self.prefix, user_id, session_id))
        if cached is None:
            return None
        return SessionRecord.from_dict(json.loads(cached))

    async def _touch(self, client: Any, record: SessionRecord) -> None:
        now = self._clock()
        record.last_accessed = from_timestamp(now)
        record.expires_at = from_timestamp(now + self.default_ttl)
        await self._write(client, record, self.default_ttl)

    async def get_session(self, user_id: str, session_id: str) -> Optional[SessionRecord]:
        """Get a session and refresh its access time and TTL."""
        client = self._client()
        if client is None:
            logger.warning("Redis not available, cannot retrieve session")
            return None

        try:
            record = await self._load(client, user_id, session_id)
            if record is None:
                self._stats.record_miss()
                return None
            await self._touch(client, record)
        except Exception as e:
            self._handle_error("get_session", e)
            return None

        self._stats.record_hit()
        return record

    async def update_session(self, user_id: str, session_id: str, data: Dict[str, Any]) -> bool:
        """Merge ``data`` into an existing session's data.

        Returns:
            False if the session does not exist.
        """
        client = self._client()
        if client is None:
            return False

        try:
            record = await self._load(client, user_id, session_id)
            if record is None:
                return False
            record.data = {**record.data, **data}
            await self._touch(client, record)
        except Exception as e:
            self._handle_error("update_session", e)
            return False

        return True

    async def delete_session(self, user_id: str, session_id: str) -> bool:
        client = self._client()
        if client is None:
            return False

        try:
            await client.delete(CacheKeys.session(self.prefix, user_id, session_id))
            await client.srem(CacheKeys.user_sessions(self.prefix, user_id), session_id)
        except Exception as e:
            self._handle_error("delete_session", e)
            return False

        logger.debug(f"Session deleted: {session_id} for user {user_id}")
        return True

    async def delete_user_sessions(self, user_id: str) -> int:
        """Delete every session of a user.

        Returns:
            Number of session ids that were indexed for the user.
        """
        client = self._client()
        if client is None:
            return 0

        try:
            user_sessions_key = CacheKeys.user_sessions(self.prefix, user_id)
            session_ids = await client.smembers(user_sessions_key)
            if not session_ids:
                return 0

            keys = [CacheKeys.session(self.prefix, user_id, sid) for sid in session_ids]
            await client.delete(*keys)
            await client.delete(user_sessions_key)
        except Exception as e:
            self._handle_error("delete_user_sessions", e)
            return 0

        logger.debug(f"Deleted {len(session_ids)} sessions for user {user_id}")
        return len(session_ids)

    @guarded(fallback=False)
    async def has_session(self, user_id: str, session_id: str) -> bool:
        client = self._client()
        if client is None:
            return False
        return await client.exists(CacheKeys.session(self.prefix, user_id, session_id)) == 1

    @guarded(fallback=list)
    async def get_user_session_ids(self, user_id: str) -> List[str]:
        client = self._client()
        if client is None:
            return []
        return sorted(await client.smembers(CacheKeys.user_sessions(self.prefix, user_id)))

    @guarded(fallback=False)
    async def extend_session(self, user_id: str, session_id: str, ttl: Optional[int] = None) -> bool:
        """Reset a session's TTL without rewriting it."""
        client = self._client()
        if client is None:
            return False
        key = CacheKeys.session(self.prefix, user_id, session_id)
        return bool(await client.expire(key, ttl or self.default_ttl))

    async def clear(self) -> int:
        """Delete every session-prefixed key."""
        client = self._client()
        if client is None:
            return 0

        try:
            pattern = CacheKeys.prefix_pattern(self.prefix)
            keys = [key async for key in client.scan_iter(match=pattern)]
            deleted = await client.delete(*keys) if keys else 0
        except Exception as e:
            self._handle_error("clear_sessions", e)
            return 0

        logger.info(f"Cleared {deleted} session keys")
        return deleted

    async def get_stats(self) -> Dict[str, Any]:
        """Approximate counts.

        ``total_sessions`` counts every key under the prefix, indices
        included; ``total_users`` counts per-user index keys.
        """
        client = self._client()
        if client is None:
            return _empty_session_stats()

        try:
            pattern = CacheKeys.prefix_pattern(self.prefix)
            keys = [key async for key in client.scan_iter(match=pattern)]
            users_pattern = CacheKeys.prefix_pattern(f"{self.prefix}user:")
            user_keys = [key async for key in client.scan_iter(match=users_pattern)]
        except Exception as e:
            self._handle_error("session_stats", e)
            return _empty_session_stats()

        return {
            "total_sessions": len(keys),
            "total_users": len(user_keys),
            "memory_usage": await self._redis.memory_usage(),
        }

    async def cleanup(self) -> int:
        """Delete session keys that carry no TTL.

        Redis expires keys natively; this pass catches keys written without
        an expiry and reports how many it removed.
        """
        client = self._client()
        if client is None:
            return 0

        removed = 0
        try:
            async for key in client.scan_iter(match=CacheKeys.prefix_pattern(self.prefix)):
                # -2 means the key expired after the scan listed it
                if await client.ttl(key) == -1:
                    removed += await client.delete(key)
        except Exception as e:
            self._handle_error("session_cleanup", e)
            return removed

        if removed:
            logger.info(f"Cleaned up {removed} expired session keys")
        return removed

    async def _sweep(self) -> None:
        await self.cleanup()
