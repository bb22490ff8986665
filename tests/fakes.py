"""In-memory stand-ins for Redis, time and the search history store."""

import asyncio
import math
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Union

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from studycache.services.cache.models import from_timestamp
from studycache.services.cache.rag_cache_memory import SearchHistoryRow, SearchHistoryStore


def redis_glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """Compile a Redis MATCH pattern (``* ? [...]`` and ``\\`` escapes)."""
    parts = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "\\" and i + 1 < len(pattern):
            parts.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        elif char == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                parts.append(re.escape(char))
            else:
                body = pattern[i + 1:end]
                negate = body.startswith("^")
                if negate:
                    body = body[1:]
                body = body.replace("\\", "\\\\")
                parts.append(f"[{'^' if negate else ''}{body}]")
                i = end
        else:
            parts.append(re.escape(char))
        i += 1
    return re.compile("".join(parts), re.DOTALL)


def redis_glob_match(key: str, pattern: str) -> bool:
    return redis_glob_to_regex(pattern).fullmatch(key) is not None


class FakeClock:
    """Manually advanced clock in epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Records requested delays, advances the clock and yields once."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)
        await asyncio.sleep(0)


class FakePipeline:
    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self._ops: List[tuple] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self._ops.clear()

    def set(self, key: str, value: Any, ex: Optional[int] = None) -> "FakePipeline":
        self._ops.append((key, value, ex))
        return self

    async def execute(self) -> List[Any]:
        self._redis._check()
        results = [await self._redis.set(key, value, ex=ex) for key, value, ex in self._ops]
        self._ops.clear()
        return results


class FakeRedis:
    """The subset of the redis.asyncio.Redis API the caches use.

    Values are stored decoded (as with ``decode_responses=True``). Expiry is
    evaluated lazily against the injected clock.
    """

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock or FakeClock()
        self._data: Dict[str, Union[str, Set[str]]] = {}
        self._expiry: Dict[str, float] = {}
        self.available = True
        self.fail_pings = 0
        self.ping_latency = 0.0
        self.closed = False
        self.info_data: Dict[str, Any] = {"used_memory_human": "1.50M", "connected_clients": 3}

    def _check(self) -> None:
        if not self.available:
            raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")

    def _alive(self, key: str) -> bool:
        expires = self._expiry.get(key)
        if expires is not None and self.clock() >= expires:
            self._data.pop(key, None)
            self._expiry.pop(key, None)
        return key in self._data

    def _live_keys(self) -> List[str]:
        return [key for key in list(self._data) if self._alive(key)]

    def _remove(self, key: str) -> bool:
        if not self._alive(key):
            return False
        del self._data[key]
        self._expiry.pop(key, None)
        return True

    def _set_members(self, key: str) -> Set[str]:
        if not self._alive(key):
            return set()
        value = self._data[key]
        if not isinstance(value, set):
            raise ResponseError("WRONGTYPE Operation against a key holding the wrong kind of value")
        return value

    # Connection

    async def ping(self) -> bool:
        self._check()
        if self.fail_pings > 0:
            self.fail_pings -= 1
            raise RedisConnectionError("Connection reset by peer")
        if self.ping_latency:
            self.clock.advance(self.ping_latency)
        return True

    async def info(self, section: Optional[str] = None) -> Dict[str, Any]:
        self._check()
        return dict(self.info_data)

    async def aclose(self) -> None:
        self.closed = True

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    # Strings

    async def get(self, key: str) -> Optional[str]:
        self._check()
        if not self._alive(key):
            return None
        value = self._data[key]
        if isinstance(value, set):
            raise ResponseError("WRONGTYPE Operation against a key holding the wrong kind of value")
        return value

    async def set(self, key: str, value: Any, ex: Optional[int] = None) -> bool:
        self._check()
        self._data[key] = str(value)
        if ex is not None:
            self._expiry[key] = self.clock() + ex
        else:
            self._expiry.pop(key, None)
        return True

    async def setex(self, key: str, ttl: int, value: Any) -> bool:
        return await self.set(key, value, ex=ttl)

    async def mget(self, keys: Union[str, List[str]], *args: str) -> List[Optional[str]]:
        names = [keys] if isinstance(keys, str) else list(keys)
        names.extend(args)
        return [await self.get(name) for name in names]

    async def incrby(self, key: str, amount: int = 1) -> int:
        self._check()
        current = int(self._data[key]) if self._alive(key) else 0
        self._data[key] = str(current + amount)
        return current + amount

    # Keys

    async def delete(self, *keys: str) -> int:
        self._check()
        return sum(1 for key in keys if self._remove(key))

    async def exists(self, *keys: str) -> int:
        self._check()
        return sum(1 for key in keys if self._alive(key))

    async def scan_iter(self, match: Optional[str] = None, count: Optional[int] = None):
        self._check()
        for key in self._live_keys():
            if match is None or redis_glob_match(key, match):
                yield key

    async def ttl(self, key: str) -> int:
        self._check()
        if not self._alive(key):
            return -2
        expires = self._expiry.get(key)
        if expires is None:
            return -1
        return math.ceil(expires - self.clock())

    async def expire(self, key: str, seconds: int) -> bool:
        self._check()
        if not self._alive(key):
            return False
        self._expiry[key] = self.clock() + seconds
        return True

    # Sets

    async def sadd(self, key: str, *members: str) -> int:
        self._check()
        existing = self._set_members(key)
        if key not in self._data:
            self._data[key] = existing
        added = len(set(members) - existing)
        existing.update(members)
        return added

    async def smembers(self, key: str) -> Set[str]:
        self._check()
        return set(self._set_members(key))

    async def srem(self, key: str, *members: str) -> int:
        self._check()
        existing = self._set_members(key)
        removed = len(existing & set(members))
        existing.difference_update(members)
        return removed

    # Test helpers

    def seed(self, key: str, value: str) -> None:
        """Store a raw value with no expiry."""
        self._data[key] = value
        self._expiry.pop(key, None)

    def keys(self, pattern: str = "*") -> List[str]:
        return sorted(key for key in self._live_keys() if redis_glob_match(key, pattern))


class FakeSearchHistory(SearchHistoryStore):
    """Search history kept in a list; newest rows win."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.rows: List[SearchHistoryRow] = []
        self.recorded: List[Dict[str, Any]] = []
        self.lookups = 0
        self.fail = False

    def add_row(self, user_id: str, query: str, created_at: datetime, subject_id: Optional[str] = None) -> None:
        self.rows.append(
            SearchHistoryRow(
                id=f"row-{len(self.rows) + 1}",
                user_id=user_id,
                query=query,
                created_at=created_at,
                subject_id=subject_id,
            )
        )

    async def find_recent(
        self,
        user_id: str,
        query: str,
        subject_id: Optional[str] = None,
    ) -> Optional[SearchHistoryRow]:
        self.lookups += 1
        if self.fail:
            raise RuntimeError("search history unavailable")
        matches = [
            row for row in self.rows
            if row.user_id == user_id and row.query == query and row.subject_id == subject_id
        ]
        if not matches:
            return None
        return max(matches, key=lambda row: row.created_at)

    async def record_search(
        self,
        user_id: str,
        subject_id: Optional[str],
        query: str,
        results_count: int,
        response_time_ms: Optional[float] = None,
    ) -> None:
        if self.fail:
            raise RuntimeError("search history unavailable")
        self.recorded.append({
            "user_id": user_id,
            "subject_id": subject_id,
            "query": query,
            "results_count": results_count,
            "response_time_ms": response_time_ms,
        })
        self.add_row(user_id, query, from_timestamp(self.clock()), subject_id)
