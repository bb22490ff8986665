"""Records and statistics shared by the cache tiers."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar, Union

T = TypeVar("T")


class QueryType(str, Enum):
    """Kind of retrieval query a RAG result was produced by."""

    SIMILARITY = "similarity"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


QueryTypeLike = Union[QueryType, str]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def from_timestamp(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


@dataclass
class CacheStats:
    """Hit/miss accounting for a cache tier."""

    hits: int = 0
    misses: int = 0
    errors: int = 0
    evictions: int = 0
    total_bytes: int = 0

    @property
    def total_requests(self) -> int:
        """Total number of lookups."""
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        """Hit rate in percent, rounded to two decimals."""
        if self.total_requests == 0:
            return 0.0
        return round(self.hits / self.total_requests * 100, 2)

    def record_hit(self, size_bytes: int = 0) -> None:
        self.hits += 1
        self.total_bytes += size_bytes

    def record_miss(self) -> None:
        self.misses += 1

    def record_error(self) -> None:
        self.errors += 1

    def reset(self) -> None:
        """Reset all statistics."""
        self.hits = 0
        self.misses = 0
        self.errors = 0
        self.evictions = 0
        self.total_bytes = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "evictions": self.evictions,
            "total_bytes": self.total_bytes,
            "total_requests": self.total_requests,
            "hit_rate": self.hit_rate,
        }


@dataclass
class CacheEntry(Generic[T]):
    """A process-local cache entry.

    The in-memory tier has no native expiry, so each entry carries its own
    creation time and TTL.
    """

    value: T
    created_at: float
    ttl_seconds: int

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl_seconds

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class RAGCacheRecord:
    """A cached retrieval-augmented query result."""

    id: str
    user_id: str
    query: str
    query_hash: str
    results: List[Any]
    context: Any
    timestamp: datetime
    ttl_seconds: int
    query_type: str = QueryType.SIMILARITY.value
    subject_id: Optional[str] = None
    response_time_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RAGCacheRecord":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            query=data["query"],
            query_hash=data["query_hash"],
            results=data.get("results") or [],
            context=data.get("context"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            ttl_seconds=data["ttl_seconds"],
            query_type=data.get("query_type", QueryType.SIMILARITY.value),
            subject_id=data.get("subject_id"),
            response_time_ms=data.get("response_time_ms"),
        )


@dataclass
class SessionRecord:
    """A user's session state as stored in Redis."""

    user_id: str
    session_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    last_accessed: datetime = field(default_factory=utcnow)
    expires_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "session_id": self.session_id,
            "data": self.data,
            "created_at": self.created_at.isoformat(),
            "last_accessed": self.last_accessed.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        return cls(
            user_id=data["user_id"],
            session_id=data["session_id"],
            data=data.get("data") or {},
            created_at=datetime.fromisoformat(data["created_at"]),
            last_accessed=datetime.fromisoformat(data["last_accessed"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )


def format_bytes(size: int) -> str:
    """Human-readable size, matching the granularity Redis INFO reports."""
    if size < 1024:
        return f"{size} bytes"
    if size < 1024 * 1024:
        return f"{round(size / 1024)} KB"
    return f"{round(size / (1024 * 1024))} MB"
