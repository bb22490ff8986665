"""Cache key generation for all cache tiers.

Key formats:
    RAG entry (Redis):     {rag_prefix}{user_id}:{query_hash}:{query_type}
    RAG entry (memory):    {query_hash}:{user_id}
    Subject index:         {rag_prefix}metadata:subject:{subject_id}
    Subject users index:   {rag_prefix}metadata:subject:{subject_id}:users
    User index:            {rag_prefix}metadata:user:{user_id}
    Session:               {session_prefix}{user_id}:{session_id}
    User sessions index:   {session_prefix}user:{user_id}:sessions

Ids are interpolated verbatim into keys and escaped in SCAN patterns.

Both RAG tiers derive keys from the same query hash so that an entry can be
correlated across tiers.
"""

import hashlib
import re
from typing import Optional

from studycache.services.cache.models import QueryType, QueryTypeLike

GLOBAL_SUBJECT = "global"
METADATA_SEGMENT = "metadata:"

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")
_TYPES = "|".join(query_type.value for query_type in QueryType)
_HASH_AND_TYPE = re.compile(rf"[0-9a-f]{{32}}:(?:{_TYPES})")
_ENTRY_TAIL = re.compile(rf".+:[0-9a-f]{{32}}:(?:{_TYPES})", re.DOTALL)


def escape_pattern(value: str) -> str:
    """Escape Redis glob metacharacters so ``value`` matches only itself."""
    return _GLOB_SPECIAL.sub(r"\\\1", value)


def normalize_query_type(query_type: QueryTypeLike) -> str:
    """Return the plain string value of a query type.

    Raises:
        ValueError: If the value is not a known query type.
    """
    return QueryType(query_type).value


class CacheKeys:
    """Cache key generator following a consistent naming convention."""

    @classmethod
    def query_hash(
        cls,
        query: str,
        user_id: str,
        subject_id: Optional[str] = None,
        query_type: QueryTypeLike = QueryType.SIMILARITY,
    ) -> str:
        """Deterministic hash of a RAG query's inputs.

        Collisions are tolerable; correctness does not depend on uniqueness.
        """
        content = "|".join([
            query,
            user_id,
            subject_id or GLOBAL_SUBJECT,
            normalize_query_type(query_type),
        ])
        return hashlib.md5(content.encode("utf-8")).hexdigest()

    @classmethod
    def rag_entry(cls, prefix: str, user_id: str, query_hash: str, query_type: QueryTypeLike) -> str:
        return f"{prefix}{user_id}:{query_hash}:{normalize_query_type(query_type)}"

    @classmethod
    def memory_entry(cls, query_hash: str, user_id: str) -> str:
        return f"{query_hash}:{user_id}"

    @classmethod
    def metadata_prefix(cls, prefix: str) -> str:
        return f"{prefix}{METADATA_SEGMENT}"

    @classmethod
    def subject_index(cls, prefix: str, subject_id: str) -> str:
        return f"{prefix}{METADATA_SEGMENT}subject:{subject_id}"

    @classmethod
    def subject_users_index(cls, prefix: str, subject_id: str) -> str:
        return f"{prefix}{METADATA_SEGMENT}subject:{subject_id}:users"

    @classmethod
    def user_index(cls, prefix: str, user_id: str) -> str:
        return f"{prefix}{METADATA_SEGMENT}user:{user_id}"

    @classmethod
    def session(cls, prefix: str, user_id: str, session_id: str) -> str:
        return f"{prefix}{user_id}:{session_id}"

    @classmethod
    def user_sessions(cls, prefix: str, user_id: str) -> str:
        return f"{prefix}user:{user_id}:sessions"

    @classmethod
    def prefix_pattern(cls, prefix: str) -> str:
        """Pattern matching every key under a prefix."""
        return f"{escape_pattern(prefix)}*"

    @classmethod
    def user_pattern(cls, prefix: str, user_id: str) -> str:
        """Pattern matching every RAG entry stored for a user.

        Also matches users whose id starts with ``{user_id}:``; filter the
        results with ``is_rag_entry``.
        """
        return f"{escape_pattern(prefix)}{escape_pattern(user_id)}:*"

    @classmethod
    def user_hash_pattern(cls, prefix: str, user_id: str, query_hash: str) -> str:
        """Pattern matching a user's entries for one query hash, any type."""
        return f"{escape_pattern(prefix)}{escape_pattern(user_id)}:{escape_pattern(query_hash)}:*"

    @classmethod
    def type_pattern(cls, prefix: str, query_type: QueryTypeLike) -> str:
        """Pattern matching every RAG entry of one query type, all users."""
        return f"{escape_pattern(prefix)}*:{normalize_query_type(query_type)}"

    @classmethod
    def is_rag_entry(cls, prefix: str, key: str, user_id: Optional[str] = None) -> bool:
        """Whether a key is a RAG entry, optionally owned by exactly ``user_id``."""
        if not key.startswith(prefix) or key.startswith(cls.metadata_prefix(prefix)):
            return False
        rest = key[len(prefix):]
        if user_id is not None:
            owner = f"{user_id}:"
            if not rest.startswith(owner):
                return False
            return _HASH_AND_TYPE.fullmatch(rest[len(owner):]) is not None
        return _ENTRY_TAIL.fullmatch(rest) is not None
