"""Cache error types and error handling utilities.

Cache operations never raise to their callers. Internally, failures are
classified into the types below so they can be logged at the right level
and, for connection failures, reported back to the Redis client.
"""

import functools
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

T = TypeVar("T")


class ErrorCategory(Enum):
    """Categories of cache errors."""
    CONNECTION = "connection"
    SERIALIZATION = "serialization"
    OPERATION = "operation"
    DEGRADED = "degraded"


class CacheError(Exception):
    """Base exception for cache errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.OPERATION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/reporting."""
        return {
            "error": self.message,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "timestamp": self.timestamp.isoformat(),
        }


class CacheConnectionError(CacheError):
    """The durable store is unreachable."""

    def __init__(self, message: str, host: Optional[str] = None):
        details = {}
        if host:
            details["host"] = host
        super().__init__(
            message=message,
            category=ErrorCategory.CONNECTION,
            details=details,
            recoverable=True,
        )


class CacheSerializationError(CacheError):
    """A stored value could not be parsed."""

    def __init__(self, message: str, key: Optional[str] = None):
        details = {}
        if key:
            details["key"] = key
        super().__init__(
            message=message,
            category=ErrorCategory.SERIALIZATION,
            details=details,
            recoverable=False,  # The entry stays broken until it expires
        )


class CacheOperationError(CacheError):
    """A single command failed on an otherwise healthy connection."""

    def __init__(self, message: str, operation: Optional[str] = None):
        details = {}
        if operation:
            details["operation"] = operation
        super().__init__(
            message=message,
            category=ErrorCategory.OPERATION,
            details=details,
            recoverable=True,
        )


class ReconnectExhaustedError(CacheError):
    """Reconnection attempts ran out; the cache stays degraded until restart."""

    def __init__(self, attempts: int):
        super().__init__(
            message=f"Gave up reconnecting after {attempts} attempts",
            category=ErrorCategory.DEGRADED,
            details={"attempts": attempts},
            recoverable=False,
        )


def classify_error(error: Exception, operation: Optional[str] = None) -> CacheError:
    """Map an arbitrary exception onto the cache error taxonomy."""
    if isinstance(error, CacheError):
        return error

    if isinstance(error, (RedisConnectionError, RedisTimeoutError, ConnectionError)):
        return CacheConnectionError(f"{operation or 'operation'}: {error}")

    if isinstance(error, (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError)):
        return CacheSerializationError(f"{operation or 'decode'}: {error}")

    return CacheOperationError(str(error), operation=operation)


_LOG_LEVELS = {
    ErrorCategory.CONNECTION: logging.WARNING,
    ErrorCategory.SERIALIZATION: logging.ERROR,
    ErrorCategory.OPERATION: logging.ERROR,
    ErrorCategory.DEGRADED: logging.ERROR,
}


def log_cache_error(
    logger: logging.Logger,
    operation: str,
    error: Exception,
) -> CacheError:
    """Classify an exception and log it at the level its category calls for.

    Returns:
        The classified CacheError.
    """
    cache_error = classify_error(error, operation)
    logger.log(
        _LOG_LEVELS[cache_error.category],
        f"Cache {operation} failed ({cache_error.category.value}): {error}",
    )
    return cache_error


def guarded(
    fallback: Any = None,
    operation: Optional[str] = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator giving a cache coroutine method a non-throwing contract.

    Any exception is handed to ``self._handle_error`` (see RedisBackedCache)
    and the fallback is returned instead. A callable fallback is invoked to
    build a fresh value, so mutable defaults are never shared.

    Usage:
        @guarded(fallback=False)
        async def exists(self, key: str) -> bool:
            ...
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        op_name = operation or func.__name__

        @functools.wraps(func)
        async def wrapper(self, *args: Any, **kwargs: Any) -> T:
            try:
                return await func(self, *args, **kwargs)
            except Exception as e:
                self._handle_error(op_name, e)
                return fallback() if callable(fallback) else fallback

        return wrapper

    return decorator
