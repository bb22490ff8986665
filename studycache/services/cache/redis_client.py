"""Redis connection management for the durable cache tier.

One RedisClient is created at process startup and passed to every cache that
needs the durable tier. It owns:
- the connection lifecycle (connect / disconnect / signal-driven shutdown)
- supervised reconnection with a bounded, linearly growing delay
- a periodic health monitor that detects dropped connections
- latency-classified health checks and server stats

Callers never get an exception from a dropped connection: ``get_client()``
returns None whenever the client is not connected, and every cache treats
that as "degraded, behave like a miss".
"""

import asyncio
import signal
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import AbstractBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from studycache.core.config import Settings, settings
from studycache.core.errors import CacheConnectionError, ReconnectExhaustedError
from studycache.core.logging import get_logger
from studycache.services.cache.background import PeriodicTask, SleepFunc

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    """Connection state machine."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    SHUTTING_DOWN = "shutting_down"


class LinearBackoff(AbstractBackoff):
    """Per-command transport retry delay: ``min(failures * step, cap)``."""

    def __init__(self, step: float = 0.05, cap: float = 2.0):
        self._step = step
        self._cap = cap

    def reset(self) -> None:
        pass

    def compute(self, failures: int) -> float:
        return min(failures * self._step, self._cap)


@dataclass
class RedisConfig:
    """Connection and recovery policy for the Redis client."""

    host: str = "localhost"
    port: int = 6379
    password: Optional[str] = None
    db: int = 0
    url: Optional[str] = None
    socket_timeout: float = 5.0
    connect_timeout: float = 5.0
    retry_step: float = 0.05
    retry_cap: float = 2.0
    max_retries_per_request: int = 3
    reconnect_step: float = 1.0
    reconnect_cap: float = 10.0
    max_reconnect_attempts: int = 10
    degraded_latency_ms: float = 1000.0
    monitor_interval: float = 30.0

    @classmethod
    def from_settings(cls, config: Settings) -> "RedisConfig":
        return cls(
            host=config.redis_host,
            port=config.redis_port,
            password=config.redis_password,
            db=config.redis_db,
            url=config.redis_url,
            socket_timeout=config.redis_socket_timeout,
            connect_timeout=config.redis_connect_timeout,
            retry_step=config.redis_retry_step_ms / 1000,
            retry_cap=config.redis_retry_cap_ms / 1000,
            max_retries_per_request=config.redis_max_retries_per_request,
            reconnect_step=config.redis_reconnect_step_seconds,
            reconnect_cap=config.redis_reconnect_cap_seconds,
            max_reconnect_attempts=config.redis_max_reconnect_attempts,
            degraded_latency_ms=config.redis_degraded_latency_ms,
            monitor_interval=config.redis_monitor_interval_seconds,
        )

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}/{self.db}"


@dataclass
class HealthReport:
    """Result of a latency-classified health probe."""

    status: str  # healthy | degraded | unhealthy
    message: str
    latency_ms: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status, "message": self.message}
        if self.latency_ms is not None:
            data["latency_ms"] = self.latency_ms
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class ServerStats:
    """Low-level stats reported by the Redis server."""

    connected: bool = False
    memory_usage: str = "0 KB"
    connected_clients: int = 0
    server_info: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connected": self.connected,
            "memory_usage": self.memory_usage,
            "connected_clients": self.connected_clients,
        }


@dataclass
class ConnectionMetrics:
    """Counters for connection lifecycle events."""

    connection_attempts: int = 0
    successful_connections: int = 0
    disconnections: int = 0
    reconnect_attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection_attempts": self.connection_attempts,
            "successful_connections": self.successful_connections,
            "disconnections": self.disconnections,
            "reconnect_attempts": self.reconnect_attempts,
        }


class RedisClient:
    """Owns the single Redis connection shared by all durable caches.

    Usage:
        client = RedisClient(RedisConfig.from_settings(settings))
        await client.connect()
        client.start_monitor()
        client.install_signal_handlers()

        handle = client.get_client()  # None while not connected

        await client.disconnect()
    """

    def __init__(
        self,
        config: Optional[RedisConfig] = None,
        client_factory: Optional[Callable[[], Any]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFunc = asyncio.sleep,
    ):
        """Initialize the client without connecting.

        Args:
            config: Connection policy. Defaults to the global settings.
            client_factory: Builds the underlying async Redis handle.
                Tests pass a factory returning an in-memory double.
            clock: Monotonic clock used for latency measurement.
            sleep: Sleep function used between reconnect attempts. The health
                monitor always runs on real time.
        """
        self.config = config or RedisConfig.from_settings(settings)
        self._client_factory = client_factory or self._create_client
        self._clock = clock
        self._sleep = sleep
        self._client: Optional[Any] = None
        self._state = ConnectionState.DISCONNECTED
        self._shutting_down = False
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._reconnect_attempts = 0
        self._reconnect_exhausted = False
        self._shutdown_task: Optional[asyncio.Task[None]] = None
        self._closed = asyncio.Event()
        self._monitor = PeriodicTask(
            "redis-health-monitor",
            self.config.monitor_interval,
            self._probe_connection,
        )
        self.metrics = ConnectionMetrics()

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        """Get current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def reconnect_exhausted(self) -> bool:
        """True once every reconnect attempt has failed; cleared only by restart."""
        return self._reconnect_exhausted

    @property
    def reconnect_task(self) -> Optional[asyncio.Task[None]]:
        return self._reconnect_task

    def reconnect_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt number ``attempt`` (1-based)."""
        return min(attempt * self.config.reconnect_step, self.config.reconnect_cap)

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            logger.debug(f"Redis state {self._state.value} -> {state.value}")
            self._state = state

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _create_client(self) -> redis.Redis:
        retry = Retry(
            LinearBackoff(self.config.retry_step, self.config.retry_cap),
            self.config.max_retries_per_request,
        )
        options: Dict[str, Any] = {
            "decode_responses": True,
            "socket_timeout": self.config.socket_timeout,
            "socket_connect_timeout": self.config.connect_timeout,
            "retry": retry,
            "retry_on_error": [RedisConnectionError, RedisTimeoutError],
        }
        if self.config.url:
            return redis.from_url(self.config.url, **options)
        return redis.Redis(
            host=self.config.host,
            port=self.config.port,
            password=self.config.password,
            db=self.config.db,
            **options,
        )

    async def _open(self) -> None:
        if self._client is None:
            self._client = self._client_factory()
        await self._client.ping()

    def _mark_connected(self) -> None:
        self._set_state(ConnectionState.CONNECTED)
        self._reconnect_attempts = 0
        self.metrics.successful_connections += 1

    async def connect(self) -> None:
        """Connect to Redis.

        Raises:
            CacheConnectionError: If Redis cannot be reached or the client is
                shutting down.
        """
        if self._shutting_down:
            raise CacheConnectionError("Redis client is shutting down", host=self.config.address)
        if self._state == ConnectionState.CONNECTED:
            return

        self._set_state(ConnectionState.CONNECTING)
        self.metrics.connection_attempts += 1
        try:
            await self._open()
        except Exception as e:
            self._set_state(ConnectionState.DISCONNECTED)
            logger.error(f"Failed to connect to Redis at {self.config.address}: {e}")
            raise CacheConnectionError(
                f"Failed to connect to Redis: {e}", host=self.config.address
            ) from e

        self._mark_connected()
        logger.info(f"Redis client connected to {self.config.address}")

    async def disconnect(self) -> None:
        """Shut the client down. Auto-reconnect is suppressed from here on."""
        self._shutting_down = True
        self._set_state(ConnectionState.SHUTTING_DOWN)

        await self._monitor.stop()

        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass

        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception as e:
                logger.warning(f"Error closing Redis connection: {e}")
            finally:
                self._client = None
                self.metrics.disconnections += 1

        self._closed.set()
        logger.info("Redis client disconnected")

    def set_shutting_down(self) -> None:
        """Suppress auto-reconnect ahead of an orderly shutdown."""
        self._shutting_down = True

    async def wait_closed(self) -> None:
        """Wait until disconnect() has completed."""
        await self._closed.wait()

    def install_signal_handlers(self) -> None:
        """Disconnect on SIGINT / SIGTERM."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._signal_handler, sig)

    def _signal_handler(self, sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, closing Redis connection...")
        self.set_shutting_down()
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.create_task(self.disconnect())

    # -------------------------------------------------------------------------
    # Reconnection
    # -------------------------------------------------------------------------

    def report_failure(self, error: Exception) -> None:
        """Tell the client an operation hit a connection-level failure."""
        if self._shutting_down or self._state != ConnectionState.CONNECTED:
            return
        logger.warning(f"Redis connection lost, attempting to reconnect: {error}")
        self.metrics.disconnections += 1
        self._start_reconnect()

    def _start_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect_task = asyncio.create_task(
            self._reconnect_loop(), name="redis-reconnect"
        )

    async def _reconnect_loop(self) -> None:
        """Retry the connection until it succeeds or the attempts run out."""
        while not self._shutting_down:
            if self._reconnect_attempts >= self.config.max_reconnect_attempts:
                self._reconnect_exhausted = True
                self._set_state(ConnectionState.DISCONNECTED)
                logger.error(str(ReconnectExhaustedError(self._reconnect_attempts)))
                return

            self._reconnect_attempts += 1
            self.metrics.reconnect_attempts += 1
            delay = self.reconnect_delay(self._reconnect_attempts)
            logger.info(
                f"Redis reconnecting. Attempt: {self._reconnect_attempts}, Delay: {delay}s"
            )
            await self._sleep(delay)

            if self._shutting_down:
                return

            try:
                await self._open()
            except Exception as e:
                logger.error(f"Reconnection attempt {self._reconnect_attempts} failed: {e}")
                continue

            self._mark_connected()
            logger.info("Redis client reconnected")
            return

    # -------------------------------------------------------------------------
    # Monitoring
    # -------------------------------------------------------------------------

    def start_monitor(self) -> None:
        """Start the periodic connection probe."""
        self._monitor.start()

    async def _probe_connection(self) -> None:
        client = self.get_client()
        if client is None:
            return
        try:
            await client.ping()
        except Exception as e:
            self.report_failure(e)

    def get_client(self) -> Optional[Any]:
        """Return the live handle, or None when not connected."""
        if self._state != ConnectionState.CONNECTED or self._client is None:
            logger.debug("Redis client is not connected")
            return None
        return self._client

    async def is_available(self) -> bool:
        """Round-trip a PING."""
        client = self.get_client()
        if client is None:
            return False
        try:
            return bool(await client.ping())
        except Exception as e:
            logger.error(f"Redis availability check failed: {e}")
            if isinstance(e, RedisConnectionError):
                self.report_failure(e)
            return False

    async def health_check(self) -> HealthReport:
        """Probe Redis and classify the result by latency."""
        start = self._clock()
        client = self.get_client()
        if client is None:
            return HealthReport(status="unhealthy", message="Redis client not connected")

        try:
            await client.ping()
        except Exception as e:
            return HealthReport(
                status="unhealthy",
                message="Redis is unhealthy",
                latency_ms=round((self._clock() - start) * 1000, 2),
                error=str(e),
            )

        latency_ms = round((self._clock() - start) * 1000, 2)
        if latency_ms > self.config.degraded_latency_ms:
            return HealthReport(status="degraded", message="High latency", latency_ms=latency_ms)
        return HealthReport(status="healthy", message="Redis is healthy", latency_ms=latency_ms)

    async def get_stats(self) -> ServerStats:
        """Memory usage and client count from INFO."""
        client = self.get_client()
        if client is None:
            return ServerStats()

        try:
            info = await client.info()
        except Exception as e:
            logger.error(f"Failed to get Redis stats: {e}")
            return ServerStats()

        return ServerStats(
            connected=True,
            memory_usage=str(info.get("used_memory_human", "N/A")),
            connected_clients=int(info.get("connected_clients", 0)),
            server_info=info,
        )

    async def memory_usage(self) -> str:
        """Human-readable memory usage, "N/A" if Redis does not say."""
        client = self.get_client()
        if client is None:
            return "0 KB"
        try:
            info = await client.info("memory")
        except Exception as e:
            logger.error(f"Failed to get Redis memory info: {e}")
            return "0 KB"
        return str(info.get("used_memory_human", "N/A"))
