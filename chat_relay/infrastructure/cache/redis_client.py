"""
Redis Client

Owns the redis.asyncio pool shared by the dead-letter store (keys, lists) and
the replay log (streams). Components issue commands on `RedisClient.client`;
this module only handles getting connected, staying observable and letting go.

Architecture:
    RedisClient (Public API)
        ├── PoolFactory (ConnectionPool from RedisSettings)
        └── health_check() (ping latency, pool bound)

Startup:
    connect() pings through a tenacity retry so a Redis container that is
    still booting does not fail the relay. Attempts are bounded by
    REDIS_CONNECT_ATTEMPTS; the last error is raised as CacheConnectionError.

Responses are decoded (decode_responses=True): stream fields and stored JSON
come back as str.
"""

import time
from typing import Any

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import ConnectionError, RedisError, TimeoutError
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from chat_relay.config.settings import RedisSettings
from chat_relay.core.exceptions import CacheConnectionError
from chat_relay.core.logging import get_logger

logger = get_logger(__name__)


class PoolFactory:
    @staticmethod
    def build(settings: RedisSettings) -> ConnectionPool:
        return ConnectionPool(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            db=settings.REDIS_DB,
            password=settings.REDIS_PASSWORD,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            socket_connect_timeout=settings.REDIS_SOCKET_CONNECT_TIMEOUT,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
            retry_on_timeout=True,
            health_check_interval=settings.REDIS_HEALTH_CHECK_INTERVAL,
            decode_responses=True,
        )


class RedisClient:
    """
    Usage:
        redis_client = RedisClient(settings.redis)
        await redis_client.connect()
        await redis_client.client.xadd("relay:messages", {...})
        await redis_client.disconnect()
    """

    def __init__(self, settings: RedisSettings | None = None, retry_wait: wait_base | None = None):
        self._settings = settings or RedisSettings()
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, max=5)
        self._pool: ConnectionPool | None = None
        self._client: redis.Redis | None = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    @property
    def client(self) -> redis.Redis:
        """
        Raises:
            CacheConnectionError: connect() has not succeeded yet
        """
        if self._client is None:
            raise CacheConnectionError("Redis client is not connected")
        return self._client

    @property
    def target(self) -> str:
        return f"{self._settings.REDIS_HOST}:{self._settings.REDIS_PORT}/{self._settings.REDIS_DB}"

    async def connect(self) -> None:
        """
        STAGE-REDIS.1: Connect (bounded retry)

        Raises:
            CacheConnectionError: Every attempt failed
        """
        if self._client is not None:
            return

        pool = PoolFactory.build(self._settings)
        client = redis.Redis(connection_pool=pool)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._settings.REDIS_CONNECT_ATTEMPTS),
            wait=self._retry_wait,
            retry=retry_if_exception_type((ConnectionError, TimeoutError)),
            before_sleep=lambda state: logger.warning(
                "Redis not reachable yet, retrying",
                stage="REDIS.1",
                target=self.target,
                attempt=state.attempt_number,
            ),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await client.ping()
        except RetryError as e:
            cause = e.last_attempt.exception()
            await pool.disconnect()
            logger.error("Redis connection failed", stage="REDIS.1", target=self.target, error=str(cause))
            raise CacheConnectionError(
                f"Failed to connect to Redis at {self.target}: {cause}",
                details={"host": self._settings.REDIS_HOST, "port": self._settings.REDIS_PORT},
            ) from cause

        self._pool = pool
        self._client = client
        logger.info(
            "Redis connected",
            stage="REDIS.1",
            target=self.target,
            max_connections=self._settings.REDIS_MAX_CONNECTIONS,
        )

    async def disconnect(self) -> None:
        """
        STAGE-REDIS.2: Disconnect
        """
        if self._client is not None:
            await self._client.aclose()
        if self._pool is not None:
            await self._pool.disconnect()
        self._client = None
        self._pool = None
        logger.info("Redis disconnected", stage="REDIS.2", target=self.target)

    async def health_check(self) -> dict[str, Any]:
        """
        STAGE-REDIS.HEALTH: Ping latency and pool bound for runtime stats
        """
        health: dict[str, Any] = {
            "status": "healthy",
            "connected": self.is_connected,
            "target": self.target,
            "pool_size": self._pool.max_connections if self._pool is not None else 0,
            "ping_latency_ms": None,
        }
        if self._client is None:
            health["status"] = "unhealthy"
            health["error"] = "Client not initialized"
            return health

        started = time.perf_counter()
        try:
            await self._client.ping()
        except RedisError as e:
            health["status"] = "unhealthy"
            health["error"] = str(e)
            return health
        health["ping_latency_ms"] = round((time.perf_counter() - started) * 1000, 2)
        return health
