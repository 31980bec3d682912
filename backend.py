import asyncio
from typing import Awaitable, Optional, TypeVar

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from constants import REDIS_URL, REDIS_TIMEOUT_SECONDS
from errors import StoreUnavailableError
from logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def create_redis_client(url: str = REDIS_URL, timeout: float = REDIS_TIMEOUT_SECONDS) -> Redis:
    """Build the async Redis client shared by the registry, the directory and the transport."""
    logger.info(f"Creating Redis client for {url.rsplit('@', 1)[-1]}")
    return Redis.from_url(
        url,
        decode_responses=True,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
    )


class RedisStore:
    """Thin wrapper that bounds every store call and reports outages uniformly.

    A connection failure or timeout surfaces as StoreUnavailableError so callers
    never mistake an unreachable store for a missing key.
    """

    def __init__(self, redis_client: Redis, timeout: Optional[float] = REDIS_TIMEOUT_SECONDS):
        self.redis_client = redis_client
        self.timeout = timeout

    async def call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            if self.timeout:
                return await asyncio.wait_for(awaitable, timeout=self.timeout)
            return await awaitable
        except (RedisConnectionError, RedisTimeoutError, asyncio.TimeoutError) as e:
            logger.error(f"Redis operation '{operation}' failed: {e}", exc_info=True)
            raise StoreUnavailableError(f"Store unavailable during {operation}") from e

    async def ping(self) -> bool:
        result = await self.call("ping", self.redis_client.ping())
        logger.info("Redis client connected successfully")
        return bool(result)

    async def close(self):
        try:
            await self.redis_client.aclose()
            logger.info("Redis client closed")
        except Exception as e:
            logger.error(f"Error closing Redis client: {e}", exc_info=True)
