"""
Redis manager for handling Redis connections and related utilities.

This module provides the RedisManager class, which owns the application's
asynchronous Redis connection. The connection is created lazily on first use
so importing the module never touches the network.

Logging:
    - Uses the centralized logging manager.
    - Logs connection attempts, successes, and failures.
"""

from typing import Optional

import redis.asyncio as redis_async
from redis.exceptions import RedisError

from hospital_oauth.config import settings
from hospital_oauth.managers.logging_manager import get_logger

logger = get_logger(prefix="[RedisManager]")


class RedisManager:
    """
    Manages a single Redis connection for the application.

    Attributes:
        redis_url: The Redis connection URL.
        _redis: The cached Redis connection instance.
    """

    def __init__(self, redis_url: Optional[str] = None, socket_timeout: Optional[float] = None) -> None:
        self.redis_url = redis_url or settings.REDIS_URL
        self.socket_timeout = socket_timeout or settings.REDIS_SOCKET_TIMEOUT_SECONDS
        self._redis: Optional[redis_async.Redis] = None
        self.logger = logger

    async def get_redis(self) -> redis_async.Redis:
        """
        Get or create the Redis connection.

        Returns:
            An active redis.asyncio.Redis connection.
        """
        if self._redis is None:
            self.logger.info("Creating async Redis connection to %s", self._safe_url())
            self._redis = redis_async.from_url(
                self.redis_url,
                decode_responses=True,
                socket_timeout=self.socket_timeout,
                socket_connect_timeout=self.socket_timeout,
            )
        return self._redis

    async def ping(self) -> bool:
        """Check connectivity; used by the application lifespan."""
        try:
            redis_client = await self.get_redis()
            return bool(await redis_client.ping())
        except (RedisError, OSError) as e:
            self.logger.error("Redis ping failed: %s", e, exc_info=True)
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis connection closed")

    def _safe_url(self) -> str:
        # Hide credentials embedded in the URL
        if "@" in self.redis_url:
            scheme, _, rest = self.redis_url.partition("://")
            return f"{scheme}://***@{rest.split('@', 1)[1]}"
        return self.redis_url


redis_manager = RedisManager()
