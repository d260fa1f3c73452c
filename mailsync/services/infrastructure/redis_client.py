import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from mailsync.config import settings
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RedisClient:
    """Pooled async Redis client shared by the dispatch queue and notification intake."""

    def __init__(self, url: str | None = None):
        self.url = url or settings.REDIS_URL
        self.pool: ConnectionPool | None = None
        self.client: redis.Redis | None = None
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            self.pool = ConnectionPool.from_url(
                self.url,
                max_connections=20,
                retry_on_timeout=True,
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info("Redis client initialized successfully", max_connections=20)

        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self) -> None:
        """Clean shutdown"""
        if self.client:
            await self.client.aclose()
        if self.pool:
            await self.pool.disconnect()
        self._initialized = False
        logger.info("Redis client closed")

    async def get_client(self) -> redis.Redis:
        """Return the underlying client, initializing lazily."""
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()
        return self.client

    async def set_if_absent(self, key: str, value: str, ttl_s: int) -> bool:
        """SET NX with TTL; True when the key was created by this call."""
        client = await self.get_client()
        result = await client.set(key, value, ex=ttl_s, nx=True)
        return bool(result)

    async def delete(self, key: str) -> None:
        client = await self.get_client()
        await client.delete(key)


redis_client = RedisClient()
