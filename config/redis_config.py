"""Redis configuration

Pooled asyncio redis client shared by the change feed fan-out and the
moon overlay cache. Redis is optional: callers check
fastapi_settings.REDIS_ENABLED before touching it.
"""

import asyncio
from typing import Any, Optional

import redis.asyncio as redis
from redis.asyncio import Redis, ConnectionPool
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from config.logging_config import get_module_logger

logger = get_module_logger(__name__)

_redis_client: Optional[Redis] = None
_redis_client_initialized: bool = False
_redis_lock = asyncio.Lock()


class RedisConfig(BaseSettings):
    """Redis connection settings, REDIS_* environment overridable"""

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    db: int = Field(default=0, description="Redis database index")
    password: Optional[str] = Field(default=None, description="Redis password")
    max_connections: int = Field(default=10, description="Pool size")
    socket_timeout: float = Field(default=5.0, description="Socket timeout (s)")
    socket_connect_timeout: float = Field(
        default=5.0, description="Connect timeout (s)"
    )
    retry_on_timeout: bool = Field(default=True, description="Retry on timeout")
    health_check_interval: int = Field(
        default=30, description="Health check interval (s)"
    )

    model_config = SettingsConfigDict(
        env_prefix="REDIS_", case_sensitive=False, extra="ignore"
    )

    @property
    def connection_url(self) -> str:
        """Build the redis:// URL"""
        if self.password:
            return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"

    def create_connection_pool(self) -> ConnectionPool:
        """Create the shared connection pool"""
        return ConnectionPool.from_url(
            self.connection_url,
            max_connections=self.max_connections,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_connect_timeout,
            retry_on_timeout=self.retry_on_timeout,
            health_check_interval=self.health_check_interval,
            decode_responses=True,
        )


async def get_redis_client() -> Redis:
    """Return the process-wide redis client, creating it on first use

    Raises:
        ConnectionError: when the client could not be initialised
    """
    global _redis_client, _redis_client_initialized

    if not _redis_client_initialized:
        async with _redis_lock:
            if not _redis_client_initialized:
                try:
                    config = RedisConfig()
                    logger.info(
                        "Initialising redis pool - host: %s, port: %d, db: %d",
                        config.host,
                        config.port,
                        config.db,
                    )
                    pool = config.create_connection_pool()
                    _redis_client = redis.Redis(connection_pool=pool)

                    if await _redis_client.ping():
                        logger.info("Redis connected")
                        _redis_client_initialized = True
                    else:
                        logger.error("Redis ping failed")
                        _redis_client = None

                except Exception:
                    logger.exception("Failed to initialise redis client")
                    _redis_client = None
                    _redis_client_initialized = False
                    raise

    if _redis_client is None:
        raise ConnectionError("Redis client is not initialised")

    return _redis_client


async def close_redis_connections() -> None:
    """Close the pool on shutdown"""
    global _redis_client, _redis_client_initialized

    if _redis_client_initialized and _redis_client:
        try:
            await _redis_client.close()
            logger.info("Redis connections closed")
        except Exception as e:
            logger.exception("Error closing redis connections: %s", str(e))
        finally:
            _redis_client = None
            _redis_client_initialized = False


class RedisCache:
    """Namespaced key/value helper

    Errors are logged and reported as misses so a redis outage only
    costs recomputation.
    """

    def __init__(self, namespace: str = ""):
        self.namespace = namespace
        self.logger = get_module_logger(f"{__name__}.RedisCache")

    def _build_key(self, key: str) -> str:
        if self.namespace:
            return f"{self.namespace}:{key}"
        return key

    async def set(self, key: str, value: Any, expire: Optional[int] = None) -> bool:
        """Store a value

        Args:
            key: cache key
            value: string value
            expire: TTL in seconds, None keeps it forever

        Returns:
            True on success
        """
        try:
            client = await get_redis_client()
            full_key = self._build_key(key)

            if expire:
                result = await client.setex(full_key, expire, value)
            else:
                result = await client.set(full_key, value)

            self.logger.debug("Cache set - key: %s, expire: %s", full_key, expire)
            return bool(result)

        except Exception:
            self.logger.exception("Cache set failed - key: %s", key)
            return False

    async def get(self, key: str, default: Any = None) -> Any:
        """Read a value, returning default on miss or error"""
        try:
            client = await get_redis_client()
            full_key = self._build_key(key)
            value = await client.get(full_key)

            if value is not None:
                self.logger.debug("Cache hit - key: %s", full_key)
                return value

            self.logger.debug("Cache miss - key: %s", full_key)
            return default

        except Exception:
            self.logger.exception("Cache get failed - key: %s", key)
            return default

