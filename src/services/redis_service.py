# src/services/redis_service.py
"""
Redis Service for session and rate-limit persistence.

Async-only wrapper around Redis with:
- Flexible configuration for multiple Redis providers
- Automatic JSON serialization/deserialization
- TTL support
- Bounded socket timeouts surfaced as StorageTimeoutError
- Compare-and-set and server-side script execution for atomic updates
- Throttled reconnect after a failed connection
- Health checks

Unlike a cache, callers depend on writes being durable, so every failure
is raised as a StorageError instead of being swallowed.
"""
import asyncio
import os
import time
import json
import redis.asyncio as redis
from redis.exceptions import (
    RedisError,
    TimeoutError as RedisTimeoutError,
    WatchError
)
from typing import Optional, Dict, Any, List
from dataclasses import dataclass
import logging

from src.core.config import settings
from src.core.service_base import BaseService, ServiceConfig
from src.core.exceptions import StorageError, StorageTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class RedisConfig(ServiceConfig):
    """Configuration for Redis Service"""
    url: Optional[str] = None
    decode_responses: bool = True
    socket_timeout: float = 5.0
    max_connections: int = 10
    retry_on_timeout: bool = False
    health_check_interval: int = 30
    reconnect_interval: float = 5.0


class RedisService(BaseService[RedisConfig]):
    """
    Async-only Redis service for durable ephemeral storage.
    """

    def __init__(self, config: Optional[RedisConfig] = None):
        """
        Initialize Redis Service.

        Args:
            config: Redis configuration. If not provided, uses settings and
                environment variables.
        """
        self.logger = logging.getLogger(__name__)
        self._url_source = None  # Track which env var was used

        if config is None:
            config = RedisConfig(
                url=self._get_redis_url(),
                decode_responses=True,
                socket_timeout=settings.REDIS_SOCKET_TIMEOUT
            )

        super().__init__(config, self.logger)
        self._last_connect_attempt = 0.0
        self._connect_lock = asyncio.Lock()

    def _get_redis_url(self) -> Optional[str]:
        """
        Get Redis URL from settings or environment variables.

        Checks several variables for hosting-provider compatibility.
        """
        if settings.REDIS_URL:
            self._url_source = "settings"
            return settings.REDIS_URL

        url_env_vars = [
            "REDIS_URL",
            "REDIS_TLS_URL",
            "UPSTASH_REDIS_URL",
            "REDIS_DIRECT_URI",
        ]

        for var in url_env_vars:
            if url := os.environ.get(var):
                self._url_source = var
                self.logger.info(f"Using Redis URL from {var}")
                return url

        return None

    def _validate_config(self) -> None:
        """Validate Redis configuration"""
        super()._validate_config()

        if not self.config.url:
            self.logger.warning(
                "No Redis URL found. Redis-backed storage will be unavailable. "
                "Set one of: REDIS_URL, REDIS_TLS_URL, UPSTASH_REDIS_URL."
            )

    async def _initialize_client(self) -> Optional[redis.Redis]:
        """Initialize the Redis client"""
        if not self.config.url:
            self.logger.warning("Redis disabled - no URL configured")
            return None

        self._last_connect_attempt = time.monotonic()
        try:
            client = redis.from_url(
                self.config.url,
                decode_responses=self.config.decode_responses,
                socket_timeout=self.config.socket_timeout,
                socket_connect_timeout=self.config.socket_timeout,
                max_connections=self.config.max_connections,
                retry_on_timeout=self.config.retry_on_timeout,
                health_check_interval=self.config.health_check_interval
            )

            await client.ping()
            self.logger.info("Redis connection successful")

            return client

        except Exception as e:
            self.logger.error(f"Failed to connect to Redis: {str(e)}")
            # Don't fail startup; operations will raise StorageError until reconnect
            self.logger.warning("Redis functionality disabled due to connection error")
            return None

    async def _reconnect(self) -> None:
        """Retry the connection at most once per reconnect_interval"""
        async with self._connect_lock:
            if self._client is not None:
                return
            if time.monotonic() - self._last_connect_attempt < self.config.reconnect_interval:
                return
            self.logger.info("Retrying Redis connection...")
            self._client = await self._initialize_client()

    async def _require_client(self, operation: str, key: Optional[str] = None) -> redis.Redis:
        if self._client is None and self._initialized and self.config.url:
            await self._reconnect()
        if not self._client:
            raise StorageError("Redis client not available", key=key, operation=operation)
        return self._client

    def _wrap_error(self, error: Exception, operation: str, key: Optional[str] = None) -> StorageError:
        """Translate a redis-py exception into the storage error taxonomy"""
        if isinstance(error, (RedisTimeoutError, TimeoutError)):
            self.logger.error(f"Redis {operation} timed out for key '{key}'")
            return StorageTimeoutError(
                f"Redis {operation} timed out after {self.config.socket_timeout}s",
                key=key,
                operation=operation
            )
        self.logger.error(f"Redis {operation} failed for key '{key}': {error}")
        return StorageError(f"Redis {operation} failed: {error}", key=key, operation=operation)

    async def get(
        self,
        key: str,
        default: Any = None,
        deserialize_json: bool = True
    ) -> Any:
        """
        Get a value from Redis.

        Args:
            key: The key to retrieve
            default: Default value if key doesn't exist
            deserialize_json: Whether to deserialize JSON strings

        Returns:
            The stored value or default

        Raises:
            StorageError: If Redis is unreachable
        """
        client = await self._require_client("get", key)

        try:
            value = await client.get(key)
        except (RedisError, OSError) as e:
            raise self._wrap_error(e, "get", key) from e

        if value is None:
            return default

        if deserialize_json and isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                pass

        return value

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
        serialize_json: bool = True
    ) -> None:
        """
        Set a value in Redis.

        Args:
            key: The key to set
            value: The value to store
            ttl: Time to live in seconds
            serialize_json: Whether to serialize non-string values as JSON

        Raises:
            StorageError: If the write was not acknowledged
        """
        client = await self._require_client("set", key)

        if serialize_json and not isinstance(value, (str, bytes)):
            value = json.dumps(value)

        try:
            if ttl:
                await client.set(key, value, ex=ttl)
            else:
                await client.set(key, value)
        except (RedisError, OSError) as e:
            raise self._wrap_error(e, "set", key) from e

    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        ttl: Optional[int] = None
    ) -> bool:
        """
        Replace ``key`` with ``value`` only if it still holds ``expected``.

        Uses WATCH/MULTI so a concurrent writer between the read and the
        write aborts this transaction instead of being overwritten.

        Args:
            key: The key to replace
            expected: Raw value the caller read earlier (None = must be absent)
            value: New raw value
            ttl: Time to live in seconds

        Returns:
            True if written, False if the key changed in the meantime
        """
        client = await self._require_client("compare_and_set", key)

        try:
            async with client.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                current = await pipe.get(key)
                if current != expected:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                if ttl:
                    pipe.set(key, value, ex=ttl)
                else:
                    pipe.set(key, value)
                await pipe.execute()
                return True
        except WatchError:
            self.logger.debug(f"Concurrent modification detected for key '{key}'")
            return False
        except (RedisError, OSError) as e:
            raise self._wrap_error(e, "compare_and_set", key) from e

    async def delete(self, *keys: str) -> int:
        """
        Delete one or more keys.

        Returns:
            Number of keys deleted
        """
        if not keys:
            return 0
        client = await self._require_client("delete", keys[0])

        try:
            return await client.delete(*keys)
        except (RedisError, OSError) as e:
            raise self._wrap_error(e, "delete", keys[0]) from e

    async def exists(self, *keys: str) -> int:
        """
        Check if keys exist.

        Returns:
            Number of keys that exist
        """
        if not keys:
            return 0
        client = await self._require_client("exists", keys[0])

        try:
            return await client.exists(*keys)
        except (RedisError, OSError) as e:
            raise self._wrap_error(e, "exists", keys[0]) from e

    async def hgetall(self, key: str) -> Dict[str, Any]:
        """
        Get all fields of a hash.

        Returns:
            Field mapping, empty if the key doesn't exist
        """
        client = await self._require_client("hgetall", key)

        try:
            return await client.hgetall(key)
        except (RedisError, OSError) as e:
            raise self._wrap_error(e, "hgetall", key) from e

    async def eval(self, script: str, keys: List[str], args: List[Any]) -> Any:
        """
        Evaluate a Lua script atomically on the server.

        Args:
            script: Lua source
            keys: KEYS passed to the script
            args: ARGV passed to the script

        Returns:
            The script's return value
        """
        client = await self._require_client("eval", keys[0] if keys else None)

        try:
            return await client.eval(script, len(keys), *keys, *args)
        except (RedisError, OSError) as e:
            raise self._wrap_error(e, "eval", keys[0] if keys else None) from e

    async def health_check(self) -> Dict[str, Any]:
        """
        Check Redis service health.

        Returns:
            Health status including connection info
        """
        if not self.config.url:
            return {
                "healthy": True,  # Not unhealthy, just disabled
                "status": "disabled",
                "details": {
                    "message": "Redis not configured"
                }
            }

        try:
            if not self._client:
                return {
                    "healthy": False,
                    "status": "not_connected",
                    "details": {
                        "url_source": self._url_source,
                        "error": "Client not initialized"
                    }
                }

            await self._client.ping()
            info = await self._client.info()

            return {
                "healthy": True,
                "status": "connected",
                "details": {
                    "url_source": self._url_source,
                    "redis_version": info.get("redis_version", "unknown"),
                    "connected_clients": info.get("connected_clients", 0),
                    "used_memory_human": info.get("used_memory_human", "unknown")
                }
            }

        except Exception as e:
            return {
                "healthy": False,
                "status": "error",
                "details": {
                    "url_source": self._url_source,
                    "error": str(e)
                }
            }

    async def _cleanup(self) -> None:
        """Clean up Redis connection"""
        if self._client:
            try:
                await self._client.aclose()
            except Exception as e:
                self.logger.warning(f"Error closing Redis client: {e}")


async def create_redis_service(
    url: Optional[str] = None,
    **kwargs
) -> RedisService:
    """
    Create and initialize a Redis service instance.

    Args:
        url: Redis URL (uses settings/env vars if not provided)
        **kwargs: Additional config parameters

    Returns:
        Initialized RedisService
    """
    config = None
    if url is not None or kwargs:
        config = RedisConfig(url=url, **kwargs)
    service = RedisService(config)
    await service.initialize()
    return service
