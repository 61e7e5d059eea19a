# tests/services/test_redis_service.py
"""
Unit tests for the Redis service and the Redis session backend.

Uses mock-first approach to test without requiring a real Redis instance.
"""
import os
import json
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from src.services.redis_service import (
    RedisService,
    RedisConfig,
    create_redis_service
)
from src.services.session_store import RedisSessionBackend, SessionStore
from src.core.exceptions import StorageError, StorageTimeoutError


@pytest.fixture
def mock_config():
    """Create a test configuration"""
    return RedisConfig(
        url="redis://localhost:6379/0",
        decode_responses=True,
        socket_timeout=2.0
    )


@pytest.fixture
def mock_pipeline():
    """WATCH/MULTI pipeline used by compare_and_set"""
    pipe = MagicMock()
    pipe.watch = AsyncMock()
    pipe.get = AsyncMock(return_value="old")
    pipe.unwatch = AsyncMock()
    pipe.execute = AsyncMock(return_value=[True])
    return pipe


@pytest.fixture
def mock_redis_client(mock_pipeline):
    """Create a mock Redis client"""
    client = AsyncMock()

    client.ping = AsyncMock(return_value=True)
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    client.exists = AsyncMock(return_value=1)
    client.hgetall = AsyncMock(return_value={})
    client.eval = AsyncMock(return_value=[1, 1, "100.0"])
    client.info = AsyncMock(return_value={
        "redis_version": "7.0.0",
        "connected_clients": 5,
        "used_memory_human": "1.5M"
    })
    client.aclose = AsyncMock()

    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=mock_pipeline)
    context.__aexit__ = AsyncMock(return_value=False)
    client.pipeline = MagicMock(return_value=context)

    return client


@pytest.fixture
async def redis_service(mock_config, mock_redis_client):
    """Create a Redis service with mocked client"""
    service = RedisService(mock_config)

    with patch('src.services.redis_service.redis.from_url', return_value=mock_redis_client):
        await service.initialize()

    return service


class TestRedisService:
    """Test Redis Service functionality"""

    async def test_initialization(self, mock_config, mock_redis_client):
        """Test service initialization"""
        service = RedisService(mock_config)

        assert service.config == mock_config
        assert not service.is_initialized

        with patch('src.services.redis_service.redis.from_url', return_value=mock_redis_client) as from_url:
            await service.initialize()

        assert service.is_initialized
        assert service._client is mock_redis_client
        mock_redis_client.ping.assert_called_once()
        assert from_url.call_args.kwargs["socket_timeout"] == 2.0
        assert from_url.call_args.kwargs["socket_connect_timeout"] == 2.0

    async def test_initialization_from_env(self):
        """Provider-specific variables are checked in order"""
        with patch.dict('os.environ', {
            'REDIS_DIRECT_URI': 'redis://direct:6379',
            'UPSTASH_REDIS_URL': 'rediss://upstash:6379'
        }):
            service = RedisService()

            assert service.config.url == 'rediss://upstash:6379'
            assert service._url_source == 'UPSTASH_REDIS_URL'

    async def test_no_redis_url(self):
        """Test behavior when no Redis URL is configured"""
        with patch.dict('os.environ', {}, clear=True):
            service = RedisService()

            assert service.config.url is None

            await service.initialize()
            assert service.is_initialized
            assert service._client is None

    async def test_connection_failure(self, mock_config):
        """Startup survives; operations then raise StorageError"""
        service = RedisService(mock_config)

        failing_client = AsyncMock()
        failing_client.ping.side_effect = RedisConnectionError("Connection refused")

        with patch('src.services.redis_service.redis.from_url', return_value=failing_client):
            await service.initialize()

        assert service.is_initialized
        assert service._client is None

        with pytest.raises(StorageError):
            await service.get("session:abc")

    async def test_reconnects_after_failed_startup(self, mock_redis_client):
        """Redis coming up after the app does is picked up on next use"""
        service = RedisService(RedisConfig(url="redis://localhost:6379/0", reconnect_interval=0))

        failing_client = AsyncMock()
        failing_client.ping.side_effect = RedisConnectionError("Connection refused")
        mock_redis_client.get.return_value = "value"

        with patch('src.services.redis_service.redis.from_url',
                   side_effect=[failing_client, mock_redis_client]) as from_url:
            await service.initialize()
            assert service._client is None

            assert await service.get("session:abc") == "value"

        assert from_url.call_count == 2
        assert service._client is mock_redis_client

    async def test_reconnect_is_throttled(self, mock_config):
        service = RedisService(mock_config)

        failing_client = AsyncMock()
        failing_client.ping.side_effect = RedisConnectionError("Connection refused")

        with patch('src.services.redis_service.redis.from_url', return_value=failing_client) as from_url:
            await service.initialize()
            for _ in range(3):
                with pytest.raises(StorageError):
                    await service.get("session:abc")

        assert from_url.call_count == 1

    async def test_get_string(self, redis_service, mock_redis_client):
        mock_redis_client.get.return_value = "test value"

        result = await redis_service.get("test_key")

        assert result == "test value"
        mock_redis_client.get.assert_called_once_with("test_key")

    async def test_get_json(self, redis_service, mock_redis_client):
        """Test getting JSON value with auto-deserialization"""
        mock_redis_client.get.return_value = '{"name": "test", "value": 42}'

        assert await redis_service.get("test_key") == {"name": "test", "value": 42}
        assert await redis_service.get("test_key", deserialize_json=False) == '{"name": "test", "value": 42}'

    async def test_get_default(self, redis_service, mock_redis_client):
        mock_redis_client.get.return_value = None

        result = await redis_service.get("missing_key", default="default_value")

        assert result == "default_value"

    async def test_get_timeout_is_distinct(self, redis_service, mock_redis_client):
        """A slow server surfaces as StorageTimeoutError, not a hang"""
        mock_redis_client.get.side_effect = RedisTimeoutError("Timeout reading from socket")

        with pytest.raises(StorageTimeoutError) as exc_info:
            await redis_service.get("session:abc")

        assert exc_info.value.key == "session:abc"
        assert exc_info.value.public_message == StorageError.GENERIC_MESSAGE

    async def test_set_string(self, redis_service, mock_redis_client):
        await redis_service.set("test_key", "test value")

        mock_redis_client.set.assert_called_once_with("test_key", "test value")

    async def test_set_json_with_ttl(self, redis_service, mock_redis_client):
        data = {"name": "test", "value": 42}

        await redis_service.set("test_key", data, ttl=3600)

        mock_redis_client.set.assert_called_once_with("test_key", json.dumps(data), ex=3600)

    async def test_set_failure_raises(self, redis_service, mock_redis_client):
        """Writes are never silently dropped"""
        mock_redis_client.set.side_effect = RedisConnectionError("reset by peer")

        with pytest.raises(StorageError) as exc_info:
            await redis_service.set("session:abc", "{}")
        assert exc_info.value.operation == "set"

    async def test_set_no_client(self, redis_service):
        redis_service._client = None

        with pytest.raises(StorageError):
            await redis_service.set("test_key", "value")

    async def test_compare_and_set_writes_when_unchanged(self, redis_service, mock_pipeline):
        assert await redis_service.compare_and_set("k", "old", "new", ttl=60) is True

        mock_pipeline.watch.assert_awaited_once_with("k")
        mock_pipeline.multi.assert_called_once()
        mock_pipeline.set.assert_called_once_with("k", "new", ex=60)
        mock_pipeline.execute.assert_awaited_once()

    async def test_compare_and_set_refuses_when_changed(self, redis_service, mock_pipeline):
        mock_pipeline.get.return_value = "someone else"

        assert await redis_service.compare_and_set("k", "old", "new", ttl=60) is False
        mock_pipeline.unwatch.assert_awaited_once()
        mock_pipeline.execute.assert_not_called()

    async def test_compare_and_set_watch_error(self, redis_service, mock_pipeline):
        """Concurrent write between WATCH and EXEC"""
        mock_pipeline.execute.side_effect = WatchError("watched key changed")

        assert await redis_service.compare_and_set("k", "old", "new", ttl=60) is False

    async def test_delete(self, redis_service, mock_redis_client):
        mock_redis_client.delete.return_value = 2

        result = await redis_service.delete("key1", "key2")

        assert result == 2
        mock_redis_client.delete.assert_called_once_with("key1", "key2")

    async def test_delete_nothing(self, redis_service, mock_redis_client):
        assert await redis_service.delete() == 0
        mock_redis_client.delete.assert_not_called()

    async def test_exists(self, redis_service, mock_redis_client):
        mock_redis_client.exists.return_value = 1

        assert await redis_service.exists("test_key") == 1
        mock_redis_client.exists.assert_called_once_with("test_key")

    async def test_eval(self, redis_service, mock_redis_client):
        result = await redis_service.eval("return 1", ["k1", "k2"], ["a", 1])

        assert result == [1, 1, "100.0"]
        mock_redis_client.eval.assert_called_once_with("return 1", 2, "k1", "k2", "a", 1)

    async def test_health_check_healthy(self, redis_service):
        health = await redis_service.health_check()

        assert health['healthy'] is True
        assert health['status'] == 'connected'
        assert health['details']['redis_version'] == '7.0.0'
        assert health['details']['connected_clients'] == 5

    async def test_health_check_no_url(self):
        with patch.dict('os.environ', {}, clear=True):
            service = RedisService()
        await service.initialize()

        health = await service.health_check()

        assert health['healthy'] is True
        assert health['status'] == 'disabled'
        assert 'not configured' in health['details']['message']

    async def test_health_check_error(self, redis_service, mock_redis_client):
        mock_redis_client.ping.side_effect = RedisConnectionError("Connection lost")

        health = await redis_service.health_check()

        assert health['healthy'] is False
        assert health['status'] == 'error'
        assert 'Connection lost' in health['details']['error']

    async def test_cleanup(self, redis_service, mock_redis_client):
        await redis_service.shutdown()

        mock_redis_client.aclose.assert_called_once()
        assert not redis_service.is_initialized


class TestRedisSessionBackend:
    """Session store on top of the mocked Redis service"""

    async def test_set_and_get_raw_json(self, redis_service, mock_redis_client):
        backend = RedisSessionBackend(redis_service)

        await backend.set("session:abc", '{"id": "abc"}', 60)
        mock_redis_client.set.assert_called_once_with("session:abc", '{"id": "abc"}', ex=60)

        mock_redis_client.get.return_value = '{"id": "abc"}'
        assert await backend.get("session:abc") == '{"id": "abc"}'

    async def test_store_surfaces_timeouts(self, redis_service, mock_redis_client):
        mock_redis_client.get.side_effect = RedisTimeoutError("timeout")
        store = SessionStore(backend=RedisSessionBackend(redis_service), ttl_seconds=60, ttl_policy="fixed")

        with pytest.raises(StorageTimeoutError):
            await store.get("s" * 43)

    async def test_exists_and_delete(self, redis_service, mock_redis_client):
        backend = RedisSessionBackend(redis_service)

        assert await backend.exists("session:abc") is True
        mock_redis_client.delete.return_value = 0
        assert await backend.delete("session:abc") is False


class TestRedisServiceFactory:
    """Test factory functions"""

    async def test_create_redis_service(self, mock_redis_client):
        with patch('src.services.redis_service.redis.from_url', return_value=mock_redis_client):
            service = await create_redis_service(
                url="redis://factory:6379",
                socket_timeout=10.0
            )

            assert isinstance(service, RedisService)
            assert service.is_initialized
            assert service.config.url == "redis://factory:6379"
            assert service.config.socket_timeout == 10.0


# Integration tests (optional, skipped by default)
@pytest.mark.skipif(
    not os.getenv("RUN_INTEGRATION_TESTS"),
    reason="Integration tests disabled"
)
class TestRedisServiceIntegration:
    """Integration tests that require a real Redis instance (REDIS_URL)"""

    async def test_real_compare_and_set(self):
        service = await create_redis_service(url=os.getenv("REDIS_URL", "redis://localhost:6379/0"))
        key = "test:integration:cas"

        await service.set(key, "v1", ttl=60)
        assert await service.compare_and_set(key, "v1", "v2", ttl=60)
        assert not await service.compare_and_set(key, "v1", "v3", ttl=60)
        assert await service.get(key, deserialize_json=False) == "v2"

        assert await service.delete(key) == 1
        await service.shutdown()
