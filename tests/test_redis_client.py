"""Tests for Redis configuration, lazy clients and the health probe."""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest
from redis import asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError

from cache.client import RedisConfig, RedisManager, redact_url
from cache.stats import CacheStatsTracker
from cache.store import FamilyCache


class TestRedisConfig:

    def test_defaults(self):
        config = RedisConfig.from_dict()
        assert config.url == 'redis://localhost:6379/0'
        assert config.enabled is True
        assert config.max_retries == 10
        assert config.retry_delay == 1000
        assert config.connect_timeout == 10000
        assert config.command_timeout == 5000

    def test_env_overrides_file_values(self, monkeypatch):
        monkeypatch.setenv('REDIS_URL', 'redis://cache:6380/2')
        monkeypatch.setenv('REDIS_ENABLED', 'false')
        monkeypatch.setenv('REDIS_COMMAND_TIMEOUT', '250')

        config = RedisConfig.from_dict({'url': 'redis://file:6379/0', 'max_retries': 3, 'unknown': 1})

        assert config.url == 'redis://cache:6380/2'
        assert config.enabled is False
        assert config.command_timeout == 250
        assert config.max_retries == 3

    def test_public_dict_hides_url(self):
        data = RedisConfig(url='redis://:secret@cache:6379/0').public_dict()
        assert 'url' not in data
        assert data['max_retries'] == 10

    def test_redact_url(self):
        assert redact_url('redis://:secret@cache:6379/0') == 'redis://***@cache:6379/0'
        assert redact_url('redis://localhost:6379/0') == 'redis://localhost:6379/0'


class TestRedisManager:

    def test_disabled_returns_no_clients(self):
        manager = RedisManager(RedisConfig(enabled=False))
        assert manager.get_client() is None
        assert manager.get_pubsub_client() is None

    def test_clients_are_memoized_and_distinct(self):
        manager = RedisManager(RedisConfig(url='redis://localhost:6399/3'))

        primary = manager.get_client()
        assert isinstance(primary, aioredis.Redis)
        assert manager.get_client() is primary

        pubsub = manager.get_pubsub_client()
        assert pubsub is not primary
        assert manager.get_pubsub_client() is pubsub
        assert pubsub.connection_pool is not primary.connection_pool
        assert pubsub.connection_pool.connection_kwargs['port'] == 6399
        assert pubsub.connection_pool.connection_kwargs['db'] == 3

    def test_commands_retry_briefly_subscriber_reconnects_longer(self):
        manager = RedisManager(RedisConfig(url='redis://localhost:6399/3', retry_delay=500))

        command_retry = manager.get_client().connection_pool.connection_kwargs['retry']
        reconnect_retry = manager.get_pubsub_client().connection_pool.connection_kwargs['retry']

        assert command_retry._retries == 3
        assert command_retry._backoff.compute(10) == 0.5
        assert reconnect_retry._retries == 10

    @pytest.mark.asyncio
    async def test_refused_port_fails_fast(self):
        manager = RedisManager(RedisConfig(url='redis://127.0.0.1:1/0', connect_timeout=500, retry_delay=100))
        cache = FamilyCache(manager, CacheStatsTracker())

        start = time.monotonic()
        with pytest.raises(RedisConnectionError):
            await asyncio.wait_for(cache.get('tickets', 't1'), timeout=10)
        assert time.monotonic() - start < 5

        await manager.close_all()

    @pytest.mark.asyncio
    async def test_close_all_is_idempotent(self, redis_manager, mock_redis_client):
        await redis_manager.close_all()
        await redis_manager.close_all()
        mock_redis_client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connect_never_raises(self, redis_manager, mock_redis_client):
        mock_redis_client.ping = AsyncMock(side_effect=ConnectionError("refused"))
        assert await redis_manager.connect() is False

        mock_redis_client.ping = AsyncMock(return_value=True)
        assert await redis_manager.connect() is True


class TestCheckHealth:

    @pytest.mark.asyncio
    async def test_disabled_is_healthy(self):
        result = await RedisManager(RedisConfig(enabled=False)).check_health()
        assert result['healthy'] is True
        assert result['enabled'] is False
        assert 'disabled' in result['error']

    @pytest.mark.asyncio
    async def test_healthy_with_memory_and_clients(self, redis_manager, mock_redis_client):
        info = {
            'memory': {'used_memory_human': '1.2M', 'used_memory_peak_human': '2.0M', 'maxmemory_human': '0B'},
            'clients': {'connected_clients': 4},
        }
        mock_redis_client.info = AsyncMock(side_effect=lambda section: info[section])

        result = await redis_manager.check_health()

        assert result['healthy'] is True
        assert result['latency_ms'] >= 0
        assert result['memory'] == {'used': '1.2M', 'peak': '2.0M', 'maxmemory': '0B'}
        assert result['clients'] == 4

    @pytest.mark.asyncio
    async def test_info_failure_keeps_connection_healthy(self, redis_manager, mock_redis_client):
        mock_redis_client.info = AsyncMock(side_effect=Exception("unknown command 'INFO'"))
        result = await redis_manager.check_health()
        assert result['healthy'] is True
        assert 'memory' not in result

    @pytest.mark.asyncio
    async def test_unreachable_reports_error(self, redis_manager, mock_redis_client):
        mock_redis_client.ping = AsyncMock(side_effect=ConnectionError("Connection refused"))
        result = await redis_manager.check_health()
        assert result['healthy'] is False
        assert result['enabled'] is True
        assert result['error'] == 'Connection refused'

    @pytest.mark.asyncio
    async def test_hanging_server_bounded_by_command_timeout(self, mock_redis_client):
        async def hang():
            await asyncio.sleep(10)

        manager = RedisManager(RedisConfig(command_timeout=50))
        manager._client = mock_redis_client
        mock_redis_client.ping = AsyncMock(side_effect=hang)

        start = time.monotonic()
        result = await manager.check_health()

        assert result['healthy'] is False
        assert time.monotonic() - start < 2
