"""Pytest configuration and shared fixtures.

Redis is never contacted: store-backed tests get a RedisManager whose
primary client is a mock with async command methods.
"""

import fnmatch
from unittest.mock import AsyncMock, MagicMock

import pytest

from cache.client import RedisConfig, RedisManager

ENV_OVERRIDES = (
    'REDIS_URL', 'REDIS_ENABLED', 'REDIS_MAX_RETRIES', 'REDIS_RETRY_DELAY',
    'REDIS_CONNECT_TIMEOUT', 'REDIS_COMMAND_TIMEOUT', 'DATABASE_URL',
    'DB_HOST', 'DB_USER', 'DB_NAME', 'EXECUTOR_MAX_CONCURRENT',
    'DASHBOARD_HOST', 'DASHBOARD_PORT', 'KANBAN_CONFIG',
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's environment from leaking into config tests."""
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)


def make_scan_iter(keys):
    """Fake of Redis.scan_iter over a fixed key list, honouring `match`."""

    def scan_iter(match='*', count=None):
        async def generate():
            for key in list(keys):
                if fnmatch.fnmatchcase(key, match):
                    yield key
        return generate()

    return scan_iter


@pytest.fixture
def mock_redis_client():
    """Async Redis client mock with a pipeline that records queued commands."""
    client = MagicMock()
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    client.exists = AsyncMock(return_value=1)
    client.ttl = AsyncMock(return_value=300)
    client.ping = AsyncMock(return_value=True)
    client.info = AsyncMock(return_value={})
    client.publish = AsyncMock(return_value=1)
    client.aclose = AsyncMock()
    client.scan_iter = MagicMock(side_effect=make_scan_iter([]))

    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[])
    client.pipeline = MagicMock(return_value=pipe)
    return client


@pytest.fixture
def redis_manager(mock_redis_client):
    """RedisManager whose primary client is the mock."""
    manager = RedisManager(RedisConfig())
    manager._client = mock_redis_client
    return manager


@pytest.fixture
def disabled_redis_manager():
    return RedisManager(RedisConfig(enabled=False))
