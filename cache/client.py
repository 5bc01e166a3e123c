"""
Redis Connection Manager
========================

Owns the process-wide pair of Redis connections:
- a primary client for commands (GET/SET/DEL/SCAN/PUBLISH)
- a duplicated client dedicated to SUBSCRIBE, since a connection holding
  open subscriptions cannot issue regular commands

Both clients are created lazily and memoized. Redis is optional: with
REDIS_ENABLED=false every accessor returns None and health reports the
cache as disabled rather than failing.
"""

import os
import time
import asyncio
import logging
import threading
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any
from urllib.parse import urlparse

from redis import asyncio as aioredis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

logger = logging.getLogger(__name__)


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def redact_url(url: str) -> str:
    """Strip credentials from a Redis URL for logging."""
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ''
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    return parsed._replace(netloc=f"***@{netloc}").geturl()


@dataclass
class RedisConfig:
    """
    Connection settings. Timeouts and delays are in milliseconds.

    `max_retries` bounds reconnection of the long-lived subscriber
    connection; each command gets at most `max_retries_per_request`
    retries, so callers see an outage within seconds.
    """
    url: str = 'redis://localhost:6379/0'
    enabled: bool = True
    max_retries: int = 10
    max_retries_per_request: int = 3
    retry_delay: int = 1000
    connect_timeout: int = 10000
    command_timeout: int = 5000
    health_check_interval: int = 30

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]] = None) -> 'RedisConfig':
        """Build from the `redis` section of settings.yaml, then apply env overrides."""
        data = dict(data or {})
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        config = cls(**known)

        config.url = os.environ.get('REDIS_URL') or config.url
        config.enabled = _env_flag('REDIS_ENABLED', config.enabled)
        config.max_retries = int(os.environ.get('REDIS_MAX_RETRIES', config.max_retries))
        config.retry_delay = int(os.environ.get('REDIS_RETRY_DELAY', config.retry_delay))
        config.connect_timeout = int(os.environ.get('REDIS_CONNECT_TIMEOUT', config.connect_timeout))
        config.command_timeout = int(os.environ.get('REDIS_COMMAND_TIMEOUT', config.command_timeout))
        return config

    def public_dict(self) -> Dict[str, Any]:
        """Settings safe to expose on health endpoints (no URL)."""
        data = asdict(self)
        data.pop('url')
        return data


class RedisManager:
    """
    Holds exactly one primary and one pub/sub connection per process.

    Construct once at startup and pass the instance to everything that
    needs Redis. Client construction does no network I/O (connections are
    opened on first command), so accessors are safe to call from sync code.
    """

    def __init__(self, config: Optional[RedisConfig] = None):
        self.config = config or RedisConfig()
        self._client: Optional[aioredis.Redis] = None
        self._pubsub_client: Optional[aioredis.Redis] = None
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def _command_retry(self) -> Retry:
        # Short and capped at retry_delay: a down server fails the call quickly
        cfg = self.config
        return Retry(
            ExponentialBackoff(cap=cfg.retry_delay / 1000, base=0.1),
            cfg.max_retries_per_request,
        )

    def _reconnect_retry(self) -> Retry:
        cfg = self.config
        return Retry(
            ExponentialBackoff(cap=30, base=cfg.retry_delay / 1000),
            cfg.max_retries,
        )

    def _create_client(self) -> aioredis.Redis:
        cfg = self.config
        return aioredis.from_url(
            cfg.url,
            decode_responses=True,
            socket_connect_timeout=cfg.connect_timeout / 1000,
            socket_timeout=cfg.command_timeout / 1000,
            retry=self._command_retry(),
            retry_on_error=[RedisConnectionError, RedisTimeoutError],
            health_check_interval=cfg.health_check_interval,
        )

    def get_client(self) -> Optional[aioredis.Redis]:
        """Return the primary client, creating it on first use."""
        if not self.enabled:
            return None
        if self._client is not None:
            return self._client

        with self._lock:
            if self._client is None:
                self._client = self._create_client()
                logger.info(f"Redis client created for {redact_url(self.config.url)}")
        return self._client

    def get_pubsub_client(self) -> Optional[aioredis.Redis]:
        """Return the subscriber client, duplicated from the primary's configuration."""
        if not self.enabled:
            return None
        if self._pubsub_client is not None:
            return self._pubsub_client

        primary = self.get_client()
        with self._lock:
            if self._pubsub_client is None:
                pool = primary.connection_pool
                connection_kwargs = dict(pool.connection_kwargs)
                # The subscriber reconnects with the full retry budget
                connection_kwargs['retry'] = self._reconnect_retry()
                duplicate_pool = aioredis.ConnectionPool(
                    connection_class=pool.connection_class,
                    max_connections=pool.max_connections,
                    **connection_kwargs,
                )
                self._pubsub_client = aioredis.Redis.from_pool(duplicate_pool)
                logger.info("Redis pub/sub client created")
        return self._pubsub_client

    async def connect(self) -> bool:
        """
        Startup probe. Logs the connection state and never raises, so a
        Redis outage at boot leaves the service running in degraded mode.
        """
        client = self.get_client()
        if client is None:
            logger.info("Redis disabled (REDIS_ENABLED=false), real-time sync unavailable")
            return False
        try:
            await asyncio.wait_for(client.ping(), timeout=self.config.connect_timeout / 1000)
            logger.info(f"Redis client ready: {redact_url(self.config.url)}")
            return True
        except Exception as e:
            logger.warning(f"Redis unavailable at startup, continuing without cache: {e!r}")
            return False

    async def close_all(self) -> None:
        """Close both connections. Safe to call repeatedly or before first use."""
        with self._lock:
            clients = [c for c in (self._client, self._pubsub_client) if c is not None]
            self._client = None
            self._pubsub_client = None

        for client in clients:
            try:
                await client.aclose()
            except Exception as e:
                logger.warning(f"Error closing Redis connection: {e}")
        if clients:
            logger.info("Redis connections closed")

    async def check_health(self) -> Dict[str, Any]:
        """
        PING the server and collect memory/client info.

        Never raises; failures are returned as {'healthy': False, 'error': ...}.
        The PING is bounded by the command timeout so an unreachable server
        cannot hang the caller.
        """
        if not self.enabled:
            return {
                'healthy': True,
                'enabled': False,
                'error': 'Redis is disabled (REDIS_ENABLED=false). Real-time sync is not available.',
            }

        start = time.monotonic()
        try:
            client = self.get_client()
            timeout = self.config.command_timeout / 1000
            pong = await asyncio.wait_for(client.ping(), timeout=timeout)
            if not pong:
                raise RuntimeError('Unexpected PING response')
            latency_ms = round((time.monotonic() - start) * 1000, 2)

            result = {'healthy': True, 'enabled': True, 'latency_ms': latency_ms}
            try:
                memory_info = await asyncio.wait_for(client.info('memory'), timeout=timeout)
                client_info = await asyncio.wait_for(client.info('clients'), timeout=timeout)
                result['memory'] = {
                    'used': memory_info.get('used_memory_human', 'unknown'),
                    'peak': memory_info.get('used_memory_peak_human', 'unknown'),
                    'maxmemory': memory_info.get('maxmemory_human', 'unlimited'),
                }
                clients = client_info.get('connected_clients')
                if clients is not None:
                    result['clients'] = int(clients)
            except Exception as e:
                # INFO may be disabled (managed Redis); the connection is still fine
                logger.debug(f"Redis INFO unavailable: {e}")
            return result
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.warning(f"Redis health check failed: {message}")
            return {
                'healthy': False,
                'enabled': True,
                'latency_ms': round((time.monotonic() - start) * 1000, 2),
                'error': message,
            }
