"""
Health Checks
=============

Liveness, readiness and full health for load balancers, container probes
and the monitoring dashboard.

Status model:
- healthy:   every component is fine
- degraded:  serving traffic, but the cache is down or below its quality
             thresholds (latency, hit rate) or the job queue is backed up
- unhealthy: the database is unreachable; respond 503
"""

import os
import time
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Tuple

import psutil

from cache.client import RedisManager
from cache.stats import CacheStatsTracker
from executor.executor import CommandExecutor
from .database import DatabaseProbe

logger = logging.getLogger(__name__)

HEALTHY = 'healthy'
DEGRADED = 'degraded'
UNHEALTHY = 'unhealthy'


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _wire_stats(stats: Dict[str, Any]) -> Dict[str, Any]:
    """Counters in the cache endpoint's camelCase shape."""
    return {'hits': stats['hits'], 'misses': stats['misses'], 'hitRate': stats['hit_rate']}


@dataclass
class HealthThresholds:
    """Limits below which a working component is reported as degraded."""
    latency_threshold_ms: float = 100.0
    hit_rate_threshold: float = 50.0  # percent
    min_samples: int = 100
    executor_queue_threshold: int = 50
    require_cache_for_readiness: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]] = None) -> 'HealthThresholds':
        data = data or {}
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


def classify_cache(connection: Dict[str, Any], stats: Dict[str, Any], thresholds: HealthThresholds) -> str:
    """Cache verdict from a connection check and hit/miss counters."""
    if not connection.get('healthy'):
        return UNHEALTHY
    if not connection.get('enabled', True):
        return HEALTHY

    latency = connection.get('latency_ms')
    if latency is not None and latency > thresholds.latency_threshold_ms:
        return DEGRADED

    samples = stats['hits'] + stats['misses']
    if samples >= thresholds.min_samples and stats['hit_rate'] < thresholds.hit_rate_threshold:
        return DEGRADED
    return HEALTHY


class HealthAggregator:
    """Composes component checks into liveness, readiness and full health payloads."""

    def __init__(
        self,
        redis_manager: RedisManager,
        cache_stats: CacheStatsTracker,
        executor: Optional[CommandExecutor] = None,
        database: Optional[DatabaseProbe] = None,
        channels: Optional[List[str]] = None,
        pubsub_active=None,
        thresholds: Optional[HealthThresholds] = None,
        version: str = '1.0.0'
    ):
        self.redis_manager = redis_manager
        self.cache_stats = cache_stats
        self.executor = executor
        self.database = database
        self.channels = list(channels or [])
        # Zero-arg callable reporting whether the pub/sub bridge is listening
        self.pubsub_active = pubsub_active
        self.thresholds = thresholds or HealthThresholds()
        self.version = version
        self.started_at = time.time()

    def uptime(self) -> int:
        return int(time.time() - self.started_at)

    # ------------------------------------------------------------------
    # Probes
    # ------------------------------------------------------------------

    def check_liveness(self) -> Dict[str, Any]:
        """The process answers; touches no dependency."""
        return {'status': 'alive', 'timestamp': _now_iso(), 'uptime': self.uptime()}

    async def _check_database(self) -> Dict[str, Any]:
        if self.database is None:
            return {'name': 'database', 'status': UNHEALTHY, 'message': 'No database probe configured'}
        try:
            result = await self.database.check_health()
        except Exception as e:
            return {'name': 'database', 'status': UNHEALTHY, 'message': str(e), 'details': {'error': repr(e)}}
        return {
            'name': 'database',
            'status': HEALTHY if result['healthy'] else UNHEALTHY,
            'latency_ms': result.get('latency_ms'),
            'message': result.get('error') or f"{result.get('backend')} connection OK",
            'details': {'backend': result.get('backend')},
        }

    async def _check_cache(self) -> Dict[str, Any]:
        try:
            connection = await self.redis_manager.check_health()
        except Exception as e:
            connection = {'healthy': False, 'enabled': True, 'error': str(e)}
        stats = self.cache_stats.get_stats()
        status = classify_cache(connection, stats, self.thresholds)

        if not connection.get('enabled', True):
            message = connection.get('error')
        elif status == UNHEALTHY:
            message = connection.get('error') or 'Redis unreachable'
        elif status == DEGRADED:
            message = 'Redis below latency or hit-rate thresholds'
        else:
            message = 'Redis connection OK'

        details = {'enabled': connection.get('enabled', True), 'cache': stats}
        for key in ('memory', 'clients'):
            if key in connection:
                details[key] = connection[key]
        return {
            'name': 'cache',
            'status': status,
            'latency_ms': connection.get('latency_ms'),
            'message': message,
            'details': details,
        }

    def _check_executor(self) -> Dict[str, Any]:
        if self.executor is None:
            return {'name': 'executor', 'status': HEALTHY, 'message': 'Executor not configured'}
        stats = self.executor.get_stats()
        details = dict(stats)
        details['processing'] = self.executor.is_processing
        details['total_completed'] = self.executor.total_completed
        details['total_failed'] = self.executor.total_failed

        if stats['queued'] >= self.thresholds.executor_queue_threshold:
            status, message = DEGRADED, f"{stats['queued']} jobs waiting for a slot"
        else:
            status, message = HEALTHY, 'Executor OK'
        return {'name': 'executor', 'status': status, 'message': message, 'details': details}

    def get_system_metrics(self) -> Dict[str, Any]:
        """Process resource usage via psutil."""
        try:
            process = psutil.Process(os.getpid())
            with process.oneshot():
                memory = process.memory_info()
                return {
                    'uptime': self.uptime(),
                    'pid': process.pid,
                    'memory': {
                        'rss': memory.rss,
                        'vms': memory.vms,
                        'percentage': round(process.memory_percent(), 2),
                    },
                    'cpu': {'usage': process.cpu_percent(interval=None)},
                    'threads': process.num_threads(),
                }
        except psutil.Error as e:
            logger.warning(f"System metrics unavailable: {e}")
            return {'uptime': self.uptime()}

    # ------------------------------------------------------------------
    # Payloads
    # ------------------------------------------------------------------

    async def check_readiness(self) -> Dict[str, Any]:
        """
        Ready when the database answers. Redis is only consulted when it is
        enabled and configured as required; otherwise it is reported as
        skipped so a slow cache cannot delay the probe.
        """
        if self.thresholds.require_cache_for_readiness and self.redis_manager.enabled:
            database, cache = await asyncio.gather(self._check_database(), self._check_cache())
            cache_status = cache['status']
        else:
            database, cache = await self._check_database(), None
            cache_status = 'skipped'
        checks = {'database': database['status'], 'cache': cache_status}

        if database['status'] == UNHEALTHY:
            return {'status': 'not_ready', 'checks': checks,
                    'reason': f"Database unhealthy: {database['message']}"}
        if cache is not None and cache['status'] == UNHEALTHY:
            return {'status': 'not_ready', 'checks': checks,
                    'reason': f"Redis unhealthy: {cache['message']}"}
        return {'status': 'ready', 'checks': checks}

    async def check_health(self) -> Dict[str, Any]:
        database, cache = await asyncio.gather(self._check_database(), self._check_cache())
        checks = [database, cache, self._check_executor()]

        if database['status'] == UNHEALTHY:
            status = UNHEALTHY
        elif any(c['status'] != HEALTHY for c in checks):
            status = DEGRADED
        else:
            status = HEALTHY

        return {
            'status': status,
            'checks': checks,
            'system': self.get_system_metrics(),
            'timestamp': _now_iso(),
            'version': self.version,
            'uptime': self.uptime(),
        }

    async def generate_health_response(self) -> Tuple[int, Dict[str, Any]]:
        """(status_code, body); degraded still serves traffic, so only unhealthy is 503."""
        health = await self.check_health()
        status_code = 503 if health['status'] == UNHEALTHY else 200
        return status_code, health

    async def check_cache(self, include_statistics: bool = True) -> Tuple[int, Dict[str, Any]]:
        """Detailed cache payload for the cache health endpoint, keyed in camelCase."""
        config = self.redis_manager.config.public_dict()
        try:
            connection = await self.redis_manager.check_health()
            stats = self.cache_stats.get_stats()
            status = classify_cache(connection, stats, self.thresholds)

            cache_section: Dict[str, Any] = _wire_stats(stats)
            if include_statistics and connection.get('healthy') and connection.get('enabled', True):
                statistics = await self.cache_stats.get_statistics()
                if statistics is not None:
                    cache_section['statistics'] = statistics
                    cache_section['families'] = {
                        name: _wire_stats(family)
                        for name, family in self.cache_stats.get_family_stats().items()
                    }

            active = bool(self.pubsub_active()) if self.pubsub_active else False
            body: Dict[str, Any] = {
                'status': status,
                'connection': {
                    'healthy': connection.get('healthy', False),
                    'enabled': connection.get('enabled', True),
                    'latencyMs': connection.get('latency_ms'),
                    'error': connection.get('error'),
                },
                'cache': cache_section,
                'pubsub': {'channels': self.channels, 'active': active and connection.get('healthy', False)},
                'config': config,
                'timestamp': _now_iso(),
            }
            for key in ('memory', 'clients'):
                if key in connection:
                    body[key] = connection[key]
        except Exception as e:
            logger.error(f"Cache health check failed: {e}")
            status = UNHEALTHY
            body = {
                'status': UNHEALTHY,
                'connection': {'healthy': False, 'enabled': True, 'latencyMs': None,
                               'error': str(e) or e.__class__.__name__},
                'cache': {'hits': 0, 'misses': 0, 'hitRate': 0.0},
                'pubsub': {'channels': [], 'active': False},
                'config': config,
                'timestamp': _now_iso(),
            }
        return (503 if status == UNHEALTHY else 200), body
