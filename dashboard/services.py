"""
Service context for the dashboard process.

Every long-lived component is built once here and handed to the routers,
so nothing reaches for a module-level singleton.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Any, Callable, List

from cache import (
    RedisConfig,
    RedisManager,
    CacheStatsTracker,
    FamilyCache,
    EventPublisher,
    PubSubBridge,
)
from executor import CommandExecutor, OutputBuffer
from monitoring import DatabaseProbe, HealthAggregator, HealthThresholds

logger = logging.getLogger(__name__)


@dataclass
class CoreServices:
    """Components shared by the HTTP surface."""
    config: Dict[str, Any]
    redis: RedisManager
    cache_stats: CacheStatsTracker
    publisher: EventPublisher
    cache: FamilyCache
    executor: CommandExecutor
    output_buffer: OutputBuffer
    bridge: PubSubBridge
    database: DatabaseProbe
    health: HealthAggregator
    _detach: List[Callable[[], None]] = field(default_factory=list)

    async def start(self) -> None:
        """Probe Redis and start forwarding pub/sub events. Never fails startup."""
        if await self.redis.connect():
            await self.bridge.start()
        else:
            logger.warning("Starting without Redis; cache and live events are unavailable")

    async def stop(self) -> None:
        await self.executor.shutdown()
        await self.bridge.stop()
        for detach in self._detach:
            detach()
        self._detach.clear()
        await self.redis.close_all()


def build_services(config: Dict[str, Any], broadcaster) -> CoreServices:
    """Wire components from a loaded config; `broadcaster` receives pub/sub events."""
    redis_manager = RedisManager(RedisConfig.from_dict(config.get('redis')))
    cache_stats = CacheStatsTracker(redis_manager)

    pubsub_config = config.get('pubsub', {})
    publisher = EventPublisher(redis_manager, prefix=pubsub_config.get('channel_prefix', 'kanban'))
    cache = FamilyCache(redis_manager, cache_stats, publisher)
    bridge = PubSubBridge(
        redis_manager,
        broadcaster,
        channels=list(publisher.channels.values()),
        retry_delay=float(pubsub_config.get('retry_delay', 1.0)),
    )

    executor_config = config.get('executor', {})
    executor = CommandExecutor(
        max_concurrent=int(executor_config.get('max_concurrent', 3)),
        default_timeout=float(executor_config.get('default_timeout', 300)),
        max_history=int(executor_config.get('max_history', 500)),
        stop_grace=float(executor_config.get('stop_grace', 10)),
    )
    output_buffer = OutputBuffer(max_size=int(executor_config.get('output_buffer_size', 1000)))
    detach = output_buffer.attach(executor)

    database_config = config.get('database', {})
    database = DatabaseProbe(
        database_url=database_config.get('url'),
        connect_timeout=int(database_config.get('connect_timeout', 5)),
    )

    health = HealthAggregator(
        redis_manager,
        cache_stats,
        executor=executor,
        database=database,
        channels=list(publisher.channels.values()),
        pubsub_active=lambda: bridge.active,
        thresholds=HealthThresholds.from_dict(config.get('health')),
        version=str(config.get('dashboard', {}).get('version', '1.0.0')),
    )

    return CoreServices(
        config=config,
        redis=redis_manager,
        cache_stats=cache_stats,
        publisher=publisher,
        cache=cache,
        executor=executor,
        output_buffer=output_buffer,
        bridge=bridge,
        database=database,
        health=health,
        _detach=[detach],
    )
