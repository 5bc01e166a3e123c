"""
Redis Pub/Sub Events
====================

Entity-typed channels for live board updates, publish helpers, and a
bridge that forwards subscribed messages to connected websocket clients.
One channel per entity type lets subscribers filter without decoding.
"""

import json
import time
import asyncio
import logging
from typing import Optional, Dict, Any, List, Iterable

from .client import RedisManager

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_PREFIX = 'kanban'

# Logical topic -> channel suffix
CHANNEL_TOPICS = ('tickets', 'projects', 'system', 'patterns', 'memory', 'agents')

TICKET_EVENT_TYPES = ('ticket:created', 'ticket:updated', 'ticket:deleted', 'ticket:transitioned', 'ticket:moved')
PROJECT_EVENT_TYPES = ('project:created', 'project:updated', 'project:deleted')
SYSTEM_EVENT_TYPES = ('system:maintenance', 'system:notification')
PATTERN_EVENT_TYPES = ('pattern:created', 'pattern:updated', 'pattern:deleted',
                       'pattern:cache_hit', 'pattern:cache_miss')
MEMORY_EVENT_TYPES = ('memory:stored', 'memory:retrieved', 'memory:deleted',
                      'memory:searched', 'memory:cache_invalidated')
AGENT_EVENT_TYPES = ('agent:spawned', 'agent:completed', 'agent:failed', 'agent:metrics_updated')


def build_channels(prefix: str = DEFAULT_CHANNEL_PREFIX) -> Dict[str, str]:
    """Map each topic to its channel name, e.g. 'tickets' -> 'kanban:tickets'."""
    return {topic: f"{prefix}:{topic}" for topic in CHANNEL_TOPICS}


class EventPublisher:
    """Publishes JSON events on the entity channels through the primary client."""

    def __init__(self, redis_manager: RedisManager, prefix: str = DEFAULT_CHANNEL_PREFIX):
        self.redis_manager = redis_manager
        self.channels = build_channels(prefix)

    def channel_for(self, topic: str) -> str:
        if topic not in self.channels:
            raise ValueError(f"Unknown event topic: {topic}")
        return self.channels[topic]

    async def publish(self, channel: str, event: Dict[str, Any]) -> int:
        """
        Publish an event; returns the number of subscribers that received it.
        A missing timestamp is filled with epoch milliseconds. Returns 0
        when Redis is disabled; Redis errors propagate.
        """
        client = self.redis_manager.get_client()
        if client is None:
            return 0
        payload = dict(event)
        if not payload.get('timestamp'):
            payload['timestamp'] = int(time.time() * 1000)
        return await client.publish(channel, json.dumps(payload, default=str))

    async def _publish_typed(self, topic: str, allowed: Iterable[str], event: Dict[str, Any]) -> int:
        event_type = event.get('type')
        if event_type not in allowed:
            raise ValueError(f"Invalid {topic} event type: {event_type!r}")
        return await self.publish(self.channel_for(topic), event)

    async def publish_ticket_event(self, event: Dict[str, Any]) -> int:
        return await self._publish_typed('tickets', TICKET_EVENT_TYPES, event)

    async def publish_project_event(self, event: Dict[str, Any]) -> int:
        return await self._publish_typed('projects', PROJECT_EVENT_TYPES, event)

    async def publish_system_event(self, event: Dict[str, Any]) -> int:
        return await self._publish_typed('system', SYSTEM_EVENT_TYPES, event)

    async def publish_pattern_event(self, event: Dict[str, Any]) -> int:
        return await self._publish_typed('patterns', PATTERN_EVENT_TYPES, event)

    async def publish_memory_event(self, event: Dict[str, Any]) -> int:
        return await self._publish_typed('memory', MEMORY_EVENT_TYPES, event)

    async def publish_agent_event(self, event: Dict[str, Any]) -> int:
        return await self._publish_typed('agents', AGENT_EVENT_TYPES, event)


class PubSubBridge:
    """
    Subscribes the dedicated pub/sub connection to every entity channel and
    forwards messages as {'channel', 'event'} to a broadcaster exposing an
    async broadcast(message) method (the dashboard's ConnectionManager).
    """

    def __init__(
        self,
        redis_manager: RedisManager,
        broadcaster,
        channels: Optional[List[str]] = None,
        retry_delay: float = 1.0
    ):
        self.redis_manager = redis_manager
        self.broadcaster = broadcaster
        self.channels = list(channels or build_channels().values())
        self.retry_delay = retry_delay
        self._pubsub = None
        self._task: Optional[asyncio.Task] = None
        self.messages_forwarded = 0

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> bool:
        """Subscribe and start forwarding. Returns False when Redis is disabled or unreachable."""
        if self.active:
            return True
        client = self.redis_manager.get_pubsub_client()
        if client is None:
            return False
        try:
            self._pubsub = client.pubsub(ignore_subscribe_messages=True)
            await self._pubsub.subscribe(*self.channels)
        except Exception as e:
            logger.warning(f"Pub/sub bridge could not subscribe: {e}")
            await self._close_pubsub()
            return False

        self._task = asyncio.create_task(self._listen())
        logger.info(f"Pub/sub bridge subscribed to {len(self.channels)} channels")
        return True

    async def _listen(self) -> None:
        while True:
            try:
                async for message in self._pubsub.listen():
                    if message.get('type') != 'message':
                        continue
                    await self.handle_message(message['channel'], message['data'])
                logger.info("Pub/sub subscription ended")
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # redis-py resubscribes on reconnect; back off and listen again
                logger.error(f"Pub/sub listener error, retrying in {self.retry_delay}s: {e}")
                await asyncio.sleep(self.retry_delay)

    async def handle_message(self, channel: str, data: Any) -> None:
        try:
            event = json.loads(data)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Dropping undecodable message on {channel}: {e}")
            return
        await self.broadcaster.broadcast({'channel': channel, 'event': event})
        self.messages_forwarded += 1

    async def _close_pubsub(self) -> None:
        if self._pubsub is None:
            return
        try:
            await self._pubsub.unsubscribe()
            await self._pubsub.aclose()
        except Exception as e:
            logger.warning(f"Error closing pub/sub subscription: {e}")
        self._pubsub = None

    async def stop(self) -> None:
        """Cancel the listener, unsubscribe and release the subscription."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._close_pubsub()
