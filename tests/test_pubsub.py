"""Tests for pub/sub publishing and the websocket bridge."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from cache.client import RedisConfig, RedisManager
from cache.pubsub import EventPublisher, PubSubBridge, build_channels


def test_build_channels():
    channels = build_channels()
    assert channels['tickets'] == 'kanban:tickets'
    assert set(channels) == {'tickets', 'projects', 'system', 'patterns', 'memory', 'agents'}
    assert build_channels('board')['agents'] == 'board:agents'


class TestEventPublisher:

    @pytest.mark.asyncio
    async def test_publish_stamps_and_encodes(self, redis_manager, mock_redis_client):
        publisher = EventPublisher(redis_manager)
        receivers = await publisher.publish('kanban:system', {'type': 'system:notification', 'data': {'msg': 'hi'}})

        assert receivers == 1
        channel, payload = mock_redis_client.publish.await_args.args
        assert channel == 'kanban:system'
        event = json.loads(payload)
        assert event['data'] == {'msg': 'hi'}
        assert event['timestamp'] > 0

    @pytest.mark.asyncio
    async def test_existing_timestamp_kept(self, redis_manager, mock_redis_client):
        await EventPublisher(redis_manager).publish('kanban:system', {'type': 'x', 'timestamp': 123})
        assert json.loads(mock_redis_client.publish.await_args.args[1])['timestamp'] == 123

    @pytest.mark.asyncio
    async def test_typed_helpers_route_to_channels(self, redis_manager, mock_redis_client):
        publisher = EventPublisher(redis_manager)
        await publisher.publish_ticket_event({'type': 'ticket:moved', 'data': {'id': 't1'}})
        await publisher.publish_agent_event({'type': 'agent:spawned', 'data': {}})

        channels = [c.args[0] for c in mock_redis_client.publish.await_args_list]
        assert channels == ['kanban:tickets', 'kanban:agents']

    @pytest.mark.asyncio
    async def test_typed_helper_rejects_foreign_type(self, redis_manager, mock_redis_client):
        with pytest.raises(ValueError):
            await EventPublisher(redis_manager).publish_project_event({'type': 'ticket:created'})
        mock_redis_client.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disabled_publishes_nothing(self, disabled_redis_manager):
        publisher = EventPublisher(disabled_redis_manager)
        assert await publisher.publish_system_event({'type': 'system:maintenance'}) == 0

    @pytest.mark.asyncio
    async def test_publish_errors_propagate(self, redis_manager, mock_redis_client):
        mock_redis_client.publish = AsyncMock(side_effect=ConnectionError("down"))
        with pytest.raises(ConnectionError):
            await EventPublisher(redis_manager).publish('kanban:system', {'type': 'x'})


class FakePubSub:
    """Stands in for redis.asyncio.client.PubSub, replaying queued messages."""

    def __init__(self, messages):
        self.messages = messages
        self.subscribe = AsyncMock()
        self.unsubscribe = AsyncMock()
        self.aclose = AsyncMock()

    async def listen(self):
        for message in self.messages:
            yield message


class TestPubSubBridge:

    @pytest.mark.asyncio
    async def test_handle_message_forwards_decoded_event(self):
        broadcaster = MagicMock()
        broadcaster.broadcast = AsyncMock()
        bridge = PubSubBridge(RedisManager(RedisConfig(enabled=False)), broadcaster)

        await bridge.handle_message('kanban:tickets', json.dumps({'type': 'ticket:created'}))
        await bridge.handle_message('kanban:tickets', 'not json')

        broadcaster.broadcast.assert_awaited_once_with(
            {'channel': 'kanban:tickets', 'event': {'type': 'ticket:created'}}
        )
        assert bridge.messages_forwarded == 1

    @pytest.mark.asyncio
    async def test_start_without_redis(self, disabled_redis_manager):
        bridge = PubSubBridge(disabled_redis_manager, MagicMock())
        assert await bridge.start() is False
        assert bridge.active is False

    @pytest.mark.asyncio
    async def test_subscribes_and_forwards(self, redis_manager):
        fake = FakePubSub([
            {'type': 'message', 'channel': 'kanban:agents', 'data': json.dumps({'type': 'agent:spawned'})},
            {'type': 'pmessage', 'channel': 'kanban:agents', 'data': '{}'},
            {'type': 'message', 'channel': 'kanban:system', 'data': json.dumps({'type': 'system:notification'})},
        ])
        pubsub_client = MagicMock()
        pubsub_client.pubsub = MagicMock(return_value=fake)
        redis_manager._pubsub_client = pubsub_client

        broadcaster = MagicMock()
        broadcaster.broadcast = AsyncMock()
        bridge = PubSubBridge(redis_manager, broadcaster, channels=['kanban:agents', 'kanban:system'])

        assert await bridge.start() is True
        pubsub_client.pubsub.assert_called_once_with(ignore_subscribe_messages=True)
        fake.subscribe.assert_awaited_once_with('kanban:agents', 'kanban:system')

        await asyncio.wait_for(bridge._task, timeout=1)
        assert bridge.messages_forwarded == 2
        forwarded = [c.args[0]['channel'] for c in broadcaster.broadcast.await_args_list]
        assert forwarded == ['kanban:agents', 'kanban:system']

        await bridge.stop()
        fake.unsubscribe.assert_awaited_once()
        fake.aclose.assert_awaited_once()
        assert bridge.active is False

    @pytest.mark.asyncio
    async def test_subscribe_failure_returns_false(self, redis_manager):
        fake = FakePubSub([])
        fake.subscribe = AsyncMock(side_effect=ConnectionError("refused"))
        pubsub_client = MagicMock()
        pubsub_client.pubsub = MagicMock(return_value=fake)
        redis_manager._pubsub_client = pubsub_client

        bridge = PubSubBridge(redis_manager, MagicMock())
        assert await bridge.start() is False
        assert bridge.active is False
