"""Tests for the websocket connection manager."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from dashboard.server import ConnectionManager, app


class TestConnectionManager:

    @pytest.mark.asyncio
    async def test_broadcast_reaches_all_and_drops_closed(self):
        manager = ConnectionManager()
        alive = MagicMock()
        alive.accept = AsyncMock()
        alive.send_json = AsyncMock()
        closed = MagicMock()
        closed.accept = AsyncMock()
        closed.send_json = AsyncMock(side_effect=RuntimeError("websocket is closed"))

        await manager.connect(alive)
        await manager.connect(closed)
        await manager.broadcast({'channel': 'kanban:tickets', 'event': {'type': 'ticket:created'}})

        alive.send_json.assert_awaited_once_with({'channel': 'kanban:tickets', 'event': {'type': 'ticket:created'}})
        assert manager.active_connections == [alive]

    def test_disconnect_unknown_is_noop(self):
        manager = ConnectionManager()
        manager.disconnect(MagicMock())
        assert manager.active_connections == []


def test_routes_registered():
    paths = {route.path for route in app.routes}
    assert {'/health/live', '/health/ready', '/health', '/health/cache',
            '/api/executor/status', '/api/executor/jobs', '/ws'} <= paths
