#!/usr/bin/env python3
"""
Kanban Realtime Server
======================

Serves health probes, the executor API and a websocket that relays board
events published on the Redis pub/sub channels.
"""

import os
import sys
import logging
from pathlib import Path
from typing import List

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Add parent directory for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from dashboard.config import load_config
from dashboard.services import build_services, CoreServices
from dashboard.health_routes import router as health_router, set_services as set_health_services
from dashboard.executor_routes import router as executor_router, set_services as set_executor_services

config = load_config()

app = FastAPI(title="Kanban Realtime Core", version=str(config['dashboard']['version']))

# Register routers
app.include_router(health_router)
app.include_router(executor_router)


class ConnectionManager:
    """Manages WebSocket connections for real-time updates."""

    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast(self, message: dict):
        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except (ConnectionError, RuntimeError):
                # Closed socket; forget it
                self.disconnect(connection)


manager = ConnectionManager()
services: CoreServices = None


@app.on_event("startup")
async def startup_event():
    """Build and start services."""
    global services
    services = build_services(config, manager)
    set_health_services(services)
    set_executor_services(services)
    await services.start()
    logger.info(f"Executor ready (max {services.executor.max_concurrent} concurrent jobs)")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop running jobs and close Redis connections."""
    if services:
        await services.stop()
        logger.info("Services stopped")


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for real-time board events."""
    await manager.connect(websocket)
    try:
        while True:
            # Client messages are ignored; events arrive via manager.broadcast
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)


def main():
    import uvicorn
    host = os.environ.get('DASHBOARD_HOST') or config['dashboard']['host']
    port = int(os.environ.get('DASHBOARD_PORT') or config['dashboard']['port'])
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
