"""WebSocket fan-out of peer, acknowledgement and summary events."""

import asyncio
import json
import logging

from fastapi import WebSocket

from peers.models import PeerAddress

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks WebSocket subscribers and pushes file cloner events to them."""

    def __init__(self) -> None:
        self._connections: list[WebSocket] = []
        self._lock = asyncio.Lock()

    @property
    def count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.append(websocket)
        logger.info(f"WebSocket subscriber connected. Total: {self.count}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._connections:
                self._connections.remove(websocket)
        logger.info(f"WebSocket subscriber disconnected. Total: {self.count}")

    async def broadcast(self, event: str, data: dict) -> None:
        """Send ``{"event", "data"}`` to every subscriber, dropping dead ones."""
        message = json.dumps({"event": event, "data": data})
        async with self._lock:
            dead: list[WebSocket] = []
            for ws in self._connections:
                try:
                    await ws.send_text(message)
                except Exception as e:
                    logger.debug(f"Dropping WebSocket subscriber: {e}")
                    dead.append(ws)
            for ws in dead:
                self._connections.remove(ws)

    async def handle_event(self, event_type: str, data: dict) -> None:
        """Callback for FileReceiver.on_event()."""
        await self.broadcast(event_type, data)

    async def handle_peer_change(self, event: str, address: PeerAddress) -> None:
        """Callback for CommunicatorServer.on_peer_change()."""
        await self.broadcast(event, {"address": str(address)})
