"""WebSocket fan-out of engine events to frontend clients."""

import asyncio
import json
import logging

from fastapi import WebSocket

from sdcp.events import EventType

logger = logging.getLogger(__name__)

# Events describing current printer state; the latest of each is replayed
# to clients that connect later.
STICKY_EVENTS = (
    EventType.CONNECTION_READY,
    EventType.MODEL_DETECTED,
    EventType.STATUS_UPDATE,
    EventType.UPLOAD_PROGRESS,
)


class ConnectionManager:
    """Tracks frontend sockets and pushes every engine event to them."""

    def __init__(self) -> None:
        self._clients: list[WebSocket] = []
        self._latest: dict[str, str] = {}  # event type -> last encoded message
        self._lock = asyncio.Lock()

    @property
    def count(self) -> int:
        return len(self._clients)

    async def connect(self, websocket: WebSocket) -> None:
        """Accept a client and bring it up to date with the printer state."""
        await websocket.accept()
        async with self._lock:
            for message in self._latest.values():
                await websocket.send_text(message)
            self._clients.append(websocket)
        logger.info(f"Frontend attached ({len(self._clients)} connected)")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._clients:
                self._clients.remove(websocket)
        logger.info(f"Frontend detached ({len(self._clients)} connected)")

    async def handle_event(self, event_type: str, data: dict) -> None:
        """EventBus subscriber: encode once, send to every client."""
        message = json.dumps({"event": event_type, "data": data})
        async with self._lock:
            if event_type in STICKY_EVENTS:
                self._latest[event_type] = message
            stale: list[WebSocket] = []
            for ws in self._clients:
                try:
                    await ws.send_text(message)
                except Exception as e:
                    logger.debug(f"Dropping frontend socket: {e}")
                    stale.append(ws)
            for ws in stale:
                self._clients.remove(ws)
