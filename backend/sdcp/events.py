"""
Engine event bus.

Every output of the engine is one of a fixed set of named events with a
pydantic payload. Subscribers are ``async fn(event_type: str, data: dict)``;
the WebSocket connection manager is the usual one.
"""

import logging

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class EventType:
    DEVICE_FOUND = "device_found"
    STATUS_UPDATE = "status_update"
    UPLOAD_PROGRESS = "upload_progress"
    CONNECTION_READY = "connection_ready"
    FILE_READY_TO_PRINT = "file_ready_to_print"
    MODEL_DETECTED = "model_detected"
    LOG_MESSAGE = "log_message"


class DeviceFound(BaseModel):
    address: str
    name: str
    model: str


class StatusUpdate(BaseModel):
    status: str
    layer: int = 0
    total_layers: int = 0
    filename: str = ""


class UploadProgress(BaseModel):
    percent: int


class ConnectionReady(BaseModel):
    address: str
    mainboard_id: str = ""


class FileReadyToPrint(BaseModel):
    filename: str


class ModelDetected(BaseModel):
    model: str


class LogMessage(BaseModel):
    message: str
    level: str = "info"


class EventBus:
    """Fan-out of engine events to registered callbacks."""

    def __init__(self) -> None:
        self._callbacks: list = []  # async fn(event_type, data)

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._callbacks.append(callback)

    async def emit(self, event_type: str, payload: BaseModel) -> None:
        """Emit an event to all registered callbacks."""
        data = payload.model_dump()
        for cb in self._callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error for {event_type}: {e}")

    async def log(
        self, message: str, level: int = logging.INFO, source: logging.Logger | None = None
    ) -> None:
        """Log a user-relevant notice and forward it as a log_message event."""
        (source or logger).log(level, message)
        await self.emit(
            EventType.LOG_MESSAGE,
            LogMessage(message=message, level=logging.getLevelName(level).lower()),
        )
