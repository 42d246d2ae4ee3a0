"""
Printer session, the single owner of connection state.

Opens the broker and file-server listeners, invites the printer, issues
SDCP commands, and feeds everything the printer publishes through the
status interpreter. All state changes happen on the event loop.
"""

import logging
from enum import Enum
from typing import Any

from pydantic import BaseModel

from config import STATUS_INTERVAL_MS
from broker.server import Broker
from discovery.network import select_local_address
from discovery.service import DiscoveryService
from sdcp.commands import build_envelope, encode_command, next_packet_id
from sdcp.errors import PrinterDisconnectedError, UploadError
from sdcp.events import ConnectionReady, EventBus, EventType
from sdcp.interpreter import StatusInterpreter
from sdcp.models import Cmd
from transfer.manager import TransferManager
from transfer.models import TransferState
from transfer.service import FileServer

logger = logging.getLogger(__name__)

UPLOAD_URL_TEMPLATE = "http://${{ipaddr}}:{port}/{token}"


class SessionState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    CONNECTED = "connected"
    READY = "ready"


class SessionInfo(BaseModel):
    """Snapshot of the session, exposed to the frontend."""
    state: SessionState
    printer_address: str
    local_address: str
    broker_port: int
    file_server_port: int
    connected: bool
    mainboard_id: str
    device_identity: str
    active_token: str | None = None


class PrinterSession:
    """Drives one printer at a time."""

    def __init__(self, discovery: DiscoveryService, events: EventBus) -> None:
        self._discovery = discovery
        self._events = events
        self.transfers = TransferManager()
        self.broker = Broker(
            on_connect=self._on_connect,
            on_subscribe=self._on_subscribe,
            on_publish=self._on_publish,
            on_disconnect=self._on_disconnect,
        )
        self.file_server = FileServer(self.transfers, events)
        self.interpreter = StatusInterpreter(self, self.transfers, events)

        self.state = SessionState.IDLE
        self.printer_address = ""
        self.local_address = ""
        self.mainboard_id = ""
        self.device_identity = ""
        self._packet_id = 0

    def info(self) -> SessionInfo:
        active = self.transfers.active
        return SessionInfo(
            state=self.state,
            printer_address=self.printer_address,
            local_address=self.local_address,
            broker_port=self.broker.port,
            file_server_port=self.file_server.port,
            connected=self.broker.connected,
            mainboard_id=self.mainboard_id,
            device_identity=self.device_identity,
            active_token=active.token if active else None,
        )

    # --- Connection lifecycle ---

    async def connect(self, address: str) -> SessionInfo:
        """Open both listeners on the right local address and invite the printer."""
        self.printer_address = address
        self.device_identity = self._discovery.identity_for(address)
        if self.device_identity:
            await self._events.log(f"Using identity {self.device_identity}", source=logger)
        else:
            await self._events.log(
                "Connecting without a known identity", logging.WARNING, source=logger
            )

        self.local_address = select_local_address(address)
        await self._events.log(f"Binding to interface {self.local_address}", source=logger)

        broker_port = await self.broker.start(self.local_address)
        file_port = await self.file_server.start(self.local_address)
        await self._events.log(
            f"Broker on port {broker_port}, file server on port {file_port}", source=logger
        )

        self.state = SessionState.LISTENING
        await self._discovery.invite(address, broker_port)
        return self.info()

    async def close(self) -> None:
        await self.broker.stop()
        await self.file_server.stop()
        self.state = SessionState.IDLE
        logger.info("Printer session closed")

    async def _on_connect(self, peer: str) -> None:
        self.state = SessionState.CONNECTED
        await self._events.log(f"Printer connected from {peer}", source=logger)

    async def _on_subscribe(self) -> None:
        await self._events.log("Printer subscribed, sending handshake", source=logger)
        await self.handshake()
        self.state = SessionState.READY
        await self._events.emit(
            EventType.CONNECTION_READY,
            ConnectionReady(address=self.printer_address, mainboard_id=self.mainboard_id),
        )

    async def _on_publish(self, topic: str, payload: bytes) -> None:
        await self.interpreter.process(topic, payload)

    async def _on_disconnect(self, peer: str) -> None:
        self.state = SessionState.LISTENING if self.broker.listening else SessionState.IDLE
        await self._events.log(f"Printer {peer} disconnected", logging.WARNING, source=logger)

    # --- Commands ---

    def next_packet_id(self) -> int:
        self._packet_id = next_packet_id(self._packet_id)
        return self._packet_id

    async def send_command(self, cmd: int, data: Any = None) -> bool:
        """
        Publish an SDCP command to the printer without waiting for its ack.

        Raises:
            PrinterDisconnectedError: no printer is connected.
        """
        if not self.broker.connected:
            await self._events.log(
                f"Cannot send command {cmd}: printer disconnected", logging.ERROR, source=logger
            )
            raise PrinterDisconnectedError("No printer connected")

        envelope = build_envelope(cmd, data, self.mainboard_id, self.device_identity)
        logger.debug(f"Sending command {cmd}: {envelope.model_dump()}")
        return await self.broker.send(encode_command(envelope, self.next_packet_id()))

    async def handshake(self) -> None:
        """Request status and attributes, then set the status push interval."""
        await self.send_command(Cmd.GET_STATUS)
        await self.send_command(Cmd.GET_ATTRIBUTES)
        await self.send_command(Cmd.SET_STATUS_INTERVAL, {"TimePeriod": STATUS_INTERVAL_MS})

    async def print_existing(self, filename: str) -> bool:
        """Start printing a file already stored on the printer."""
        await self._events.log(f"Starting print of {filename}", source=logger)
        return await self.send_command(Cmd.START_PRINT, {"Filename": filename, "StartLayer": 0})

    async def upload_and_print(self, local_path: str, auto_start: bool) -> TransferState:
        """
        Offer ``local_path`` to the printer; it downloads it from our file server.

        Raises:
            UploadError: the file could not be read.
            PrinterDisconnectedError: no printer is connected.
        """
        try:
            transfer = await self.transfers.begin_upload(local_path, auto_start)
        except OSError as e:
            await self._events.log(
                f"Cannot read {local_path}: {e}", logging.ERROR, source=logger
            )
            raise UploadError(f"Cannot read {local_path}: {e}") from e

        url = UPLOAD_URL_TEMPLATE.format(port=self.file_server.port, token=transfer.token)
        await self._events.log(f"Upload URL: {url}", source=logger)
        await self.send_command(
            Cmd.UPLOAD_FILE,
            {
                "Check": 0,
                "CleanCache": 1,
                "Compress": 0,
                "FileSize": transfer.size_bytes,
                "Filename": transfer.filename,
                "MD5": transfer.md5_hex,
                "URL": url,
            },
        )
        return transfer
