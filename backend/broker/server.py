"""
Minimal single-client broker.

The printer is told to connect here (see ``DiscoveryService.invite``) and
then speaks a small subset of MQTT: CONNECT, SUBSCRIBE to its request
topic, PUBLISH of status/attributes, and PINGREQ keep-alives. Exactly one
printer connection is active at a time; a new one replaces the old.
"""

import asyncio
import logging

from config import BROKER_PORT, RECV_SIZE
from broker.frames import (
    CONNACK_ACCEPTED,
    SUBACK_GRANTED,
    Frame,
    FrameDecoder,
    MalformedFrameError,
    PacketType,
    encode_frame,
    parse_packet_id,
    parse_publish,
)
from sdcp.errors import PrinterDisconnectedError

logger = logging.getLogger(__name__)


async def start_tcp_server(handler, host: str, preferred_port: int, name: str) -> asyncio.Server:
    """
    Start a TCP listener on the preferred port, or on an OS-assigned port
    if that one is busy.
    """
    try:
        server = await asyncio.start_server(handler, host, preferred_port)
        logger.info(f"{name} listening on {host}:{preferred_port}")
        return server
    except OSError as e:
        logger.warning(f"{name} port {preferred_port} is busy ({e}); using a random port")

    server = await asyncio.start_server(handler, host, 0)
    port = server.sockets[0].getsockname()[1]
    logger.info(f"{name} listening on {host}:{port}")
    return server


class BrokerConnection:
    """One accepted printer socket plus its receive buffer."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.decoder = FrameDecoder()
        peer = writer.get_extra_info("peername")
        self.peer = peer[0] if peer else "unknown"

    @property
    def closed(self) -> bool:
        return self.writer.is_closing()

    async def write(self, data: bytes) -> bool:
        """Write one encoded frame. Returns False (after logging) on failure."""
        try:
            self.writer.write(data)
            await self.writer.drain()
            return True
        except (ConnectionError, OSError) as e:
            logger.warning(f"Send to {self.peer} failed: {e}")
            return False

    def close(self) -> None:
        if not self.writer.is_closing():
            self.writer.close()


class Broker:
    """
    Accepts the printer connection and dispatches decoded frames.

    Callbacks (all ``async``):
        on_connect(peer: str)
        on_subscribe()
        on_publish(topic: str, payload: bytes)
        on_disconnect(peer: str)
    """

    def __init__(self, on_connect, on_subscribe, on_publish, on_disconnect) -> None:
        self._on_connect = on_connect
        self._on_subscribe = on_subscribe
        self._on_publish = on_publish
        self._on_disconnect = on_disconnect
        self._server: asyncio.Server | None = None
        self._connection: BrokerConnection | None = None

    @property
    def port(self) -> int:
        if not self._server or not self._server.sockets:
            return 0
        return self._server.sockets[0].getsockname()[1]

    @property
    def listening(self) -> bool:
        return self._server is not None and self._server.is_serving()

    @property
    def connected(self) -> bool:
        return self._connection is not None and not self._connection.closed

    async def start(self, host: str) -> int:
        """Bind the listener on ``host``; returns the bound port."""
        await self.stop()
        self._server = await start_tcp_server(
            self._handle_connection, host, BROKER_PORT, "Broker"
        )
        return self.port

    async def stop(self) -> None:
        """Close the listener and the active printer connection."""
        self._drop_connection()
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def send(self, data: bytes) -> bool:
        """
        Write a frame to the active printer connection.

        Raises:
            PrinterDisconnectedError: no printer is connected.
        """
        if not self.connected:
            raise PrinterDisconnectedError("No printer connected to the broker")
        return await self._connection.write(data)

    def _drop_connection(self) -> None:
        if self._connection:
            self._connection.close()
            self._connection = None

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        conn = BrokerConnection(reader, writer)
        if self._connection:
            logger.info(f"Replacing printer connection from {self._connection.peer}")
        self._drop_connection()
        self._connection = conn
        await self._on_connect(conn.peer)

        try:
            while not conn.closed:
                data = await reader.read(RECV_SIZE)
                if not data:
                    break
                for frame in conn.decoder.feed(data):
                    await self.handle_frame(conn, frame)
        except (ConnectionError, OSError) as e:
            logger.warning(f"Printer connection error from {conn.peer}: {e}")
        finally:
            conn.close()
            if self._connection is conn:
                self._connection = None
                await self._on_disconnect(conn.peer)

    async def handle_frame(self, conn: BrokerConnection, frame: Frame) -> None:
        """Dispatch one decoded frame from ``conn``."""
        try:
            if frame.type == PacketType.CONNECT:
                logger.debug(f"CONNECT from {conn.peer}")
                await conn.write(encode_frame(PacketType.CONNACK, body=CONNACK_ACCEPTED))

            elif frame.type == PacketType.SUBSCRIBE:
                packet_id = parse_packet_id(frame)
                logger.debug(f"SUBSCRIBE from {conn.peer}, packet id {packet_id}")
                await conn.write(
                    encode_frame(PacketType.SUBACK, body=SUBACK_GRANTED, packet_id=packet_id)
                )
                await self._on_subscribe()

            elif frame.type == PacketType.PUBLISH:
                publish = parse_publish(frame)
                if frame.qos > 0:
                    # PUBACK must precede any processing of the payload.
                    await conn.write(encode_frame(PacketType.PUBACK, packet_id=publish.packet_id))
                await self._on_publish(publish.topic, publish.payload)

            elif frame.type == PacketType.PINGREQ:
                await conn.write(encode_frame(PacketType.PINGRESP))

            elif frame.type == PacketType.DISCONNECT:
                logger.info(f"Printer {conn.peer} sent DISCONNECT")
                conn.close()

            else:
                logger.debug(f"Ignoring frame type {frame.type} from {conn.peer}")

        except MalformedFrameError as e:
            logger.warning(f"Malformed frame type {frame.type} from {conn.peer}: {e}")
        except PrinterDisconnectedError as e:
            logger.warning(f"Handler for frame type {frame.type} lost the printer: {e}")
        except Exception as e:
            logger.error(
                f"Error handling frame type {frame.type} from {conn.peer}: {e}", exc_info=True
            )
