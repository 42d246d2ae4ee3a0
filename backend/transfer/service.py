"""
Ephemeral HTTP file service.

The printer downloads an upload by fetching ``http://<us>:<port>/<token>``.
Only the request line is parsed; the response is a fixed header block
with Content-Length framing followed by the raw file bytes.
"""

import asyncio
import logging

from config import (
    CHUNK_SIZE,
    CLOSE_DELAY,
    FILE_SERVER_PORT,
    MAX_REQUEST_HEAD,
    MIN_REQUEST_BYTES,
    RECV_SIZE,
    REQUEST_TIMEOUT,
    WRITE_TIMEOUT,
)
from broker.server import start_tcp_server
from sdcp.events import EventBus
from transfer.manager import TransferManager
from transfer.models import HttpStatus, TransferState

logger = logging.getLogger(__name__)

CONTENT_TYPE = "text/plain; charset=utf-8"


def build_headers(transfer: TransferState) -> bytes:
    """The 200 response header block for ``transfer``."""
    return (
        f"HTTP/1.1 {HttpStatus.OK}\r\n"
        f"Content-Type: {CONTENT_TYPE}\r\n"
        f"Etag: {transfer.md5_hex}\r\n"
        f"Content-Length: {transfer.size_bytes}\r\n"
        "Connection: close\r\n\r\n"
    ).encode("ascii")


def parse_request_line(data: bytes) -> tuple[str, str] | None:
    """Return (method, token) from the first request line, or None."""
    line = data.split(b"\n", 1)[0].rstrip(b"\r").decode("latin-1")
    parts = line.split(" ")
    if len(parts) < 2:
        return None
    method, path = parts[0], parts[1]
    token = path[1:] if path.startswith("/") else path
    return method, token


async def read_request_head(reader: asyncio.StreamReader) -> bytes:
    """
    Read until the request line is complete (or the peer stops sending).

    Returns b"" if no line ends within MAX_REQUEST_HEAD bytes.
    """
    data = b""
    while len(data) < MIN_REQUEST_BYTES or b"\n" not in data:
        if len(data) >= MAX_REQUEST_HEAD:
            return b""
        chunk = await reader.read(RECV_SIZE)
        if not chunk:
            break
        data += chunk
    return data


class FileServer:
    """Serves the active upload to the printer."""

    def __init__(self, transfers: TransferManager, events: EventBus) -> None:
        self._transfers = transfers
        self._events = events
        self._server: asyncio.Server | None = None
        # Requests are read concurrently but answered one at a time.
        self._serve_lock = asyncio.Lock()

    @property
    def port(self) -> int:
        if not self._server or not self._server.sockets:
            return 0
        return self._server.sockets[0].getsockname()[1]

    @property
    def listening(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def start(self, host: str) -> int:
        """Bind the listener on ``host``; returns the bound port."""
        await self.stop()
        self._server = await start_tcp_server(
            self._handle_connection, host, FILE_SERVER_PORT, "File server"
        )
        return self.port

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peer = writer.get_extra_info("peername")
        peer_ip = peer[0] if peer else "unknown"
        try:
            try:
                head = await asyncio.wait_for(read_request_head(reader), REQUEST_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(f"Timed out waiting for a request from {peer_ip}")
                return

            request = parse_request_line(head)
            if request is None:
                logger.warning(f"Unparseable request from {peer_ip}: {head[:80]!r}")
                return
            method, token = request
            logger.info(f"HTTP {method} /{token} from {peer_ip}")

            async with self._serve_lock:
                await self._respond(writer, method, token)

        except (ConnectionError, OSError) as e:
            logger.warning(f"File server connection error from {peer_ip}: {e}")
        finally:
            if not writer.is_closing():
                writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def _respond(self, writer: asyncio.StreamWriter, method: str, token: str) -> None:
        transfer = self._transfers.lookup(token)
        if transfer is None:
            active = self._transfers.active
            await self._events.log(
                f"Error 404: requested {token} but expected "
                f"{active.token if active else 'nothing'}",
                logging.WARNING,
                source=logger,
            )
            await self._send_status(writer, HttpStatus.NOT_FOUND)
            return

        if method not in ("GET", "HEAD"):
            await self._send_status(writer, HttpStatus.METHOD_NOT_ALLOWED)
            return

        await self._serve(writer, transfer, send_body=(method == "GET"))

    async def _send_status(self, writer: asyncio.StreamWriter, status: str) -> None:
        writer.write(f"HTTP/1.1 {status}\r\nConnection: close\r\n\r\n".encode("ascii"))
        await writer.drain()

    async def _serve(
        self, writer: asyncio.StreamWriter, transfer: TransferState, send_body: bool
    ) -> None:
        try:
            f = await asyncio.to_thread(open, transfer.local_path, "rb")
        except OSError as e:
            await self._events.log(
                f"Could not open {transfer.local_path}: {e}", logging.ERROR, source=logger
            )
            await self._send_status(writer, HttpStatus.INTERNAL_ERROR)
            return

        with f:
            writer.write(build_headers(transfer))
            if send_body:
                sent = 0
                while True:
                    chunk = await asyncio.to_thread(f.read, CHUNK_SIZE)
                    if not chunk:
                        break
                    writer.write(chunk)
                    try:
                        await asyncio.wait_for(writer.drain(), WRITE_TIMEOUT)
                    except asyncio.TimeoutError:
                        await self._events.log(
                            f"Timeout writing {transfer.filename} after {sent} bytes",
                            logging.ERROR,
                            source=logger,
                        )
                        writer.transport.abort()
                        return
                    sent += len(chunk)
                await self._events.log(
                    f"Sent {transfer.filename} ({sent} bytes)", source=logger
                )

        await writer.drain()
        await asyncio.sleep(CLOSE_DELAY)
