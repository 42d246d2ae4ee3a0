"""
UDP-based printer discovery.

Broadcasts the discovery trigger, collects JSON replies from printers on
the LAN, and sends the invitation that makes a printer connect back to
our broker.
"""

import asyncio
import logging
import socket
import time

from pydantic import ValidationError

from config import DISCOVERY_MAGIC, DISCOVERY_PORT, INVITE_MAGIC
from discovery.models import DeviceRecord, DiscoveryReply
from discovery.network import broadcast_addresses, normalize_address
from sdcp.events import DeviceFound, EventBus, EventType

logger = logging.getLogger(__name__)


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol for receiving discovery replies."""

    def __init__(self, service: "DiscoveryService"):
        self.service = service

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        self.service.handle_reply(data, addr[0])

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Discovery UDP error: {exc}")


class DiscoveryService:
    """Finds printers via UDP broadcast and remembers their identities."""

    def __init__(self, events: EventBus) -> None:
        self._events = events
        self._devices: dict[str, DeviceRecord] = {}
        self._identities: dict[str, str] = {}  # address -> identity
        self._transport: asyncio.DatagramTransport | None = None

    @property
    def active(self) -> bool:
        return self._transport is not None and not self._transport.is_closing()

    def get_devices(self) -> list[DeviceRecord]:
        """Return every printer that has replied so far."""
        return list(self._devices.values())

    def identity_for(self, address: str) -> str:
        """The identity a printer advertised, or "" if none is known."""
        return self._identities.get(normalize_address(address), "")

    async def discover(self) -> None:
        """
        Broadcast the discovery trigger.

        Replies keep arriving until ``stop()``; there is no timeout.
        """
        if not self.active:
            loop = asyncio.get_running_loop()
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.setblocking(False)
            sock.bind(("0.0.0.0", 0))

            transport, _ = await loop.create_datagram_endpoint(
                lambda: DiscoveryProtocol(self),
                sock=sock,
            )
            self._transport = transport

        data = DISCOVERY_MAGIC.encode("ascii")
        for bcast_ip in broadcast_addresses():
            try:
                self._transport.sendto(data, (bcast_ip, DISCOVERY_PORT))
            except OSError as e:
                # Some interfaces do not support broadcast
                logger.debug(f"Broadcast to {bcast_ip} failed: {e}")

        await self._events.log(f"Sent discovery broadcast {DISCOVERY_MAGIC}", source=logger)

    async def stop(self) -> None:
        """Stop listening for discovery replies."""
        if self._transport:
            self._transport.close()
            self._transport = None
            logger.info("Discovery stopped")

    def handle_reply(self, data: bytes, sender: str) -> DeviceRecord | None:
        """Parse one reply datagram; returns the updated record, or None if ignored."""
        try:
            reply = DiscoveryReply.model_validate_json(data)
        except ValidationError as e:
            logger.debug(f"Ignoring invalid discovery packet from {sender}: {e}")
            return None

        address = normalize_address(sender)
        attrs = reply.data.attributes
        if reply.id:
            self._identities[address] = reply.id

        device = DeviceRecord(
            address=address,
            name=attrs.name,
            model=attrs.machine_name,
            identity=self._identities.get(address, ""),
            last_seen=time.time(),
        )
        self._devices[address] = device
        logger.info(f"Discovered printer: {device.name or '?'} ({address})")

        asyncio.ensure_future(
            self._events.emit(
                EventType.DEVICE_FOUND,
                DeviceFound(address=address, name=device.name, model=device.model),
            )
        )
        return device

    async def invite(self, address: str, broker_port: int) -> None:
        """Tell the printer at ``address`` to connect to our broker port."""
        loop = asyncio.get_running_loop()
        message = f"{INVITE_MAGIC} {broker_port}".encode("ascii")
        transport, _ = await loop.create_datagram_endpoint(
            asyncio.DatagramProtocol,
            remote_addr=(address, DISCOVERY_PORT),
        )
        try:
            transport.sendto(message)
        finally:
            transport.close()
        await self._events.log(
            f"Invited {address} to connect on port {broker_port}", source=logger
        )
