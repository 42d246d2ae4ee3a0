"""
Wire format for the printer's MQTT-like transport.

Every frame is ``[type:flags byte][1-4 byte remaining length][body]``.
Only the handful of packet types the printer actually uses are modeled.
"""

import logging
import struct

from pydantic import BaseModel

logger = logging.getLogger(__name__)

PACKET_ID_FORMAT = "!H"  # 2-byte big-endian
PACKET_ID_SIZE = struct.calcsize(PACKET_ID_FORMAT)

MAX_LENGTH_BYTES = 4
MAX_REMAINING_LENGTH = 268_435_455  # largest value 4 length bytes can carry


class PacketType:
    CONNECT = 1
    CONNACK = 2
    PUBLISH = 3
    PUBACK = 4
    SUBSCRIBE = 8
    SUBACK = 9
    PINGREQ = 12
    PINGRESP = 13
    DISCONNECT = 14


# Types whose encoded form always carries a packet id after the length.
_PACKET_ID_TYPES = (PacketType.PUBACK, PacketType.SUBACK)

CONNACK_ACCEPTED = b"\x00\x00"
SUBACK_GRANTED = b"\x00"

QOS1_FLAGS = 0x02


class MalformedFrameError(ValueError):
    """The byte stream cannot be decoded as frames."""


class Frame(BaseModel):
    """One decoded transport message."""
    type: int
    flags: int = 0
    body: bytes = b""

    @property
    def qos(self) -> int:
        return (self.flags >> 1) & 0x03


class Publish(BaseModel):
    """The parsed body of a PUBLISH frame."""
    topic: str
    payload: bytes = b""
    packet_id: int = 0


def encode_length(length: int) -> bytes:
    """Encode a remaining-length value (7 bits per byte, top bit = more)."""
    if not 0 <= length <= MAX_REMAINING_LENGTH:
        raise ValueError(f"Remaining length out of range: {length}")
    encoded = bytearray()
    while True:
        digit = length % 128
        length //= 128
        if length > 0:
            digit |= 0x80
        encoded.append(digit)
        if length == 0:
            return bytes(encoded)


def decode_length(data: bytes, offset: int = 0) -> tuple[int, int] | None:
    """
    Decode a remaining-length field starting at ``offset``.

    Returns:
        (value, bytes_consumed), or None if the field is not complete yet.

    Raises:
        MalformedFrameError: more than four length bytes.
    """
    value = 0
    multiplier = 1
    for i in range(MAX_LENGTH_BYTES):
        if offset + i >= len(data):
            return None
        digit = data[offset + i]
        value += (digit & 0x7F) * multiplier
        if not digit & 0x80:
            return value, i + 1
        multiplier *= 128
    raise MalformedFrameError("Remaining length exceeds four bytes")


def encode_frame(
    packet_type: int, flags: int = 0, body: bytes = b"", packet_id: int = 0
) -> bytes:
    """
    Build one frame.

    A packet id is written right after the length for PUBACK and SUBACK,
    and for any type when ``packet_id`` is non-zero.
    """
    with_id = packet_id > 0 or packet_type in _PACKET_ID_TYPES
    length = len(body) + (PACKET_ID_SIZE if with_id else 0)
    header = bytes([(packet_type << 4) | (flags & 0x0F)]) + encode_length(length)
    if with_id:
        header += struct.pack(PACKET_ID_FORMAT, packet_id)
    return header + body


def encode_publish(topic: str, payload: bytes, qos: int = 0, packet_id: int = 0) -> bytes:
    """Build a PUBLISH frame; a packet id is included only for qos > 0."""
    topic_bytes = topic.encode("utf-8")
    body = struct.pack(PACKET_ID_FORMAT, len(topic_bytes)) + topic_bytes
    if qos > 0:
        body += struct.pack(PACKET_ID_FORMAT, packet_id)
    return encode_frame(PacketType.PUBLISH, (qos & 0x03) << 1, body + payload)


def parse_publish(frame: Frame) -> Publish:
    """
    Split a PUBLISH body into topic, packet id and application payload.

    Raises:
        MalformedFrameError: the body is shorter than its declared topic.
    """
    body = frame.body
    if len(body) < PACKET_ID_SIZE:
        raise MalformedFrameError("PUBLISH body too short for topic length")
    (topic_len,) = struct.unpack_from(PACKET_ID_FORMAT, body)
    offset = PACKET_ID_SIZE + topic_len
    if len(body) < offset:
        raise MalformedFrameError("PUBLISH body shorter than its topic")
    topic = body[PACKET_ID_SIZE:offset].decode("utf-8", errors="replace")

    packet_id = 0
    if frame.qos > 0:
        if len(body) < offset + PACKET_ID_SIZE:
            raise MalformedFrameError("qos>0 PUBLISH without packet id")
        (packet_id,) = struct.unpack_from(PACKET_ID_FORMAT, body, offset)
        offset += PACKET_ID_SIZE

    return Publish(topic=topic, payload=body[offset:], packet_id=packet_id)


def parse_packet_id(frame: Frame) -> int:
    """Read the leading packet id of a SUBSCRIBE (or any id-first) body."""
    if len(frame.body) < PACKET_ID_SIZE:
        raise MalformedFrameError(f"Frame type {frame.type} too short for packet id")
    return struct.unpack_from(PACKET_ID_FORMAT, frame.body)[0]


class FrameDecoder:
    """
    Accumulating decoder for one TCP connection.

    TCP may split a frame across reads or coalesce several frames into
    one read, so bytes are appended to a buffer and only complete frames
    are consumed; the remainder waits for the next ``feed``.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet forming a complete frame."""
        return len(self._buffer)

    def feed(self, data: bytes) -> list[Frame]:
        """Append received bytes and return every frame now complete."""
        self._buffer.extend(data)
        frames: list[Frame] = []
        while self._buffer:
            control = self._buffer[0]
            try:
                decoded = decode_length(self._buffer, 1)
            except MalformedFrameError as e:
                logger.warning(f"Discarding {len(self._buffer)} buffered bytes: {e}")
                self._buffer.clear()
                break
            if decoded is None:
                break
            length, length_size = decoded
            start = 1 + length_size
            end = start + length
            if len(self._buffer) < end:
                break
            frames.append(
                Frame(
                    type=control >> 4,
                    flags=control & 0x0F,
                    body=bytes(self._buffer[start:end]),
                )
            )
            del self._buffer[:end]
        return frames
