"""SDCP command envelopes and their PUBLISH framing."""

import json
import time
from typing import Any

from config import REQUEST_ID_LENGTH
from broker.frames import encode_publish
from sdcp.models import CommandBody, CommandEnvelope
from security.crypto import random_hex

REQUEST_TOPIC_PREFIX = "/sdcp/request"
ATTRIBUTES_TOPIC_MARKER = "/sdcp/attributes/"
STATUS_TOPIC_MARKER = "/sdcp/status/"

MAX_PACKET_ID = 0xFFFF


def request_topic(mainboard_id: str) -> str:
    return f"{REQUEST_TOPIC_PREFIX}/{mainboard_id}"


def next_packet_id(current: int) -> int:
    """The id after ``current``; wraps from 65535 back to 1 (0 is never used)."""
    return current % MAX_PACKET_ID + 1


def build_envelope(
    cmd: int, data: Any, mainboard_id: str, device_identity: str
) -> CommandEnvelope:
    """Wrap a command for the printer; ``Id`` falls back to the mainboard id."""
    return CommandEnvelope(
        Data=CommandBody(
            Cmd=cmd,
            Data=data,
            From=0,
            MainboardID=mainboard_id,
            RequestID=random_hex(REQUEST_ID_LENGTH),
            TimeStamp=int(time.time() * 1000),
        ),
        Id=device_identity or mainboard_id,
    )


def serialize_envelope(envelope: CommandEnvelope) -> bytes:
    """Compact JSON, as the printer expects."""
    return json.dumps(envelope.model_dump(), separators=(",", ":")).encode("utf-8")


def encode_command(envelope: CommandEnvelope, packet_id: int) -> bytes:
    """A qos-1 PUBLISH frame carrying ``envelope`` on the request topic."""
    return encode_publish(
        request_topic(envelope.Data.MainboardID),
        serialize_envelope(envelope),
        qos=1,
        packet_id=packet_id,
    )
