"""Tests for SDCP command building and the session's command path."""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from unittest import mock

import pytest

from broker.frames import FrameDecoder, parse_publish
from sdcp.commands import (
    build_envelope,
    encode_command,
    next_packet_id,
    request_topic,
    serialize_envelope,
)
from sdcp.errors import PrinterDisconnectedError, UploadError
from sdcp.events import EventBus, EventType
from sdcp.models import Cmd
from sdcp.session import PrinterSession, SessionState


MAINBOARD_ID = "ABCD1234ABCD1234"
IDENTITY = "f25273b12b094c5a8b9513a30ca60049"


def _session(identity: str = "") -> tuple[PrinterSession, mock.Mock, list]:
    """A session whose broker is replaced by a connected mock."""
    events = EventBus()
    seen: list = []

    async def record(event_type, data):
        seen.append((event_type, data))

    events.on_event(record)
    discovery = mock.Mock()
    discovery.identity_for.return_value = identity
    discovery.invite = mock.AsyncMock()
    session = PrinterSession(discovery, events)
    broker = mock.Mock()
    broker.connected = True
    broker.port = 9090
    broker.send = mock.AsyncMock(return_value=True)
    session.broker = broker
    session.mainboard_id = MAINBOARD_ID
    session.device_identity = identity
    return session, broker, seen


def _sent_envelopes(broker: mock.Mock) -> list[dict]:
    out = []
    for call in broker.send.await_args_list:
        (frame,) = FrameDecoder().feed(call.args[0])
        out.append(json.loads(parse_publish(frame).payload))
    return out


# ---------------------------------------------------------------------------
# Envelope & framing
# ---------------------------------------------------------------------------


class TestEnvelope:
    def test_shape(self):
        envelope = build_envelope(Cmd.START_PRINT, {"Filename": "a.goo"}, MAINBOARD_ID, IDENTITY)
        body = json.loads(serialize_envelope(envelope))
        assert set(body) == {"Data", "Id"}
        assert body["Id"] == IDENTITY
        data = body["Data"]
        assert set(data) == {"Cmd", "Data", "From", "MainboardID", "RequestID", "TimeStamp"}
        assert data["Cmd"] == 128
        assert data["From"] == 0
        assert data["MainboardID"] == MAINBOARD_ID
        assert data["Data"] == {"Filename": "a.goo"}
        assert len(data["RequestID"]) == 32
        int(data["RequestID"], 16)
        assert data["TimeStamp"] > 1_600_000_000_000

    def test_id_falls_back_to_mainboard(self):
        envelope = build_envelope(Cmd.GET_STATUS, None, MAINBOARD_ID, "")
        assert envelope.Id == MAINBOARD_ID

    def test_request_ids_differ(self):
        a = build_envelope(Cmd.GET_STATUS, None, MAINBOARD_ID, IDENTITY)
        b = build_envelope(Cmd.GET_STATUS, None, MAINBOARD_ID, IDENTITY)
        assert a.Data.RequestID != b.Data.RequestID

    def test_compact_json(self):
        envelope = build_envelope(Cmd.GET_STATUS, None, MAINBOARD_ID, IDENTITY)
        assert b" " not in serialize_envelope(envelope)

    def test_encoded_as_qos1_publish_on_request_topic(self):
        envelope = build_envelope(Cmd.GET_STATUS, None, MAINBOARD_ID, IDENTITY)
        raw = encode_command(envelope, 17)
        (frame,) = FrameDecoder().feed(raw)
        assert frame.qos == 1
        publish = parse_publish(frame)
        assert publish.topic == request_topic(MAINBOARD_ID) == "/sdcp/request/" + MAINBOARD_ID
        assert publish.packet_id == 17
        assert json.loads(publish.payload)["Data"]["Cmd"] == 0


class TestPacketIds:
    def test_increments(self):
        assert next_packet_id(0) == 1
        assert next_packet_id(1) == 2

    def test_wraps_to_one(self):
        assert next_packet_id(65534) == 65535
        assert next_packet_id(65535) == 1

    def test_session_counter_never_zero(self):
        session, _, _ = _session()
        session._packet_id = 65534
        assert [session.next_packet_id() for _ in range(3)] == [65535, 1, 2]


# ---------------------------------------------------------------------------
# Session commands
# ---------------------------------------------------------------------------


class TestSessionCommands:
    def test_handshake_order(self):
        async def _run():
            session, broker, _ = _session(IDENTITY)
            await session.handshake()
            sent = _sent_envelopes(broker)
            assert [e["Data"]["Cmd"] for e in sent] == [0, 1, 512]
            assert sent[2]["Data"]["Data"] == {"TimePeriod": 5000}
            assert all(e["Id"] == IDENTITY for e in sent)

        asyncio.run(_run())

    def test_subscribe_runs_handshake_and_reports_ready(self):
        async def _run():
            session, broker, seen = _session()
            session.printer_address = "192.168.1.50"
            await session._on_subscribe()
            assert broker.send.await_count == 3
            assert session.state == SessionState.READY
            ready = [d for t, d in seen if t == EventType.CONNECTION_READY]
            assert ready == [{"address": "192.168.1.50", "mainboard_id": MAINBOARD_ID}]

        asyncio.run(_run())

    def test_packet_ids_increase_per_command(self):
        async def _run():
            session, broker, _ = _session()
            await session.handshake()
            ids = []
            for call in broker.send.await_args_list:
                (frame,) = FrameDecoder().feed(call.args[0])
                ids.append(parse_publish(frame).packet_id)
            assert ids == [1, 2, 3]

        asyncio.run(_run())

    def test_print_existing(self):
        async def _run():
            session, broker, _ = _session()
            await session.print_existing("cube.goo")
            (envelope,) = _sent_envelopes(broker)
            assert envelope["Data"]["Cmd"] == 128
            assert envelope["Data"]["Data"] == {"Filename": "cube.goo", "StartLayer": 0}

        asyncio.run(_run())

    def test_disconnected_raises_and_logs(self):
        async def _run():
            session, broker, seen = _session()
            broker.connected = False
            with pytest.raises(PrinterDisconnectedError):
                await session.print_existing("cube.goo")
            broker.send.assert_not_awaited()
            errors = [d for t, d in seen if t == EventType.LOG_MESSAGE and d["level"] == "error"]
            assert errors

        asyncio.run(_run())

    def test_upload_and_print(self):
        async def _run():
            session, broker, _ = _session(IDENTITY)
            session.file_server = mock.Mock(port=9091)
            with tempfile.TemporaryDirectory() as tmp:
                path = os.path.join(tmp, "cube.goo")
                with open(path, "wb") as f:
                    f.write(b"hello")
                transfer = await session.upload_and_print(path, auto_start=True)

            assert transfer.auto_print_requested is True
            assert transfer.token.endswith(".goo")
            assert len(transfer.token) == 36
            (envelope,) = _sent_envelopes(broker)
            data = envelope["Data"]["Data"]
            assert envelope["Data"]["Cmd"] == 256
            assert data == {
                "Check": 0,
                "CleanCache": 1,
                "Compress": 0,
                "FileSize": 5,
                "Filename": "cube.goo",
                "MD5": "5d41402abc4b2a76b9719d911017c592",
                "URL": f"http://${{ipaddr}}:9091/{transfer.token}",
            }
            assert session.transfers.active.token == transfer.token

        asyncio.run(_run())

    def test_upload_unreadable_file(self):
        async def _run():
            session, broker, seen = _session()
            with pytest.raises(UploadError):
                await session.upload_and_print("/nonexistent/cube.goo", auto_start=False)
            broker.send.assert_not_awaited()
            assert session.transfers.active is None

        asyncio.run(_run())

    def test_upload_while_disconnected_keeps_transfer(self):
        async def _run():
            session, broker, _ = _session()
            broker.connected = False
            session.file_server = mock.Mock(port=9091)
            with tempfile.TemporaryDirectory() as tmp:
                path = os.path.join(tmp, "cube.goo")
                with open(path, "wb") as f:
                    f.write(b"x")
                with pytest.raises(PrinterDisconnectedError):
                    await session.upload_and_print(path, auto_start=False)
            assert session.transfers.active is not None

        asyncio.run(_run())


# ---------------------------------------------------------------------------
# Connect
# ---------------------------------------------------------------------------


class TestConnect:
    def test_connect_starts_listeners_and_invites(self):
        async def _run():
            session, broker, seen = _session()
            broker.start = mock.AsyncMock(return_value=9090)
            session.file_server = mock.Mock(port=9091, start=mock.AsyncMock(return_value=9091))
            session._discovery.identity_for.return_value = IDENTITY
            with mock.patch("sdcp.session.select_local_address", return_value="192.168.1.10"):
                info = await session.connect("192.168.1.50")

            broker.start.assert_awaited_once_with("192.168.1.10")
            session.file_server.start.assert_awaited_once_with("192.168.1.10")
            session._discovery.invite.assert_awaited_once_with("192.168.1.50", 9090)
            assert info.state == SessionState.LISTENING
            assert info.device_identity == IDENTITY
            assert info.local_address == "192.168.1.10"

        asyncio.run(_run())
