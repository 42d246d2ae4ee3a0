"""Tests for the REST routes and the WebSocket event fan-out."""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from unittest import mock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.routes import init_routes, router
from api.websocket import ConnectionManager
from discovery.models import DeviceRecord
from sdcp.errors import PrinterDisconnectedError, UploadError
from sdcp.session import SessionInfo, SessionState
from transfer.models import TransferState


# ---------------------------------------------------------------------------
# Fixtures & helpers
# ---------------------------------------------------------------------------


def _info(state: SessionState = SessionState.IDLE) -> SessionInfo:
    return SessionInfo(
        state=state,
        printer_address="192.168.1.50",
        local_address="192.168.1.10",
        broker_port=9090,
        file_server_port=9091,
        connected=False,
        mainboard_id="",
        device_identity="",
    )


@pytest.fixture
def services():
    discovery = mock.Mock()
    discovery.get_devices.return_value = [
        DeviceRecord(address="192.168.1.50", name="Saturn", model="Saturn 3")
    ]
    discovery.discover = mock.AsyncMock()
    discovery.stop = mock.AsyncMock()

    session = mock.Mock()
    session.info.return_value = _info()
    session.connect = mock.AsyncMock(return_value=_info(SessionState.LISTENING))
    session.print_existing = mock.AsyncMock(return_value=True)
    session.upload_and_print = mock.AsyncMock()
    return discovery, session


@pytest.fixture
def client(services):
    app = FastAPI()
    init_routes(*services)
    app.include_router(router)
    return TestClient(app)


@pytest.fixture
def local_file():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "cube.goo")
        with open(path, "wb") as f:
            f.write(b"data")
        yield path


# ---------------------------------------------------------------------------
# Discovery routes
# ---------------------------------------------------------------------------


class TestDiscoveryRoutes:
    def test_list_printers(self, client):
        resp = client.get("/api/printers")
        assert resp.status_code == 200
        (printer,) = resp.json()["printers"]
        assert printer["address"] == "192.168.1.50"
        assert printer["model"] == "Saturn 3"

    def test_discover(self, client, services):
        resp = client.post("/api/discover")
        assert resp.status_code == 200
        assert resp.json() == {"status": "searching"}
        services[0].discover.assert_awaited_once()

    def test_stop_discovery(self, client, services):
        assert client.post("/api/discover/stop").status_code == 200
        services[0].stop.assert_awaited_once()


# ---------------------------------------------------------------------------
# Session routes
# ---------------------------------------------------------------------------


class TestSessionRoutes:
    def test_connect(self, client, services):
        resp = client.post("/api/connect", json={"address": "192.168.1.50"})
        assert resp.status_code == 200
        assert resp.json()["state"] == "listening"
        services[1].connect.assert_awaited_once_with("192.168.1.50")

    def test_connect_requires_address(self, client):
        assert client.post("/api/connect", json={}).status_code == 422

    def test_connect_bind_failure(self, client, services):
        services[1].connect.side_effect = OSError("address in use")
        resp = client.post("/api/connect", json={"address": "192.168.1.50"})
        assert resp.status_code == 500

    def test_session(self, client):
        resp = client.get("/api/session")
        assert resp.status_code == 200
        body = resp.json()
        assert body["state"] == "idle"
        assert body["broker_port"] == 9090
        assert body["active_token"] is None


# ---------------------------------------------------------------------------
# Printing routes
# ---------------------------------------------------------------------------


class TestPrintingRoutes:
    def test_upload(self, client, services, local_file):
        services[1].upload_and_print.return_value = TransferState(
            token="a" * 32 + ".goo",
            local_path=local_file,
            filename="cube.goo",
            md5_hex="8d777f385d3dfec8815d20f7496026dc",
            size_bytes=4,
            auto_print_requested=True,
        )
        resp = client.post("/api/upload", json={"file_path": local_file, "auto_start": True})
        assert resp.status_code == 200
        assert resp.json() == {
            "filename": "cube.goo",
            "size": 4,
            "md5": "8d777f385d3dfec8815d20f7496026dc",
            "auto_start": True,
        }
        services[1].upload_and_print.assert_awaited_once_with(local_file, True)

    def test_upload_missing_file(self, client, services):
        resp = client.post("/api/upload", json={"file_path": "/nonexistent/x.goo"})
        assert resp.status_code == 400
        services[1].upload_and_print.assert_not_awaited()

    def test_upload_unreadable(self, client, services, local_file):
        services[1].upload_and_print.side_effect = UploadError("Cannot read")
        resp = client.post("/api/upload", json={"file_path": local_file})
        assert resp.status_code == 400

    def test_upload_disconnected(self, client, services, local_file):
        services[1].upload_and_print.side_effect = PrinterDisconnectedError("No printer connected")
        resp = client.post("/api/upload", json={"file_path": local_file})
        assert resp.status_code == 409
        assert resp.json()["detail"] == "No printer connected"

    def test_print(self, client, services):
        resp = client.post("/api/print", json={"filename": "cube.goo"})
        assert resp.status_code == 200
        assert resp.json() == {"status": "started", "filename": "cube.goo"}
        services[1].print_existing.assert_awaited_once_with("cube.goo")

    def test_print_disconnected(self, client, services):
        services[1].print_existing.side_effect = PrinterDisconnectedError("No printer connected")
        assert client.post("/api/print", json={"filename": "cube.goo"}).status_code == 409


# ---------------------------------------------------------------------------
# WebSocket fan-out
# ---------------------------------------------------------------------------


class TestConnectionManager:
    def test_broadcast_and_drop_dead_sockets(self):
        async def _run():
            manager = ConnectionManager()
            good = mock.Mock(accept=mock.AsyncMock(), send_text=mock.AsyncMock())
            dead = mock.Mock(
                accept=mock.AsyncMock(),
                send_text=mock.AsyncMock(side_effect=RuntimeError("closed")),
            )
            await manager.connect(good)
            await manager.connect(dead)
            assert manager.count == 2

            await manager.handle_event("upload_progress", {"percent": 10})
            (call,) = good.send_text.await_args_list
            assert json.loads(call.args[0]) == {
                "event": "upload_progress",
                "data": {"percent": 10},
            }
            assert manager.count == 1

            await manager.disconnect(good)
            assert manager.count == 0

        asyncio.run(_run())

    def test_late_client_gets_latest_state(self):
        async def _run():
            manager = ConnectionManager()
            await manager.handle_event("status_update", {"status": "exposing"})
            await manager.handle_event("status_update", {"status": "lowering"})
            await manager.handle_event("log_message", {"message": "hi", "level": "info"})

            late = mock.Mock(accept=mock.AsyncMock(), send_text=mock.AsyncMock())
            await manager.connect(late)
            replayed = [json.loads(c.args[0]) for c in late.send_text.await_args_list]
            assert replayed == [{"event": "status_update", "data": {"status": "lowering"}}]

        asyncio.run(_run())

    def test_websocket_endpoint_accepts(self):
        import main

        with TestClient(main.app) as client:
            with client.websocket_connect("/ws") as ws:
                ws.send_text("ping")
            assert client.get("/api/session").json()["state"] == "idle"
