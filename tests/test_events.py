"""Tests for sdcp.events -- the engine event bus."""

from __future__ import annotations

import asyncio
import logging

from sdcp.events import EventBus, EventType, StatusUpdate, UploadProgress


class TestEventBus:
    def test_payload_dumped_to_every_subscriber(self):
        async def _run():
            bus = EventBus()
            first: list = []
            second: list = []

            async def a(event_type, data):
                first.append((event_type, data))

            async def b(event_type, data):
                second.append((event_type, data))

            bus.on_event(a)
            bus.on_event(b)
            await bus.emit(EventType.UPLOAD_PROGRESS, UploadProgress(percent=40))
            assert first == second == [("upload_progress", {"percent": 40})]

        asyncio.run(_run())

    def test_failing_subscriber_does_not_stop_others(self):
        async def _run():
            bus = EventBus()
            received: list = []

            async def broken(event_type, data):
                raise RuntimeError("boom")

            async def ok(event_type, data):
                received.append(data)

            bus.on_event(broken)
            bus.on_event(ok)
            await bus.emit(EventType.STATUS_UPDATE, StatusUpdate(status="ready"))
            assert received == [{"status": "ready", "layer": 0, "total_layers": 0, "filename": ""}]

        asyncio.run(_run())

    def test_log_emits_level_name(self, caplog):
        async def _run():
            bus = EventBus()
            received: list = []

            async def ok(event_type, data):
                received.append((event_type, data))

            bus.on_event(ok)
            await bus.log("Printer gone", logging.WARNING)
            return received

        with caplog.at_level(logging.INFO):
            received = asyncio.run(_run())
        assert received == [("log_message", {"message": "Printer gone", "level": "warning"})]
        assert "Printer gone" in caplog.text

    def test_no_subscribers(self):
        asyncio.run(EventBus().emit(EventType.UPLOAD_PROGRESS, UploadProgress(percent=1)))
