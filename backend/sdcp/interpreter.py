"""
Status interpreter.

Turns each message the printer publishes into engine events. Branches are
checked in priority order (printing, then downloading, then idle); the
transfer triggers run regardless of which branch matched.
"""

import logging
import math

from pydantic import ValidationError

from config import MIN_IDENTITY_LENGTH
from sdcp.commands import ATTRIBUTES_TOPIC_MARKER, STATUS_TOPIC_MARKER
from sdcp.errors import PrinterDisconnectedError
from sdcp.events import (
    EventBus,
    EventType,
    FileReadyToPrint,
    ModelDetected,
    StatusUpdate,
    UploadProgress,
)
from sdcp.models import (
    DeviceMessage,
    MachineStatus,
    PrintStatus,
    StatusSnapshot,
    TransferStatus,
)
from transfer.manager import TransferManager

logger = logging.getLogger(__name__)

PRINT_STATUS_TEXT: dict[int, str] = {
    PrintStatus.EXPOSURE: "exposing",
    PrintStatus.RETRACTING: "retracting",
    PrintStatus.LOWERING: "lowering",
    PrintStatus.COMPLETE: "complete/paused",
}


def print_status_text(code: int) -> str:
    return PRINT_STATUS_TEXT.get(code, f"printing (code {code})")


def download_percent(offset: float, total: float) -> int:
    return math.floor(offset / total * 100)


class StatusInterpreter:
    """
    Classifies printer messages. Holds no state of its own: identity and
    mainboard id live on the session, transfer flags on the transfer manager.
    """

    def __init__(self, session, transfers: TransferManager, events: EventBus) -> None:
        self._session = session
        self._transfers = transfers
        self._events = events

    async def process(self, topic: str, payload: bytes) -> StatusSnapshot | None:
        """Handle one PUBLISH; returns the status snapshot if it was a status report."""
        try:
            message = DeviceMessage.model_validate_json(payload)
        except ValidationError as e:
            logger.warning(f"Ignoring unparseable message on {topic}: {e}")
            return None

        await self._adopt_identity(message.id)

        if ATTRIBUTES_TOPIC_MARKER in topic:
            model = message.data.attributes.machine_name
            if model:
                await self._events.log(f"Model detected: {model}", source=logger)
                await self._events.emit(EventType.MODEL_DETECTED, ModelDetected(model=model))

        if STATUS_TOPIC_MARKER not in topic:
            return None

        if not self._session.mainboard_id:
            self._session.mainboard_id = topic.rsplit("/", 1)[-1]
            logger.info(f"Mainboard id: {self._session.mainboard_id}")

        snapshot = StatusSnapshot.from_status(message.data.status)
        await self._classify(snapshot)
        await self._run_triggers(snapshot)
        return snapshot

    async def _adopt_identity(self, identity: str) -> None:
        if (
            identity
            and identity != self._session.mainboard_id
            and len(identity) > MIN_IDENTITY_LENGTH
            and identity != self._session.device_identity
        ):
            self._session.device_identity = identity
            await self._events.log(f"Device identity detected: {identity}", source=logger)

    async def _status(self, text: str, layer: int = 0, total: int = 0, filename: str = "") -> None:
        await self._events.emit(
            EventType.STATUS_UPDATE,
            StatusUpdate(status=text, layer=layer, total_layers=total, filename=filename),
        )

    async def _progress(self, percent: int) -> None:
        await self._events.emit(EventType.UPLOAD_PROGRESS, UploadProgress(percent=percent))

    async def _classify(self, s: StatusSnapshot) -> None:
        busy = s.current_status == MachineStatus.BUSY

        if busy and s.print_status > 0:
            await self._status(
                print_status_text(s.print_status),
                s.current_layer,
                s.total_layer,
                s.print_filename,
            )

        elif busy and (s.transfer_status == TransferStatus.ACTIVE or s.download_offset > 0):
            if s.file_total_size > 0 and s.download_offset < s.file_total_size:
                percent = download_percent(s.download_offset, s.file_total_size)
                await self._progress(percent)
                await self._status(f"receiving {percent}%", filename=s.filename)
            else:
                await self._status("processing file", filename=s.filename)

        elif s.current_status == MachineStatus.READY:
            await self._status("ready")
            await self._progress(0)
            if s.transfer_status == TransferStatus.SUCCESS and s.filename:
                if self._transfers.mark_ready_announced(s.filename):
                    await self._events.emit(
                        EventType.FILE_READY_TO_PRINT, FileReadyToPrint(filename=s.filename)
                    )

        if s.transfer_status != TransferStatus.SUCCESS:
            self._transfers.clear_ready_announced()

    async def _run_triggers(self, s: StatusSnapshot) -> None:
        if s.transfer_status == TransferStatus.SUCCESS:
            filename = self._transfers.consume_auto_print()
            if filename:
                await self._events.log(
                    f"Transfer finished, starting print of {filename}", source=logger
                )
                try:
                    await self._session.print_existing(filename)
                except PrinterDisconnectedError as e:
                    await self._events.log(
                        f"Auto-start failed: {e}", logging.ERROR, source=logger
                    )

        elif s.transfer_status == TransferStatus.ERROR:
            self._transfers.cancel_auto_print()
            if s.current_status == MachineStatus.READY:
                await self._status("error in last transfer")
