"""REST API routes for Saturn Link."""

import logging
import os

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from sdcp.errors import PrinterDisconnectedError, UploadError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_discovery_service = None
_session = None


def init_routes(discovery_service, session) -> None:
    """Inject service dependencies into the routes module."""
    global _discovery_service, _session
    _discovery_service = discovery_service
    _session = session


# --- Discovery ---

@router.get("/printers")
async def list_printers():
    """Return every printer that has answered a discovery broadcast."""
    return {"printers": [d.model_dump() for d in _discovery_service.get_devices()]}


@router.post("/discover")
async def discover():
    """Broadcast the discovery trigger; results arrive as device_found events."""
    await _discovery_service.discover()
    return {"status": "searching"}


@router.post("/discover/stop")
async def stop_discovery():
    await _discovery_service.stop()
    return {"status": "stopped"}


# --- Session ---

class ConnectBody(BaseModel):
    address: str


@router.post("/connect")
async def connect(body: ConnectBody):
    """Open the listeners and invite the printer at ``address``."""
    try:
        info = await _session.connect(body.address)
    except OSError as e:
        raise HTTPException(status_code=500, detail=f"Could not start listeners: {e}")
    return info.model_dump()


@router.get("/session")
async def get_session():
    return _session.info().model_dump()


# --- Printing ---

class UploadBody(BaseModel):
    file_path: str
    auto_start: bool = False


@router.post("/upload")
async def upload(body: UploadBody):
    """Offer a local file to the printer, optionally printing it once received."""
    if not os.path.isfile(body.file_path):
        raise HTTPException(status_code=400, detail="File not found")
    try:
        transfer = await _session.upload_and_print(body.file_path, body.auto_start)
    except UploadError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PrinterDisconnectedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {
        "filename": transfer.filename,
        "size": transfer.size_bytes,
        "md5": transfer.md5_hex,
        "auto_start": transfer.auto_print_requested,
    }


class PrintBody(BaseModel):
    filename: str


@router.post("/print")
async def print_file(body: PrintBody):
    """Start printing a file already on the printer."""
    try:
        await _session.print_existing(body.filename)
    except PrinterDisconnectedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"status": "started", "filename": body.filename}
