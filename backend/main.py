"""
Saturn Link: FastAPI application entry point.

Owns the printer session and the discovery socket, serves the REST API
that drives them, and streams every engine event over the WebSocket.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import ConnectionManager
from config import API_HOST, API_PORT, APP_VERSION, CORS_ORIGINS, LOG_LEVEL
from discovery.service import DiscoveryService
from sdcp.events import EventBus
from sdcp.session import PrinterSession

# --- Logging ---
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Engine singletons ---
events = EventBus()
discovery_service = DiscoveryService(events)
session = PrinterSession(discovery_service, events)
ws_manager = ConnectionManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Route engine events to WebSocket clients; release sockets on shutdown."""
    logger.info("Starting Saturn Link...")

    try:
        events.on_event(ws_manager.handle_event)
        logger.info(f"Saturn Link {APP_VERSION} ready, API: {API_HOST}:{API_PORT}")

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise
    finally:
        logger.info("Shutting down Saturn Link...")
        await session.close()
        await discovery_service.stop()


# --- FastAPI app ---
app = FastAPI(
    title="Saturn Link",
    version=APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Inject engine objects into routes
init_routes(discovery_service, session)
app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await ws_manager.connect(websocket)
    try:
        while True:
            # Events only flow outward; incoming text just keeps the socket open
            await websocket.receive_text()
    except WebSocketDisconnect:
        await ws_manager.disconnect(websocket)
    except Exception:
        await ws_manager.disconnect(websocket)


def run() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level=LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
