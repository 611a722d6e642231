"""
File Cloner — FastAPI application entry point.

Starts the communicator server, the File Receiver and the File Sender on
startup, serves the REST API and WebSocket endpoint.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import ConnectionManager
from cloner.receiver import FileReceiver
from cloner.sender import FileSender
from config import API_HOST, API_PORT, MODULE_NAME, ensure_directories
from network.communicator import CommunicatorServer

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Service singletons ---
communicator = CommunicatorServer()
ws_manager = ConnectionManager()
communicator.on_peer_change(ws_manager.handle_peer_change)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop background services."""
    logger.info("Starting File Cloner services...")
    ensure_directories()
    file_receiver = None
    file_sender = None

    try:
        # Failing to listen is fatal
        my_address = await communicator.start()

        file_receiver = FileReceiver(communicator)
        file_receiver.on_event(ws_manager.handle_event)
        file_sender = FileSender(my_address)

        init_routes(communicator, file_receiver, file_sender)

        logger.info(
            f"File Cloner ready — "
            f"API: {API_HOST}:{API_PORT}, "
            f"Node address: {my_address}"
        )

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise
    finally:
        logger.info("Shutting down File Cloner services...")
        if file_sender is not None:
            await file_sender.stop()
        if file_receiver is not None:
            communicator.unsubscribe(MODULE_NAME, file_receiver)
        await communicator.stop()


# --- FastAPI app ---
app = FastAPI(
    title="File Cloner",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173", "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await ws_manager.connect(websocket)
    try:
        while True:
            # Keep the connection alive; we don't expect client messages
            await websocket.receive_text()
    except WebSocketDisconnect:
        await ws_manager.disconnect(websocket)
    except Exception:
        await ws_manager.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )
