"""REST API routes for the file cloner."""

import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from cloner.diff import format_record, read_summary
from cloner.models import FileRequestEntry
from cloner.receiver import read_request_list, write_request_list
from config import COLLECTION_WINDOW
from errors import ConfigReadFailure, TransportUnavailable
from peers.models import PeerAddress

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_communicator = None
_file_receiver = None
_file_sender = None


def init_routes(communicator, file_receiver, file_sender) -> None:
    """Inject service dependencies into the routes module."""
    global _communicator, _file_receiver, _file_sender
    _communicator = communicator
    _file_receiver = file_receiver
    _file_sender = file_sender


# --- Node ---

@router.get("/status")
async def get_status():
    return {
        "address": _file_receiver.my_address,
        "state": _file_receiver.state.value,
        "shared_dir": str(_file_sender.shared_dir),
        "peers": len(_communicator.registry),
    }


@router.get("/peers")
async def list_peers():
    """Peers currently connected to our server."""
    addresses = await _communicator.registry.addresses()
    return {"peers": [str(a) for a in addresses]}


# --- Servers we answer requests for ---

class ServerBody(BaseModel):
    host: str
    port: int = Field(gt=0, lt=65536)


@router.get("/servers")
async def list_servers():
    return {"servers": [str(a) for a in _file_sender.servers()]}


@router.post("/servers")
async def connect_server(body: ServerBody):
    try:
        address = await _file_sender.connect(body.host, body.port)
    except TransportUnavailable as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"server": str(address)}


@router.delete("/servers/{address}")
async def disconnect_server(address: str):
    try:
        peer = PeerAddress.parse(address)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not await _file_sender.disconnect(peer):
        raise HTTPException(status_code=404, detail="Server not connected")
    return {"status": "disconnected"}


# --- Request list ---

@router.get("/requests")
async def get_requests():
    try:
        entries = read_request_list(_file_receiver.request_config_path)
    except ConfigReadFailure as e:
        logger.warning(str(e))
        entries = []
    return {"requests": [e.model_dump(by_alias=True) for e in entries]}


@router.put("/requests")
async def replace_requests(entries: list[FileRequestEntry]):
    try:
        write_request_list(_file_receiver.request_config_path, entries)
    except OSError as e:
        raise HTTPException(status_code=500, detail=f"Could not save request list: {e}")
    return {"status": "updated", "count": len(entries)}


@router.post("/requests/broadcast")
async def broadcast_requests():
    sent = await _file_receiver.request_files()
    return {
        "peers": sent,
        "requested": _file_receiver.requested_files,
        "state": _file_receiver.state.value,
    }


# --- Canonical manifest ---

@router.get("/summary")
async def get_summary():
    return {"records": read_summary(_file_receiver.summary_path)}


@router.post("/summary")
async def generate_summary():
    records = await _file_receiver.reconcile()
    return {"records": [format_record(r) for r in records.values()]}


class SyncBody(BaseModel):
    window: float = Field(default=COLLECTION_WINDOW, ge=0, le=300)


@router.post("/sync")
async def sync(body: SyncBody):
    """Broadcast, wait for acknowledgements, then reconcile."""
    records = await _file_receiver.collect(body.window)
    return {"records": [format_record(r) for r in records.values()]}
