"""REST API routes for the ShareLink relay."""

import logging

from fastapi import APIRouter

from config import (
    CHUNK_SIZE,
    DEVICE_ID_MAX_LENGTH,
    DEVICE_ID_MIN_LENGTH,
    ICE_SERVERS,
    MAX_BUFFERED_AMOUNT,
    MAX_SIGNALING_DATA_SIZE,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# Injected by main.py at startup
_relay = None
_connections = None


def init_routes(relay, connections) -> None:
    """Inject service dependencies into the routes module."""
    global _relay, _connections
    _relay = relay
    _connections = connections


@router.get("/health")
async def health():
    return {
        "status": "ok",
        "devices": len(_relay.registry),
        "connections": len(_connections),
    }


@router.get("/devices")
async def list_devices():
    """Return registered devices and whether each is paired."""
    return {"devices": [d.model_dump() for d in _relay.list_devices()]}


@router.get("/config")
async def client_config():
    """Static settings a browser peer needs before it can negotiate."""
    return {
        "ice_servers": ICE_SERVERS,
        "chunk_size": CHUNK_SIZE,
        "max_buffered_amount": MAX_BUFFERED_AMOUNT,
        "max_signaling_data_size": MAX_SIGNALING_DATA_SIZE,
        "device_id_min_length": DEVICE_ID_MIN_LENGTH,
        "device_id_max_length": DEVICE_ID_MAX_LENGTH,
    }
