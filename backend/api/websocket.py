"""WebSocket handling for the signaling relay."""

import asyncio
import json
import logging
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from signaling.models import RelayError, RelayMessage, ServerEvent
from signaling.relay import SignalingRelay

logger = logging.getLogger(__name__)


class WebSocketHandle:
    """Connection handle the relay uses to talk to one websocket client."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.device_id: str | None = None
        self._closed = False

    @property
    def is_connected(self) -> bool:
        return (
            not self._closed
            and self.websocket.client_state == WebSocketState.CONNECTED
        )

    def mark_closed(self) -> None:
        self._closed = True

    async def send(self, event: str, data: Any = None) -> None:
        message = RelayMessage(event=event, data=data)
        await self.websocket.send_text(message.model_dump_json())


class ConnectionManager:
    """Tracks every open websocket (registered or not) and broadcasts events."""

    def __init__(self) -> None:
        self._connections: list[WebSocketHandle] = []
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> WebSocketHandle:
        await websocket.accept()
        handle = WebSocketHandle(websocket)
        async with self._lock:
            self._connections.append(handle)
        logger.info(f"WebSocket client connected. Total: {len(self._connections)}")
        return handle

    async def disconnect(self, handle: WebSocketHandle) -> None:
        handle.mark_closed()
        async with self._lock:
            if handle in self._connections:
                self._connections.remove(handle)
        logger.info(f"WebSocket client disconnected. Total: {len(self._connections)}")

    async def broadcast(self, event: str, data: Any) -> None:
        """Broadcast an event to all connected websocket clients."""
        async with self._lock:
            dead: list[WebSocketHandle] = []
            for handle in self._connections:
                try:
                    await handle.send(event, data)
                except Exception:
                    dead.append(handle)
            for handle in dead:
                handle.mark_closed()
                self._connections.remove(handle)


async def serve_client(
    websocket: WebSocket, manager: ConnectionManager, relay: SignalingRelay
) -> None:
    """Pump one websocket until it closes, feeding frames to the relay."""
    handle = await manager.connect(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = RelayMessage.model_validate(json.loads(raw))
            except (json.JSONDecodeError, ValidationError):
                logger.debug(f"Ignoring malformed frame from {handle.device_id}")
                await handle.send(ServerEvent.ERROR, RelayError.INVALID_MESSAGE)
                continue
            await relay.dispatch(handle, message.event, message.data)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.warning(f"WebSocket error for {handle.device_id}: {e}")
    finally:
        await manager.disconnect(handle)
        await relay.handle_disconnect(handle)
