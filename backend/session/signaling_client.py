"""
Peer-side connection to the signaling relay.

Keeps one websocket open to the relay (reconnecting after drops), turns
incoming frames into events and validates every outgoing call locally
before it reaches the wire.
"""

import asyncio
import json
import logging
from typing import Any

import websockets
from pydantic import TypeAdapter, ValidationError

from config import MAX_SIGNALING_DATA_SIZE, POLL_INTERVAL, RECONNECT_DELAY, RELAY_URL
from errors import SignalingError
from events import EventEmitter
from signaling.identity import validate_device_id
from signaling.models import (
    ClientEvent,
    DeviceInfo,
    RelayMessage,
    ServerEvent,
    SignalEnvelope,
    SignalRequest,
)

logger = logging.getLogger(__name__)

_DEVICE_LIST = TypeAdapter(list[DeviceInfo])


class SignalingClient(EventEmitter):
    """
    Relay connection for one peer.

    Events:
        connect()
        disconnect()
        device_list(list[DeviceInfo])
        peer_connected(peer_id: str)
        peer_disconnected()
        signal(from_id: str, data)
        error(message: str)
    """

    def __init__(
        self,
        url: str = RELAY_URL,
        reconnect_delay: float = RECONNECT_DELAY,
        poll_interval: float = POLL_INTERVAL,
        max_signal_size: int = MAX_SIGNALING_DATA_SIZE,
    ) -> None:
        super().__init__()
        self.url = url
        self.device_id: str | None = None
        self._reconnect_delay = reconnect_delay
        self._poll_interval = poll_interval
        self._max_signal_size = max_signal_size
        self._ws = None
        self._running = False
        self._task: asyncio.Task | None = None
        self._poll_task: asyncio.Task | None = None

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    # --- Lifecycle ---

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        if self._poll_interval > 0:
            self._poll_task = asyncio.create_task(self._poll_devices())

    async def stop(self) -> None:
        self._running = False
        for task in (self._poll_task, self._task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = self._poll_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        logger.info("Signaling client stopped")

    async def _run(self) -> None:
        while self._running:
            try:
                async with websockets.connect(self.url) as ws:
                    self._ws = ws
                    logger.info(f"Connected to relay at {self.url}")
                    await self.emit("connect")
                    async for raw in ws:
                        await self.handle_frame(raw)
            except asyncio.CancelledError:
                raise
            except (OSError, websockets.WebSocketException) as e:
                logger.warning(f"Relay connection error: {e}")
            finally:
                was_connected = self._ws is not None
                self._ws = None
                if was_connected and self._running:
                    logger.info("Disconnected from relay")
                    await self.emit("disconnect")

            if self._running:
                await asyncio.sleep(self._reconnect_delay)

    async def _poll_devices(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            if self.is_connected:
                try:
                    await self.get_devices()
                except SignalingError as e:
                    logger.debug(f"Device poll skipped: {e}")

    # --- Incoming ---

    async def handle_frame(self, raw: str | bytes) -> None:
        """Decode one relay frame and emit the matching event."""
        try:
            message = RelayMessage.model_validate_json(raw)
        except ValidationError:
            logger.warning("Ignoring malformed relay frame")
            return

        event, data = message.event, message.data
        if event == ServerEvent.DEVICE_LIST:
            try:
                devices = _DEVICE_LIST.validate_python(data or [])
            except ValidationError:
                logger.warning("Ignoring malformed device list")
                return
            await self.emit("device_list", devices)
        elif event == ServerEvent.PEER_CONNECTED:
            logger.info(f"Paired with {data}")
            await self.emit("peer_connected", data)
        elif event == ServerEvent.PEER_DISCONNECTED:
            logger.info("Peer disconnected")
            await self.emit("peer_disconnected")
        elif event == ServerEvent.SIGNAL:
            try:
                envelope = SignalEnvelope.model_validate(data)
            except ValidationError:
                logger.warning("Ignoring malformed signal envelope")
                return
            await self.emit("signal", envelope.from_, envelope.data)
        elif event == ServerEvent.ERROR:
            logger.error(f"Relay error: {data}")
            await self.emit("error", str(data))
        else:
            logger.debug(f"Ignoring unknown relay event: {event}")

    # --- Outgoing ---

    async def _send(self, event: str, data: Any = None) -> None:
        if self._ws is None:
            raise SignalingError("Socket not connected")
        message = RelayMessage(event=event, data=data)
        await self._ws.send(message.model_dump_json())

    async def register_device(self, device_id: str) -> None:
        if not validate_device_id(device_id):
            raise SignalingError(f"Invalid device ID: {device_id}")
        self.device_id = device_id
        await self._send(ClientEvent.REGISTER, device_id)
        await self.get_devices()
        logger.info(f"Registered as {device_id}")

    async def get_devices(self) -> None:
        await self._send(ClientEvent.GET_DEVICES)

    async def connect_to_device(self, target_id: str) -> None:
        if not validate_device_id(target_id):
            raise SignalingError(f"Invalid device ID: {target_id}")
        if target_id == self.device_id:
            raise SignalingError("Cannot connect to yourself")
        await self._send(ClientEvent.CONNECT_TO_DEVICE, target_id)

    async def send_signal(self, to: str, data: Any) -> None:
        if not validate_device_id(to):
            raise SignalingError(f"Invalid device ID: {to}")
        size = len(json.dumps(data))
        if size > self._max_signal_size:
            raise SignalingError(
                f"Signaling data too large ({size} > {self._max_signal_size} bytes)"
            )
        await self._send(ClientEvent.SIGNAL, SignalRequest(to=to, data=data).model_dump())

    async def disconnect_peer(self) -> None:
        if self._ws is None:
            return
        await self._send(ClientEvent.DISCONNECT_PEER)
