"""
Signaling relay.

Pairs devices by identifier and forwards opaque negotiation payloads
between paired devices. Owns the lifecycle of the DeviceRegistry.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from config import SWEEP_INTERVAL
from signaling.identity import validate_device_id
from signaling.models import (
    ClientEvent,
    ConnectionHandle,
    DeviceInfo,
    RelayError,
    ServerEvent,
    SignalEnvelope,
    SignalRequest,
)
from signaling.registry import DeviceRegistry

logger = logging.getLogger(__name__)

Broadcast = Callable[[str, Any], Awaitable[None]]


class SignalingRelay:
    """Handles relay events for every connected client."""

    def __init__(
        self,
        registry: DeviceRegistry,
        broadcast: Broadcast | None = None,
        sweep_interval: float = SWEEP_INTERVAL,
    ) -> None:
        self.registry = registry
        self._broadcast = broadcast
        self._sweep_interval = sweep_interval
        self._sweep_task: asyncio.Task | None = None

    # --- Lifecycle ---

    async def start(self) -> None:
        """Start the periodic stale-connection sweep."""
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info(f"Relay started (sweep every {self._sweep_interval}s)")

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        self.registry.clear()
        logger.info("Relay stopped")

    # --- Dispatch ---

    async def dispatch(self, handle: ConnectionHandle, event: str, data: Any = None) -> None:
        """Route one decoded client event. Never raises."""
        try:
            if event == ClientEvent.REGISTER:
                await self.register(handle, data)
            elif event == ClientEvent.GET_DEVICES:
                await self.get_devices(handle)
            elif event == ClientEvent.CONNECT_TO_DEVICE:
                await self.request_pairing(handle, data)
            elif event == ClientEvent.SIGNAL:
                try:
                    request = SignalRequest.model_validate(data)
                except ValueError:
                    await self._send(handle, ServerEvent.ERROR, RelayError.INVALID_MESSAGE)
                    return
                await self.relay_signal(handle, request.to, request.data)
            elif event == ClientEvent.DISCONNECT_PEER:
                if handle.device_id:
                    await self.disconnect_pairing(handle.device_id)
            else:
                await self._send(handle, ServerEvent.ERROR, RelayError.UNKNOWN_EVENT)
        except Exception as e:
            logger.error(f"Relay handler error for '{event}': {e}", exc_info=True)

    # --- Handlers ---

    async def register(self, handle: ConnectionHandle, device_id: Any) -> None:
        if not validate_device_id(device_id):
            await self._send(handle, ServerEvent.ERROR, RelayError.INVALID_DEVICE_ID)
            return

        # The same connection registering under a new id gives up the old one.
        if handle.device_id and handle.device_id != device_id:
            await self._teardown(handle.device_id, handle)

        replaced = self.registry.register(device_id, handle)
        if replaced is not None:
            replaced.device_id = None
        handle.device_id = device_id
        logger.info(f"Device registered: {device_id}")
        await self.broadcast_device_list()

    def list_devices(self) -> list[DeviceInfo]:
        return self.registry.list_devices()

    async def get_devices(self, handle: ConnectionHandle) -> None:
        await self._send(handle, ServerEvent.DEVICE_LIST, self._device_list_payload())

    async def request_pairing(self, handle: ConnectionHandle, target_id: Any) -> None:
        from_id = handle.device_id
        target = self.registry.get(target_id) if isinstance(target_id, str) else None
        if target is None:
            await self._send(handle, ServerEvent.ERROR, RelayError.DEVICE_NOT_FOUND)
            return
        if target is handle or target_id == from_id:
            await self._send(handle, ServerEvent.ERROR, RelayError.CANNOT_CONNECT_TO_SELF)
            return
        if not from_id:
            await self._send(handle, ServerEvent.ERROR, RelayError.NOT_REGISTERED)
            return

        for device_id, former_peer in self.registry.pair(from_id, target_id):
            if former_peer not in (from_id, target_id):
                logger.info(f"Dropping previous pairing {device_id} <-> {former_peer}")
                await self._send_to(former_peer, ServerEvent.PEER_DISCONNECTED)

        await self._send(handle, ServerEvent.PEER_CONNECTED, target_id)
        await self._send(target, ServerEvent.PEER_CONNECTED, from_id)
        logger.info(f"{from_id} connected to {target_id}")
        await self.broadcast_device_list()

    async def relay_signal(self, handle: ConnectionHandle, to: str, data: Any) -> None:
        """Forward an opaque payload; silently dropped when the target is gone."""
        target = self.registry.get(to)
        if target is None or not handle.device_id:
            logger.debug(f"Dropping signal for unknown device {to}")
            return
        envelope = SignalEnvelope(from_=handle.device_id, data=data)
        await self._send(target, ServerEvent.SIGNAL, envelope.wire())

    async def disconnect_pairing(self, device_id: str) -> None:
        peer_id = self.registry.unpair(device_id)
        if peer_id is None:
            return
        await self._send_to(peer_id, ServerEvent.PEER_DISCONNECTED)
        await self._send_to(device_id, ServerEvent.PEER_DISCONNECTED)
        logger.info(f"{device_id} disconnected from {peer_id}")
        await self.broadcast_device_list()

    async def handle_disconnect(self, handle: ConnectionHandle) -> None:
        """Connection lost: drop the registration and any pairing."""
        if handle.device_id:
            await self._teardown(handle.device_id, handle)
            await self.broadcast_device_list()

    async def sweep(self) -> int:
        """Evict handles that report not-connected. Returns the eviction count."""
        stale = self.registry.stale_devices()
        for device_id, handle in stale:
            logger.info(f"Sweeping stale device {device_id}")
            await self._teardown(device_id, handle)
        if stale:
            await self.broadcast_device_list()
        return len(stale)

    # --- Internals ---

    async def _teardown(self, device_id: str, handle: ConnectionHandle) -> None:
        if not self.registry.unregister(device_id, handle):
            return
        peer_id = self.registry.unpair(device_id)
        if peer_id is not None:
            await self._send_to(peer_id, ServerEvent.PEER_DISCONNECTED)
            logger.info(f"{device_id} left; notified peer {peer_id}")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.warning(f"Sweep failed: {e}")

    def _device_list_payload(self) -> list[dict]:
        return [d.model_dump() for d in self.registry.list_devices()]

    async def broadcast_device_list(self) -> None:
        payload = self._device_list_payload()
        if self._broadcast is not None:
            await self._broadcast(ServerEvent.DEVICE_LIST, payload)
        else:
            for handle in self.registry.handles():
                await self._send(handle, ServerEvent.DEVICE_LIST, payload)

    async def _send_to(self, device_id: str, event: str, data: Any = None) -> None:
        handle = self.registry.get(device_id)
        if handle is not None:
            await self._send(handle, event, data)

    async def _send(self, handle: ConnectionHandle, event: str, data: Any = None) -> None:
        try:
            await handle.send(event, data)
        except Exception as e:
            logger.warning(f"Failed to deliver '{event}' to {handle.device_id}: {e}")
