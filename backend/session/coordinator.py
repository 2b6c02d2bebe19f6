"""
Ties the relay connection, the negotiator and the transfer engine together
for one peer.

Role selection: when the relay pairs two devices, both sides compute the
same tie-break (smaller identifier offers). The answerer arms a fallback
timer and offers itself if nothing arrives, which also covers lost relay
messages. Offers that cross on the wire are resolved the same way: the
designated initiator keeps its own offer, the other side yields.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable

from config import ANSWERER_FALLBACK_TIMEOUT, OFFER_START_DELAY, SAVE_DIR
from errors import (
    InvalidNegotiationStateError,
    NegotiationCollisionError,
    NegotiationError,
    SignalingError,
    TransferError,
)
from events import EventEmitter
from negotiation.ice import select_ice_servers
from negotiation.negotiator import ConnectionNegotiator
from session.signaling_client import SignalingClient
from signaling.identity import generate_device_id, is_offer_initiator
from signaling.models import DeviceInfo
from transfer.models import ReceivedFile, TransferProgress
from transfer.receiver import FileReceiver
from transfer.sender import FileSender

logger = logging.getLogger(__name__)

NegotiatorFactory = Callable[[bool, list[dict]], ConnectionNegotiator]


def default_negotiator_factory(is_initiator: bool, ice_servers: list[dict]) -> ConnectionNegotiator:
    return ConnectionNegotiator(is_initiator=is_initiator, ice_servers=ice_servers)


class SessionCoordinator(EventEmitter):
    """
    Peer-side session.

    Events:
        status(text: str, kind: str)
        notification({"type": str, "message": str})
        device_list(list[DeviceInfo])
        peer_connected(peer_id: str)
        peer_disconnected()
        channel_open(is_initiator: bool)
        progress(TransferProgress)
        file_received(ReceivedFile)
        send_finished(ok: bool)
        connection_failed(reason: str)
    """

    def __init__(
        self,
        signaling: SignalingClient,
        device_id: str | None = None,
        save_dir: str | Path | None = SAVE_DIR,
        ice_servers: list[dict] | None = None,
        negotiator_factory: NegotiatorFactory = default_negotiator_factory,
        receiver: FileReceiver | None = None,
        fallback_timeout: float = ANSWERER_FALLBACK_TIMEOUT,
        offer_delay: float = OFFER_START_DELAY,
    ) -> None:
        super().__init__()
        self.signaling = signaling
        self.device_id = device_id or generate_device_id()
        self.ice_servers = (
            ice_servers if ice_servers is not None
            else select_ice_servers(getattr(signaling, "url", None))
        )
        self._negotiator_factory = negotiator_factory
        self._fallback_timeout = fallback_timeout
        self._offer_delay = offer_delay

        self.receiver = receiver or FileReceiver(save_dir=save_dir)
        self.negotiator: ConnectionNegotiator | None = None
        self.sender: FileSender | None = None
        self.peer_id: str | None = None
        self.devices: list[DeviceInfo] = []
        self.selected_files: list[Path] = []
        self.is_sending = False
        self.collisions = {"ignored": 0, "yielded": 0}

        self._pending_send = False
        self._offer_received = False
        self._offer_task: asyncio.Task | None = None
        self._fallback_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

        signaling.on("connect", self._on_relay_connect)
        signaling.on("disconnect", self._on_relay_disconnect)
        signaling.on("device_list", self._on_device_list)
        signaling.on("peer_connected", self._on_peer_connected)
        signaling.on("peer_disconnected", self._on_peer_disconnected)
        signaling.on("signal", self.handle_signal)
        signaling.on("error", self._on_relay_error)

        self.receiver.on("progress", self._on_progress)
        self.receiver.on("file_received", self._on_file_received)
        self.receiver.on("file_failed", self._on_file_failed)
        self.receiver.on("batch_completed", self._on_batch_completed)

    # --- Lifecycle ---

    async def start(self) -> None:
        logger.info(f"Starting session as {self.device_id}")
        await self.signaling.start()

    async def stop(self) -> None:
        await self._teardown_session("Session stopped")
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        await self.signaling.stop()
        logger.info("Session stopped")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # --- Notifications ---

    async def notify(self, kind: str, message: str) -> None:
        """Surface a short user-facing message ("success", "info", "warning", "error")."""
        level = {"error": logging.ERROR, "warning": logging.WARNING}.get(kind, logging.INFO)
        logger.log(level, message)
        await self.emit("notification", {"type": kind, "message": message})

    async def _set_status(self, text: str, kind: str) -> None:
        await self.emit("status", text, kind)

    # --- Relay events ---

    async def _on_relay_connect(self) -> None:
        try:
            await self.signaling.register_device(self.device_id)
        except SignalingError as e:
            await self.notify("error", str(e))
            return
        await self._set_status("Connected to server", "connected")

    async def _on_relay_disconnect(self) -> None:
        await self._set_status("Disconnected from server", "disconnected")

    async def _on_device_list(self, devices: list[DeviceInfo]) -> None:
        self.devices = [d for d in devices if d.id != self.device_id]
        await self.emit("device_list", self.devices)

    async def _on_relay_error(self, message: str) -> None:
        await self.notify("error", message)

    async def _on_peer_connected(self, peer_id: str) -> None:
        if peer_id == self.device_id:
            return
        initiator = is_offer_initiator(self.device_id, peer_id)
        logger.info(
            f"Paired with {peer_id}, acting as {'initiator' if initiator else 'answerer'}"
        )
        self._cancel_timers()
        self.peer_id = peer_id
        self._offer_received = False
        await self._build_negotiator(initiator)

        await self._set_status(f"Connecting to {peer_id}...", "connecting")
        await self.emit("peer_connected", peer_id)

        if initiator:
            self._offer_task = self._spawn(self._start_offer(self._offer_delay))
        else:
            self._fallback_task = self._spawn(self._answerer_fallback(self.negotiator))

    async def _on_peer_disconnected(self) -> None:
        if self.peer_id is None and self.negotiator is None:
            return
        await self._teardown_session("Peer disconnected")
        await self._set_status("Peer disconnected", "disconnected")
        await self.emit("peer_disconnected")

    # --- Negotiation ---

    async def _build_negotiator(self, is_initiator: bool) -> ConnectionNegotiator:
        old = self.negotiator
        self.negotiator = None
        if old is not None:
            await old.close()

        negotiator = self._negotiator_factory(is_initiator, self.ice_servers)
        sender = FileSender(negotiator.send_queue)
        sender.on("progress", self._on_progress)

        async def on_channel_open(initiator: bool):
            if negotiator is self.negotiator:
                await self._on_channel_open(initiator)

        async def on_channel_close():
            if negotiator is self.negotiator:
                await self._on_channel_close()

        async def on_message(message):
            if negotiator is self.negotiator:
                await self.receiver.handle_message(message)

        async def on_connection_state(state: str):
            if negotiator is self.negotiator:
                await self._on_connection_state(state)

        negotiator.on("channel_open", on_channel_open)
        negotiator.on("channel_close", on_channel_close)
        negotiator.on("message", on_message)
        negotiator.on("connection_state", on_connection_state)
        negotiator.initialize()

        self.negotiator = negotiator
        self.sender = sender
        return negotiator

    async def _start_offer(self, delay: float = 0.0) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        negotiator, peer_id = self.negotiator, self.peer_id
        if negotiator is None or peer_id is None or self._offer_received:
            return

        try:
            offer = await negotiator.create_offer()
        except NegotiationCollisionError as e:
            logger.info(f"Offer skipped: {e}")
            return
        except NegotiationError as e:
            await self._connection_failed(str(e))
            return

        if negotiator is not self.negotiator or self._offer_received:
            logger.info("Discarding offer superseded while it was being created")
            return
        logger.info(f"Sending offer to {peer_id}")
        await self._send_signal(offer)

    async def _answerer_fallback(self, negotiator: ConnectionNegotiator) -> None:
        await asyncio.sleep(self._fallback_timeout)
        if negotiator is not self.negotiator or self._offer_received:
            return
        if negotiator.signaling_state != "stable":
            return
        logger.warning(
            f"No offer from {self.peer_id} after {self._fallback_timeout}s, creating one"
        )
        try:
            await negotiator.switch_role(True)
        except NegotiationError as e:
            await self._connection_failed(str(e))
            return
        await self._start_offer()

    async def handle_signal(self, from_id: str, data: Any) -> None:
        """Dispatch an offer, answer or candidate relayed from the peer."""
        if self.peer_id is None:
            self.peer_id = from_id
        elif from_id != self.peer_id:
            logger.warning(f"Ignoring signal from {from_id}, paired with {self.peer_id}")
            return
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed signal payload")
            return

        if self.negotiator is None:
            await self._build_negotiator(False)

        try:
            kind = data.get("type")
            if kind == "offer":
                await self._handle_remote_offer(data)
            elif kind == "answer":
                await self.negotiator.handle_answer(data)
                logger.info(f"Answer from {from_id} applied")
            elif data.get("candidate") is not None:
                await self.negotiator.add_ice_candidate(data)
        except InvalidNegotiationStateError as e:
            logger.warning(f"Ignoring out-of-order signal: {e}")
        except NegotiationError as e:
            await self._connection_failed(str(e))

    async def _handle_remote_offer(self, offer: dict) -> None:
        negotiator = self.negotiator
        if negotiator.has_local_offer:
            if is_offer_initiator(self.device_id, self.peer_id):
                self.collisions["ignored"] += 1
                logger.info("Offer collision: keeping our own offer")
                return
            self.collisions["yielded"] += 1
            logger.info("Offer collision: yielding to the peer's offer")
            self._offer_received = True
            self._cancel_timers()
            await negotiator.switch_role(False)

        self._offer_received = True
        self._cancel_timers()
        answer = await negotiator.handle_offer(offer)
        if negotiator is self.negotiator:
            await self._send_signal(answer)

    async def _send_signal(self, data: dict) -> None:
        if self.peer_id is None:
            return
        try:
            await self.signaling.send_signal(self.peer_id, data)
        except SignalingError as e:
            await self.notify("error", f"Signaling failed: {e}")

    async def _on_connection_state(self, state: str) -> None:
        if state == "connected":
            await self._set_status(f"Connected to {self.peer_id}", "connected")
        elif state == "failed":
            await self._connection_failed("Peer connection failed")

    async def _connection_failed(self, reason: str) -> None:
        self._cancel_timers()
        negotiator, self.negotiator = self.negotiator, None
        if negotiator is not None:
            await negotiator.close()
        self._pending_send = False
        await self.notify("error", f"Connection failed: {reason}")
        await self._set_status("Connection failed", "disconnected")
        await self.emit("connection_failed", reason)

    # --- Data channel ---

    async def _on_channel_open(self, is_initiator: bool) -> None:
        await self.notify("success", "Connection established!")
        await self._set_status(f"Connected to {self.peer_id}", "connected")
        await self.emit("channel_open", is_initiator)
        if self._pending_send and self.selected_files:
            self._spawn(self.send_files())

    async def _on_channel_close(self) -> None:
        await self.receiver.reset("Data channel closed")

    # --- Public operations ---

    async def connect_to_device(self, target_id: str) -> None:
        target_id = (target_id or "").strip()
        if not target_id:
            await self.notify("error", "Please enter a device ID")
            return
        if target_id == self.device_id:
            await self.notify("error", "Cannot connect to yourself")
            return

        if self.peer_id is not None or self.negotiator is not None:
            await self._teardown_session("Starting a new connection")
        try:
            await self.signaling.connect_to_device(target_id)
        except SignalingError as e:
            await self.notify("error", str(e))
            return
        await self._set_status("Connecting...", "connecting")

    def select_files(self, paths: list[str | Path]) -> list[Path]:
        self.selected_files = [Path(p) for p in paths]
        return self.selected_files

    async def send_files(self, paths: list[str | Path] | None = None) -> bool:
        """
        Send the selected files to the paired peer. When the channel is not
        open yet the send starts as soon as it opens. Returns True once every
        file has been handed to the channel.
        """
        if paths is not None:
            self.select_files(paths)
        if not self.selected_files:
            await self.notify("error", "Please select file(s) first!")
            return False
        if self.peer_id is None:
            await self.notify("error", "Please connect to a device first!")
            return False
        if self.is_sending:
            await self.notify("warning", "A transfer is already in progress")
            return False
        if self.negotiator is None or not self.negotiator.is_channel_open:
            self._pending_send = True
            await self.notify("info", "Files will be sent once the connection is ready")
            return False

        self._pending_send = False
        self.is_sending = True
        try:
            await self.sender.send_files(self.selected_files)
        except (TransferError, OSError) as e:
            self.is_sending = False
            await self.notify("error", f"Failed to send files: {e}")
            await self.emit("send_finished", False)
            return False
        self.is_sending = False
        await self.notify("success", "All files sent successfully!")
        await self.emit("send_finished", True)
        return True

    async def disconnect(self) -> None:
        await self._teardown_session("Disconnected")
        try:
            await self.signaling.disconnect_peer()
        except SignalingError as e:
            logger.warning(f"Could not notify relay of disconnect: {e}")
        await self._set_status("Disconnected", "disconnected")

    # --- Received files ---

    @property
    def received_files(self) -> list[ReceivedFile]:
        return self.receiver.received_files

    async def remove_received_file(self, file_id: str) -> ReceivedFile | None:
        removed = self.receiver.remove_file(file_id)
        if removed is not None:
            await self.notify("success", f"Removed: {removed.name}")
        return removed

    async def clear_received_files(self) -> None:
        self.receiver.clear_files()
        await self.notify("success", "All received files cleared")

    # --- Transfer events ---

    async def _on_progress(self, progress: TransferProgress) -> None:
        await self.emit("progress", progress)

    async def _on_file_received(self, artifact: ReceivedFile) -> None:
        await self.notify("success", f"File received: {artifact.name}")
        await self.emit("file_received", artifact)

    async def _on_file_failed(self, name: str, reason: str) -> None:
        await self.notify("error", f"Failed to receive {name}: {reason}")

    async def _on_batch_completed(self, total: int) -> None:
        logger.info(f"All {total} file(s) received")

    # --- Internals ---

    def _cancel_timers(self) -> None:
        current = asyncio.current_task()
        for task in (self._offer_task, self._fallback_task):
            if task is not None and task is not current:
                task.cancel()
        self._offer_task = self._fallback_task = None

    async def _teardown_session(self, reason: str) -> None:
        self._cancel_timers()
        negotiator, self.negotiator = self.negotiator, None
        if negotiator is not None:
            await negotiator.close()
        self.sender = None
        self.peer_id = None
        self._pending_send = False
        self._offer_received = False
        await self.receiver.reset(reason)
