"""
Drives the offer/answer/candidate exchange for one peer-to-peer session
and owns the resulting data channel.

Errors that leave the peer connection in a state that cannot be repaired
incrementally are handled by throwing the connection object away and
building a new one with the same role, then retrying once.
"""

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Any, Callable

from aiortc import RTCPeerConnection, RTCSessionDescription
from aiortc.exceptions import InvalidAccessError, InvalidStateError

from config import (
    COLLISION_WAIT,
    DATA_CHANNEL_LABEL,
    DATA_CHANNEL_MAX_RETRANSMITS,
    RECREATE_GRACE_PERIOD,
    RESET_GRACE_PERIOD,
)
from errors import (
    InvalidNegotiationStateError,
    NegotiationCollisionError,
    NegotiationError,
    NegotiationFailedError,
)
from events import EventEmitter
from negotiation.ice import build_rtc_configuration, parse_candidate
from transfer.channel import SendQueue

logger = logging.getLogger(__name__)

# Error text that marks a connection object as beyond incremental repair.
_RECREATE_MARKERS = (
    "does not match",
    "InvalidModification",
    "bundle",
)


class NegotiationState(str, Enum):
    IDLE = "idle"
    CREATING_OFFER = "creating-offer"
    HANDLING_OFFER = "handling-offer"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    HANDLING_ANSWER = "handling-answer"
    CONNECTED = "connected"
    CLOSED = "closed"
    FAILED = "failed"


def is_recoverable(error: Exception) -> bool:
    """Errors that call for recreating the peer connection and retrying."""
    if isinstance(error, (InvalidStateError, InvalidAccessError)):
        return True
    message = f"{type(error).__name__}: {error}"
    return any(marker in message for marker in _RECREATE_MARKERS)


def default_peer_connection_factory(ice_servers: list[dict]) -> RTCPeerConnection:
    return RTCPeerConnection(configuration=build_rtc_configuration(ice_servers))


def describe(description) -> dict:
    return {"type": description.type, "sdp": description.sdp}


class ConnectionNegotiator(EventEmitter):
    """
    Negotiates one peer connection.

    Events:
        state_change(NegotiationState)
        connection_state(str)
        ice_connection_state(str)
        channel_open(is_initiator: bool)
        channel_close()
        message(str | bytes)   delivered one at a time, in arrival order
    """

    def __init__(
        self,
        is_initiator: bool,
        ice_servers: list[dict] | None = None,
        pc_factory: Callable[[list[dict]], Any] = default_peer_connection_factory,
        send_queue: SendQueue | None = None,
        collision_wait: float = COLLISION_WAIT,
        reset_grace_period: float = RESET_GRACE_PERIOD,
        recreate_grace_period: float = RECREATE_GRACE_PERIOD,
    ) -> None:
        super().__init__()
        self.is_initiator = is_initiator
        self.ice_servers = ice_servers or []
        self._pc_factory = pc_factory
        self.send_queue = send_queue or SendQueue()
        self._collision_wait = collision_wait
        self._reset_grace_period = reset_grace_period
        self._recreate_grace_period = recreate_grace_period

        self.pc = None
        self.channel = None
        self.state = NegotiationState.IDLE
        self._pending_candidates: deque[dict] = deque()
        self._remote_description_set = False
        self._creating_offer = False
        self._handling_offer = False
        self._inbox: asyncio.Queue | None = None
        self._tasks: set[asyncio.Task] = set()

    # --- Properties ---

    @property
    def signaling_state(self) -> str:
        return self.pc.signalingState if self.pc is not None else "closed"

    @property
    def has_local_offer(self) -> bool:
        return self._creating_offer or self.signaling_state == "have-local-offer"

    @property
    def is_channel_open(self) -> bool:
        return self.channel is not None and self.channel.readyState == "open"

    @property
    def pending_candidates(self) -> int:
        return len(self._pending_candidates)

    def _set_state(self, state: NegotiationState) -> None:
        if state != self.state:
            logger.debug(f"Negotiation state: {self.state.value} -> {state.value}")
            self.state = state
            self._spawn(self.emit("state_change", state))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # --- Setup ---

    def initialize(self) -> None:
        """Build a fresh peer connection for the current role."""
        logger.info(f"Initializing peer connection as {'initiator' if self.is_initiator else 'answerer'}")
        pc = self._pc_factory(self.ice_servers)
        self.pc = pc
        self._remote_description_set = False
        self._inbox = asyncio.Queue()
        self._spawn(self._deliver_messages(self._inbox))

        def on_connection_state_change():
            if pc is not self.pc:
                return
            state = pc.connectionState
            logger.info(f"Connection state: {state}")
            if state == "connected":
                self._set_state(NegotiationState.CONNECTED)
            elif state == "failed":
                self._set_state(NegotiationState.FAILED)
            self._spawn(self.emit("connection_state", state))

        def on_ice_connection_state_change():
            if pc is not self.pc:
                return
            logger.info(f"ICE connection state: {pc.iceConnectionState}")
            self._spawn(self.emit("ice_connection_state", pc.iceConnectionState))

        def on_datachannel(channel):
            if pc is not self.pc:
                return
            logger.info("Data channel received")
            self._setup_channel(channel)

        pc.on("connectionstatechange", on_connection_state_change)
        pc.on("iceconnectionstatechange", on_ice_connection_state_change)

        if self.is_initiator:
            channel = pc.createDataChannel(
                DATA_CHANNEL_LABEL,
                ordered=True,
                maxRetransmits=DATA_CHANNEL_MAX_RETRANSMITS,
            )
            self._setup_channel(channel)
        else:
            pc.on("datachannel", on_datachannel)

        self._set_state(NegotiationState.IDLE)

    def _setup_channel(self, channel) -> None:
        self.channel = channel
        self.send_queue.attach(channel)
        inbox = self._inbox

        def on_open():
            if channel is not self.channel:
                return
            logger.info("Data channel open")
            self._spawn(self.emit("channel_open", self.is_initiator))

        def on_message(message):
            if channel is self.channel and inbox is not None:
                inbox.put_nowait(message)

        def on_close():
            if channel is not self.channel:
                return
            logger.info("Data channel closed")
            self.send_queue.close()
            self._spawn(self.emit("channel_close"))

        channel.on("open", on_open)
        channel.on("message", on_message)
        channel.on("close", on_close)

        # A remotely created channel may already be open when it is handed over.
        if channel.readyState == "open":
            on_open()

    async def _deliver_messages(self, inbox: asyncio.Queue) -> None:
        while True:
            message = await inbox.get()
            await self.emit("message", message)

    def _ensure_connection(self) -> None:
        if self.pc is None or self.pc.signalingState == "closed":
            self.initialize()

    # --- Offer / answer ---

    async def create_offer(self) -> dict:
        """Create an offer, set it locally and return it for the relay."""
        if self._creating_offer:
            raise NegotiationCollisionError("Offer creation already in progress")

        self._creating_offer = True
        try:
            try:
                return await self._create_offer_once()
            except Exception as e:
                if not is_recoverable(e):
                    self._set_state(NegotiationState.FAILED)
                    raise NegotiationError(f"Error creating offer: {e}") from e
                logger.warning(f"Critical error creating offer ({e}), recreating connection")

            await self.force_reset()
            try:
                offer = await self._create_offer_once()
                logger.info("Created offer after reset")
                return offer
            except Exception as retry_error:
                self._set_state(NegotiationState.FAILED)
                raise NegotiationFailedError(
                    f"Error creating offer after reset: {retry_error}"
                ) from retry_error
        finally:
            self._creating_offer = False

    async def _create_offer_once(self) -> dict:
        self._ensure_connection()
        if self.pc.signalingState != "stable":
            logger.info("Signaling state not stable, resetting connection")
            await self._rollback_or_recreate()

        self._set_state(NegotiationState.CREATING_OFFER)
        pc = self.pc
        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
        self._set_state(NegotiationState.HAVE_LOCAL_OFFER)
        logger.info("Created offer")
        return describe(pc.localDescription)

    async def handle_offer(self, offer: dict) -> dict:
        """Apply a remote offer and return the answer for the relay."""
        if self._creating_offer:
            loop = asyncio.get_running_loop()
            deadline = loop.time() + self._collision_wait
            while self._creating_offer and loop.time() < deadline:
                await asyncio.sleep(0.01)
            if self._creating_offer:
                raise NegotiationCollisionError(
                    "Offer received while creating our own offer"
                )
        if self._handling_offer:
            raise NegotiationCollisionError("Duplicate offer while another is being handled")

        self._handling_offer = True
        try:
            try:
                return await self._handle_offer_once(offer)
            except Exception as e:
                if not is_recoverable(e):
                    self._set_state(NegotiationState.FAILED)
                    raise NegotiationError(f"Error handling offer: {e}") from e
                logger.warning(f"Critical error handling offer ({e}), recreating connection")

            await self.force_reset()
            try:
                answer = await self._handle_offer_once(offer)
                logger.info("Created answer after reset")
                return answer
            except Exception as retry_error:
                self._set_state(NegotiationState.FAILED)
                raise NegotiationFailedError(
                    f"Error handling offer after reset: {retry_error}"
                ) from retry_error
        finally:
            self._handling_offer = False

    async def _handle_offer_once(self, offer: dict) -> dict:
        self._ensure_connection()
        if self.pc.signalingState != "stable":
            logger.info("Signaling state not stable, resetting connection")
            await self._rollback_or_recreate()

        self._set_state(NegotiationState.HANDLING_OFFER)
        pc = self.pc
        await pc.setRemoteDescription(
            RTCSessionDescription(sdp=offer["sdp"], type="offer")
        )
        self._remote_description_set = True
        self._set_state(NegotiationState.HAVE_REMOTE_OFFER)
        await self._drain_candidates()

        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        logger.info("Created answer")
        return describe(pc.localDescription)

    async def handle_answer(self, answer: dict) -> None:
        """Apply the remote answer to our outstanding offer."""
        if self.pc is None or self.pc.signalingState != "have-local-offer":
            raise InvalidNegotiationStateError(
                f"Cannot handle answer in signaling state {self.signaling_state}"
            )

        self._set_state(NegotiationState.HANDLING_ANSWER)
        try:
            await self.pc.setRemoteDescription(
                RTCSessionDescription(sdp=answer["sdp"], type="answer")
            )
        except Exception as e:
            self._set_state(NegotiationState.FAILED)
            raise NegotiationError(f"Error handling answer: {e}") from e
        self._remote_description_set = True
        await self._drain_candidates()
        if self.pc.connectionState == "connected":
            self._set_state(NegotiationState.CONNECTED)

    # --- Candidates ---

    async def add_ice_candidate(self, candidate: dict | None) -> None:
        """Apply a remote candidate, or queue it until the remote description is set."""
        if not candidate or not candidate.get("candidate"):
            logger.debug("End of remote candidates")
            return
        if self.pc is None or not self._remote_description_set:
            self._pending_candidates.append(candidate)
            logger.debug(f"Queued ICE candidate ({len(self._pending_candidates)} pending)")
            return
        try:
            await self.pc.addIceCandidate(parse_candidate(candidate))
        except Exception as e:
            raise NegotiationError(f"Error adding ICE candidate: {e}") from e

    async def _drain_candidates(self) -> None:
        while self._pending_candidates and self.pc is not None:
            candidate = self._pending_candidates.popleft()
            try:
                await self.pc.addIceCandidate(parse_candidate(candidate))
            except Exception as e:
                logger.warning(f"Dropping queued ICE candidate: {e}")

    # --- Recovery ---

    async def _rollback_or_recreate(self) -> None:
        pc = self.pc
        try:
            if pc.signalingState == "have-local-offer":
                await pc.setLocalDescription(RTCSessionDescription(sdp="", type="rollback"))
            elif pc.signalingState == "have-remote-offer":
                await pc.setRemoteDescription(RTCSessionDescription(sdp="", type="rollback"))
            if pc.signalingState != "stable":
                raise InvalidStateError(f"rollback left state {pc.signalingState}")
            self._remote_description_set = False
            logger.info("Connection rolled back to stable state")
        except Exception as e:
            logger.info(f"Rollback failed ({e}), recreating connection")
            await self.complete_recreation()

    async def _rebuild(self, grace_period: float, keep_candidates: bool) -> None:
        candidates = list(self._pending_candidates) if keep_candidates else []
        await self._release()
        # Let the old connection release its transports.
        await asyncio.sleep(grace_period)
        self.initialize()
        self._pending_candidates.extend(candidates)

    async def force_reset(self) -> None:
        """Tear down and rebuild with the same role, keeping queued candidates."""
        logger.info("Force resetting connection")
        await self._rebuild(self._reset_grace_period, keep_candidates=True)

    async def complete_recreation(self) -> None:
        """Tear down and rebuild with the same role from scratch."""
        logger.info("Complete connection recreation")
        await self._rebuild(self._recreate_grace_period, keep_candidates=False)

    async def switch_role(self, is_initiator: bool) -> None:
        """Rebuild the connection with a different role."""
        self.is_initiator = is_initiator
        await self._rebuild(self._reset_grace_period, keep_candidates=True)

    # --- Data ---

    async def send_data(self, data: str | bytes) -> None:
        await self.send_queue.send(data)

    # --- Teardown ---

    async def close(self) -> None:
        """Release the channel and connection; reject queued sends. Idempotent."""
        await self._release()
        self._creating_offer = False
        self._handling_offer = False

    async def _release(self) -> None:
        # Offer/answer guards belong to the caller and survive a rebuild.
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        self._tasks.clear()

        self.send_queue.close()
        channel, self.channel = self.channel, None
        pc, self.pc = self.pc, None

        if channel is not None:
            try:
                channel.close()
            except Exception as e:
                logger.debug(f"Error closing data channel: {e}")
        if pc is not None:
            try:
                await pc.close()
            except Exception as e:
                logger.debug(f"Error closing peer connection: {e}")

        self._pending_candidates.clear()
        self._remote_description_set = False
        self._inbox = None
        if self.state != NegotiationState.CLOSED:
            self.state = NegotiationState.CLOSED
            logger.info("Peer connection closed")
