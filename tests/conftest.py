"""Shared fakes for relay, channel and peer-connection tests."""

import asyncio
from collections import defaultdict

import pytest
from aiortc import RTCSessionDescription
from aiortc.exceptions import InvalidStateError

from events import EventEmitter
from negotiation.negotiator import ConnectionNegotiator


class FakeHandle:
    """Relay-side connection handle that records what it was sent."""

    def __init__(self) -> None:
        self.device_id = None
        self.connected = True
        self.messages: list[tuple[str, object]] = []

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def send(self, event, data=None):
        if not self.connected:
            raise ConnectionError("socket closed")
        self.messages.append((event, data))

    def events(self, name):
        return [data for event, data in self.messages if event == name]


class _Emitter:
    def __init__(self) -> None:
        self._handlers = defaultdict(list)

    def on(self, event, f=None):
        self._handlers[event].append(f)
        return f

    def fire(self, event, *args):
        for handler in list(self._handlers[event]):
            handler(*args)


class FakeChannel(_Emitter):
    """In-memory stand-in for RTCDataChannel."""

    def __init__(self, label="file", ready_state="open") -> None:
        super().__init__()
        self.label = label
        self.readyState = ready_state
        self.bufferedAmount = 0
        self.bufferedAmountLowThreshold = 0
        self.sent: list = []

    def send(self, data):
        if self.readyState != "open":
            raise InvalidStateError("RTCDataChannel is not open")
        self.sent.append(data)

    def open(self):
        self.readyState = "open"
        self.fire("open")

    def close(self):
        if self.readyState != "closed":
            self.readyState = "closed"
            self.fire("close")


class FakePeerConnection(_Emitter):
    """
    Signaling-state model of RTCPeerConnection. Applying the final
    description of an exchange "connects" and opens the data channel.
    """

    def __init__(self, ice_servers=None) -> None:
        super().__init__()
        self.ice_servers = ice_servers
        self.signalingState = "stable"
        self.connectionState = "new"
        self.iceConnectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.channels: list[FakeChannel] = []
        self.added_candidates: list = []
        self.fail_next: dict[str, Exception] = {}
        self.delay = 0.0
        self.supports_rollback = True
        self.closed = False

    def createDataChannel(self, label, ordered=True, maxRetransmits=None):
        channel = FakeChannel(label, ready_state="connecting")
        self.channels.append(channel)
        return channel

    async def _step(self, name):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.closed:
            raise InvalidStateError("RTCPeerConnection is closed")
        error = self.fail_next.pop(name, None)
        if error is not None:
            raise error

    async def createOffer(self):
        await self._step("createOffer")
        return RTCSessionDescription(sdp=f"v=0 offer {id(self)}", type="offer")

    async def createAnswer(self):
        await self._step("createAnswer")
        if self.signalingState != "have-remote-offer":
            raise InvalidStateError(f"Cannot create answer in {self.signalingState}")
        return RTCSessionDescription(sdp=f"v=0 answer {id(self)}", type="answer")

    async def setLocalDescription(self, description):
        await self._step("setLocalDescription")
        if description.type == "offer":
            self._expect("stable")
            self.signalingState = "have-local-offer"
        elif description.type == "answer":
            self._expect("have-remote-offer")
            self.signalingState = "stable"
            self._connect()
        else:
            self._rollback()
        self.localDescription = description

    async def setRemoteDescription(self, description):
        await self._step("setRemoteDescription")
        if description.type == "offer":
            self._expect("stable")
            self.signalingState = "have-remote-offer"
        elif description.type == "answer":
            self._expect("have-local-offer")
            self.signalingState = "stable"
            self._connect()
        else:
            self._rollback()
        self.remoteDescription = description

    async def addIceCandidate(self, candidate):
        self.added_candidates.append(candidate)

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self.signalingState = "closed"
        self.connectionState = "closed"
        for channel in self.channels:
            channel.close()

    def _rollback(self):
        # aiortc parses the empty rollback SDP and rejects it.
        if not self.supports_rollback:
            raise ValueError("SDP does not contain a session description")
        self.signalingState = "stable"

    def _expect(self, state):
        if self.signalingState != state:
            raise InvalidStateError(
                f"Cannot apply description in signaling state {self.signalingState}"
            )

    def _connect(self):
        self.connectionState = "connected"
        self.fire("connectionstatechange")
        if self.channels:
            for channel in self.channels:
                channel.open()
        else:
            channel = FakeChannel("file", ready_state="open")
            self.channels.append(channel)
            self.fire("datachannel", channel)


class FakeSignaling(EventEmitter):
    """Records what a coordinator asks the relay to do."""

    def __init__(self, url="ws://localhost:3000/ws") -> None:
        super().__init__()
        self.url = url
        self.device_id = None
        self.started = False
        self.signals: list[tuple[str, dict]] = []
        self.connect_requests: list[str] = []
        self.disconnects = 0

    async def start(self):
        self.started = True

    async def stop(self):
        self.started = False

    async def register_device(self, device_id):
        self.device_id = device_id

    async def connect_to_device(self, target_id):
        self.connect_requests.append(target_id)

    async def send_signal(self, to, data):
        self.signals.append((to, data))

    async def disconnect_peer(self):
        self.disconnects += 1

    def sent_of_type(self, kind):
        return [data for _, data in self.signals if data.get("type") == kind]


async def wait_for(predicate, timeout=2.0, interval=0.01):
    """Poll predicate until true; fail the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(interval)


@pytest.fixture
def pc_factory():
    created: list[FakePeerConnection] = []

    def factory(ice_servers):
        pc = FakePeerConnection(ice_servers)
        created.append(pc)
        return pc

    factory.created = created
    return factory


@pytest.fixture
def negotiator_factory(pc_factory):
    def factory(is_initiator, ice_servers):
        return ConnectionNegotiator(
            is_initiator=is_initiator,
            ice_servers=ice_servers,
            pc_factory=pc_factory,
            collision_wait=0.05,
            reset_grace_period=0,
            recreate_grace_period=0,
        )

    factory.pc_factory = pc_factory
    return factory
