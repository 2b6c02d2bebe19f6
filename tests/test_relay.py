"""Tests for the device registry and the signaling relay."""

import pytest

from conftest import FakeHandle
from signaling.models import RelayError, ServerEvent
from signaling.registry import DeviceRegistry
from signaling.relay import SignalingRelay


@pytest.fixture
def registry():
    return DeviceRegistry()


@pytest.fixture
def relay(registry):
    return SignalingRelay(registry, sweep_interval=3600)


async def register(relay, device_id):
    handle = FakeHandle()
    await relay.register(handle, device_id)
    return handle


class TestDeviceRegistry:
    """Pure registry bookkeeping."""

    def test_register_returns_replaced_handle(self, registry):
        first, second = FakeHandle(), FakeHandle()
        assert registry.register("AAA111", first) is None
        assert registry.register("AAA111", second) is first
        assert registry.get("AAA111") is second

    def test_unregister_ignores_newer_registration(self, registry):
        old, new = FakeHandle(), FakeHandle()
        registry.register("AAA111", old)
        registry.register("AAA111", new)

        assert registry.unregister("AAA111", old) is False
        assert "AAA111" in registry
        assert registry.unregister("AAA111", new) is True
        assert registry.unregister("AAA111") is False

    def test_pairing_is_symmetric(self, registry):
        registry.pair("AAA111", "BBB222")
        assert registry.peer_of("AAA111") == "BBB222"
        assert registry.peer_of("BBB222") == "AAA111"

        assert registry.unpair("BBB222") == "AAA111"
        assert registry.peer_of("AAA111") is None
        assert registry.unpair("AAA111") is None

    def test_pair_dissolves_previous_pairings(self, registry):
        registry.pair("AAA111", "BBB222")
        dissolved = registry.pair("CCC333", "AAA111")

        assert dissolved == [("AAA111", "BBB222")]
        assert registry.peer_of("BBB222") is None
        assert registry.peer_of("AAA111") == "CCC333"

    def test_pair_with_self_rejected(self, registry):
        with pytest.raises(ValueError):
            registry.pair("AAA111", "AAA111")

    def test_list_devices_reports_pairing(self, registry):
        for device_id in ("AAA111", "BBB222", "CCC333"):
            registry.register(device_id, FakeHandle())
        registry.pair("AAA111", "BBB222")

        listing = {d.id: d.connected for d in registry.list_devices()}
        assert listing == {"AAA111": True, "BBB222": True, "CCC333": False}


class TestRegistration:
    """register / getDevices."""

    @pytest.mark.asyncio
    async def test_register_binds_handle_and_broadcasts(self, relay):
        a = await register(relay, "AAA111")
        b = await register(relay, "BBB222")

        assert a.device_id == "AAA111"
        assert relay.registry.get("BBB222") is b
        assert a.events(ServerEvent.DEVICE_LIST)[-1] == [
            {"id": "AAA111", "connected": False},
            {"id": "BBB222", "connected": False},
        ]

    @pytest.mark.asyncio
    async def test_invalid_device_id(self, relay):
        handle = FakeHandle()
        await relay.register(handle, "a!")

        assert handle.events(ServerEvent.ERROR) == [RelayError.INVALID_DEVICE_ID]
        assert len(relay.registry) == 0

    @pytest.mark.asyncio
    async def test_reregistration_from_new_connection_wins(self, relay):
        old = await register(relay, "AAA111")
        new = await register(relay, "AAA111")

        assert relay.registry.get("AAA111") is new
        assert old.device_id is None

        # The superseded connection dropping must not evict the new one.
        await relay.handle_disconnect(old)
        assert relay.registry.get("AAA111") is new

    @pytest.mark.asyncio
    async def test_same_connection_changes_id(self, relay):
        handle = await register(relay, "AAA111")
        await relay.register(handle, "ZZZ999")

        assert "AAA111" not in relay.registry
        assert relay.registry.get("ZZZ999") is handle

    @pytest.mark.asyncio
    async def test_get_devices_replies_to_caller_only(self, relay):
        a = await register(relay, "AAA111")
        b = await register(relay, "BBB222")
        a.messages.clear()
        b.messages.clear()

        await relay.get_devices(a)

        assert len(a.events(ServerEvent.DEVICE_LIST)) == 1
        assert b.messages == []


class TestPairing:
    """connectToDevice."""

    @pytest.mark.asyncio
    async def test_both_sides_learn_each_other(self, relay):
        a = await register(relay, "AAA111")
        b = await register(relay, "BBB222")

        await relay.request_pairing(a, "BBB222")

        assert a.events(ServerEvent.PEER_CONNECTED) == ["BBB222"]
        assert b.events(ServerEvent.PEER_CONNECTED) == ["AAA111"]
        assert relay.registry.peer_of("AAA111") == "BBB222"

    @pytest.mark.asyncio
    async def test_unknown_target(self, relay):
        a = await register(relay, "AAA111")
        before = [d.model_dump() for d in relay.list_devices()]

        await relay.request_pairing(a, "ZZZ999")

        assert a.events(ServerEvent.ERROR) == [RelayError.DEVICE_NOT_FOUND]
        assert [d.model_dump() for d in relay.list_devices()] == before
        assert relay.registry.peer_of("AAA111") is None

    @pytest.mark.asyncio
    async def test_cannot_connect_to_self(self, relay):
        a = await register(relay, "AAA111")
        await relay.request_pairing(a, "AAA111")
        assert a.events(ServerEvent.ERROR) == [RelayError.CANNOT_CONNECT_TO_SELF]

    @pytest.mark.asyncio
    async def test_unregistered_caller(self, relay):
        await register(relay, "BBB222")
        stranger = FakeHandle()

        await relay.request_pairing(stranger, "BBB222")

        assert stranger.events(ServerEvent.ERROR) == [RelayError.NOT_REGISTERED]

    @pytest.mark.asyncio
    async def test_new_pairing_notifies_abandoned_peer(self, relay):
        a = await register(relay, "AAA111")
        b = await register(relay, "BBB222")
        c = await register(relay, "CCC333")
        await relay.request_pairing(a, "BBB222")

        await relay.request_pairing(c, "AAA111")

        assert b.events(ServerEvent.PEER_DISCONNECTED) == [None]
        assert relay.registry.peer_of("BBB222") is None
        assert relay.registry.peer_of("CCC333") == "AAA111"


class TestSignalForwarding:

    @pytest.mark.asyncio
    async def test_signal_is_forwarded_untouched(self, relay):
        a = await register(relay, "AAA111")
        b = await register(relay, "BBB222")
        payload = {"type": "offer", "sdp": "v=0"}

        await relay.relay_signal(a, "BBB222", payload)

        assert b.events(ServerEvent.SIGNAL) == [{"from": "AAA111", "data": payload}]

    @pytest.mark.asyncio
    async def test_signal_to_unknown_device_is_dropped(self, relay):
        a = await register(relay, "AAA111")
        a.messages.clear()

        await relay.relay_signal(a, "ZZZ999", {"candidate": "x"})

        assert a.messages == []


class TestTeardown:

    @pytest.mark.asyncio
    async def test_disconnect_pairing_notifies_both(self, relay):
        a = await register(relay, "AAA111")
        b = await register(relay, "BBB222")
        await relay.request_pairing(a, "BBB222")

        await relay.disconnect_pairing("AAA111")

        assert a.events(ServerEvent.PEER_DISCONNECTED) == [None]
        assert b.events(ServerEvent.PEER_DISCONNECTED) == [None]
        assert not relay.registry.is_paired("AAA111")
        assert not relay.registry.is_paired("BBB222")

    @pytest.mark.asyncio
    async def test_disconnect_then_sweep_is_idempotent(self, relay):
        a = await register(relay, "AAA111")
        b = await register(relay, "BBB222")
        await relay.request_pairing(a, "BBB222")
        a.connected = False

        await relay.handle_disconnect(a)
        evicted = await relay.sweep()

        assert evicted == 0
        assert "AAA111" not in relay.registry
        assert b.events(ServerEvent.PEER_DISCONNECTED) == [None]

    @pytest.mark.asyncio
    async def test_sweep_evicts_stale_handles(self, relay):
        a = await register(relay, "AAA111")
        b = await register(relay, "BBB222")
        await relay.request_pairing(a, "BBB222")
        b.connected = False

        assert await relay.sweep() == 1
        assert "BBB222" not in relay.registry
        assert a.events(ServerEvent.PEER_DISCONNECTED) == [None]
        assert relay.registry.list_devices()[0].connected is False

    @pytest.mark.asyncio
    async def test_stop_clears_registry(self, relay):
        await relay.start()
        await register(relay, "AAA111")
        await relay.stop()
        assert len(relay.registry) == 0


class TestDispatch:

    @pytest.mark.asyncio
    async def test_unknown_event(self, relay):
        handle = FakeHandle()
        await relay.dispatch(handle, "explode", None)
        assert handle.events(ServerEvent.ERROR) == [RelayError.UNKNOWN_EVENT]

    @pytest.mark.asyncio
    async def test_malformed_signal(self, relay):
        handle = await register(relay, "AAA111")
        await relay.dispatch(handle, "signal", {"data": "no target"})
        assert handle.events(ServerEvent.ERROR) == [RelayError.INVALID_MESSAGE]

    @pytest.mark.asyncio
    async def test_routes_events(self, relay):
        a = FakeHandle()
        b = FakeHandle()
        await relay.dispatch(a, "register", "AAA111")
        await relay.dispatch(b, "register", "BBB222")
        await relay.dispatch(a, "connectToDevice", "BBB222")
        await relay.dispatch(a, "signal", {"to": "BBB222", "data": {"candidate": "c"}})
        await relay.dispatch(b, "disconnectPeer", None)

        assert b.events(ServerEvent.SIGNAL) == [{"from": "AAA111", "data": {"candidate": "c"}}]
        assert a.events(ServerEvent.PEER_DISCONNECTED) == [None]

    @pytest.mark.asyncio
    async def test_dead_handle_never_raises(self, relay):
        handle = await register(relay, "AAA111")
        handle.connected = False
        await relay.dispatch(handle, "getDevices", None)
