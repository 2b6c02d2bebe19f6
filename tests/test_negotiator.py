"""Tests for the connection negotiator, driven through a fake peer connection."""

import asyncio

import pytest
from aiortc.exceptions import InvalidStateError

from conftest import FakePeerConnection, wait_for
from errors import (
    ChannelClosedError,
    InvalidNegotiationStateError,
    NegotiationCollisionError,
    NegotiationError,
    NegotiationFailedError,
)
from negotiation.negotiator import ConnectionNegotiator, NegotiationState, is_recoverable

CANDIDATE = {
    "candidate": "candidate:1 1 udp 2130706431 192.168.1.2 54321 typ host",
    "sdpMid": "0",
    "sdpMLineIndex": 0,
}
REMOTE_OFFER = {"type": "offer", "sdp": "v=0 remote offer"}


def make_negotiator(pc_factory, is_initiator=True):
    negotiator = ConnectionNegotiator(
        is_initiator=is_initiator,
        pc_factory=pc_factory,
        collision_wait=0.05,
        reset_grace_period=0,
        recreate_grace_period=0,
    )
    negotiator.initialize()
    return negotiator


class TestRecoverableErrors:

    def test_classification(self):
        assert is_recoverable(InvalidStateError("closed"))
        assert is_recoverable(RuntimeError("SDP does not match the previous offer"))
        assert is_recoverable(RuntimeError("InvalidModificationError"))
        assert not is_recoverable(ValueError("bad sdp"))


class TestOffers:

    @pytest.mark.asyncio
    async def test_initiator_creates_channel_and_offer(self, pc_factory):
        negotiator = make_negotiator(pc_factory)
        pc = pc_factory.created[0]
        assert [c.label for c in pc.channels] == ["file"]

        offer = await negotiator.create_offer()

        assert offer["type"] == "offer"
        assert offer["sdp"] == pc.localDescription.sdp
        assert negotiator.state == NegotiationState.HAVE_LOCAL_OFFER
        await negotiator.close()

    @pytest.mark.asyncio
    async def test_concurrent_offer_creation_rejected(self, pc_factory):
        negotiator = make_negotiator(pc_factory)
        pc_factory.created[0].delay = 0.05

        first = asyncio.create_task(negotiator.create_offer())
        await asyncio.sleep(0)

        with pytest.raises(NegotiationCollisionError):
            await negotiator.create_offer()
        assert (await first)["type"] == "offer"
        await negotiator.close()

    @pytest.mark.asyncio
    async def test_offer_guard_held_across_recreation(self):
        created = []

        def no_rollback(ice_servers):
            pc = FakePeerConnection(ice_servers)
            pc.supports_rollback = False
            pc.delay = 0.05 if created else 0
            created.append(pc)
            return pc

        negotiator = make_negotiator(no_rollback)
        await negotiator.create_offer()

        # Not stable: the failed rollback rebuilds before the new offer.
        first = asyncio.create_task(negotiator.create_offer())
        await asyncio.sleep(0.01)

        with pytest.raises(NegotiationCollisionError):
            await negotiator.create_offer()
        offer = await first

        assert len(created) == 2
        assert not created[1].closed
        assert negotiator.pc is created[1]
        assert offer["sdp"] == created[1].localDescription.sdp
        await negotiator.close()

    @pytest.mark.asyncio
    async def test_recoverable_error_retries_once_on_new_connection(self, pc_factory):
        negotiator = make_negotiator(pc_factory)
        first_pc = pc_factory.created[0]
        first_pc.fail_next["createOffer"] = InvalidStateError("wedged")

        offer = await negotiator.create_offer()

        assert offer["type"] == "offer"
        assert len(pc_factory.created) == 2
        assert first_pc.closed
        assert negotiator.pc is pc_factory.created[1]
        await negotiator.close()

    @pytest.mark.asyncio
    async def test_second_failure_is_fatal(self):
        created = []

        def always_failing(ice_servers):
            pc = FakePeerConnection(ice_servers)
            pc.fail_next["createOffer"] = InvalidStateError("wedged")
            created.append(pc)
            return pc

        negotiator = make_negotiator(always_failing)

        with pytest.raises(NegotiationFailedError):
            await negotiator.create_offer()
        assert len(created) == 2
        assert negotiator.state == NegotiationState.FAILED
        await negotiator.close()

    @pytest.mark.asyncio
    async def test_unrecoverable_error_is_not_retried(self, pc_factory):
        negotiator = make_negotiator(pc_factory)
        pc_factory.created[0].fail_next["createOffer"] = ValueError("bad sdp")

        with pytest.raises(NegotiationError) as excinfo:
            await negotiator.create_offer()

        assert not isinstance(excinfo.value, NegotiationFailedError)
        assert len(pc_factory.created) == 1
        await negotiator.close()


class TestAnswers:

    @pytest.mark.asyncio
    async def test_answerer_handles_offer_and_opens_channel(self, pc_factory):
        negotiator = make_negotiator(pc_factory, is_initiator=False)
        opened = []
        negotiator.on("channel_open", opened.append)

        answer = await negotiator.handle_offer(REMOTE_OFFER)

        assert answer["type"] == "answer"
        assert pc_factory.created[0].remoteDescription.sdp == REMOTE_OFFER["sdp"]
        await wait_for(lambda: opened == [False])
        assert negotiator.state == NegotiationState.CONNECTED
        assert negotiator.is_channel_open
        await negotiator.close()

    @pytest.mark.asyncio
    async def test_offer_while_have_local_offer_rolls_back(self, pc_factory):
        negotiator = make_negotiator(pc_factory)
        await negotiator.create_offer()

        answer = await negotiator.handle_offer(REMOTE_OFFER)

        assert answer["type"] == "answer"
        assert len(pc_factory.created) == 1
        await negotiator.close()

    @pytest.mark.asyncio
    async def test_failed_rollback_recreates_connection(self, pc_factory):
        negotiator = make_negotiator(pc_factory)
        await negotiator.create_offer()
        first_pc = pc_factory.created[0]
        first_pc.supports_rollback = False

        answer = await negotiator.handle_offer(REMOTE_OFFER)

        assert answer["type"] == "answer"
        assert len(pc_factory.created) == 2
        assert first_pc.closed
        assert negotiator.pc.remoteDescription.sdp == REMOTE_OFFER["sdp"]
        await negotiator.close()

    @pytest.mark.asyncio
    async def test_offer_during_offer_creation_rejected(self, pc_factory):
        negotiator = make_negotiator(pc_factory)
        pc_factory.created[0].delay = 0.2

        creating = asyncio.create_task(negotiator.create_offer())
        await asyncio.sleep(0)

        with pytest.raises(NegotiationCollisionError, match="creating our own offer"):
            await negotiator.handle_offer(REMOTE_OFFER)
        assert (await creating)["type"] == "offer"
        await negotiator.close()

    @pytest.mark.asyncio
    async def test_duplicate_offer_rejected(self, pc_factory):
        negotiator = make_negotiator(pc_factory, is_initiator=False)
        pc_factory.created[0].delay = 0.05

        handling = asyncio.create_task(negotiator.handle_offer(REMOTE_OFFER))
        await asyncio.sleep(0)

        with pytest.raises(NegotiationCollisionError, match="Duplicate offer"):
            await negotiator.handle_offer(REMOTE_OFFER)
        assert (await handling)["type"] == "answer"
        await negotiator.close()

    @pytest.mark.asyncio
    async def test_answer_outside_have_local_offer(self, pc_factory):
        negotiator = make_negotiator(pc_factory)

        with pytest.raises(InvalidNegotiationStateError):
            await negotiator.handle_answer({"type": "answer", "sdp": "v=0"})
        await negotiator.close()

    @pytest.mark.asyncio
    async def test_full_exchange_between_two_negotiators(self, pc_factory):
        offerer = make_negotiator(pc_factory, is_initiator=True)
        answerer = make_negotiator(pc_factory, is_initiator=False)

        offer = await offerer.create_offer()
        answer = await answerer.handle_offer(offer)
        await offerer.handle_answer(answer)

        assert offerer.state == NegotiationState.CONNECTED
        assert answerer.state == NegotiationState.CONNECTED
        assert offerer.signaling_state == "stable"
        await offerer.close()
        await answerer.close()


class TestCandidates:

    @pytest.mark.asyncio
    async def test_candidates_queued_until_remote_description(self, pc_factory):
        negotiator = make_negotiator(pc_factory, is_initiator=False)
        pc = pc_factory.created[0]

        await negotiator.add_ice_candidate(CANDIDATE)
        await negotiator.add_ice_candidate(dict(CANDIDATE, candidate=CANDIDATE["candidate"].replace("54321", "54322")))

        assert negotiator.pending_candidates == 2
        assert pc.added_candidates == []

        await negotiator.handle_offer(REMOTE_OFFER)

        assert negotiator.pending_candidates == 0
        assert [c.port for c in pc.added_candidates] == [54321, 54322]

        await negotiator.add_ice_candidate(CANDIDATE)
        assert len(pc.added_candidates) == 3
        await negotiator.close()

    @pytest.mark.asyncio
    async def test_end_of_candidates_ignored(self, pc_factory):
        negotiator = make_negotiator(pc_factory)
        await negotiator.add_ice_candidate({"candidate": ""})
        await negotiator.add_ice_candidate(None)
        assert negotiator.pending_candidates == 0
        await negotiator.close()

    @pytest.mark.asyncio
    async def test_force_reset_keeps_queued_candidates(self, pc_factory):
        negotiator = make_negotiator(pc_factory, is_initiator=False)
        await negotiator.add_ice_candidate(CANDIDATE)

        await negotiator.force_reset()

        assert negotiator.pending_candidates == 1
        assert negotiator.pc is pc_factory.created[1]
        assert negotiator.is_initiator is False
        await negotiator.close()


class TestDataAndTeardown:

    @pytest.mark.asyncio
    async def test_messages_delivered_in_order(self, pc_factory):
        negotiator = make_negotiator(pc_factory)
        received = []

        async def slow_consumer(message):
            await asyncio.sleep(0.01 if message == "first" else 0)
            received.append(message)

        negotiator.on("message", slow_consumer)
        channel = pc_factory.created[0].channels[0]
        for message in ("first", b"\x00\x01", "third"):
            channel.fire("message", message)

        await wait_for(lambda: len(received) == 3)
        assert received == ["first", b"\x00\x01", "third"]
        await negotiator.close()

    @pytest.mark.asyncio
    async def test_send_data_requires_open_channel(self, pc_factory):
        negotiator = make_negotiator(pc_factory)
        pc_factory.created[0].channels[0].open()

        await negotiator.send_data("hello")

        assert pc_factory.created[0].channels[0].sent == ["hello"]
        await negotiator.close()

    @pytest.mark.asyncio
    async def test_close_rejects_queued_sends_and_is_idempotent(self, pc_factory):
        negotiator = make_negotiator(pc_factory)
        pc = pc_factory.created[0]
        channel = pc.channels[0]
        channel.open()
        channel.bufferedAmount = 10 ** 9
        pending = asyncio.create_task(negotiator.send_data(b"chunk"))
        await asyncio.sleep(0.02)

        await negotiator.close()
        await negotiator.close()

        with pytest.raises(ChannelClosedError):
            await pending
        assert pc.closed
        assert negotiator.pc is None
        assert negotiator.state == NegotiationState.CLOSED

    @pytest.mark.asyncio
    async def test_switch_role_rebuilds_connection(self, pc_factory):
        negotiator = make_negotiator(pc_factory, is_initiator=False)

        await negotiator.switch_role(True)

        assert negotiator.is_initiator
        assert len(pc_factory.created) == 2
        assert pc_factory.created[0].closed
        assert len(pc_factory.created[1].channels) == 1
        await negotiator.close()
