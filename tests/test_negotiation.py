import asyncio

import pytest

from sendrecv.errors import NegotiationError, ProtocolError
from sendrecv.rtc.candidates import CandidateRelay
from sendrecv.rtc.negotiation import NegotiationRole, Negotiator, SignalingState
from sendrecv.rtc.webrtc import IceCandidate, SdpType, SessionDescription

from fakes import FakeEngine, make_sdp

STABLE = SignalingState.STABLE
LOCAL_OFFER = SignalingState.HAVE_LOCAL_OFFER
REMOTE_OFFER = SignalingState.HAVE_REMOTE_OFFER


class Endpoint:
    """A negotiator whose outgoing descriptions are collected for manual delivery."""

    def __init__(self, name: str, role: NegotiationRole, **engine_options) -> None:
        self.engine = FakeEngine(name, **engine_options)
        self.outbox = []
        self.candidates = CandidateRelay(self.engine, send=self._send_candidate)
        self.negotiator = Negotiator(
            self.engine, self._send, role=role, candidates=self.candidates, name=name
        )

    async def _send(self, description: SessionDescription) -> None:
        self.outbox.append(description)

    async def _send_candidate(self, candidate: IceCandidate) -> None:
        return None


def _pair():
    return Endpoint("impolite", NegotiationRole.IMPOLITE), Endpoint("polite", NegotiationRole.POLITE)


def test_offer_answer_reaches_stable_on_both_sides() -> None:
    async def scenario():
        a, b = _pair()
        assert await a.negotiator.negotiation_needed() is True
        assert a.negotiator.state is LOCAL_OFFER

        answer = await b.negotiator.handle_remote_description(a.outbox.pop())
        assert answer is not None and b.outbox == [answer]

        await a.negotiator.handle_remote_description(b.outbox.pop())
        return a, b

    a, b = asyncio.run(scenario())
    assert a.negotiator.state is STABLE and b.negotiator.state is STABLE
    assert a.negotiator.history == [STABLE, LOCAL_OFFER, STABLE]
    assert b.negotiator.history == [STABLE, REMOTE_OFFER, STABLE]
    assert a.negotiator.local_description == b.negotiator.remote_description
    assert a.negotiator.remote_description == b.negotiator.local_description


@pytest.mark.parametrize("polite_first", [True, False])
def test_glare_polite_side_rolls_back(polite_first: bool) -> None:
    async def scenario():
        a, b = _pair()
        await a.negotiator.negotiation_needed()
        await b.negotiator.negotiation_needed()
        offer_a, offer_b = a.outbox.pop(), b.outbox.pop()

        if polite_first:
            await b.negotiator.handle_remote_description(offer_a)
            ignored = await a.negotiator.handle_remote_description(offer_b)
        else:
            ignored = await a.negotiator.handle_remote_description(offer_b)
            await b.negotiator.handle_remote_description(offer_a)
        assert ignored is None
        assert a.negotiator.state is LOCAL_OFFER

        await a.negotiator.handle_remote_description(b.outbox.pop())
        return a, b, offer_a

    a, b, offer_a = asyncio.run(scenario())
    assert a.negotiator.state is STABLE and b.negotiator.state is STABLE
    assert b.engine.rollbacks == 1 and a.engine.rollbacks == 0
    assert b.negotiator.history == [STABLE, LOCAL_OFFER, STABLE, REMOTE_OFFER, STABLE]
    assert a.negotiator.local_description == offer_a == b.negotiator.remote_description
    assert a.negotiator.remote_description == b.negotiator.local_description
    assert b.negotiator.local_description.type is SdpType.ANSWER


def test_stale_answer_is_discarded() -> None:
    async def scenario():
        a, _ = _pair()
        stale = SessionDescription(SdpType.ANSWER, make_sdp("x", "answer"))
        result = await a.negotiator.handle_remote_description(stale)
        return a, result

    a, result = asyncio.run(scenario())
    assert result is None
    assert a.negotiator.state is STABLE
    assert a.engine.remote == []


def test_remote_pranswer_is_a_protocol_error() -> None:
    async def scenario():
        a, _ = _pair()
        with pytest.raises(ProtocolError):
            await a.negotiator.handle_remote_description(
                SessionDescription(SdpType.PRANSWER, make_sdp("x", "pranswer"))
            )

    asyncio.run(scenario())


def test_create_offer_failure_leaves_state_stable() -> None:
    async def scenario():
        endpoint = Endpoint("broken", NegotiationRole.IMPOLITE, fail_offer=True)
        with pytest.raises(NegotiationError):
            await endpoint.negotiator.negotiation_needed()
        return endpoint

    endpoint = asyncio.run(scenario())
    assert endpoint.negotiator.state is STABLE
    assert endpoint.negotiator.making_offer is False
    assert endpoint.outbox == []


def test_rejected_remote_offer_raises_negotiation_error() -> None:
    async def scenario():
        a, _ = _pair()
        b = Endpoint("strict", NegotiationRole.POLITE, fail_remote=True)
        await a.negotiator.negotiation_needed()
        with pytest.raises(NegotiationError):
            await b.negotiator.handle_remote_description(a.outbox.pop())
        return b

    b = asyncio.run(scenario())
    assert b.negotiator.state is STABLE
    assert b.outbox == []


def test_failed_answer_rolls_back_the_remote_offer() -> None:
    async def scenario():
        _, b = _pair()
        a = Endpoint("mute", NegotiationRole.IMPOLITE, fail_answer=True)
        await b.negotiator.negotiation_needed()
        with pytest.raises(NegotiationError):
            await a.negotiator.handle_remote_description(b.outbox.pop())

        assert a.negotiator.state is STABLE
        assert a.negotiator.remote_description is None
        assert a.engine.rollbacks == 1
        assert a.outbox == []

        assert await a.negotiator.negotiation_needed() is True
        return a

    a = asyncio.run(scenario())
    assert a.negotiator.state is LOCAL_OFFER
    assert [d.type for d in a.outbox] == [SdpType.OFFER]
    assert a.negotiator.history == [STABLE, REMOTE_OFFER, STABLE, LOCAL_OFFER]


def test_deferred_negotiation_runs_after_a_failed_answer() -> None:
    async def scenario():
        a, _ = _pair()
        b = Endpoint("mute", NegotiationRole.POLITE, fail_answer=True)
        await b.negotiator.negotiation_needed()
        assert await b.negotiator.negotiation_needed() is False
        first_offer = b.outbox.pop()

        await a.negotiator.negotiation_needed()
        with pytest.raises(NegotiationError):
            await b.negotiator.handle_remote_description(a.outbox.pop())
        return b, first_offer

    b, first_offer = asyncio.run(scenario())
    assert b.engine.rollbacks == 2
    assert b.negotiator.state is LOCAL_OFFER
    assert len(b.outbox) == 1
    assert b.outbox[0].type is SdpType.OFFER
    assert b.outbox[0] != first_offer


def test_malformed_description_does_not_touch_the_engine() -> None:
    async def scenario():
        _, b = _pair()
        with pytest.raises(NegotiationError):
            await b.negotiator.handle_remote_description(SessionDescription(SdpType.OFFER, "bogus"))
        return b

    b = asyncio.run(scenario())
    assert b.negotiator.state is STABLE
    assert b.engine.calls == []


def test_negotiation_during_exchange_is_deferred_until_stable() -> None:
    async def scenario():
        a, b = _pair()
        await a.negotiator.negotiation_needed()
        assert await a.negotiator.negotiation_needed() is False
        assert len(a.outbox) == 1

        await b.negotiator.handle_remote_description(a.outbox.pop())
        await a.negotiator.handle_remote_description(b.outbox.pop())
        return a

    a = asyncio.run(scenario())
    assert len(a.outbox) == 1
    assert a.outbox[0].type is SdpType.OFFER
    assert a.negotiator.state is LOCAL_OFFER
    assert a.negotiator.history == [STABLE, LOCAL_OFFER, STABLE, LOCAL_OFFER]


def test_operations_are_serialised() -> None:
    async def scenario():
        a, b = _pair()
        await a.negotiator.negotiation_needed()
        offer = a.outbox.pop()
        await asyncio.gather(
            b.negotiator.negotiation_needed(),
            b.negotiator.handle_remote_description(offer),
            b.negotiator.negotiation_needed(),
        )
        return b

    b = asyncio.run(scenario())
    assert b.engine.max_busy == 1


def test_remote_candidates_applied_after_remote_description() -> None:
    async def scenario():
        a, b = _pair()
        await a.negotiator.negotiation_needed()
        await b.candidates.add_remote(IceCandidate(0, "early"))
        assert b.engine.applied == []
        await b.negotiator.handle_remote_description(a.outbox.pop())
        return b

    b = asyncio.run(scenario())
    assert b.engine.applied == [(1, IceCandidate(0, "early"))]


def test_closed_negotiator_ignores_everything() -> None:
    async def scenario():
        a, b = _pair()
        await a.negotiator.negotiation_needed()
        offer = a.outbox.pop()
        await b.candidates.add_remote(IceCandidate(0, "queued"))
        b.negotiator.close()
        result = await b.negotiator.handle_remote_description(offer)
        sent = await b.negotiator.negotiation_needed()
        return b, result, sent

    b, result, sent = asyncio.run(scenario())
    assert result is None and sent is False
    assert b.negotiator.state is SignalingState.CLOSED
    assert b.engine.calls == []
    assert b.candidates.pending == []
