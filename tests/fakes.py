"""Shared fake collaborators for the negotiation and client tests."""

from __future__ import annotations

import asyncio
from typing import List, Optional, Tuple

from sendrecv.errors import TransportError
from sendrecv.relay.protocol import RelayProtocol
from sendrecv.rtc.datachannel import FlowKind, VideoVariant
from sendrecv.rtc.negotiation import EngineCallbacks
from sendrecv.rtc.webrtc import IceCandidate, SdpType, SessionDescription


def make_sdp(origin: str, label: str, version: int = 1) -> str:
    return (
        "v=0\r\n"
        f"o={origin} {version} 0 IN IP4 127.0.0.1\r\n"
        f"s={label}\r\n"
        "t=0 0\r\n"
        "m=video 9 UDP/TLS/RTP/SAVPF 96\r\n"
        "a=rtpmap:96 H264/90000\r\n"
    )


class FakeEngine:
    """Media engine double that records every call."""

    def __init__(
        self,
        name: str = "engine",
        *,
        offer_on_start: bool = False,
        local_candidates: Tuple[str, ...] = (),
        fail_offer: bool = False,
        fail_remote: bool = False,
        fail_answer: bool = False,
    ) -> None:
        self.name = name
        self.offer_on_start = offer_on_start
        self.local_candidates = list(local_candidates)
        self.fail_offer = fail_offer
        self.fail_remote = fail_remote
        self.fail_answer = fail_answer
        self.callbacks = EngineCallbacks()
        self.calls: List[str] = []
        self.local: List[SessionDescription] = []
        self.remote: List[SessionDescription] = []
        self.applied: List[Tuple[int, IceCandidate]] = []
        self.rollbacks = 0
        self.started = False
        self.closed = False
        self.max_busy = 0
        self._busy = 0
        self._version = 0

    def bind(self, callbacks: EngineCallbacks) -> None:
        self.callbacks = callbacks

    async def start(self) -> None:
        self.started = True
        if self.offer_on_start:
            self.callbacks.negotiation_needed()

    async def _op(self, name: str) -> None:
        self.calls.append(name)
        self._busy += 1
        self.max_busy = max(self.max_busy, self._busy)
        await asyncio.sleep(0)
        self._busy -= 1

    async def create_offer(self) -> SessionDescription:
        await self._op("create_offer")
        if self.fail_offer:
            raise RuntimeError("encoder unavailable")
        self._version += 1
        return SessionDescription(SdpType.OFFER, make_sdp(self.name, "offer", self._version))

    async def create_answer(self) -> SessionDescription:
        await self._op("create_answer")
        if self.fail_answer:
            raise RuntimeError("no common codec")
        self._version += 1
        return SessionDescription(SdpType.ANSWER, make_sdp(self.name, "answer", self._version))

    async def set_local_description(self, description: SessionDescription) -> None:
        await self._op("set_local_description")
        if description.type is SdpType.ROLLBACK:
            self.rollbacks += 1
            return
        self.local.append(description)
        candidates, self.local_candidates = self.local_candidates, []
        for index, candidate in enumerate(candidates):
            self.callbacks.ice_candidate(IceCandidate(index, candidate))

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._op("set_remote_description")
        if self.fail_remote:
            raise RuntimeError("remote description rejected")
        self.remote.append(description)

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        self.applied.append((len(self.remote), candidate))

    async def close(self) -> None:
        self.closed = True


class FakeFlows:
    def __init__(self) -> None:
        self.events: List[Tuple[str, FlowKind, Optional[VideoVariant]]] = []

    def attach_flow(self, kind: FlowKind, variant: Optional[VideoVariant]) -> None:
        self.events.append(("attach", kind, variant))

    def detach_flow(self, kind: FlowKind) -> None:
        self.events.append(("detach", kind, None))


class FakeFlowEngine(FakeEngine, FakeFlows):
    def __init__(self, *args, **kwargs) -> None:
        FakeEngine.__init__(self, *args, **kwargs)
        FakeFlows.__init__(self)


class FakeDataChannel:
    def __init__(self, label: str = "channel", *, locally_created: bool = True) -> None:
        self.label = label
        self.locally_created = locally_created
        self.sent: List[str] = []
        self.handlers = {}

    def send_string(self, text: str) -> None:
        self.sent.append(text)

    def bind(self, *, on_open, on_message, on_close) -> None:
        self.handlers = {"open": on_open, "message": on_message, "close": on_close}


class RecordingTransport:
    """Relay-side transport that keeps everything it was asked to send."""

    def __init__(self) -> None:
        self.sent: List[str] = []
        self.closed: Optional[str] = None

    def send_text(self, text: str) -> None:
        self.sent.append(text)

    def close(self, reason: Optional[str] = None) -> None:
        self.closed = reason or "closed"


class QueueTransport:
    def __init__(self) -> None:
        self.inbox: asyncio.Queue = asyncio.Queue()

    def send_text(self, text: str) -> None:
        self.inbox.put_nowait(text)

    def close(self, reason: Optional[str] = None) -> None:
        self.inbox.put_nowait(None)


class LoopbackConnection:
    """Client-side connection talking straight to an in-process relay protocol."""

    def __init__(self, relay: RelayProtocol) -> None:
        self.relay = relay
        self.transport = QueueTransport()
        self.record = relay.open(self.transport)
        self.outbound: List[str] = []
        self.closed = False

    async def send(self, message: str) -> None:
        if self.closed:
            raise TransportError("connection closed")
        self.outbound.append(message)
        self.relay.handle_text(self.record, message)

    async def recv(self) -> str:
        message = await self.transport.inbox.get()
        if message is None:
            raise TransportError("connection closed")
        return message

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.relay.close(self.record)

    def drop(self) -> None:
        self.transport.close()


async def wait_for(predicate, timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)
