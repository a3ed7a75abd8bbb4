"""
Perfect negotiation on top of a media engine.

Each endpoint owns one :class:`Negotiator`.  It serialises offer/answer
operations, tracks the signalling state and resolves offer collisions by role:
the polite side rolls back its own offer and answers, the impolite side keeps
its offer and ignores the colliding one.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Protocol, TypeVar

from ..errors import NegotiationError, ProtocolError
from .candidates import CandidateRelay
from .webrtc import IceCandidate, SdpType, SessionDescription, media_sections

LOG = logging.getLogger(__name__)

T = TypeVar("T")

DescriptionSender = Callable[[SessionDescription], Awaitable[None]]


class SignalingState(str, Enum):
    STABLE = "stable"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    HAVE_LOCAL_PRANSWER = "have-local-pranswer"
    HAVE_REMOTE_PRANSWER = "have-remote-pranswer"
    CLOSED = "closed"


class NegotiationRole(str, Enum):
    POLITE = "polite"
    IMPOLITE = "impolite"


def _ignore(*_: Any) -> None:
    return None


@dataclass
class EngineCallbacks:
    """Events a media engine reports back on the event loop thread."""

    negotiation_needed: Callable[[], None] = _ignore
    ice_candidate: Callable[[IceCandidate], None] = _ignore
    data_channel: Callable[[Any], None] = _ignore


class MediaEngine(Protocol):
    def bind(self, callbacks: EngineCallbacks) -> None:
        ...

    async def start(self) -> None:
        ...

    async def create_offer(self) -> SessionDescription:
        ...

    async def create_answer(self) -> SessionDescription:
        ...

    async def set_local_description(self, description: SessionDescription) -> None:
        ...

    async def set_remote_description(self, description: SessionDescription) -> None:
        ...

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        ...

    async def close(self) -> None:
        ...


class Negotiator:
    """Drive offer/answer exchanges for one peer connection."""

    def __init__(
        self,
        engine: MediaEngine,
        send: DescriptionSender,
        *,
        role: NegotiationRole = NegotiationRole.POLITE,
        candidates: Optional[CandidateRelay] = None,
        name: str = "negotiator",
    ) -> None:
        self.engine = engine
        self.role = NegotiationRole(role)
        self.candidates = candidates
        self._send = send
        self._lock = asyncio.Lock()
        self._state = SignalingState.STABLE
        self._making_offer = False
        self._renegotiate_pending = False
        self._stable_local: Optional[SessionDescription] = None
        self.local_description: Optional[SessionDescription] = None
        self.remote_description: Optional[SessionDescription] = None
        self.history: List[SignalingState] = [SignalingState.STABLE]
        self.logger = LOG.getChild(name)

    @property
    def state(self) -> SignalingState:
        return self._state

    @property
    def making_offer(self) -> bool:
        return self._making_offer

    @property
    def is_closed(self) -> bool:
        return self._state is SignalingState.CLOSED

    @property
    def polite(self) -> bool:
        return self.role is NegotiationRole.POLITE

    def _transition(self, state: SignalingState) -> None:
        if state is self._state:
            return
        self.logger.debug("Signalling state %s -> %s", self._state.value, state.value)
        self._state = state
        self.history.append(state)
        if state is SignalingState.STABLE:
            self._stable_local = self.local_description

    async def _engine_call(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except NegotiationError:
            raise
        except Exception as exc:
            raise NegotiationError(f"{operation} failed: {exc}") from exc

    async def _expect(self, operation: str, call: Awaitable[SessionDescription], kind: SdpType) -> SessionDescription:
        description = await self._engine_call(operation, call)
        if description.type is not kind:
            raise NegotiationError(f"{operation} produced a '{description.type.value}' description")
        return description

    async def _remote_applied(self) -> None:
        if self.candidates is not None:
            await self.candidates.remote_description_applied()

    # ------------------------------------------------------------------ offers

    async def negotiation_needed(self) -> bool:
        """
        Create, apply and send a local offer.

        Returns ``False`` when nothing was sent: the negotiator is closed, or
        an exchange is already in flight, in which case the request is retried
        once the state returns to stable.
        """

        if self.is_closed:
            self.logger.debug("Ignoring negotiation request on a closed negotiator")
            return False

        async with self._lock:
            if self.is_closed:
                return False
            if self._state is not SignalingState.STABLE:
                self.logger.debug("Deferring negotiation while in %s", self._state.value)
                self._renegotiate_pending = True
                return False

            self._making_offer = True
            try:
                offer = await self._expect("create-offer", self.engine.create_offer(), SdpType.OFFER)
                if self._state is not SignalingState.STABLE:
                    self.logger.info("State changed to %s while creating an offer; dropping it", self._state.value)
                    return False
                await self._engine_call("set-local-description", self.engine.set_local_description(offer))
                self.local_description = offer
                self._transition(SignalingState.HAVE_LOCAL_OFFER)
                self.logger.info("Sending offer")
                await self._send(offer)
            finally:
                self._making_offer = False
        return True

    # ------------------------------------------------------------------ remote

    async def handle_remote_description(
        self, description: SessionDescription
    ) -> Optional[SessionDescription]:
        """
        Apply a description received from the peer.

        Returns the answer sent back when ``description`` was an accepted
        offer, ``None`` otherwise.
        """

        if description.type not in (SdpType.OFFER, SdpType.ANSWER):
            raise ProtocolError(f"unexpected remote '{description.type.value}' description")
        if self.is_closed:
            self.logger.info("Ignoring remote %s after close", description.type.value)
            return None
        media_sections(description.sdp)

        answer: Optional[SessionDescription] = None
        try:
            async with self._lock:
                if self.is_closed:
                    return None
                if description.type is SdpType.OFFER:
                    answer = await self._accept_offer(description)
                else:
                    await self._accept_answer(description)
        finally:
            await self._run_deferred()
        return answer

    async def _accept_offer(self, offer: SessionDescription) -> Optional[SessionDescription]:
        collision = self._state is not SignalingState.STABLE or self._making_offer
        if collision and not self.polite:
            self.logger.info("Ignoring colliding offer; keeping our own (%s)", self._state.value)
            return None
        if collision:
            self.logger.info("Offer collision in %s; rolling back our offer", self._state.value)
            await self._engine_call(
                "rollback", self.engine.set_local_description(SessionDescription.rollback())
            )
            self.local_description = self._stable_local
            self._transition(SignalingState.STABLE)

        previous_remote = self.remote_description
        await self._engine_call("set-remote-description", self.engine.set_remote_description(offer))
        self.remote_description = offer
        self._transition(SignalingState.HAVE_REMOTE_OFFER)

        try:
            await self._remote_applied()
            answer = await self._expect("create-answer", self.engine.create_answer(), SdpType.ANSWER)
            await self._engine_call("set-local-description", self.engine.set_local_description(answer))
        except NegotiationError:
            await self._abandon_remote_offer(previous_remote)
            raise
        self.local_description = answer
        self._transition(SignalingState.STABLE)
        self.logger.info("Sending answer")
        await self._send(answer)
        return answer

    async def _abandon_remote_offer(self, previous_remote: Optional[SessionDescription]) -> None:
        self.logger.warning("Answering the remote offer failed; rolling it back")
        try:
            await self._engine_call(
                "rollback", self.engine.set_local_description(SessionDescription.rollback())
            )
        except NegotiationError as exc:
            self.logger.error("Rollback of the remote offer failed: %s", exc)
        self.remote_description = previous_remote
        self._transition(SignalingState.STABLE)

    async def _accept_answer(self, answer: SessionDescription) -> None:
        if self._state is not SignalingState.HAVE_LOCAL_OFFER:
            self.logger.info("Discarding answer received in %s", self._state.value)
            return
        await self._engine_call("set-remote-description", self.engine.set_remote_description(answer))
        self.remote_description = answer
        self._transition(SignalingState.STABLE)
        await self._remote_applied()

    async def _run_deferred(self) -> None:
        if self._renegotiate_pending and self._state is SignalingState.STABLE:
            self._renegotiate_pending = False
            await self.negotiation_needed()

    # ------------------------------------------------------------------ teardown

    def close(self) -> None:
        if self.is_closed:
            return
        self._transition(SignalingState.CLOSED)
        self._making_offer = False
        self._renegotiate_pending = False
        if self.candidates is not None:
            self.candidates.discard()


__all__ = [
    "EngineCallbacks",
    "MediaEngine",
    "NegotiationRole",
    "Negotiator",
    "SignalingState",
]
