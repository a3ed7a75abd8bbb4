"""
ICE candidate exchange.

Local candidates go out as soon as the engine reports them.  Remote ones are
held until a remote description has been applied and then handed to the
engine in arrival order.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Awaitable, Callable, Deque, List, Protocol

from .webrtc import IceCandidate

LOG = logging.getLogger(__name__)

CandidateSender = Callable[[IceCandidate], Awaitable[None]]


class CandidateSink(Protocol):
    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        ...


class CandidateRelay:
    def __init__(self, engine: CandidateSink, send: CandidateSender) -> None:
        self._engine = engine
        self._send = send
        self._pending: Deque[IceCandidate] = deque()
        self._remote_applied = False
        self._discarded = False

    @property
    def pending(self) -> List[IceCandidate]:
        return list(self._pending)

    @property
    def remote_applied(self) -> bool:
        return self._remote_applied

    async def send_local(self, candidate: IceCandidate) -> bool:
        if self._discarded:
            LOG.debug("Not sending candidate after teardown")
            return False
        if candidate.is_end_of_candidates:
            LOG.debug("Local candidate gathering complete")
            return False
        await self._send(candidate)
        return True

    async def add_remote(self, candidate: IceCandidate) -> bool:
        """Apply ``candidate`` now if possible; returns ``False`` when queued or dropped."""

        if self._discarded:
            LOG.debug("Dropping remote candidate after teardown")
            return False
        if not self._remote_applied:
            self._pending.append(candidate)
            LOG.debug("Queued remote candidate (%d pending)", len(self._pending))
            return False
        await self._apply(candidate)
        return True

    async def remote_description_applied(self) -> None:
        if self._discarded:
            return
        while self._pending:
            await self._apply(self._pending.popleft())
        self._remote_applied = True

    def discard(self) -> None:
        if self._pending:
            LOG.debug("Discarding %d queued remote candidates", len(self._pending))
        self._pending.clear()
        self._discarded = True

    async def _apply(self, candidate: IceCandidate) -> None:
        try:
            await self._engine.add_ice_candidate(candidate)
        except Exception as exc:
            LOG.warning(
                "Failed to apply remote candidate for m-line %d: %s",
                candidate.sdp_mline_index,
                exc,
            )


__all__ = ["CandidateRelay", "CandidateSink"]
