"""
Session description and candidate value types exchanged during negotiation.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from ..errors import NegotiationError

SDP_REQUIRED_FIELDS = ("v", "o", "s", "t")


class SdpType(str, Enum):
    OFFER = "offer"
    PRANSWER = "pranswer"
    ANSWER = "answer"
    ROLLBACK = "rollback"


@dataclass(frozen=True)
class SessionDescription:
    """An offer/answer blob as produced by the media engine."""

    type: SdpType
    sdp: str = ""

    @classmethod
    def rollback(cls) -> "SessionDescription":
        return cls(type=SdpType.ROLLBACK)

    def to_dict(self) -> dict:
        return {"type": self.type.value, "sdp": self.sdp}


@dataclass(frozen=True)
class IceCandidate:
    """Serialisable ICE candidate container."""

    sdp_mline_index: int
    candidate: str
    sdp_mid: Optional[str] = None

    @property
    def is_end_of_candidates(self) -> bool:
        return not self.candidate

    def to_dict(self) -> dict:
        return {"candidate": self.candidate, "sdpMLineIndex": int(self.sdp_mline_index)}


def media_sections(sdp: str) -> List[str]:
    """
    Check the textual session description and return its ``m=`` lines.

    Only the session-level structure is verified; attribute semantics belong
    to the media engine.
    """

    lines = [line.rstrip("\r") for line in sdp.split("\n") if line.strip()]
    if not lines or lines[0] != "v=0":
        raise NegotiationError("session description must start with 'v=0'")

    seen = set()
    media: List[str] = []
    for number, line in enumerate(lines, start=1):
        if len(line) < 2 or line[1] != "=" or not line[0].isalpha():
            raise NegotiationError(f"malformed session description line {number}: {line!r}")
        if line[0] == "m":
            media.append(line[2:])
        elif not media:
            seen.add(line[0])

    missing = [key for key in SDP_REQUIRED_FIELDS if key not in seen]
    if missing:
        raise NegotiationError(f"session description lacks {', '.join(missing)} line(s)")
    return media


__all__ = ["IceCandidate", "SdpType", "SessionDescription", "media_sections"]
