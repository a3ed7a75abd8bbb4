"""
Wire format spoken between the peers and the relay.

Control messages are single text lines (``HELLO 42``, ``SESSION_OK``...);
negotiation payloads are JSON objects carrying either an ``sdp`` or an
``ice`` member.  The relay only needs the control half; peers need both.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional, Union

from pydantic import ValidationError

from .errors import ProtocolError
from .rtc.webrtc import IceCandidate, SdpType, SessionDescription
from .schemas import IceEnvelope, SdpEnvelope

HELLO = "HELLO"
SESSION = "SESSION"
SESSION_OK = "SESSION_OK"
SESSION_REQUEST = "SESSION_REQUEST"
SESSION_CLOSED = "SESSION_CLOSED"
OFFER_REQUEST = "OFFER_REQUEST"
ERROR = "ERROR"

CONTROL_VERBS = frozenset(
    {HELLO, SESSION, SESSION_OK, SESSION_REQUEST, SESSION_CLOSED, OFFER_REQUEST, ERROR}
)

Signal = Union[SessionDescription, IceCandidate]


@dataclass(frozen=True)
class ControlMessage:
    verb: str
    argument: Optional[str] = None

    def encode(self) -> str:
        if self.argument is None:
            return self.verb
        return f"{self.verb} {self.argument}"


def parse_control(text: str) -> Optional[ControlMessage]:
    """
    Return the control message carried by ``text`` or ``None`` for payloads.
    """

    stripped = text.strip()
    if not stripped or stripped.startswith("{"):
        return None
    verb, _, rest = stripped.partition(" ")
    if verb not in CONTROL_VERBS:
        return None
    argument = rest.strip() or None
    return ControlMessage(verb, argument)


def hello(identity: Optional[str] = None) -> str:
    return ControlMessage(HELLO, identity).encode()


def session(peer_id: str) -> str:
    return ControlMessage(SESSION, peer_id).encode()


def offer_request() -> str:
    return ControlMessage(OFFER_REQUEST).encode()


def error(text: str) -> str:
    return ControlMessage(ERROR, text or "unknown error").encode()


def encode_description(description: SessionDescription) -> str:
    if description.type not in (SdpType.OFFER, SdpType.ANSWER):
        raise ProtocolError(f"cannot relay a '{description.type.value}' description")
    return json.dumps({"sdp": description.to_dict()})


def encode_candidate(candidate: IceCandidate) -> str:
    return json.dumps({"ice": candidate.to_dict()})


def decode_signal(text: str) -> Signal:
    """
    Decode a relayed JSON payload into a description or a candidate.

    Raises :class:`ProtocolError` for anything that is not one of the two
    envelopes, including an ``sdp`` object without a ``type``.
    """

    try:
        message = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"unparsable JSON payload: {exc.msg}") from exc
    if not isinstance(message, dict):
        raise ProtocolError("JSON payload is not an object")

    try:
        if "sdp" in message:
            envelope = SdpEnvelope.model_validate(message)
            return SessionDescription(type=SdpType(envelope.sdp.type), sdp=envelope.sdp.sdp)
        if "ice" in message:
            ice = IceEnvelope.model_validate(message).ice
            return IceCandidate(
                sdp_mline_index=ice.sdp_mline_index,
                candidate=ice.candidate,
                sdp_mid=ice.sdp_mid,
            )
    except ValidationError as exc:
        raise ProtocolError(f"invalid signalling payload: {exc.errors()[0].get('msg')}") from exc

    raise ProtocolError(f"unknown JSON message with keys {sorted(message)}")
