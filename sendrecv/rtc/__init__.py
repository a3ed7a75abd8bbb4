"""
Negotiation-side building blocks: value types, perfect negotiation, candidate
exchange and the data channel command protocol.
"""

from .bin_settings import WebRTCBinSettings
from .candidates import CandidateRelay
from .datachannel import CommandChannel, FlowKind, VideoVariant
from .negotiation import EngineCallbacks, MediaEngine, NegotiationRole, Negotiator, SignalingState
from .webrtc import IceCandidate, SdpType, SessionDescription

__all__ = [
    "CandidateRelay",
    "CommandChannel",
    "EngineCallbacks",
    "FlowKind",
    "IceCandidate",
    "MediaEngine",
    "NegotiationRole",
    "Negotiator",
    "SdpType",
    "SessionDescription",
    "SignalingState",
    "VideoVariant",
    "WebRTCBinSettings",
]
