"""
Signalling relay: identity registry, pairing and verbatim forwarding.
"""

from .protocol import RelayProtocol
from .registry import ConnectionRecord, PeerRegistry, RegistrationState, Session

__all__ = [
    "ConnectionRecord",
    "PeerRegistry",
    "RegistrationState",
    "RelayProtocol",
    "Session",
]
