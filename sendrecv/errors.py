"""
Error taxonomy shared by the relay and the negotiation layer.

Relay errors are peer-visible: their message is what follows ``ERROR `` on the
wire.  Everything else stays local to the process that raised it.
"""

from __future__ import annotations


class SignallingError(RuntimeError):
    """Base class for sendrecv errors."""


class RelayError(SignallingError):
    """Registration or pairing failure reported back to the requesting peer."""


class DuplicateIdentity(RelayError):
    """Raised when an identity is already registered with the relay."""


class UnknownPeer(RelayError):
    """Raised when a session is requested with an identity nobody registered."""


class PeerBusy(RelayError):
    """Raised when a session is requested with a peer that is already paired."""


class ProtocolError(SignallingError):
    """Malformed or out-of-sequence message; the message is dropped."""


class NegotiationError(SignallingError):
    """Media engine failure while creating or applying a session description."""


class SessionClosed(SignallingError):
    """The paired peer went away while a message was in flight."""


class TransportError(SignallingError, ConnectionError):
    """The relay transport closed or could not be established."""
