"""
Per-connection relay state machine: UNREGISTERED -> REGISTERED -> PAIRED.
"""

from __future__ import annotations

import logging
from typing import Optional

from .. import protocol as wire
from ..errors import ProtocolError, RelayError, SessionClosed
from .registry import ConnectionRecord, PeerRegistry, RegistrationState, RelayTransport

LOG = logging.getLogger(__name__)


class RelayProtocol:
    """
    Interpret the text frames of one relay connection.

    Control verbs are handled here; once a connection is paired every other
    frame is forwarded untouched.  Failures are reported to the sender as
    ``ERROR <text>`` and the connection stays usable.
    """

    def __init__(self, registry: Optional[PeerRegistry] = None) -> None:
        self.registry = registry or PeerRegistry()

    def open(self, transport: RelayTransport) -> ConnectionRecord:
        return ConnectionRecord(transport=transport)

    def handle_text(self, record: ConnectionRecord, text: str) -> None:
        try:
            self._dispatch(record, text)
        except RelayError as exc:
            LOG.info("Rejected request from %s: %s", record.describe(), exc)
            record.transport.send_text(wire.error(str(exc)))
        except SessionClosed as exc:
            LOG.info("Dropped message from %s: %s", record.describe(), exc)
            record.transport.send_text(wire.error(str(exc)))
        except ProtocolError as exc:
            LOG.warning("Protocol error from %s: %s", record.describe(), exc)
            record.transport.send_text(wire.error(str(exc)))

    def close(self, record: ConnectionRecord, reason: str = "disconnected") -> None:
        identity = record.describe()
        peer = self.registry.unregister(record)
        if peer is None:
            return
        LOG.info("Peer %s %s; closing session with %s", identity, reason, peer.describe())
        peer.transport.send_text(wire.ControlMessage(wire.SESSION_CLOSED, record.identity).encode())
        peer.transport.close(f"peer {identity} {reason}")

    def _dispatch(self, record: ConnectionRecord, text: str) -> None:
        control = wire.parse_control(text)

        if record.state is RegistrationState.UNREGISTERED:
            if control is None or control.verb != wire.HELLO or not control.argument:
                raise ProtocolError("expected 'HELLO <id>'")
            self.registry.register(record, control.argument)
            record.transport.send_text(wire.hello())
            return

        if control is not None and control.verb == wire.HELLO:
            raise ProtocolError(f"already registered as {record.identity!r}")

        if control is not None and control.verb == wire.SESSION:
            if not control.argument:
                raise ProtocolError("expected 'SESSION <peer-id>'")
            session = self.registry.pair(record.identity or "", control.argument)
            session.target.transport.send_text(
                wire.ControlMessage(wire.SESSION_REQUEST, record.identity).encode()
            )
            record.transport.send_text(wire.SESSION_OK)
            return

        if record.state is not RegistrationState.PAIRED:
            raise ProtocolError("not in a session; send 'SESSION <peer-id>' first")
        if not text.strip():
            raise ProtocolError("empty message")
        self.registry.relay(record.identity or "", text)
