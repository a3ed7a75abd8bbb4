"""
Peer registry for the signalling relay.

The registry maps registered identities to live connections and pairs two of
them into a session.  Mutations are serialised by a single mutex; forwarding a
payload to the paired connection only reads the session links and never takes
the lock.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Protocol, Set, Union

from ..errors import DuplicateIdentity, PeerBusy, ProtocolError, SessionClosed, UnknownPeer

LOG = logging.getLogger(__name__)


class RegistrationState(str, Enum):
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    PAIRED = "paired"


class RelayTransport(Protocol):
    """What the registry needs from a connection: queue text, request a close."""

    def send_text(self, text: str) -> None:
        ...

    def close(self, reason: Optional[str] = None) -> None:
        ...


@dataclass(eq=False)
class ConnectionRecord:
    transport: RelayTransport
    identity: Optional[str] = None
    state: RegistrationState = RegistrationState.UNREGISTERED
    session: Optional["Session"] = None
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def peer(self) -> Optional["ConnectionRecord"]:
        session = self.session
        if session is None:
            return None
        return session.other(self)

    def describe(self) -> str:
        return self.identity or f"<unregistered {self.connection_id[:8]}>"


@dataclass(eq=False)
class Session:
    initiator: ConnectionRecord
    target: ConnectionRecord

    def other(self, record: ConnectionRecord) -> ConnectionRecord:
        if record is self.initiator:
            return self.target
        if record is self.target:
            return self.initiator
        raise ValueError(f"{record.describe()} is not part of this session")

    def identities(self) -> List[str]:
        return [self.initiator.describe(), self.target.describe()]


def validate_identity(identity: Optional[str]) -> str:
    candidate = (identity or "").strip()
    if not candidate:
        raise ProtocolError("peer id must not be empty")
    if any(char.isspace() for char in candidate):
        raise ProtocolError(f"invalid peer id {candidate!r}")
    return candidate


class PeerRegistry:
    """
    Identity allocation and session pairing shared by every relay connection.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._peers: Dict[str, ConnectionRecord] = {}
        self._sessions: Set[Session] = set()

    # ------------------------------------------------------------------ helpers

    def _teardown_session_locked(self, record: ConnectionRecord) -> Optional[ConnectionRecord]:
        session = record.session
        if session is None:
            return None
        peer = session.other(record)
        self._sessions.discard(session)
        for member in (record, peer):
            if member.session is session:
                member.session = None
                if member.state is RegistrationState.PAIRED:
                    member.state = RegistrationState.REGISTERED
        LOG.info("Session %s <-> %s closed", *session.identities())
        return peer

    # ------------------------------------------------------------------ public API

    def lookup(self, identity: str) -> Optional[ConnectionRecord]:
        with self._lock:
            return self._peers.get(identity)

    def register(self, record: ConnectionRecord, identity: str) -> ConnectionRecord:
        identity = validate_identity(identity)
        with self._lock:
            if record.state is not RegistrationState.UNREGISTERED:
                raise ProtocolError(f"already registered as {record.identity!r}")
            if identity in self._peers:
                raise DuplicateIdentity(f"peer id {identity!r} is already registered")
            self._peers[identity] = record
            record.identity = identity
            record.state = RegistrationState.REGISTERED
        LOG.info("Registered peer %s", identity)
        return record

    def pair(self, initiator: str, target: str) -> Session:
        with self._lock:
            record = self._peers.get(initiator)
            if record is None:
                raise ProtocolError(f"peer {initiator!r} is not registered")
            if target == initiator:
                raise ProtocolError("cannot open a session with yourself")
            target_record = self._peers.get(target)
            if target_record is None:
                raise UnknownPeer(f"peer {target!r} not found")
            if target_record.state is RegistrationState.PAIRED:
                raise PeerBusy(f"peer {target!r} busy")
            if record.state is RegistrationState.PAIRED:
                raise PeerBusy(f"peer {initiator!r} is already in a session")

            session = Session(initiator=record, target=target_record)
            for member in (record, target_record):
                member.session = session
                member.state = RegistrationState.PAIRED
            self._sessions.add(session)
        LOG.info("Session %s -> %s established", initiator, target)
        return session

    def relay(self, from_identity: str, payload: str) -> ConnectionRecord:
        """
        Forward ``payload`` verbatim to the connection paired with ``from_identity``.
        """

        record = self._peers.get(from_identity)
        if record is None:
            raise ProtocolError(f"peer {from_identity!r} is not registered")
        session = record.session
        if record.state is not RegistrationState.PAIRED or session is None:
            raise ProtocolError("not in a session")
        peer = session.other(record)
        if peer.session is not session:
            raise SessionClosed(f"peer {peer.describe()!r} left the session")
        peer.transport.send_text(payload)
        return peer

    def end_session(self, record: ConnectionRecord) -> Optional[ConnectionRecord]:
        with self._lock:
            return self._teardown_session_locked(record)

    def unregister(self, target: Union[str, ConnectionRecord]) -> Optional[ConnectionRecord]:
        """
        Free an identity and tear down its session.

        Returns the former session peer, if any, so the caller can notify it.
        """

        with self._lock:
            if isinstance(target, str):
                record = self._peers.get(target)
                if record is None:
                    return None
            else:
                record = target
            peer = self._teardown_session_locked(record)
            identity = record.identity
            if identity is not None and self._peers.get(identity) is record:
                del self._peers[identity]
                LOG.info("Unregistered peer %s", identity)
            record.state = RegistrationState.UNREGISTERED
        return peer

    def snapshot(self) -> Dict[str, list]:
        with self._lock:
            return {
                "registered": sorted(self._peers),
                "sessions": sorted(session.identities() for session in self._sessions),
            }

    def __contains__(self, identity: object) -> bool:
        with self._lock:
            return identity in self._peers

    def __len__(self) -> int:
        with self._lock:
            return len(self._peers)
