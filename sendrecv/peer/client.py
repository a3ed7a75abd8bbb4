"""
Endpoint side of the signalling protocol.

The client registers with the relay, optionally asks for a session with a
configured peer, and once paired hands negotiation payloads to a
:class:`~sendrecv.rtc.negotiation.Negotiator` bound to a media engine.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import ssl
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Protocol, Set, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .. import PeerConfig
from .. import protocol as wire
from ..errors import NegotiationError, ProtocolError, RelayError, TransportError
from ..rtc.candidates import CandidateRelay
from ..rtc.datachannel import CommandChannel, MediaFlowController
from ..rtc.negotiation import EngineCallbacks, MediaEngine, NegotiationRole, Negotiator
from ..rtc.webrtc import IceCandidate, SessionDescription

LOG = logging.getLogger(__name__)


class ClientState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    REGISTERING = "registering"
    REGISTERED = "registered"
    PEER_CONNECTING = "peer-connecting"
    IN_CALL = "in-call"
    CLOSED = "closed"


class RelayConnection(Protocol):
    async def send(self, message: str) -> None:
        ...

    async def recv(self) -> Union[str, bytes]:
        ...

    async def close(self) -> None:
        ...


class DataChannelTransport(Protocol):
    label: str
    locally_created: bool

    def send_string(self, text: str) -> None:
        ...

    def bind(
        self,
        *,
        on_open: Callable[[], None],
        on_message: Callable[[str], object],
        on_close: Callable[[], None],
    ) -> None:
        ...


EngineFactory = Callable[[PeerConfig], MediaEngine]
Connector = Callable[[str], Awaitable[RelayConnection]]


def generate_identity() -> str:
    return str(random.randint(10, 9999))


class SignallingClient:
    """One relay connection and at most one call at a time."""

    def __init__(
        self,
        config: PeerConfig,
        engine_factory: EngineFactory,
        *,
        connector: Optional[Connector] = None,
    ) -> None:
        self.config = config
        self.our_id = str(config.our_id) if config.our_id is not None else generate_identity()
        self.peer_id = str(config.peer_id) if config.peer_id is not None else None
        self.state = ClientState.IDLE
        self.engine: Optional[MediaEngine] = None
        self.negotiator: Optional[Negotiator] = None
        self.candidates: Optional[CandidateRelay] = None
        self.command_channels: List[CommandChannel] = []
        self._engine_factory = engine_factory
        self._connector = connector or self._open_websocket
        self._connection: Optional[RelayConnection] = None
        self._send_queue: Optional[asyncio.Queue] = None
        self._tasks: Set[asyncio.Task] = set()
        self.logger = LOG.getChild(f"peer.{self.our_id}")

    @property
    def in_call(self) -> bool:
        return self.negotiator is not None and not self.negotiator.is_closed

    # ------------------------------------------------------------------ transport

    async def run(self) -> None:
        connection = await self.connect()
        await self.serve(connection)

    async def connect(self) -> RelayConnection:
        attempts = max(1, int(self.config.max_connect_attempts))
        last_error: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            self.state = ClientState.CONNECTING
            try:
                connection = await self._connector(self.config.server_url)
            except (OSError, WebSocketException, asyncio.TimeoutError, TransportError) as exc:
                last_error = exc
                self.logger.warning(
                    "Connection attempt %d/%d to %s failed: %s",
                    attempt,
                    attempts,
                    self.config.server_url,
                    exc,
                )
                if attempt < attempts:
                    await asyncio.sleep(self.config.retry_delay)
                continue
            self.logger.info("Connected to %s", self.config.server_url)
            return connection
        self.state = ClientState.CLOSED
        raise TransportError(
            f"too many connection attempts to {self.config.server_url}, aborting"
        ) from last_error

    async def _open_websocket(self, url: str) -> RelayConnection:
        context: Optional[ssl.SSLContext] = None
        if url.startswith("wss://"):
            context = ssl.create_default_context()
            if not self.config.verify_ssl:
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
        return await websockets.connect(url, ssl=context)

    async def serve(self, connection: RelayConnection) -> None:
        self._connection = connection
        self._send_queue = asyncio.Queue()
        self.state = ClientState.REGISTERING
        await self.send_text(wire.hello(self.our_id))
        sender = asyncio.create_task(self._send_loop())
        try:
            await self._recv_loop()
        finally:
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sender
            await self.end_call("relay connection closed")
            self.state = ClientState.CLOSED
            with contextlib.suppress(ConnectionClosed, TransportError, OSError):
                await connection.close()

    async def send_text(self, text: str) -> None:
        if self._send_queue is None or self.state is ClientState.CLOSED:
            raise TransportError("not connected to the relay")
        await self._send_queue.put(text)

    async def _send_loop(self) -> None:
        assert self._send_queue is not None and self._connection is not None
        while True:
            text = await self._send_queue.get()
            try:
                await self._connection.send(text)
            except (ConnectionClosed, TransportError) as exc:
                self.logger.warning("Relay connection closed while sending: %s", exc)
                break
            finally:
                self._send_queue.task_done()

    async def _recv_loop(self) -> None:
        assert self._connection is not None
        while True:
            try:
                message = await self._connection.recv()
            except (ConnectionClosed, TransportError) as exc:
                self.logger.info("Relay connection closed (%s)", exc)
                return
            if isinstance(message, bytes):
                self.logger.warning("Ignoring binary message from relay")
                continue
            await self.handle_text(message)

    # ------------------------------------------------------------------ protocol

    async def handle_text(self, text: str) -> None:
        try:
            control = wire.parse_control(text)
            if control is None:
                await self._handle_payload(text)
            else:
                await self._handle_control(control)
        except ProtocolError as exc:
            self.logger.warning("Dropping message %r: %s", text[:120], exc)

    async def _handle_control(self, control: wire.ControlMessage) -> None:
        verb = control.verb
        if verb == wire.HELLO:
            if self.state is not ClientState.REGISTERING:
                raise ProtocolError(f"unexpected HELLO in state {self.state.value}")
            self.state = ClientState.REGISTERED
            self.logger.info("Registered with relay as %s", self.our_id)
            if self.peer_id:
                self.state = ClientState.PEER_CONNECTING
                await self.send_text(wire.session(self.peer_id))
            else:
                self.logger.info("Waiting for a session request")
        elif verb == wire.SESSION_OK:
            if self.state is not ClientState.PEER_CONNECTING:
                raise ProtocolError(f"unexpected SESSION_OK in state {self.state.value}")
            await self.begin_call(NegotiationRole.IMPOLITE)
        elif verb == wire.SESSION_REQUEST:
            if self.state is not ClientState.REGISTERED:
                raise ProtocolError(f"unexpected session request in state {self.state.value}")
            self.peer_id = control.argument
            await self.begin_call(NegotiationRole.POLITE)
        elif verb == wire.OFFER_REQUEST:
            if not self.in_call:
                role = NegotiationRole.IMPOLITE if self.state is ClientState.PEER_CONNECTING else NegotiationRole.POLITE
                await self.begin_call(role)
            await self._negotiate()
        elif verb == wire.SESSION_CLOSED:
            self.logger.info("Peer %s left the session", control.argument or self.peer_id)
            await self.end_call("peer left")
            self.state = ClientState.REGISTERED
        elif verb == wire.ERROR:
            reason = control.argument or "unknown error"
            self.logger.error("Relay reported an error: %s", reason)
            await self.end_call("relay error")
            raise RelayError(reason)
        else:
            raise ProtocolError(f"unexpected {verb} from relay")

    async def _handle_payload(self, text: str) -> None:
        negotiator, candidates = self.negotiator, self.candidates
        if negotiator is None or candidates is None or negotiator.is_closed:
            raise ProtocolError("negotiation payload received outside a call")
        signal = wire.decode_signal(text)
        if isinstance(signal, SessionDescription):
            try:
                await negotiator.handle_remote_description(signal)
            except NegotiationError as exc:
                self.logger.error("Failed to apply remote %s: %s", signal.type.value, exc)
        else:
            await candidates.add_remote(signal)

    # ------------------------------------------------------------------ call lifecycle

    async def begin_call(self, role: NegotiationRole) -> Negotiator:
        if self.in_call:
            self.logger.warning("Call already in progress")
            assert self.negotiator is not None
            return self.negotiator

        engine = self._engine_factory(self.config)
        candidates = CandidateRelay(engine, self._send_candidate)
        negotiator = Negotiator(
            engine,
            self._send_description,
            role=role,
            candidates=candidates,
            name=f"{self.our_id}.{role.value}",
        )
        self.engine, self.candidates, self.negotiator = engine, candidates, negotiator
        self.command_channels = []
        engine.bind(
            EngineCallbacks(
                negotiation_needed=self._on_negotiation_needed,
                ice_candidate=self._on_ice_candidate,
                data_channel=self._on_data_channel,
            )
        )
        self.state = ClientState.IN_CALL
        self.logger.info("Starting call with %s as the %s peer", self.peer_id, role.value)
        try:
            await engine.start()
        except NegotiationError:
            await self.end_call("media engine failed to start")
            raise
        except Exception as exc:
            await self.end_call("media engine failed to start")
            raise NegotiationError(f"failed to start media engine: {exc}") from exc
        return negotiator

    async def end_call(self, reason: str) -> None:
        negotiator, engine = self.negotiator, self.engine
        if negotiator is None or negotiator.is_closed:
            return
        negotiator.close()

        tasks, self._tasks = list(self._tasks), set()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        for channel in self.command_channels:
            await channel.aclose()
        self.command_channels = []

        if engine is not None:
            try:
                await engine.close()
            except Exception:
                self.logger.exception("Failed to close media engine")
        self.engine = None
        self.logger.info("Call ended: %s", reason)

    async def request_offer(self) -> None:
        """Ask the paired peer to send a fresh offer."""

        if self.state is not ClientState.IN_CALL or not self.in_call:
            raise ProtocolError(f"cannot request an offer in state {self.state.value}")
        self.logger.info("Requesting an offer from %s", self.peer_id)
        await self.send_text(wire.offer_request())

    async def _negotiate(self) -> None:
        negotiator = self.negotiator
        if negotiator is None:
            return
        try:
            await negotiator.negotiation_needed()
        except NegotiationError as exc:
            self.logger.error("Negotiation failed: %s", exc)

    async def _send_description(self, description: SessionDescription) -> None:
        await self.send_text(wire.encode_description(description))

    async def _send_candidate(self, candidate: IceCandidate) -> None:
        await self.send_text(wire.encode_candidate(candidate))

    # ------------------------------------------------------------------ engine callbacks

    def _spawn(self, coro: Awaitable[object], name: str) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                self.logger.error("Background %s failed: %s", name, exc, exc_info=exc)

        task.add_done_callback(_done)

    def _on_negotiation_needed(self) -> None:
        self._spawn(self._negotiate(), "negotiation")

    def _on_ice_candidate(self, candidate: IceCandidate) -> None:
        candidates = self.candidates
        if candidates is None:
            return
        self._spawn(candidates.send_local(candidate), "candidate send")

    def _on_data_channel(self, channel: DataChannelTransport) -> None:
        flows = self.engine if isinstance(self.engine, MediaFlowController) else None
        interval = self.config.ping_interval if getattr(channel, "locally_created", True) else 0.0
        command = CommandChannel(
            channel.send_string,
            flows,
            ping_interval=interval,
            label=getattr(channel, "label", "channel"),
        )
        channel.bind(on_open=command.on_open, on_message=command.on_message, on_close=command.on_close)
        self.command_channels.append(command)


__all__ = ["ClientState", "DataChannelTransport", "RelayConnection", "SignallingClient", "generate_identity"]
