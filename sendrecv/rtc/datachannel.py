"""
Text commands carried over the negotiated data channel.

``RECV VIDEO START [TESTPATTERN|LOOPBACK]``, ``RECV AUDIO START`` and
``RECV <VIDEO|AUDIO> STOP`` toggle outbound media flows; ``PING n`` and
``PONG n`` are liveness counters.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Protocol, Tuple, Union, runtime_checkable

from ..errors import ProtocolError

LOG = logging.getLogger(__name__)


class FlowKind(str, Enum):
    VIDEO = "VIDEO"
    AUDIO = "AUDIO"


class VideoVariant(str, Enum):
    TESTPATTERN = "TESTPATTERN"
    LOOPBACK = "LOOPBACK"


@dataclass(frozen=True)
class StartFlow:
    kind: FlowKind
    variant: Optional[VideoVariant] = None

    def __post_init__(self) -> None:
        if self.kind is FlowKind.VIDEO and self.variant is None:
            object.__setattr__(self, "variant", VideoVariant.TESTPATTERN)
        if self.kind is FlowKind.AUDIO and self.variant is not None:
            raise ProtocolError("audio flows take no variant")

    def encode(self) -> str:
        parts = ["RECV", self.kind.value, "START"]
        if self.variant is not None:
            parts.append(self.variant.value)
        return " ".join(parts)


@dataclass(frozen=True)
class StopFlow:
    kind: FlowKind

    def encode(self) -> str:
        return f"RECV {self.kind.value} STOP"


@dataclass(frozen=True)
class Ping:
    seq: int

    def encode(self) -> str:
        return f"PING {self.seq}"


@dataclass(frozen=True)
class Pong:
    seq: int

    def encode(self) -> str:
        return f"PONG {self.seq}"


DataChannelCommand = Union[StartFlow, StopFlow, Ping, Pong]


def _counter(token: str) -> int:
    if not token.isdigit():
        raise ProtocolError(f"invalid counter {token!r}")
    return int(token)


def _enum(kind: type, token: str, what: str):
    try:
        return kind(token)
    except ValueError:
        raise ProtocolError(f"unknown {what} {token!r}") from None


def parse_command(text: str) -> DataChannelCommand:
    tokens = text.split()
    if not tokens:
        raise ProtocolError("empty data channel message")

    head = tokens[0]
    if head in ("PING", "PONG"):
        if len(tokens) != 2:
            raise ProtocolError(f"expected '{head} <n>'")
        seq = _counter(tokens[1])
        return Ping(seq) if head == "PING" else Pong(seq)

    if head != "RECV" or len(tokens) < 3:
        raise ProtocolError(f"unknown data channel command {text.strip()!r}")

    kind = _enum(FlowKind, tokens[1], "flow")
    action = tokens[2]
    if action == "STOP" and len(tokens) == 3:
        return StopFlow(kind)
    if action == "START" and len(tokens) == 3:
        return StartFlow(kind)
    if action == "START" and len(tokens) == 4:
        return StartFlow(kind, _enum(VideoVariant, tokens[3], "video variant"))
    raise ProtocolError(f"malformed flow command {text.strip()!r}")


@runtime_checkable
class MediaFlowController(Protocol):
    """Attaches and detaches outbound branches; called from a worker thread."""

    def attach_flow(self, kind: FlowKind, variant: Optional[VideoVariant]) -> None:
        ...

    def detach_flow(self, kind: FlowKind) -> None:
        ...


class CommandChannel:
    """
    Command handling and heartbeat for one open data channel.

    Flow bookkeeping happens synchronously in :meth:`on_message`; the media
    work itself is queued and performed one operation at a time off the event
    loop.
    """

    def __init__(
        self,
        send: Callable[[str], None],
        flows: Optional[MediaFlowController] = None,
        *,
        ping_interval: float = 2.0,
        label: str = "channel",
    ) -> None:
        self._send = send
        self._flows = flows
        self.ping_interval = max(0.0, float(ping_interval))
        self.label = label
        self.is_open = False
        self.ping_count = 0
        self.pong_count = 0
        self.last_ping: Optional[int] = None
        self.last_pong: Optional[int] = None
        self._active: Dict[FlowKind, Optional[VideoVariant]] = {}
        self._heartbeat: Optional[asyncio.Task] = None
        self._operations: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self.logger = LOG.getChild(label)

    @property
    def active_flows(self) -> Dict[FlowKind, Optional[VideoVariant]]:
        return dict(self._active)

    # ------------------------------------------------------------------ events

    def on_open(self) -> None:
        if self.is_open:
            self.logger.debug("Data channel already open")
            return
        self.is_open = True
        self.logger.info("Data channel opened")
        if self.ping_interval > 0:
            self._heartbeat = asyncio.get_running_loop().create_task(self._heartbeat_loop())

    def on_message(self, text: str) -> Optional[DataChannelCommand]:
        self.logger.debug("Received data channel message: %s", text)
        try:
            command: Optional[DataChannelCommand] = parse_command(text)
        except ProtocolError as exc:
            self.logger.warning("Ignoring data channel message %r: %s", text, exc)
            command = None

        if isinstance(command, StartFlow):
            self._start(command)
        elif isinstance(command, StopFlow):
            self._stop(command.kind)
        elif isinstance(command, Ping):
            self.last_ping = command.seq
        elif isinstance(command, Pong):
            self.last_pong = command.seq

        if not isinstance(command, Pong):
            self.send(Pong(self.pong_count))
            self.pong_count += 1
        return command

    def on_close(self) -> None:
        if self.is_open:
            self.logger.info("Data channel closed")
        self.is_open = False
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None
        for kind in list(self._active):
            self._stop(kind)
        self.ping_count = 0
        self.pong_count = 0

    # ------------------------------------------------------------------ sending

    def send(self, command: DataChannelCommand) -> None:
        self._send(command.encode())

    def send_ping(self) -> None:
        self.send(Ping(self.ping_count))
        self.ping_count += 1

    def request_flow(self, kind: FlowKind, variant: Optional[VideoVariant] = None) -> None:
        self.send(StartFlow(kind, variant))

    def request_stop(self, kind: FlowKind) -> None:
        self.send(StopFlow(kind))

    async def _heartbeat_loop(self) -> None:
        try:
            while self.is_open:
                await asyncio.sleep(self.ping_interval)
                if not self.is_open:
                    break
                self.send_ping()
        except asyncio.CancelledError:
            pass
        except Exception:
            self.logger.exception("Data channel heartbeat failed")

    # ------------------------------------------------------------------ flows

    def _start(self, command: StartFlow) -> None:
        kind, variant = command.kind, command.variant
        if kind in self._active:
            if self._active[kind] == variant:
                self.logger.info("%s flow already active", kind.value)
                return
            self._schedule(("detach", kind, None))
        self._active[kind] = variant
        self._schedule(("attach", kind, variant))

    def _stop(self, kind: FlowKind) -> None:
        if kind not in self._active:
            self.logger.debug("%s flow is not active", kind.value)
            return
        del self._active[kind]
        self._schedule(("detach", kind, None))

    def _schedule(self, operation: Tuple[str, FlowKind, Optional[VideoVariant]]) -> None:
        if self._flows is None:
            self.logger.debug("No media flow controller; %s %s skipped", operation[0], operation[1].value)
            return
        if self._operations is None:
            self._operations = asyncio.Queue()
            self._worker = asyncio.get_running_loop().create_task(self._run_operations(self._operations))
        self._operations.put_nowait(operation)

    async def _run_operations(self, operations: asyncio.Queue) -> None:
        while True:
            action, kind, variant = await operations.get()
            try:
                if action == "attach":
                    await asyncio.to_thread(self._flows.attach_flow, kind, variant)
                else:
                    await asyncio.to_thread(self._flows.detach_flow, kind)
            except Exception:
                self.logger.exception("Failed to %s %s flow", action, kind.value)
            finally:
                operations.task_done()

    async def drain(self) -> None:
        if self._operations is not None:
            await self._operations.join()

    async def aclose(self) -> None:
        self.on_close()
        await self.drain()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
            self._operations = None


__all__ = [
    "CommandChannel",
    "DataChannelCommand",
    "FlowKind",
    "MediaFlowController",
    "Ping",
    "Pong",
    "StartFlow",
    "StopFlow",
    "VideoVariant",
    "parse_command",
]
