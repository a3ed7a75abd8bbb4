"""
FastAPI websocket front-end for the signalling relay.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .. import RelayConfig
from .. import protocol as wire
from .. import schemas
from .protocol import RelayProtocol
from .registry import ConnectionRecord, PeerRegistry, RegistrationState

LOG = logging.getLogger(__name__)

_CLOSE = object()


class RelayConnection:
    """Own one websocket: a bounded outbound queue plus receive and send loops."""

    def __init__(self, server: "RelayServer", websocket: WebSocket, *, queue_size: int) -> None:
        self.server = server
        self.websocket = websocket
        self.send_queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.record: Optional[ConnectionRecord] = None
        self._stop_event = asyncio.Event()
        self._closing = False
        self._close_reason: Optional[str] = None
        self.logger = LOG.getChild("conn")

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    # RelayTransport -------------------------------------------------------

    def send_text(self, text: str) -> None:
        if self.is_stopped or self._closing:
            self.logger.debug("Dropping message for closed connection")
            return
        try:
            self.send_queue.put_nowait(text)
        except asyncio.QueueFull:
            self.logger.warning("Outbound queue full; closing slow connection")
            self._stop_event.set()

    def close(self, reason: Optional[str] = None) -> None:
        if self._closing:
            return
        self._closing = True
        self._close_reason = reason
        try:
            self.send_queue.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            self._stop_event.set()

    # ----------------------------------------------------------------------

    async def run(self) -> None:
        try:
            await self.websocket.accept()
        except Exception:  # pragma: no cover - defensive
            self.logger.exception("Failed to accept WebSocket connection")
            return

        record = self.server.protocol.open(self)
        self.record = record
        self.logger = LOG.getChild(f"conn.{record.connection_id[:8]}")
        self.server.connections[record.connection_id] = self

        tasks = [
            asyncio.create_task(self._recv_loop()),
            asyncio.create_task(self._send_loop()),
        ]
        if self.server.hello_timeout > 0:
            tasks.append(asyncio.create_task(self._hello_watchdog()))
        try:
            await asyncio.wait(tasks[:2], return_when=asyncio.FIRST_COMPLETED)
        finally:
            self._stop_event.set()
            for task in tasks:
                task.cancel()
            for task in tasks:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            self.server.connections.pop(record.connection_id, None)
            self.server.protocol.close(record)
            await self._close_websocket(code=1000)
            self.logger.debug("Connection for %s finished", record.describe())

    async def _close_websocket(self, code: int = 1000, reason: Optional[str] = None) -> None:
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await self.websocket.close(code=code, reason=reason)

    async def _recv_loop(self) -> None:
        try:
            while not self.is_stopped:
                message = await self.websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                text = message.get("text")
                if text is None:
                    self.send_text(wire.error("binary messages are not supported"))
                    continue
                self.server.protocol.handle_text(self.record, text)
        except WebSocketDisconnect:
            pass
        finally:
            self._stop_event.set()

    async def _send_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    outbound = await asyncio.wait_for(self.send_queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue

                try:
                    if outbound is _CLOSE:
                        await self._close_websocket(code=1000, reason=self._close_reason)
                        break
                    await self.websocket.send_text(outbound)
                except WebSocketDisconnect:
                    break
                except RuntimeError as exc:
                    self.logger.debug("Send after close ignored: %s", exc)
                    break
                finally:
                    self.send_queue.task_done()
        finally:
            self._stop_event.set()

    async def _hello_watchdog(self) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.server.hello_timeout)
            return
        record = self.record
        if record is not None and record.state is RegistrationState.UNREGISTERED:
            self.logger.info("No HELLO within %.1fs; closing", self.server.hello_timeout)
            self.send_text(wire.error("registration timed out"))
            self.close("registration timed out")


class RelayServer:
    """Bookkeeping for every live relay connection."""

    def __init__(
        self,
        registry: Optional[PeerRegistry] = None,
        *,
        queue_size: int = 256,
        hello_timeout: float = 10.0,
    ) -> None:
        self.protocol = RelayProtocol(registry)
        self.queue_size = max(1, int(queue_size))
        self.hello_timeout = max(0.0, float(hello_timeout))
        self.connections: Dict[str, RelayConnection] = {}

    @property
    def registry(self) -> PeerRegistry:
        return self.protocol.registry

    async def run(self, websocket: WebSocket) -> None:
        connection = RelayConnection(self, websocket, queue_size=self.queue_size)
        await connection.run()

    async def stop(self) -> None:
        for connection in list(self.connections.values()):
            connection.close("relay shutting down")


def create_app(
    *,
    config: Optional[RelayConfig] = None,
    registry: Optional[PeerRegistry] = None,
) -> FastAPI:
    relay_config = config or RelayConfig()
    server = RelayServer(
        registry,
        queue_size=relay_config.queue_size,
        hello_timeout=relay_config.hello_timeout,
    )

    app = FastAPI(title="sendrecv signalling relay")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.relay = server

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await server.stop()

    @app.websocket("/")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await server.run(websocket)

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok", "peers": len(server.registry)}

    @app.get("/peers", response_model=schemas.PeersResponse)
    async def list_peers() -> schemas.PeersResponse:
        return schemas.PeersResponse(**server.registry.snapshot())

    return app


__all__ = ["RelayConnection", "RelayServer", "create_app"]
