"""
Process entrypoints: ``sendrecv relay`` runs the signalling relay,
``sendrecv peer`` runs an endpoint against it.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import Optional

from . import PeerConfig, RelayConfig
from .errors import SignallingError
from .peer.client import SignallingClient
from .relay.server import create_app
from .runtime.gst_adapter import create_engine
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)


async def serve_relay(config: RelayConfig) -> None:
    """
    Run the relay inside an asyncio loop until SIGINT/SIGTERM.
    """

    import uvicorn

    app = create_app(config=config)
    server_config = uvicorn.Config(
        app=app,
        host=config.host,
        port=config.port,
        ssl_certfile=config.cert_path if config.uses_tls else None,
        ssl_keyfile=config.key_path if config.uses_tls else None,
        log_config=None,
        log_level="info",
        reload=False,
    )
    server = uvicorn.Server(config=server_config)

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, shutting down relay...", signum)
        server.should_exit = True

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    scheme = "wss" if config.uses_tls else "ws"
    LOG.info("Relay listening on %s://%s:%d", scheme, config.host, config.port)
    await server.serve()


async def run_peer(config: PeerConfig) -> None:
    client = SignallingClient(config, create_engine)
    await client.run()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="sendrecv signalling relay and endpoint")
    parser.add_argument("--profile", default="default", help="settings profile to load")
    parser.add_argument("--log-level", default="info", help="logging level (debug, info, warning...)")
    commands = parser.add_subparsers(dest="command", required=True)

    relay = commands.add_parser("relay", help="run the signalling relay")
    relay.add_argument("--host", default=None, help="bind host for the relay")
    relay.add_argument("--port", type=int, default=None, help="bind port for the relay")
    relay.add_argument("--cert", dest="cert_path", default=None, help="TLS certificate (PEM)")
    relay.add_argument("--key", dest="key_path", default=None, help="TLS private key (PEM)")

    peer = commands.add_parser("peer", help="run an endpoint")
    peer.add_argument("--server", dest="server_url", default=None, help="relay websocket URL")
    peer.add_argument("--peer-id", default=None, help="identity of the peer to call")
    peer.add_argument("--our-id", default=None, help="identity to register with")
    peer.add_argument("--disable-ssl", action="store_true", default=None, help="skip certificate checks")
    return parser.parse_args(argv)


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        if args.command == "relay":
            config = RelayConfig.from_profile(
                args.profile,
                host=args.host,
                port=args.port,
                cert_path=args.cert_path,
                key_path=args.key_path,
            )
            asyncio.run(serve_relay(config))
        else:
            config = PeerConfig.from_profile(
                args.profile,
                server_url=args.server_url,
                peer_id=args.peer_id,
                our_id=args.our_id,
                disable_ssl=args.disable_ssl,
            )
            asyncio.run(run_peer(config))
    except KeyboardInterrupt:
        LOG.info("Interrupted by user.")
    except SignallingError as exc:
        LOG.error("%s", exc)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    run()
