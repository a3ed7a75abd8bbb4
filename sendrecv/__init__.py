"""
sendrecv signalling package.

A websocket relay that pairs two peers and forwards their negotiation
payloads, and the endpoint side that drives a media engine through perfect
negotiation.  The top level module hosts the process configuration shared by
both entrypoints.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from .utils.profiles import load_section

__all__ = [
    "PeerConfig",
    "RelayConfig",
]


def _known_fields(cls: type, values: Dict[str, Any]) -> Dict[str, Any]:
    names = {item.name for item in fields(cls)}
    return {key: value for key, value in values.items() if key in names}


@dataclass
class RelayConfig:
    """Settings for the signalling relay process."""

    host: str = "0.0.0.0"
    port: int = 8443
    cert_path: Optional[str] = None
    key_path: Optional[str] = None
    hello_timeout: float = 10.0
    queue_size: int = 256

    @classmethod
    def from_profile(cls, profile: str = "default", path: Optional[Path] = None, **overrides: Any) -> "RelayConfig":
        values = _known_fields(cls, load_section(profile, "relay", path))
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)

    @property
    def uses_tls(self) -> bool:
        return bool(self.cert_path and self.key_path)


@dataclass
class PeerConfig:
    """Settings for an endpoint connecting through the relay."""

    server_url: str = "wss://127.0.0.1:8443"
    our_id: Optional[str] = None
    peer_id: Optional[str] = None
    disable_ssl: bool = False
    max_connect_attempts: int = 3
    retry_delay: float = 1.0
    stun_server: Optional[str] = "stun://stun.l.google.com:19302"
    ping_interval: float = 2.0

    @classmethod
    def from_profile(cls, profile: str = "default", path: Optional[Path] = None, **overrides: Any) -> "PeerConfig":
        values = _known_fields(cls, load_section(profile, "peer", path))
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)

    @property
    def verify_ssl(self) -> bool:
        # Local test servers usually run with a self-signed certificate.
        if self.disable_ssl:
            return False
        host = urlsplit(self.server_url).hostname
        return host not in {"localhost", "127.0.0.1"}
