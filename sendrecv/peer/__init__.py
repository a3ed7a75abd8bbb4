"""
Endpoint client: relay session handling and call orchestration.
"""

from .client import ClientState, SignallingClient

__all__ = ["ClientState", "SignallingClient"]
