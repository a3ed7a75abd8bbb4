"""
Media engine adapters.
"""

from .gst_adapter import GstWebRTCEngine, create_engine, gst_available

__all__ = ["GstWebRTCEngine", "create_engine", "gst_available"]
