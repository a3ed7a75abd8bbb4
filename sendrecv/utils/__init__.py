"""
Utility helpers shared by the relay and the peer.
"""
