import asyncio

import pytest

from sendrecv import PeerConfig
from sendrecv.errors import NegotiationError
from sendrecv.rtc.webrtc import SdpType, SessionDescription
from sendrecv.runtime import gst_adapter
from sendrecv.runtime.gst_adapter import GstWebRTCEngine, create_engine


def test_engine_uses_peer_stun_server() -> None:
    engine = GstWebRTCEngine(PeerConfig(stun_server="stun://stun.example.com:3478"))

    assert engine.settings.iter_element_properties()["stun-server"] == "stun://stun.example.com:3478"


def test_operations_before_start_raise_negotiation_error() -> None:
    engine = create_engine(PeerConfig())

    async def scenario():
        with pytest.raises(NegotiationError):
            await engine.create_offer()
        with pytest.raises(NegotiationError):
            await engine.set_remote_description(SessionDescription(SdpType.OFFER, "v=0"))

    asyncio.run(scenario())


def test_close_without_start_is_harmless() -> None:
    engine = GstWebRTCEngine()

    asyncio.run(engine.close())


def test_start_reports_missing_runtime(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(gst_adapter, "Gst", None)
    engine = GstWebRTCEngine()

    assert engine.is_available is False
    assert gst_adapter.missing_plugins() == list(gst_adapter.REQUIRED_PLUGINS)
    with pytest.raises(NegotiationError):
        asyncio.run(engine.start())
