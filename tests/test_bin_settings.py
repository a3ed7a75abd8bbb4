"""Tests covering webrtcbin and outbound branch configuration."""

from sendrecv.rtc.bin_settings import WebRTCBinSettings


def test_bin_settings_iter_element_properties() -> None:
    settings = WebRTCBinSettings(
        turn_server="turn://turn.example.com",
        latency_ms=150,
        extra_properties={"ice-transport-policy": 0},
    )

    props = settings.iter_element_properties()

    assert props["latency"] == 150
    assert props["bundle-policy"] == "max-bundle"
    assert props["stun-server"] == settings.stun_server
    assert props["turn-server"] == "turn://turn.example.com"
    assert props["ice-transport-policy"] == 0


def test_bin_settings_omit_unset_servers() -> None:
    props = WebRTCBinSettings(stun_server=None).iter_element_properties()

    assert "stun-server" not in props
    assert "turn-server" not in props
    assert "latency" not in props


def test_test_pattern_branch_chain() -> None:
    branch = WebRTCBinSettings().test_pattern_branch()
    factories = [factory for factory, _ in branch]

    assert factories[0] == "videotestsrc"
    assert branch[0][1] == {"pattern": 18, "is-live": True}
    assert "x264enc" in factories and "rtph264pay" in factories
    assert branch[3][1]["caps"] == "video/x-raw,width=640,height=480,framerate=25/1"
    assert branch[-2][1]["caps"].endswith("encoding-name=H264,payload=96")


def test_audio_and_loopback_branches() -> None:
    settings = WebRTCBinSettings(audio_payload=111, mtu=1200)

    audio = settings.audio_branch()
    loopback = settings.loopback_branch()

    assert audio[0] == ("audiotestsrc", {"is-live": True, "wave": 10})
    assert audio[-2][1]["caps"].endswith("encoding-name=OPUS,payload=111")
    assert loopback[0][0] == "queue"
    payloader = dict(loopback)["rtph264pay"]
    assert payloader["mtu"] == 1200
