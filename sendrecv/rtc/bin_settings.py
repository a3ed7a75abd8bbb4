"""
webrtcbin configuration and the element chains of the outbound media branches.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

ElementSpec = Tuple[str, Dict[str, object]]


@dataclass
class WebRTCBinSettings:
    """
    Parameters applied to the webrtcbin element and its sending branches.

    Branches are described as ``(factory, properties)`` pairs linked in order;
    ``caps`` properties hold caps strings and are parsed by the engine.
    """

    stun_server: Optional[str] = "stun://stun.l.google.com:19302"
    turn_server: Optional[str] = None
    bundle_policy: str = "max-bundle"
    latency_ms: Optional[int] = None
    extra_properties: Dict[str, object] = field(default_factory=dict)

    video_width: int = 640
    video_height: int = 480
    video_framerate: int = 25
    video_bitrate_kbps: int = 800
    video_payload: int = 96
    audio_payload: int = 97
    mtu: int = 1300

    data_channel_label: str = "channel"

    def iter_element_properties(self) -> Dict[str, object]:
        """
        Return the flattened property map applied to the webrtcbin instance.
        """

        props: Dict[str, object] = dict(self.extra_properties)
        props["bundle-policy"] = self.bundle_policy
        if self.stun_server:
            props["stun-server"] = self.stun_server
        if self.turn_server:
            props["turn-server"] = self.turn_server
        if self.latency_ms is not None:
            props["latency"] = int(self.latency_ms)
        return props

    def test_pattern_branch(self) -> List[ElementSpec]:
        raw_caps = (
            f"video/x-raw,width={self.video_width},height={self.video_height},"
            f"framerate={self.video_framerate}/1"
        )
        return [
            ("videotestsrc", {"pattern": 18, "is-live": True}),
            ("videorate", {}),
            ("videoscale", {}),
            ("capsfilter", {"caps": raw_caps}),
            ("videoconvert", {}),
            ("queue", {"max-size-buffers": 1}),
            *self._h264_tail(),
        ]

    def loopback_branch(self) -> List[ElementSpec]:
        """Chain fed from the decoded incoming video instead of a test source."""

        return [
            ("queue", {"leaky": 2, "max-size-buffers": 1}),
            ("videoconvert", {}),
            ("videoscale", {}),
            ("capsfilter", {"caps": f"video/x-raw,width={self.video_width},height={self.video_height}"}),
            *self._h264_tail(),
        ]

    def audio_branch(self) -> List[ElementSpec]:
        return [
            ("audiotestsrc", {"is-live": True, "wave": 10}),
            ("audioconvert", {}),
            ("audioresample", {}),
            ("queue", {}),
            ("opusenc", {}),
            ("rtpopuspay", {}),
            (
                "capsfilter",
                {"caps": f"application/x-rtp,media=audio,encoding-name=OPUS,payload={self.audio_payload}"},
            ),
            ("queue", {}),
        ]

    def _h264_tail(self) -> List[ElementSpec]:
        return [
            (
                "x264enc",
                {
                    "bitrate": self.video_bitrate_kbps,
                    "speed-preset": 1,
                    "tune": 4,
                    "threads": 1,
                    "key-int-max": self.video_framerate * 2,
                },
            ),
            ("capsfilter", {"caps": "video/x-h264,profile=constrained-baseline"}),
            ("queue", {"max-size-time": 100 * 1000 * 1000}),
            ("h264parse", {}),
            ("rtph264pay", {"config-interval": -1, "aggregate-mode": 1, "mtu": self.mtu}),
            (
                "capsfilter",
                {"caps": f"application/x-rtp,media=video,encoding-name=H264,payload={self.video_payload}"},
            ),
            ("queue", {"max-size-time": 100 * 1000 * 1000}),
        ]


__all__ = ["ElementSpec", "WebRTCBinSettings"]
