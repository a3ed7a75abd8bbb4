"""
GStreamer-backed media engine built around ``webrtcbin``.

The engine exposes the asynchronous media-engine interface the negotiator
drives.  GStreamer promises are resolved on streaming threads and bridged into
asyncio futures; element signals are marshalled onto the event loop before
any callback runs.  When PyGObject or the GStreamer runtime is not available
the engine degrades gracefully: ``is_available`` is false and every
negotiation operation raises :class:`NegotiationError`.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .. import PeerConfig
from ..errors import NegotiationError
from ..rtc.bin_settings import ElementSpec, WebRTCBinSettings
from ..rtc.datachannel import FlowKind, VideoVariant
from ..rtc.negotiation import EngineCallbacks
from ..rtc.webrtc import IceCandidate, SdpType, SessionDescription

LOG = logging.getLogger(__name__)

REQUIRED_PLUGINS = (
    "opus",
    "vpx",
    "nice",
    "webrtc",
    "dtls",
    "srtp",
    "rtpmanager",
    "videotestsrc",
    "audiotestsrc",
)

_GST_INITIALISED = False
_INIT_LOCK = threading.RLock()

try:  # pragma: no cover - availability depends on host environment
    import gi  # type: ignore

    gi.require_version("Gst", "1.0")
    gi.require_version("GstWebRTC", "1.0")
    gi.require_version("GstSdp", "1.0")
    from gi.repository import Gst, GstSdp, GstWebRTC  # type: ignore
except (ImportError, ValueError) as exc:  # pragma: no cover
    Gst = None  # type: ignore[assignment]
    GstSdp = None  # type: ignore[assignment]
    GstWebRTC = None  # type: ignore[assignment]
    _GST_IMPORT_ERROR: Optional[BaseException] = exc
else:  # pragma: no cover - executed only when GStreamer is present
    _GST_IMPORT_ERROR = None


def _ensure_gst_initialised() -> None:
    if Gst is None:
        return
    global _GST_INITIALISED
    with _INIT_LOCK:
        if _GST_INITIALISED:
            return
        Gst.init(None)
        _GST_INITIALISED = True


def gst_available() -> bool:
    return Gst is not None


def missing_plugins(names=REQUIRED_PLUGINS) -> List[str]:
    if Gst is None:
        return list(names)
    _ensure_gst_initialised()
    registry = Gst.Registry.get()
    return [name for name in names if registry.find_plugin(name) is None]


_SDP_TYPES = {
    SdpType.OFFER: "OFFER",
    SdpType.PRANSWER: "PRANSWER",
    SdpType.ANSWER: "ANSWER",
    SdpType.ROLLBACK: "ROLLBACK",
}


class GstDataChannel:
    """Wrap a ``GstWebRTCDataChannel`` and forward its events to the loop."""

    def __init__(self, channel, loop: asyncio.AbstractEventLoop, *, locally_created: bool) -> None:
        self._channel = channel
        self._loop = loop
        self.locally_created = locally_created
        self.label = channel.get_property("label") or "channel"
        self._on_open: Callable[[], None] = lambda: None
        self._on_message: Callable[[str], object] = lambda text: None
        self._on_close: Callable[[], None] = lambda: None
        channel.connect("on-open", lambda *_: self._dispatch(lambda: self._on_open()))
        channel.connect("on-close", lambda *_: self._dispatch(lambda: self._on_close()))
        channel.connect("on-error", self._handle_error)
        channel.connect(
            "on-message-string", lambda _channel, text: self._dispatch(lambda: self._on_message(text))
        )

    def bind(
        self,
        *,
        on_open: Callable[[], None],
        on_message: Callable[[str], object],
        on_close: Callable[[], None],
    ) -> None:
        self._on_open, self._on_message, self._on_close = on_open, on_message, on_close

    def send_string(self, text: str) -> None:
        self._channel.emit("send-string", text)

    def _dispatch(self, callback: Callable[[], object]) -> None:
        self._loop.call_soon_threadsafe(callback)

    def _handle_error(self, _channel, error) -> None:
        LOG.error("Data channel %s error: %s", self.label, error)


@dataclass
class _Flow:
    kind: FlowKind
    variant: Optional[VideoVariant]
    branch: object
    webrtc_pad: object
    tee_pad: Optional[object] = None


class GstWebRTCEngine:
    """
    One ``webrtcbin`` inside its own pipeline.

    The engine receives an H264 video stream (recv-only transceiver), decodes
    whatever the peer sends to automatic sinks, and attaches outbound branches
    on request from the data channel.
    """

    _names = itertools.count()

    def __init__(
        self,
        config: Optional[PeerConfig] = None,
        settings: Optional[WebRTCBinSettings] = None,
    ) -> None:
        self.config = config or PeerConfig()
        self.settings = settings or WebRTCBinSettings(stun_server=self.config.stun_server)
        self._callbacks = EngineCallbacks()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pipeline = None
        self._webrtc = None
        self._incoming_video_tee = None
        self._flows: Dict[FlowKind, _Flow] = {}
        self._lock = threading.RLock()
        self._bus_thread: Optional[threading.Thread] = None
        self._bus_stop = threading.Event()
        self._handlers: List[tuple] = []

    @property
    def is_available(self) -> bool:
        return Gst is not None

    def bind(self, callbacks: EngineCallbacks) -> None:
        self._callbacks = callbacks

    # ------------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        if Gst is None:
            raise NegotiationError(f"GStreamer runtime is not available ({_GST_IMPORT_ERROR})")
        _ensure_gst_initialised()
        missing = missing_plugins()
        if missing:
            raise NegotiationError(f"missing GStreamer plugins: {', '.join(missing)}")

        self._loop = asyncio.get_running_loop()
        pipeline = Gst.Pipeline.new(f"sendrecv-{next(self._names)}")
        webrtc = Gst.ElementFactory.make("webrtcbin", "sendrecv")
        if not pipeline or not webrtc:
            raise NegotiationError("failed to create webrtcbin pipeline")
        self._apply_element_properties(webrtc, self.settings.iter_element_properties())
        pipeline.add(webrtc)
        self._pipeline, self._webrtc = pipeline, webrtc

        self._connect(webrtc, "on-negotiation-needed", self._on_negotiation_needed)
        self._connect(webrtc, "on-ice-candidate", self._on_ice_candidate)
        self._connect(webrtc, "on-data-channel", self._on_data_channel)
        self._connect(webrtc, "pad-added", self._on_incoming_stream)

        caps = Gst.Caps.from_string(
            f"application/x-rtp,media=video,encoding-name=H264,"
            f"payload={self.settings.video_payload},clock-rate=90000"
        )
        webrtc.emit("add-transceiver", GstWebRTC.WebRTCRTPTransceiverDirection.RECVONLY, caps)

        self._start_bus_monitor(pipeline)
        if pipeline.set_state(Gst.State.PLAYING) == Gst.StateChangeReturn.FAILURE:
            await self.close()
            raise NegotiationError("unable to set the pipeline to PLAYING")

        channel = webrtc.emit("create-data-channel", self.settings.data_channel_label, None)
        if channel is None:
            LOG.warning("Could not create data channel; is usrsctp available?")
        else:
            self._callbacks.data_channel(GstDataChannel(channel, self._loop, locally_created=True))
        LOG.info("webrtcbin pipeline started")

    async def close(self) -> None:
        with self._lock:
            flows = list(self._flows)
        for kind in flows:
            self.detach_flow(kind)
        pipeline = self._pipeline
        if pipeline is not None and Gst is not None:
            try:
                pipeline.set_state(Gst.State.NULL)
            except Exception:  # pragma: no cover - defensive
                LOG.exception("Error while stopping webrtcbin pipeline.")
        for element, handler_id in self._handlers:
            try:
                element.disconnect(handler_id)
            except Exception:  # pragma: no cover - defensive
                LOG.debug("Failed to disconnect handler on %s", element, exc_info=True)
        self._handlers.clear()
        self._bus_stop.set()
        if self._bus_thread is not None:
            await asyncio.to_thread(self._bus_thread.join, 1.0)
            self._bus_thread = None
        self._pipeline = None
        self._webrtc = None
        self._incoming_video_tee = None

    # ------------------------------------------------------------------ negotiation

    def _require_webrtc(self):
        if Gst is None:
            raise NegotiationError("GStreamer runtime is not available")
        if self._webrtc is None or self._loop is None:
            raise NegotiationError("media engine has not been started")
        return self._webrtc

    def _promise(self):
        loop = self._loop
        future = loop.create_future()

        def _settle(reply) -> None:
            if future.done():
                return
            error = None
            if reply is not None and reply.has_field("error"):
                error = reply.get_value("error")
            if error is not None:
                future.set_exception(NegotiationError(str(error)))
            else:
                future.set_result(reply)

        def _changed(promise, *_args) -> None:
            promise.wait()
            loop.call_soon_threadsafe(_settle, promise.get_reply())

        return Gst.Promise.new_with_change_func(_changed, None), future

    async def _create(self, signal: str, field: str, kind: SdpType) -> SessionDescription:
        webrtc = self._require_webrtc()
        promise, future = self._promise()
        webrtc.emit(signal, None, promise)
        reply = await future
        if reply is None or not reply.has_field(field):
            raise NegotiationError(f"{signal} returned no description")
        description = reply.get_value(field)
        return SessionDescription(type=kind, sdp=description.sdp.as_text())

    async def create_offer(self) -> SessionDescription:
        return await self._create("create-offer", "offer", SdpType.OFFER)

    async def create_answer(self) -> SessionDescription:
        return await self._create("create-answer", "answer", SdpType.ANSWER)

    def _to_gst_description(self, description: SessionDescription):
        if description.type is SdpType.ROLLBACK:
            _, message = GstSdp.SDPMessage.new()
        else:
            result, message = GstSdp.SDPMessage.new_from_text(description.sdp)
            if result != GstSdp.SDPResult.OK:
                raise NegotiationError(f"unparsable {description.type.value} description")
        sdp_type = getattr(GstWebRTC.WebRTCSDPType, _SDP_TYPES[description.type])
        return GstWebRTC.WebRTCSessionDescription.new(sdp_type, message)

    async def _set_description(self, signal: str, description: SessionDescription) -> None:
        webrtc = self._require_webrtc()
        gst_description = self._to_gst_description(description)
        promise, future = self._promise()
        webrtc.emit(signal, gst_description, promise)
        await future

    async def set_local_description(self, description: SessionDescription) -> None:
        await self._set_description("set-local-description", description)

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._set_description("set-remote-description", description)

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        webrtc = self._require_webrtc()
        webrtc.emit("add-ice-candidate", candidate.sdp_mline_index, candidate.candidate)

    # ------------------------------------------------------------------ signals

    def _connect(self, element, signal: str, handler) -> None:
        self._handlers.append((element, element.connect(signal, handler)))

    def _call_soon(self, callback, *args) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(callback, *args)

    def _on_negotiation_needed(self, _element) -> None:
        self._call_soon(lambda: self._callbacks.negotiation_needed())

    def _on_ice_candidate(self, _element, mline_index: int, candidate: str) -> None:
        self._call_soon(lambda: self._callbacks.ice_candidate(IceCandidate(int(mline_index), candidate)))

    def _on_data_channel(self, _element, channel) -> None:
        wrapper = GstDataChannel(channel, self._loop, locally_created=False)
        self._call_soon(lambda: self._callbacks.data_channel(wrapper))

    def _on_incoming_stream(self, _element, pad) -> None:
        if pad.get_direction() != Gst.PadDirection.SRC:
            return
        decodebin = Gst.ElementFactory.make("decodebin")
        if decodebin is None:
            LOG.error("Failed to create decodebin for incoming stream.")
            return
        decodebin.connect("pad-added", self._on_decoded_pad)
        self._pipeline.add(decodebin)
        decodebin.sync_state_with_parent()
        pad.link(decodebin.get_static_pad("sink"))

    def _on_decoded_pad(self, _decodebin, pad) -> None:
        caps = pad.get_current_caps()
        if caps is None:
            LOG.warning("Decoded pad %s has no caps, ignoring", pad.get_name())
            return
        name = caps.get_structure(0).get_name()
        if name.startswith("video"):
            chain = ["queue", "videoconvert", "tee", "queue", "autovideosink"]
        elif name.startswith("audio"):
            chain = ["queue", "audioconvert", "audioresample", "autoaudiosink"]
        else:
            LOG.warning("Unknown incoming stream %s", name)
            return

        elements = [Gst.ElementFactory.make(factory) for factory in chain]
        if any(element is None for element in elements):
            LOG.error("Failed to build playback chain for %s", name)
            return
        for element in elements:
            self._pipeline.add(element)
            element.sync_state_with_parent()
        if not self._link_many(*elements):
            LOG.error("Failed to link playback chain for %s", name)
            return
        pad.link(elements[0].get_static_pad("sink"))
        if name.startswith("video"):
            with self._lock:
                self._incoming_video_tee = elements[2]
        LOG.info("Playing incoming %s stream", name.split("/")[0])

    # ------------------------------------------------------------------ flows

    def attach_flow(self, kind: FlowKind, variant: Optional[VideoVariant]) -> None:
        webrtc = self._require_webrtc()
        with self._lock:
            if kind in self._flows:
                LOG.debug("%s flow already attached", kind.value)
                return
            tee = self._incoming_video_tee

        if kind is FlowKind.AUDIO:
            specs = self.settings.audio_branch()
        elif variant is VideoVariant.LOOPBACK:
            if tee is None:
                raise NegotiationError("no incoming video to loop back")
            specs = self.settings.loopback_branch()
        else:
            specs = self.settings.test_pattern_branch()

        loopback = variant is VideoVariant.LOOPBACK
        branch = self._build_branch(f"{kind.value.lower()}-{next(self._names)}", specs, with_sink=loopback)
        self._pipeline.add(branch)

        tee_pad = None
        if variant is VideoVariant.LOOPBACK:
            tee_pad = tee.request_pad_simple("src_%u")
            tee_pad.link(branch.get_static_pad("sink"))

        webrtc_pad = webrtc.request_pad_simple("sink_%u")
        if branch.get_static_pad("src").link(webrtc_pad) != Gst.PadLinkReturn.OK:
            raise NegotiationError(f"failed to link {kind.value.lower()} branch to webrtcbin")
        branch.sync_state_with_parent()

        with self._lock:
            self._flows[kind] = _Flow(kind, variant, branch, webrtc_pad, tee_pad)
        LOG.info("Attached %s flow (%s)", kind.value, variant.value if variant else "default")

    def detach_flow(self, kind: FlowKind) -> None:
        with self._lock:
            flow = self._flows.pop(kind, None)
        if flow is None or Gst is None:
            return

        webrtc = self._webrtc
        branch = flow.branch
        transceiver = flow.webrtc_pad.get_property("transceiver")
        if transceiver is not None:
            transceiver.set_property("direction", GstWebRTC.WebRTCRTPTransceiverDirection.INACTIVE)
        branch.get_static_pad("src").send_event(Gst.Event.new_eos())
        branch.set_state(Gst.State.NULL)
        if flow.tee_pad is not None:
            parent = flow.tee_pad.get_parent_element()
            flow.tee_pad.unlink(branch.get_static_pad("sink"))
            if parent is not None:
                parent.release_request_pad(flow.tee_pad)
        branch.get_static_pad("src").unlink(flow.webrtc_pad)
        if webrtc is not None:
            webrtc.release_request_pad(flow.webrtc_pad)
        if self._pipeline is not None:
            self._pipeline.remove(branch)
        LOG.info("Detached %s flow", kind.value)

    def _build_branch(self, name: str, specs: List[ElementSpec], *, with_sink: bool):
        branch = Gst.Bin.new(name)
        elements = []
        for factory, properties in specs:
            element = Gst.ElementFactory.make(factory)
            if element is None:
                raise NegotiationError(f"missing GStreamer element {factory}")
            props = dict(properties)
            caps = props.pop("caps", None)
            if caps is not None:
                element.set_property("caps", Gst.Caps.from_string(caps))
            self._apply_element_properties(element, props)
            branch.add(element)
            elements.append(element)
        if not self._link_many(*elements):
            raise NegotiationError(f"failed to link {name} branch")
        branch.add_pad(Gst.GhostPad.new("src", elements[-1].get_static_pad("src")))
        if with_sink:
            branch.add_pad(Gst.GhostPad.new("sink", elements[0].get_static_pad("sink")))
        return branch

    # ------------------------------------------------------------------ helpers

    def _start_bus_monitor(self, pipeline) -> None:
        bus = pipeline.get_bus()
        self._bus_stop.clear()

        def _monitor() -> None:
            mask = Gst.MessageType.ERROR | Gst.MessageType.WARNING | Gst.MessageType.EOS
            while not self._bus_stop.is_set():
                message = bus.timed_pop_filtered(100 * Gst.MSECOND, mask)
                if message is None:
                    continue
                if message.type == Gst.MessageType.ERROR:
                    error, debug = message.parse_error()
                    LOG.error("GStreamer error from %s: %s (%s)", message.src.get_name(), error, debug)
                elif message.type == Gst.MessageType.WARNING:
                    warning, debug = message.parse_warning()
                    LOG.warning("GStreamer warning from %s: %s (%s)", message.src.get_name(), warning, debug)
                else:
                    LOG.info("End of stream on webrtcbin pipeline")

        self._bus_thread = threading.Thread(target=_monitor, name="sendrecv-gst-bus", daemon=True)
        self._bus_thread.start()

    def _link_many(self, *elements) -> bool:
        if Gst is None:
            return False
        for idx in range(len(elements) - 1):
            upstream = elements[idx]
            downstream = elements[idx + 1]
            try:
                if not upstream.link(downstream):
                    LOG.debug("Failed to link %s -> %s", upstream.get_name(), downstream.get_name())
                    return False
            except Exception:
                LOG.exception("Error while linking %s to %s", upstream, downstream)
                return False
        return True

    def _apply_element_properties(self, element, properties: Dict[str, object]) -> None:
        if Gst is None or not properties:
            return
        for key, value in properties.items():
            if value is None:
                continue
            try:
                element.set_property(key, value)
            except Exception:
                LOG.debug(
                    "Failed to set property '%s' on element %s; ignoring override.",
                    key,
                    element.get_name() if hasattr(element, "get_name") else element,
                    exc_info=True,
                )


def create_engine(config: PeerConfig) -> GstWebRTCEngine:
    engine = GstWebRTCEngine(config)
    if not engine.is_available:
        LOG.warning("GStreamer runtime is not available; calls will fail to start. (%s)", _GST_IMPORT_ERROR)
    return engine


__all__ = ["GstDataChannel", "GstWebRTCEngine", "REQUIRED_PLUGINS", "create_engine", "gst_available", "missing_plugins"]
