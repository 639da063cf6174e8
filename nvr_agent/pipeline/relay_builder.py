"""
Relay Pipeline Builder - rtspsrc -> decode -> encode -> RTP -> udpsink

    rtspsrc ~> depay -> parse -> [timestamper] -> decoder    (codec chain)
            -> queue -> encoder -> h264parse -> rtph264pay -> queue -> udpsink   (tail)

The codec chain depends on the camera codec and is rebuilt in place when the
camera turns out to send the other codec. The tail never changes: the relay
always receives H.264.
"""
import logging
from typing import Callable, Dict, Optional

import gi
gi.require_version('Gst', '1.0')
gi.require_version('GstRtsp', '1.0')
from gi.repository import Gst, GstRtsp

from nvr_agent import config
from nvr_agent.pipeline.hardware import Backend
from nvr_agent.state.pipeline_state import Codec
from nvr_agent.utils.camera_loader import CameraConfig
from nvr_agent.utils.utils import build_stream_url, sanitize_stream_url

logger = logging.getLogger(__name__)

CODEC_CHAIN = ('source', 'depay', 'parser', 'timestamper', 'decoder')
TAIL = ('queue_in', 'encoder', 'h264parse', 'payloader', 'queue_out', 'sink')

DEPAYLOADERS = {Codec.H264: "rtph264depay", Codec.H265: "rtph265depay"}
PARSERS = {Codec.H264: "h264parse", Codec.H265: "h265parse"}
TIMESTAMPERS = {Codec.H264: "h264timestamper", Codec.H265: "h265timestamper"}

RTP_PAYLOAD_TYPE = 96


class PipelineBuildError(RuntimeError):
    """A required element could not be created or linked."""


class GstRegistryProbe:
    """Answer backend availability questions from the plugin registry."""

    def has_factory(self, name: str) -> bool:
        return Gst.ElementFactory.find(name) is not None

    def plugin_version(self, name: str) -> Optional[str]:
        factory = Gst.ElementFactory.find(name)
        if factory is None:
            return None
        plugin = factory.get_plugin()
        return plugin.get_version() if plugin else None


def apply_settings(element, settings: Dict[str, object]):
    """Set properties, using enum/flag nicks for string values."""
    for name, value in settings.items():
        if element.find_property(name) is None:
            logger.warning(f"{element.get_name()}: no property '{name}', skipping")
            continue
        if isinstance(value, str):
            Gst.util_set_object_arg(element, name, value)
        else:
            element.set_property(name, value)


class RelayPipelineBuilder:
    """
    Builds the relay pipeline for one camera.

    Elements are tracked in self.elements by role name (see CODEC_CHAIN and
    TAIL) so the codec chain can be swapped without touching the tail.
    """

    def __init__(self, camera: CameraConfig, backend: Backend, port: int,
                 on_pad_added: Optional[Callable] = None,
                 host: str = config.RTP_HOST,
                 latency_ms: int = config.RTSP_LATENCY_MS):
        """
        Args:
            camera: Camera configuration
            backend: Selected hardware backend
            port: Local UDP port for the RTP output
            on_pad_added: Connected to rtspsrc "pad-added" on every build
            host: RTP destination host
            latency_ms: rtspsrc jitter buffer latency
        """
        self.camera = camera
        self.backend = backend
        self.port = port
        self.on_pad_added = on_pad_added
        self.host = host
        self.latency_ms = latency_ms
        self.pipeline = None
        self.elements: Dict[str, Gst.Element] = {}

    def create_pipeline(self, codec: Codec):
        """
        Create the pipeline with a codec chain for `codec`.

        Returns:
            Gst.Pipeline

        Raises:
            PipelineBuildError: If an element is missing or cannot be linked
        """
        cam = self.camera.camera_id
        self.pipeline = Gst.Pipeline.new(f"relay-{cam}")
        if not self.pipeline:
            raise PipelineBuildError("Unable to create pipeline")

        self._create_tail()
        self.build_codec_chain(codec)

        logger.info(
            f"[{cam}] relay pipeline created: {self.backend.decoder_for(codec)} -> "
            f"{self.backend.encoder} -> udp://{self.host}:{self.port}"
        )
        return self.pipeline

    def _make(self, factory: str, role: str, required: bool = True):
        element = Gst.ElementFactory.make(factory, f"{role}-{self.camera.camera_id}")
        if element is None and required:
            raise PipelineBuildError(f"Failed to create element '{factory}' ({role})")
        return element

    # ------------------------------------------------------------------
    # Tail
    # ------------------------------------------------------------------

    def _create_tail(self):
        queue_in = self._make("queue", "queue_in")
        queue_in.set_property("max-size-buffers", 0)
        queue_in.set_property("max-size-bytes", 0)
        queue_in.set_property("max-size-time", 2 * Gst.SECOND)

        encoder = self._make(self.backend.encoder, "encoder")
        apply_settings(encoder, self.backend.encoder_settings(
            self.camera.bitrate_kbps, self.camera.gop_length, self.camera.encoder_threads
        ))

        h264parse = self._make("h264parse", "h264parse")
        h264parse.set_property("config-interval", -1)

        payloader = self._make("rtph264pay", "payloader")
        payloader.set_property("pt", RTP_PAYLOAD_TYPE)
        payloader.set_property("config-interval", -1)

        queue_out = self._make("queue", "queue_out")

        sink = self._make("udpsink", "sink")
        sink.set_property("host", self.host)
        sink.set_property("port", self.port)
        sink.set_property("sync", False)
        sink.set_property("async", False)

        chain = [queue_in, encoder, h264parse, payloader, queue_out, sink]
        for role, element in zip(TAIL, chain):
            self.elements[role] = element
            self.pipeline.add(element)

        for src, dst in zip(chain, chain[1:]):
            if not src.link(dst):
                raise PipelineBuildError(f"Failed to link {src.get_name()} -> {dst.get_name()}")

    # ------------------------------------------------------------------
    # Codec chain
    # ------------------------------------------------------------------

    def build_codec_chain(self, codec: Codec):
        """Create, add and link source/depay/parse/[timestamper]/decoder for `codec`."""
        cam = self.camera.camera_id

        source = self._make("rtspsrc", "source")
        self._configure_rtsp_source(source)

        depay = self._make(DEPAYLOADERS[codec], "depay")

        parser = self._make(PARSERS[codec], "parser")
        parser.set_property("config-interval", -1)

        # Timestamp normalizer is only present on newer GStreamer releases
        timestamper = self._make(TIMESTAMPERS[codec], "timestamper", required=False)
        if timestamper is None:
            logger.debug(f"[{cam}] {TIMESTAMPERS[codec]} not installed, skipping")

        decoder = self._make(self.backend.decoder_for(codec), "decoder")

        built = {'source': source, 'depay': depay, 'parser': parser,
                 'timestamper': timestamper, 'decoder': decoder}
        for role in CODEC_CHAIN:
            if built[role] is not None:
                self.elements[role] = built[role]
                self.pipeline.add(built[role])

        chain = [el for el in (depay, parser, timestamper, decoder, self.elements['queue_in']) if el]
        for src, dst in zip(chain, chain[1:]):
            if not src.link(dst):
                raise PipelineBuildError(f"Failed to link {src.get_name()} -> {dst.get_name()}")

        if self.on_pad_added:
            source.connect("pad-added", self.on_pad_added)

        logger.info(f"[{cam}] {codec.value} decode chain built ({self.backend.decoder_for(codec)})")

    def teardown_codec_chain(self):
        """Stop, remove and drop every codec chain element."""
        decoder = self.elements.get('decoder')
        queue_pad = self.elements['queue_in'].get_static_pad("sink")
        if decoder and queue_pad and queue_pad.is_linked():
            decoder.unlink(self.elements['queue_in'])

        for role in CODEC_CHAIN:
            element = self.elements.pop(role, None)
            if element is None:
                continue
            element.set_state(Gst.State.NULL)
            self.pipeline.remove(element)
        logger.info(f"[{self.camera.camera_id}] codec chain torn down")

    def sync_codec_chain(self) -> bool:
        """Bring rebuilt elements to the pipeline's state."""
        ok = True
        for role in CODEC_CHAIN:
            element = self.elements.get(role)
            if element is not None and not element.sync_state_with_parent():
                logger.error(f"[{self.camera.camera_id}] {element.get_name()} failed to sync state")
                ok = False
        return ok

    def depay_sink_pad(self):
        """Sink pad of the current depayloader, or None while the chain is torn down."""
        depay = self.elements.get('depay')
        return depay.get_static_pad("sink") if depay is not None else None

    def _configure_rtsp_source(self, source):
        """Configure RTSP source with TCP transport and camera credentials."""
        cam = self.camera
        location = build_stream_url(
            cam.ip_address, cam.port, cam.relay_stream_url,
            cam.rtsp_username, cam.rtsp_password, cam.credentials_in_url,
        )
        logger.info(f"[{cam.camera_id}] relay source {sanitize_stream_url(location, cam.rtsp_password)}")

        source.set_property('location', location)
        source.set_property('latency', self.latency_ms)
        source.set_property('drop-on-latency', True)
        source.set_property('do-rtsp-keep-alive', True)
        source.set_property('timeout', 0)
        source.set_property('tcp-timeout', 0)
        source.set_property('ntp-sync', True)
        source.set_property('protocols', GstRtsp.RTSPLowerTrans.TCP)

        if not cam.credentials_in_url and cam.rtsp_username:
            source.set_property('user-id', cam.rtsp_username)
            source.set_property('user-pw', cam.rtsp_password)
