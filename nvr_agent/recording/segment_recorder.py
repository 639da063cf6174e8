"""
Segment Recorder - continuous recording of the primary stream.

Pipeline:
    rtspsrc ~> depay -> parse -> splitmuxsink(mp4mux)
                            └── probe: timestamp normalization + snapshot schedule

splitmuxsink rotates files every `split_every` seconds without a pipeline
restart. Segments are written to a temporary directory and relocated when
the muxer reports them closed (see segments.py). Any stop, including an
error from the camera, first sends EOS into the muxer so the open segment
gets its trailer.
"""
import logging
import threading
import time
from typing import Optional

import gi
gi.require_version('Gst', '1.0')
gi.require_version('GLib', '2.0')
gi.require_version('GstRtsp', '1.0')
from gi.repository import Gst, GLib, GstRtsp

from nvr_agent import config
from nvr_agent.pipeline.bus_events import BusEvent, EventKind
from nvr_agent.pipeline.bus_handler import BusHandler
from nvr_agent.pipeline.relay_builder import DEPAYLOADERS, PARSERS, PipelineBuildError
from nvr_agent.recording.reconnect import ReconnectLoop
from nvr_agent.recording.segments import (
    SegmentRelocator, SegmentTracker, segment_event_from_message, stranded_segments, temporary_location,
)
from nvr_agent.recording.snapshots import SnapshotFetcher, SnapshotScheduler, SnapshotWorker
from nvr_agent.recording.timeline import TimestampNormalizer
from nvr_agent.state.pipeline_state import Codec
from nvr_agent.state.segment_state import SegmentState
from nvr_agent.utils.camera_loader import CameraConfig
from nvr_agent.utils.utils import build_stream_url, sanitize_stream_url

logger = logging.getLogger(__name__)


class SegmentRecorder:
    """
    Record one camera into rotating MP4 segments, with periodic snapshots.

    Each connection attempt builds a fresh pipeline; ReconnectLoop decides
    whether to try again.
    """

    def __init__(self, camera: CameraConfig, session=None):
        """
        Args:
            camera: Camera configuration
            session: Optional requests.Session for snapshot fetches
        """
        self.camera = camera
        self.state = SegmentState(camera_id=camera.camera_id)
        self.tracker = SegmentTracker(self.state, camera.output_path, camera.split_every)
        self.relocator = SegmentRelocator(self.tracker)
        self.normalizer = TimestampNormalizer()
        self.scheduler = SnapshotScheduler(camera.snapshot_every)
        self.snapshots: Optional[SnapshotWorker] = None
        if camera.snapshot_url:
            self.snapshots = SnapshotWorker(SnapshotFetcher(camera, session))

        self.context: Optional[GLib.MainContext] = None
        self.loop: Optional[GLib.MainLoop] = None
        self.pipeline = None
        self.splitmuxsink = None
        self._mux_pad = None
        self._eos_timeout = None
        self._bus_handler: Optional[BusHandler] = None
        self._parser_linked = False
        self._streamed = False
        self._eos_sent = False

        self.fatal = False
        self._stop_event = threading.Event()
        self._done = threading.Event()
        self._thread: Optional[threading.Thread] = None

        logger.info(
            f"SegmentRecorder initialized for {camera.camera_id}, "
            f"segment={camera.split_every}s, snapshot={camera.snapshot_every}s"
        )

    # ------------------------------------------------------------------
    # Pipeline construction
    # ------------------------------------------------------------------

    def _build_pipeline(self):
        """
        rtspsrc + splitmuxsink. Depayloader and parser are added once the
        camera announces its codec.

        Raises:
            PipelineBuildError: If a required element is missing
        """
        cam = self.camera.camera_id
        self.pipeline = Gst.Pipeline.new(f"recorder-{cam}")

        source = Gst.ElementFactory.make("rtspsrc", f"rec-src-{cam}")
        splitmuxsink = Gst.ElementFactory.make("splitmuxsink", f"rec-split-{cam}")
        if not self.pipeline or not source or not splitmuxsink:
            raise PipelineBuildError("rtspsrc / splitmuxsink not available")

        location = build_stream_url(
            self.camera.ip_address, self.camera.port, self.camera.stream_url,
            self.camera.rtsp_username, self.camera.rtsp_password, self.camera.credentials_in_url,
        )
        logger.info(f"[{cam}] recording source {sanitize_stream_url(location, self.camera.rtsp_password)}")
        source.set_property('location', location)
        source.set_property('latency', config.RTSP_LATENCY_MS)
        source.set_property('do-rtsp-keep-alive', True)
        source.set_property('protocols', GstRtsp.RTSPLowerTrans.TCP)
        if not self.camera.credentials_in_url and self.camera.rtsp_username:
            source.set_property('user-id', self.camera.rtsp_username)
            source.set_property('user-pw', self.camera.rtsp_password)
        source.connect("pad-added", self._on_rtsp_pad)

        splitmuxsink.set_property("muxer-factory", "mp4mux")
        # max-size-time is in nanoseconds
        splitmuxsink.set_property("max-size-time", self.camera.split_every * Gst.SECOND)
        # Synchronous finalize: fragment-closed means the file is complete
        splitmuxsink.set_property("async-finalize", False)
        splitmuxsink.connect("format-location", self._on_format_location)
        self.splitmuxsink = splitmuxsink

        self.pipeline.add(source)
        self.pipeline.add(splitmuxsink)
        self._parser_linked = False
        self._mux_pad = None

    def _on_format_location(self, splitmux, fragment_id: int) -> str:
        """splitmuxsink 'format-location' signal - path for the next segment."""
        path = temporary_location(self.camera.output_path, self.camera.camera_id)
        logger.debug(f"[{self.camera.camera_id}] segment {fragment_id}: {path}")
        return str(path)

    def _on_rtsp_pad(self, rtspsrc, pad):
        """Add depay -> parse for the announced codec and link it to the muxer."""
        cam = self.camera.camera_id
        caps = pad.get_current_caps() or pad.query_caps(None)
        if not caps or caps.get_size() == 0:
            logger.warning(f"[{cam}] RTSP pad has no caps")
            return

        structure = caps.get_structure(0)
        if (structure.get_string("media") or "video") != "video":
            return
        codec = Codec.from_name(structure.get_string("encoding-name") or "")
        if codec is None:
            logger.warning(f"[{cam}] unsupported encoding {structure.get_string('encoding-name')}")
            return
        if self._parser_linked:
            return

        depay = Gst.ElementFactory.make(DEPAYLOADERS[codec], f"rec-depay-{cam}")
        parser = Gst.ElementFactory.make(PARSERS[codec], f"rec-parse-{cam}")
        if not depay or not parser:
            logger.error(f"[{cam}] no depayloader/parser for {codec.value}")
            return

        self.pipeline.add(depay)
        self.pipeline.add(parser)
        if not depay.link(parser) or not parser.link(self.splitmuxsink):
            logger.error(f"[{cam}] failed to link {codec.value} chain to splitmuxsink")
            return
        self._attach_parser(parser)
        depay.sync_state_with_parent()
        parser.sync_state_with_parent()

        ret = pad.link(depay.get_static_pad("sink"))
        if ret != Gst.PadLinkReturn.OK:
            logger.error(f"[{cam}] RTSP pad link failed: {ret}")
            return
        self._parser_linked = True
        if codec.value != self.camera.codec:
            logger.info(f"[{cam}] camera sends {codec.value} (configured {self.camera.codec})")
        logger.info(f"[{cam}] recording {codec.value} stream")

    def _attach_parser(self, parser):
        """Install the buffer probe and remember the muxer pad the parser feeds."""
        src_pad = parser.get_static_pad("src")
        src_pad.add_probe(Gst.PadProbeType.BUFFER, self._on_parser_buffer)
        self._mux_pad = src_pad.get_peer()

    def _on_parser_buffer(self, pad, info):
        """Fill missing durations and drive the snapshot schedule."""
        buffer = info.get_buffer()
        if buffer is None:
            return Gst.PadProbeReturn.OK

        if not self._streamed:
            self._streamed = True
            self.state.connected = True
            logger.info(f"[{self.camera.camera_id}] recording branch: first buffer received")

        duration = self.normalizer.normalize(buffer.pts, buffer.duration)
        if duration is not None and buffer.duration == Gst.CLOCK_TIME_NONE:
            buffer.duration = duration

        if self.scheduler.on_buffer(duration):
            self._request_snapshot()
        return Gst.PadProbeReturn.OK

    def _request_snapshot(self):
        self.state.snapshot_attempts += 1
        self.state.last_snapshot_at = time.time()
        if self.snapshots:
            self.snapshots.request()

    # ------------------------------------------------------------------
    # Bus
    # ------------------------------------------------------------------

    def _on_event(self, event: BusEvent):
        cam = self.camera.camera_id
        if event.kind == EventKind.ERROR:
            logger.error(f"[{cam}] recording error from {event.source}: {event.message}")
            if event.debug:
                logger.debug(f"[{cam}] debug info: {event.debug}")
            self._finalize_segment()
        elif event.kind == EventKind.EOS:
            logger.info(f"[{cam}] recording EOS, segment finalized")
            self._quit()
        elif event.kind == EventKind.WARNING:
            logger.warning(f"[{cam}] recording warning from {event.source}: {event.message}")
        elif event.kind == EventKind.STATE_CHANGED and event.new_state is not None:
            logger.debug(f"[{cam}] recording pipeline state: {event.message}")

    def _on_element(self, message):
        event = segment_event_from_message(message)
        if event is not None:
            self.relocator.submit(event)

    def _finalize_segment(self):
        """
        Push EOS into the muxer so the open segment is closed (and relocated),
        then quit once the EOS reaches the bus or EOS_TIMEOUT_S has passed.
        """
        if self._eos_sent:
            return GLib.SOURCE_REMOVE
        self._eos_sent = True

        if self._mux_pad is None:
            # No media linked yet, so no segment is open
            self._quit()
            return GLib.SOURCE_REMOVE

        logger.info(f"[{self.camera.camera_id}] sending EOS to finalize segment")
        self._mux_pad.send_event(Gst.Event.new_eos())
        self._eos_timeout = GLib.timeout_source_new_seconds(config.EOS_TIMEOUT_S)
        self._eos_timeout.set_callback(lambda *args: self._on_eos_timeout())
        self._eos_timeout.attach(self.context)
        return GLib.SOURCE_REMOVE

    def _on_eos_timeout(self):
        logger.warning(
            f"[{self.camera.camera_id}] segment not finalized after {config.EOS_TIMEOUT_S}s, stopping anyway"
        )
        self._eos_timeout = None
        return self._quit()

    def _quit(self):
        if self.loop and self.loop.is_running():
            self.loop.quit()
        return GLib.SOURCE_REMOVE

    # ------------------------------------------------------------------
    # Run (blocks until done)
    # ------------------------------------------------------------------

    def _run_once(self) -> bool:
        """One connection attempt. Returns True if media was recorded."""
        cam = self.camera.camera_id
        self._streamed = False
        self._eos_sent = False
        self.normalizer.reset()

        self.relocator.recover(stranded_segments(self.camera.output_path, cam))

        self._build_pipeline()
        self._bus_handler = BusHandler(self.pipeline, self._on_event, self._on_element)
        try:
            ret = self.pipeline.set_state(Gst.State.PLAYING)
            if ret == Gst.StateChangeReturn.FAILURE:
                logger.error(f"[{cam}] recording pipeline failed to reach PLAYING")
                return False
            if not self._stop_event.is_set():
                self.loop.run()
        finally:
            if self._eos_timeout is not None:
                self._eos_timeout.destroy()
                self._eos_timeout = None
            self._bus_handler.detach()
            self.pipeline.set_state(Gst.State.NULL)
            self._mux_pad = None
            self.state.connected = False

        return self._streamed

    def run(self) -> bool:
        """Record until stopped. Returns False if reconnecting gave up or construction failed."""
        cam = self.camera.camera_id
        self.context = GLib.MainContext.new()
        self.context.push_thread_default()
        try:
            self.loop = GLib.MainLoop.new(self.context, False)
            self.relocator.start()
            if self.snapshots:
                self.snapshots.start()

            reconnect = ReconnectLoop(
                self._run_once, self._stop_event, name=cam,
                on_error_count=self._set_error_count,
            )
            self.fatal = not reconnect.run()

        except PipelineBuildError as exc:
            logger.error(f"[{cam}] cannot build recording pipeline: {exc}")
            self.fatal = True
        finally:
            if self.snapshots:
                self.snapshots.stop()
            self.relocator.stop()
            self.context.pop_thread_default()
            self._done.set()
            logger.info(
                f"[{cam}] recorder stopped (segments={self.state.relocated_count}, "
                f"snapshots={self.state.snapshot_attempts})"
            )

        return not self.fatal

    def _set_error_count(self, count: int):
        self.state.error_count = count

    def start_in_thread(self):
        """Start recording in a background thread."""
        self._thread = threading.Thread(
            target=self.run,
            name=f"recorder-{self.camera.camera_id}",
            daemon=True,
        )
        self._thread.start()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait until recording is finished. Returns True if finished cleanly."""
        finished = self._done.wait(timeout=timeout)
        if self._thread:
            self._thread.join(timeout=1)
        return finished and not self.fatal

    @property
    def done(self) -> threading.Event:
        return self._done

    def stop(self):
        """
        Finalize the open segment and stop. EOS gets EOS_TIMEOUT_S to flush
        through the muxer before the loop is quit anyway.
        """
        self._stop_event.set()
        if self.context is None:
            return
        source = GLib.idle_source_new()
        source.set_callback(lambda *args: self._finalize_segment())
        source.attach(self.context)
