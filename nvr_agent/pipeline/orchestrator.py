"""
Relay Orchestrator - runs the live relay pipeline for one camera.

Owns its own GLib main context (pushed as the worker thread's default), so
the bus watch and every scheduled callback run on the worker's loop.
Streaming-thread callbacks (pad-added) only decide and schedule; pipeline
surgery and signaling happen on the loop.
"""
import logging
import threading
from typing import Callable, Optional

import gi
gi.require_version('Gst', '1.0')
gi.require_version('GLib', '2.0')
from gi.repository import Gst, GLib

from nvr_agent import config
from nvr_agent.pipeline.bus_events import FaultPolicy
from nvr_agent.pipeline.bus_handler import BusHandler
from nvr_agent.pipeline.hardware import select_backend
from nvr_agent.pipeline.pad_linker import LinkResult, link_pad
from nvr_agent.pipeline.relay_builder import GstRegistryProbe, PipelineBuildError, RelayPipelineBuilder
from nvr_agent.signaling.janus_client import JanusClient
from nvr_agent.state.pipeline_state import Codec, PipelineState, RunState
from nvr_agent.utils.camera_loader import CameraConfig
from nvr_agent.utils.utils import PortAllocationError, find_free_port

logger = logging.getLogger(__name__)

GST_STATES = {
    RunState.NULL: Gst.State.NULL,
    RunState.READY: Gst.State.READY,
    RunState.PAUSED: Gst.State.PAUSED,
    RunState.PLAYING: Gst.State.PLAYING,
}


class RelayOrchestrator:
    """
    Build, run and supervise the relay pipeline.

    Lifecycle:
        start_in_thread() -> [pad-added -> link | rebuild] -> register stream
        -> loop runs until stop() or a fatal bus event -> cleanup
    """

    def __init__(self, camera: CameraConfig, probe=None,
                 client_factory: Callable[[], JanusClient] = JanusClient):
        """
        Args:
            camera: Camera configuration
            probe: ElementProbe for backend selection (registry probe by default)
            client_factory: Creates the signaling client on first link
        """
        self.camera = camera
        self.probe = probe
        self.client_factory = client_factory
        self.state = PipelineState(
            camera_id=camera.camera_id,
            assumed_codec=Codec.from_name(camera.codec) or Codec.H264,
        )

        self.context: Optional[GLib.MainContext] = None
        self.loop: Optional[GLib.MainLoop] = None
        self.pipeline = None
        self.builder: Optional[RelayPipelineBuilder] = None
        self.bus_handler: Optional[BusHandler] = None
        self.policy: Optional[FaultPolicy] = None

        self.fatal = False
        self._stop_requested = threading.Event()
        self._done = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def build(self):
        """
        Select backend, allocate the RTP port and create the pipeline.

        Raises:
            PortAllocationError: No free port in the configured range
            PipelineBuildError: An element could not be created or linked
        """
        backend = select_backend(self.camera.hardware_priority, self.probe or GstRegistryProbe())
        self.state.backend = backend.name

        port = self.camera.rtp_port or find_free_port(
            config.RTP_PORT_MIN, config.RTP_PORT_MAX, config.RTP_HOST
        )
        self.state.relay_port = port
        logger.info(f"[{self.camera.camera_id}] relay RTP port {port}")

        self.builder = RelayPipelineBuilder(
            self.camera, backend, port, on_pad_added=self._on_pad_added
        )
        self.pipeline = self.builder.create_pipeline(self.state.assumed_codec)

    # ------------------------------------------------------------------
    # Run (blocks until done)
    # ------------------------------------------------------------------

    def run(self) -> bool:
        """Run the relay until stopped. Returns False on a fatal condition."""
        cam = self.camera.camera_id
        self.context = GLib.MainContext.new()
        self.context.push_thread_default()
        try:
            self.loop = GLib.MainLoop.new(self.context, False)
            self.build()

            self.policy = FaultPolicy(self.state, self)
            self.bus_handler = BusHandler(self.pipeline, self.policy.handle)

            if not self._start_playing():
                self.fatal = True
                return False

            if not self._stop_requested.is_set():
                self.loop.run()

            if self.state.quiesced and not self._stop_requested.is_set():
                # Error or end of stream: let the supervisor restart us
                self.fatal = True

        except (PortAllocationError, PipelineBuildError) as exc:
            logger.error(f"[{cam}] cannot build relay pipeline: {exc}")
            self.fatal = True
        finally:
            self._cleanup()
            self.context.pop_thread_default()
            self._done.set()

        return not self.fatal

    def start_in_thread(self):
        """Start the relay in a background thread."""
        self._thread = threading.Thread(
            target=self.run,
            name=f"relay-{self.camera.camera_id}",
            daemon=True,
        )
        self._thread.start()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait until the worker finished. Returns True if it finished cleanly."""
        finished = self._done.wait(timeout=timeout)
        if self._thread:
            self._thread.join(timeout=1)
        return finished and not self.fatal

    @property
    def done(self) -> threading.Event:
        return self._done

    def stop(self):
        """Request a clean stop from any thread."""
        self._stop_requested.set()
        if self.context is not None:
            self._schedule(self.quit)

    def _start_playing(self) -> bool:
        """Set PLAYING and record whether the pipeline is live (no preroll)."""
        ret = self.pipeline.set_state(Gst.State.PLAYING)
        if ret == Gst.StateChangeReturn.FAILURE:
            logger.error(f"[{self.camera.camera_id}] relay pipeline failed to reach PLAYING")
            return False
        self.state.is_live = ret == Gst.StateChangeReturn.NO_PREROLL
        logger.info(f"[{self.camera.camera_id}] relay pipeline starting (live={self.state.is_live})")
        return True

    def _cleanup(self):
        cam = self.camera.camera_id
        client = self.state.signaling
        if client is not None:
            client.disconnect()
        if self.bus_handler:
            self.bus_handler.detach()
        if self.pipeline:
            self.pipeline.set_state(Gst.State.NULL)
            self.state.run_state = RunState.NULL
        logger.info(f"[{cam}] relay stopped (rebuilds={self.state.rebuild_count})")

    # ------------------------------------------------------------------
    # Controller interface used by FaultPolicy
    # ------------------------------------------------------------------

    def set_state(self, run_state: RunState) -> bool:
        ret = self.pipeline.set_state(GST_STATES[run_state])
        if ret == Gst.StateChangeReturn.FAILURE:
            logger.error(f"[{self.camera.camera_id}] failed to set pipeline to {run_state.value}")
            return False
        return True

    def recalculate_latency(self) -> bool:
        return self.pipeline.recalculate_latency()

    def quit(self):
        if self.loop and self.loop.is_running():
            self.loop.quit()
        return GLib.SOURCE_REMOVE

    def _schedule(self, callback):
        """Run callback on this worker's main context."""
        source = GLib.idle_source_new()
        source.set_callback(lambda *args: callback())
        source.attach(self.context)

    # ------------------------------------------------------------------
    # Dynamic pad handling (streaming thread)
    # ------------------------------------------------------------------

    def _on_pad_added(self, rtspsrc, pad):
        cam = self.camera.camera_id
        caps = pad.get_current_caps() or pad.query_caps(None)
        if not caps or caps.get_size() == 0:
            logger.warning(f"[{cam}] RTSP pad {pad.get_name()} has no caps")
            return

        structure = caps.get_structure(0)
        sink_pad = self.builder.depay_sink_pad()
        if sink_pad is None:
            # Codec chain is being swapped on the loop thread
            logger.debug(f"[{cam}] no depayloader, ignoring pad {pad.get_name()}")
            return
        result = link_pad(
            self.state,
            pad.get_name(),
            structure.get_name(),
            structure.get_string("encoding-name"),
            sink_pad.is_linked(),
            structure.get_string("media") or "video",
        )

        if result == LinkResult.SWITCH_CODEC:
            if self.state.request_codec_switch():
                self._schedule(self._rebuild_codec_chain)
        elif result == LinkResult.LINK:
            ret = pad.link(sink_pad)
            if ret != Gst.PadLinkReturn.OK:
                logger.error(f"[{cam}] failed to link {pad.get_name()} -> depayloader: {ret}")
                return
            logger.info(f"[{cam}] RTSP pad linked ({self.state.assumed_codec.value})")
            self._schedule(self._register_stream)

    # ------------------------------------------------------------------
    # Loop-thread work
    # ------------------------------------------------------------------

    def _rebuild_codec_chain(self):
        """Swap the codec chain for the other codec and restart it."""
        if self.state.quiesced or not self.state.rebuild_pending:
            return GLib.SOURCE_REMOVE

        cam = self.camera.camera_id
        self.builder.teardown_codec_chain()
        codec = self.state.complete_codec_switch()
        try:
            self.builder.build_codec_chain(codec)
        except PipelineBuildError as exc:
            logger.error(f"[{cam}] rebuild for {codec.value} failed: {exc}")
            self.fatal = True
            self.quit()
            return GLib.SOURCE_REMOVE

        if not self.builder.sync_codec_chain():
            logger.error(f"[{cam}] rebuilt chain did not start")
        return GLib.SOURCE_REMOVE

    def _register_stream(self):
        """Connect to the relay and register the RTP feed (once)."""
        if self.state.signaling is not None or self.state.quiesced:
            return GLib.SOURCE_REMOVE

        cam = self.camera.camera_id
        client = self.client_factory()
        self.state.signaling = client

        if not client.connect():
            logger.error(f"[{cam}] relay unreachable, stopping")
            self.fatal = True
            self.set_state(RunState.READY)
            self.state.run_state = RunState.READY
            self.state.quiesced = True
            self.quit()
            return GLib.SOURCE_REMOVE

        if client.create_stream(cam, self.state.relay_port, Codec.H264.value,
                                stream_id=self.camera.stream_id):
            client.keep_alive()
        else:
            logger.warning(f"[{cam}] stream registration failed, running without live relay")
        return GLib.SOURCE_REMOVE
