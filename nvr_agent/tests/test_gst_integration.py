from dataclasses import replace
from pathlib import Path

import pytest

RELAY_ELEMENTS = (
    "rtspsrc", "rtph264depay", "rtph265depay", "h264parse", "h265parse",
    "avdec_h264", "avdec_h265", "x264enc", "rtph264pay", "udpsink", "queue",
)
RECORDER_ELEMENTS = ("videotestsrc", "x264enc", "h264parse", "mp4mux", "splitmuxsink")


@pytest.fixture(scope="module")
def Gst():
    try:
        import gi
        gi.require_version("Gst", "1.0")
        from gi.repository import Gst
    except Exception as exc:  # pragma: no cover
        pytest.skip(f"GStreamer unavailable: {exc}")
    Gst.init(None)
    return Gst


def test_registry_lookup_reads_plugin_versions(Gst):
    from nvr_agent.pipeline.hardware import parse_version
    from nvr_agent.pipeline.relay_builder import GstRegistryProbe

    registry = GstRegistryProbe()
    assert registry.has_factory("queue")
    assert parse_version(registry.plugin_version("queue")) >= (1, 0)
    assert not registry.has_factory("no-such-element")
    assert registry.plugin_version("no-such-element") is None


def test_bus_messages_translate_to_events(Gst):
    from nvr_agent.pipeline.bus_events import EventKind
    from nvr_agent.pipeline.bus_handler import translate_message

    pipeline = Gst.Pipeline.new("translate-test")
    assert translate_message(Gst.Message.new_eos(pipeline), pipeline).kind == EventKind.EOS

    buffering = translate_message(Gst.Message.new_buffering(pipeline, 40), pipeline)
    assert buffering.kind == EventKind.BUFFERING
    assert buffering.percent == 40

    latency = translate_message(Gst.Message.new_latency(pipeline), pipeline)
    assert latency.kind == EventKind.LATENCY


def test_splitmuxsink_segments_are_relocated(Gst, tmp_path):
    from nvr_agent.recording.segments import SegmentTracker, segment_event_from_message, temporary_directory
    from nvr_agent.state.segment_state import SegmentState

    for name in ("videotestsrc", "x264enc", "h264parse", "mp4mux", "splitmuxsink"):
        if Gst.ElementFactory.find(name) is None:
            pytest.skip(f"{name} plugin unavailable")

    pipeline = Gst.parse_launch(
        "videotestsrc num-buffers=35 ! video/x-raw,width=160,height=120,framerate=10/1 "
        "! x264enc key-int-max=5 ! h264parse "
        "! splitmuxsink name=split muxer-factory=mp4mux max-size-time=1000000000 async-finalize=false"
    )
    split = pipeline.get_by_name("split")
    temp_dir = temporary_directory(tmp_path, "camera-1")
    split.connect("format-location", lambda sink, idx: str(temp_dir / f"camera-1-{idx:05d}.mp4"))

    state = SegmentState(camera_id="camera-1")
    tracker = SegmentTracker(state, tmp_path, 1)

    assert pipeline.set_state(Gst.State.PLAYING) != Gst.StateChangeReturn.FAILURE
    bus = pipeline.get_bus()
    try:
        while True:
            msg = bus.timed_pop_filtered(
                10 * Gst.SECOND,
                Gst.MessageType.EOS | Gst.MessageType.ERROR | Gst.MessageType.ELEMENT,
            )
            assert msg is not None, "timed out waiting for EOS"
            if msg.type == Gst.MessageType.ERROR:
                err, dbg = msg.parse_error()
                pytest.fail(f"GStreamer error: {err}; {dbg}")
            if msg.type == Gst.MessageType.EOS:
                break
            event = segment_event_from_message(msg)
            if event is not None:
                tracker.handle(event)
    finally:
        pipeline.set_state(Gst.State.NULL)

    assert state.relocated_count >= 2
    finished = sorted(Path(tmp_path / "videos" / "camera-1").glob("*.mp4"))
    assert len(finished) == state.relocated_count
    assert all(p.stat().st_size > 0 for p in finished)
    assert list(temp_dir.iterdir()) == []


def _require(Gst, names):
    for name in names:
        if Gst.ElementFactory.find(name) is None:
            pytest.skip(f"{name} plugin unavailable")


def _element_names(pipeline):
    return sorted(element.get_name() for element in pipeline.iterate_elements())


def _rtp_pad(Gst, encoding, media="video", name="recv_rtp_src_0_1_96"):
    caps = Gst.Caps.from_string(
        f"application/x-rtp,media={media},encoding-name={encoding},clock-rate=90000,payload=96"
    )
    template = Gst.PadTemplate.new("src", Gst.PadDirection.SRC, Gst.PadPresence.ALWAYS, caps)
    return Gst.Pad.new_from_template(template, name)


def _drain(context):
    while context.iteration(False):
        pass


class FakeRelayClient:
    def __init__(self, connect_ok=True, create_ok=True):
        self.connect_ok = connect_ok
        self.create_ok = create_ok
        self.created = []
        self.keepalive_started = False
        self.disconnected = False

    def connect(self):
        return self.connect_ok

    def create_stream(self, camera_id, port, codec="h264", stream_id=None):
        self.created.append((camera_id, port, codec, stream_id))
        return self.create_ok

    def keep_alive(self):
        self.keepalive_started = True

    def disconnect(self):
        self.disconnected = True


@pytest.fixture
def relay_camera(camera):
    return replace(camera, codec="h264", hardware_priority="software",
                   ip_address="127.0.0.1", port=1)


def _orchestrator(relay_camera, client):
    from gi.repository import GLib
    from nvr_agent.pipeline.orchestrator import RelayOrchestrator

    created = []

    def factory():
        created.append(client)
        return client

    orchestrator = RelayOrchestrator(relay_camera, client_factory=factory)
    orchestrator.context = GLib.MainContext.new()
    orchestrator.build()
    return orchestrator, created


def test_codec_chain_rebuild_keeps_element_set(Gst, relay_camera):
    from nvr_agent.pipeline.hardware import BACKENDS
    from nvr_agent.pipeline.relay_builder import RelayPipelineBuilder
    from nvr_agent.state.pipeline_state import Codec

    _require(Gst, RELAY_ELEMENTS)
    builder = RelayPipelineBuilder(relay_camera, BACKENDS["software"], 5004)
    pipeline = builder.create_pipeline(Codec.H264)
    before = _element_names(pipeline)

    for codec in (Codec.H264, Codec.H265, Codec.H264):
        builder.teardown_codec_chain()
        assert builder.depay_sink_pad() is None
        builder.build_codec_chain(codec)
        assert _element_names(pipeline) == before

    assert builder.elements["depay"].get_factory().get_name() == "rtph264depay"
    pipeline.set_state(Gst.State.NULL)


def test_codec_mismatch_rebuilds_once(Gst, relay_camera):
    from nvr_agent.state.pipeline_state import Codec

    _require(Gst, RELAY_ELEMENTS)
    orchestrator, created = _orchestrator(relay_camera, FakeRelayClient())
    before = _element_names(orchestrator.pipeline)
    source = orchestrator.builder.elements["source"]

    orchestrator._on_pad_added(source, _rtp_pad(Gst, "H265", name="recv_rtp_src_0_1_96"))
    orchestrator._on_pad_added(source, _rtp_pad(Gst, "H265", name="recv_rtp_src_0_2_96"))
    assert orchestrator.state.needs_codec_switch
    assert orchestrator.state.rebuild_pending

    _drain(orchestrator.context)

    state = orchestrator.state
    assert state.rebuild_count == 1
    assert state.assumed_codec == Codec.H265
    assert not state.needs_codec_switch
    assert not state.rebuild_pending
    assert _element_names(orchestrator.pipeline) == before
    assert orchestrator.builder.elements["depay"].get_factory().get_name() == "rtph265depay"
    assert created == []

    orchestrator._rebuild_codec_chain()
    assert state.rebuild_count == 1
    orchestrator._cleanup()


def test_pad_during_teardown_is_ignored(Gst, relay_camera):
    _require(Gst, RELAY_ELEMENTS)
    orchestrator, created = _orchestrator(relay_camera, FakeRelayClient())
    orchestrator.builder.teardown_codec_chain()

    orchestrator._on_pad_added(None, _rtp_pad(Gst, "PCMA", media="audio"))
    orchestrator._on_pad_added(None, _rtp_pad(Gst, "H264"))

    _drain(orchestrator.context)
    assert created == []
    assert not orchestrator.state.needs_codec_switch
    orchestrator._cleanup()


def test_stream_registered_after_link(Gst, relay_camera):
    _require(Gst, RELAY_ELEMENTS)
    client = FakeRelayClient()
    orchestrator, created = _orchestrator(relay_camera, client)
    _drain(orchestrator.context)
    assert created == []

    orchestrator._on_pad_added(orchestrator.builder.elements["source"], _rtp_pad(Gst, "H264"))
    assert orchestrator.builder.depay_sink_pad().is_linked()
    _drain(orchestrator.context)

    assert created == [client]
    assert client.created == [(relay_camera.camera_id, orchestrator.state.relay_port, "h264",
                               relay_camera.stream_id)]
    assert client.keepalive_started
    assert not orchestrator.fatal

    orchestrator._cleanup()
    assert client.disconnected


def test_failed_stream_registration_keeps_pipeline(Gst, relay_camera):
    _require(Gst, RELAY_ELEMENTS)
    client = FakeRelayClient(create_ok=False)
    orchestrator, created = _orchestrator(relay_camera, client)

    orchestrator._on_pad_added(orchestrator.builder.elements["source"], _rtp_pad(Gst, "H264"))
    _drain(orchestrator.context)

    assert client.created
    assert not client.keepalive_started
    assert not orchestrator.fatal
    assert not orchestrator.state.quiesced
    orchestrator._cleanup()


def test_unreachable_relay_is_fatal(Gst, relay_camera):
    from nvr_agent.state.pipeline_state import RunState

    _require(Gst, RELAY_ELEMENTS)
    client = FakeRelayClient(connect_ok=False)
    orchestrator, created = _orchestrator(relay_camera, client)

    orchestrator._on_pad_added(orchestrator.builder.elements["source"], _rtp_pad(Gst, "H264"))
    _drain(orchestrator.context)

    assert created == [client]
    assert client.created == []
    assert orchestrator.fatal
    assert orchestrator.state.quiesced
    assert orchestrator.state.run_state == RunState.READY
    assert orchestrator.pipeline.get_state(0)[1] == Gst.State.READY
    orchestrator._cleanup()


def test_rtsp_pipeline_is_flagged_live(Gst, relay_camera):
    _require(Gst, RELAY_ELEMENTS)
    orchestrator, created = _orchestrator(relay_camera, FakeRelayClient())
    assert not orchestrator.state.is_live

    try:
        assert orchestrator._start_playing()
        assert orchestrator.state.is_live
    finally:
        orchestrator.pipeline.set_state(Gst.State.NULL)


def _recorder_with_test_source(Gst, camera):
    """SegmentRecorder whose pipeline comes from a live test source instead of rtspsrc."""
    from nvr_agent.recording.segment_recorder import SegmentRecorder

    recorder = SegmentRecorder(replace(camera, snapshot_url=""))

    def build():
        recorder.pipeline = Gst.parse_launch(
            "videotestsrc is-live=true ! video/x-raw,width=160,height=120,framerate=10/1 "
            "! x264enc key-int-max=5 tune=zerolatency ! h264parse name=parse "
            "! splitmuxsink name=split muxer-factory=mp4mux async-finalize=false "
            "max-size-time=60000000000"
        )
        recorder.splitmuxsink = recorder.pipeline.get_by_name("split")
        recorder.splitmuxsink.connect("format-location", recorder._on_format_location)
        recorder._attach_parser(recorder.pipeline.get_by_name("parse"))

    recorder._build_pipeline = build
    return recorder


def _record_until(recorder, after_ms, action):
    """Run one recording attempt, calling `action` on the loop after `after_ms`."""
    from gi.repository import GLib

    recorder.context = GLib.MainContext.new()
    recorder.context.push_thread_default()
    try:
        recorder.loop = GLib.MainLoop.new(recorder.context, False)

        def trigger(*args):
            action()
            return GLib.SOURCE_REMOVE

        timer = GLib.timeout_source_new(after_ms)
        timer.set_callback(trigger)
        timer.attach(recorder.context)
        guard = GLib.timeout_source_new_seconds(30)
        guard.set_callback(lambda *args: recorder._quit())
        guard.attach(recorder.context)

        recorder.relocator.start()
        streamed = recorder._run_once()
        guard.destroy()
    finally:
        recorder.context.pop_thread_default()
    assert recorder.relocator.stop(timeout=10)
    return streamed


def _assert_finalized(camera, recorder, expected):
    videos = Path(camera.output_path) / "videos" / camera.camera_id
    finished = sorted(videos.glob("*.mp4"))
    assert recorder.state.relocated_count == expected
    assert len(finished) == expected
    assert list((videos / ".recording").iterdir()) == []
    return finished


def test_recorder_stop_finalizes_open_segment(Gst, camera):
    _require(Gst, RECORDER_ELEMENTS)
    recorder = _recorder_with_test_source(Gst, camera)

    assert _record_until(recorder, 1500, recorder.stop)

    finished = _assert_finalized(camera, recorder, 1)
    assert b"moov" in finished[0].read_bytes()
    assert recorder.state.segments_opened == 1


def test_recorder_error_finalizes_and_recovers_leftovers(Gst, camera):
    from nvr_agent.pipeline.bus_events import BusEvent, EventKind
    from nvr_agent.recording.segments import temporary_directory

    _require(Gst, RECORDER_ELEMENTS)
    recorder = _recorder_with_test_source(Gst, camera)
    leftover = temporary_directory(camera.output_path, camera.camera_id) / "camera-7-2000-01-01_00-00-00.mp4"
    leftover.write_bytes(b"unfinished")

    def camera_dropped():
        recorder._on_event(BusEvent(EventKind.ERROR, "source", "Could not read from resource.",
                                    transient=True))

    assert _record_until(recorder, 1500, camera_dropped)

    finished = _assert_finalized(camera, recorder, 2)
    recovered = [path for path in finished if path.name == leftover.name]
    assert recovered and recovered[0].read_bytes() == b"unfinished"
    written = [path for path in finished if path.name != leftover.name]
    assert b"moov" in written[0].read_bytes()
    assert not recorder._stop_event.is_set()
