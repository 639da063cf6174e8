from nvr_agent.pipeline.pad_linker import LinkResult, codec_from_caps, link_pad
from nvr_agent.state.pipeline_state import Codec, PipelineState

RTP = "application/x-rtp"


def _state(codec=Codec.H264):
    return PipelineState(camera_id="camera-1", assumed_codec=codec)


def test_matching_codec_links():
    state = _state(Codec.H264)
    assert link_pad(state, "recv_rtp_src_0", RTP, "H264", False) == LinkResult.LINK
    assert state.needs_codec_switch is False


def test_mismatch_requests_switch():
    state = _state(Codec.H265)
    assert link_pad(state, "recv_rtp_src_0", RTP, "H264", False) == LinkResult.SWITCH_CODEC
    assert state.needs_codec_switch is True


def test_non_rtp_and_audio_pads_are_ignored():
    state = _state()
    assert link_pad(state, "p", "video/x-raw", "H264", False) == LinkResult.IGNORED
    assert link_pad(state, "p", RTP, "PCMA", False) == LinkResult.IGNORED
    assert link_pad(state, "p", RTP, "H264", False, media="audio") == LinkResult.IGNORED
    assert state.needs_codec_switch is False


def test_already_linked_sink_wins_over_mismatch():
    state = _state(Codec.H264)
    assert link_pad(state, "p", RTP, "H265", True) == LinkResult.ALREADY_LINKED
    assert state.needs_codec_switch is False


def test_codec_from_caps_aliases():
    assert codec_from_caps(RTP, "HEVC") == Codec.H265
    assert codec_from_caps(RTP, "h264") == Codec.H264
    assert codec_from_caps(RTP, None) is None
    assert codec_from_caps("", "H264") is None


def test_switch_is_requested_once_and_completes_once():
    state = _state(Codec.H265)
    link_pad(state, "p", RTP, "H264", False)

    assert state.request_codec_switch() is True
    assert state.request_codec_switch() is False

    assert state.complete_codec_switch() == Codec.H264
    assert state.needs_codec_switch is False
    assert state.rebuild_count == 1
    assert link_pad(state, "p", RTP, "H264", False) == LinkResult.LINK
