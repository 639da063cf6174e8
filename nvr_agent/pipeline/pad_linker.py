"""
Pad negotiation - decides what to do with a dynamic rtspsrc pad.

Kept free of GStreamer objects: the orchestrator extracts the caps name and
encoding-name from the pad and acts on the returned LinkResult.
"""
import logging
from enum import Enum
from typing import Optional

from nvr_agent.state.pipeline_state import Codec, PipelineState

logger = logging.getLogger(__name__)


class LinkResult(str, Enum):
    IGNORED = "ignored"                # not an RTP video pad
    ALREADY_LINKED = "already_linked"
    SWITCH_CODEC = "switch_codec"      # advertised codec differs from the built chain
    LINK = "link"


def codec_from_caps(caps_name: str, encoding_name: Optional[str]) -> Optional[Codec]:
    """Codec advertised by an RTP pad, or None for anything else."""
    if not caps_name or not caps_name.startswith("application/x-rtp"):
        return None
    return Codec.from_name(encoding_name or "")


def link_pad(state: PipelineState, pad_name: str, caps_name: str,
             encoding_name: Optional[str], sink_linked: bool,
             media: str = "video") -> LinkResult:
    """
    Transition for one pad-added event.

    Args:
        state: Relay pipeline state (needs_codec_switch is set on mismatch)
        pad_name: Name of the new pad, for logging
        caps_name: Structure name of the pad caps
        encoding_name: RTP encoding-name field ("H264", "H265", ...)
        sink_linked: Whether the depayloader sink is already linked
        media: RTP media field ("video", "audio", ...)

    Returns:
        LinkResult telling the caller what to do
    """
    if media and media != "video":
        logger.debug(f"[{state.camera_id}] ignoring {media} pad {pad_name}")
        return LinkResult.IGNORED

    codec = codec_from_caps(caps_name, encoding_name)
    if codec is None:
        logger.info(f"[{state.camera_id}] ignoring pad {pad_name} ({caps_name}, {encoding_name})")
        return LinkResult.IGNORED

    if sink_linked:
        logger.debug(f"[{state.camera_id}] depayloader already linked, ignoring pad {pad_name}")
        return LinkResult.ALREADY_LINKED

    if codec != state.assumed_codec:
        logger.warning(
            f"[{state.camera_id}] pad {pad_name} carries {codec.value}, "
            f"pipeline built for {state.assumed_codec.value}"
        )
        state.needs_codec_switch = True
        return LinkResult.SWITCH_CODEC

    return LinkResult.LINK
