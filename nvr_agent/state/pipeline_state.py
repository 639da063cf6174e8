"""
Pipeline State - per-camera context for the live relay pipeline.

One instance per camera, created when the relay pipeline is built and
passed explicitly to every callback that needs it.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)


class Codec(str, Enum):
    H264 = "h264"
    H265 = "h265"

    @classmethod
    def from_name(cls, name: str) -> Optional["Codec"]:
        """Map a codec hint or RTP encoding-name ("H265", "hevc", ...) to a Codec."""
        if not name:
            return None
        key = name.strip().lower()
        if key in ("h264", "avc"):
            return cls.H264
        if key in ("h265", "hevc"):
            return cls.H265
        return None

    def opposite(self) -> "Codec":
        return Codec.H264 if self is Codec.H265 else Codec.H265


class RunState(str, Enum):
    NULL = "null"
    READY = "ready"
    PAUSED = "paused"
    PLAYING = "playing"


@dataclass
class PipelineState:
    """Mutable relay pipeline state for one camera."""
    camera_id: str
    assumed_codec: Codec
    backend: str = "software"
    needs_codec_switch: bool = False
    rebuild_pending: bool = False
    rebuild_count: int = 0
    error_count: int = 0
    relay_port: int = 0
    is_live: bool = False  # set from the PLAYING transition (NO_PREROLL)
    run_state: RunState = RunState.NULL
    quiesced: bool = False
    signaling: Optional[Any] = None

    def request_codec_switch(self) -> bool:
        """
        Flag a codec switch. Returns True only for the first request while
        no rebuild is pending.
        """
        self.needs_codec_switch = True
        if self.rebuild_pending:
            return False
        self.rebuild_pending = True
        return True

    def complete_codec_switch(self) -> Codec:
        """Flip the assumed codec and clear the switch flags."""
        previous = self.assumed_codec
        self.assumed_codec = previous.opposite()
        self.needs_codec_switch = False
        self.rebuild_pending = False
        self.rebuild_count += 1
        logger.info(
            f"[{self.camera_id}] codec switch {previous.value} -> {self.assumed_codec.value} "
            f"(rebuild #{self.rebuild_count})"
        )
        return self.assumed_codec
