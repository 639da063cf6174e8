"""
Hardware backend selection for the relay transcode chain.

Backends are tried in a fixed order (u30 -> nvidia -> vaapi -> software),
with the configured priority probed first. Probing only queries the media
registry through an ElementProbe; no element is constructed here.

An ElementProbe is any object with:
    has_factory(name) -> bool
    plugin_version(name) -> Optional[str]   (version of the owning plugin)

The GStreamer-backed probe lives in relay_builder.GstRegistryProbe.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from nvr_agent.state.pipeline_state import Codec

logger = logging.getLogger(__name__)

BACKEND_ORDER = ("u30", "nvidia", "vaapi", "software")
FALLTHROUGH_PRIORITIES = ("auto", "none")


@dataclass(frozen=True)
class Backend:
    """
    Concrete decoder/encoder factories for one acceleration path.

    tuning values are applied to the encoder. Strings are enum nicks,
    everything else is set as a plain property.
    """
    name: str
    decoders: Dict[Codec, str]
    encoder: str
    min_version: Tuple[int, ...] = (1, 0, 0)
    bitrate_property: str = "bitrate"
    gop_property: Optional[str] = None
    threads_property: Optional[str] = None
    tuning: Dict[str, object] = field(default_factory=dict)

    @property
    def factories(self) -> Tuple[str, ...]:
        return tuple(self.decoders.values()) + (self.encoder,)

    def decoder_for(self, codec: Codec) -> str:
        return self.decoders[codec]

    def encoder_settings(self, bitrate_kbps: int, gop_length: int, threads: int) -> Dict[str, object]:
        """
        Encoder properties for this backend.

        Args:
            bitrate_kbps: Target bitrate in kbit/s
            gop_length: Keyframe interval in frames
            threads: Encoder threads (ignored by hardware encoders)

        Returns:
            Ordered dict of property name -> value
        """
        settings = dict(self.tuning)
        settings[self.bitrate_property] = bitrate_kbps
        if self.gop_property:
            settings[self.gop_property] = gop_length
        if self.threads_property:
            settings[self.threads_property] = threads
        return settings


BACKENDS: Dict[str, Backend] = {
    "u30": Backend(
        name="u30",
        decoders={Codec.H264: "vvas_xvcudec", Codec.H265: "vvas_xvcudec"},
        encoder="vvas_xvcuenc",
        min_version=(1, 0),
        bitrate_property="target-bitrate",
        gop_property="gop-length",
        tuning={"rc-mode": True, "control-rate": "low-latency", "b-frames": 0},
    ),
    "nvidia": Backend(
        name="nvidia",
        decoders={Codec.H264: "nvh264dec", Codec.H265: "nvh265dec"},
        encoder="nvh264enc",
        min_version=(1, 18, 0),
        gop_property="gop-size",
        tuning={"preset": "low-latency-hq", "rc-mode": "cbr", "zerolatency": True, "bframes": 0},
    ),
    "vaapi": Backend(
        name="vaapi",
        decoders={Codec.H264: "vaapih264dec", Codec.H265: "vaapih265dec"},
        encoder="vaapih264enc",
        min_version=(1, 16, 0),
        gop_property="keyframe-period",
        tuning={"rate-control": "vbr", "max-bframes": 1, "target-percentage": 55,
                "cabac": True, "cpb-length": 0},
    ),
    "software": Backend(
        name="software",
        decoders={Codec.H264: "avdec_h264", Codec.H265: "avdec_h265"},
        encoder="x264enc",
        min_version=(1, 0, 0),
        gop_property="key-int-max",
        threads_property="threads",
        tuning={"tune": "zerolatency", "speed-preset": "ultrafast", "ref": 1,
                "cabac": False, "rc-lookahead": 0},
    ),
}


def parse_version(text: Optional[str]) -> Tuple[int, ...]:
    """'1.20.3' -> (1, 20, 3). Non-numeric parts stop the parse."""
    parts = []
    for piece in (text or "").split("."):
        digits = ""
        for char in piece:
            if not char.isdigit():
                break
            digits += char
        if not digits:
            break
        parts.append(int(digits))
    return tuple(parts)


def backend_available(backend: Backend, probe) -> bool:
    """True if every factory exists and its plugin meets the minimum version."""
    for factory in backend.factories:
        if not probe.has_factory(factory):
            logger.debug(f"Backend {backend.name}: element '{factory}' not installed")
            return False
        version = parse_version(probe.plugin_version(factory))
        if version < backend.min_version:
            logger.debug(
                f"Backend {backend.name}: '{factory}' version {version} "
                f"below minimum {backend.min_version}"
            )
            return False
    return True


def probe_order(priority: str) -> Tuple[str, ...]:
    """Backends in the order they are probed for a configured priority."""
    priority = (priority or "auto").lower()
    if priority not in BACKENDS:
        return BACKEND_ORDER
    return (priority,) + tuple(name for name in BACKEND_ORDER if name != priority)


def select_backend(priority: str, probe) -> Backend:
    """
    Pick the first available backend.

    Args:
        priority: Configured hardware priority (backend name, "auto" or "none")
        probe: ElementProbe used to query the registry

    Returns:
        The selected Backend. Software is returned when nothing else is
        available, even if its own probe fails, so construction reports the
        missing element.
    """
    requested = (priority or "auto").lower()
    for name in probe_order(requested):
        backend = BACKENDS[name]
        if backend_available(backend, probe):
            if name != requested and requested not in FALLTHROUGH_PRIORITIES:
                logger.warning(f"Hardware backend '{requested}' unavailable, using '{name}'")
            logger.info(f"Selected hardware backend: {name} (decode {backend.decoders[Codec.H264]}/"
                        f"{backend.decoders[Codec.H265]}, encode {backend.encoder})")
            return backend

    logger.warning("No backend passed the registry probe, falling back to software")
    return BACKENDS["software"]
