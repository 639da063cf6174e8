"""
Camera Configuration Loader

Loads one camera-N.json file and turns it into an immutable CameraConfig.
The camera id is the file stem (``/nvr/cameras/camera-3.json`` -> ``camera-3``).

Example file:

    {
        "name": "Front Door",
        "ipAddress": "10.0.0.31",
        "port": 554,
        "rtspUsername": "admin",
        "rtspPassword": "secret",
        "streamURL": "/Streaming/Channels/101",
        "subStreamURL": "/Streaming/Channels/102",
        "snapshotURL": "/ISAPI/Streaming/channels/101/picture",
        "outputPath": "/nvr",
        "type": "h265",
        "rtpPort": 0,
        "splitEvery": 300,
        "snapshotEvery": 30,
        "hardwareEncoderPriority": "vaapi"
    }
"""

import json
import re
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from nvr_agent import config

SUPPORTED_CODECS = ('h264', 'h265')
HARDWARE_PRIORITIES = ('vaapi', 'nvidia', 'u30', 'software', 'none', 'auto')


@dataclass(frozen=True)
class CameraConfig:
    """Read-only description of one camera."""
    camera_id: str
    stream_id: int
    ip_address: str
    stream_url: str
    output_path: Path
    name: str = ""
    port: int = 554
    rtsp_username: str = ""
    rtsp_password: str = ""
    sub_stream_url: str = ""
    snapshot_url: str = ""
    codec: str = 'h264'
    rtp_port: int = 0
    split_every: int = config.DEFAULT_SPLIT_EVERY_S
    snapshot_every: int = config.DEFAULT_SNAPSHOT_EVERY_S
    hardware_priority: str = config.DEFAULT_HARDWARE_PRIORITY
    bitrate_kbps: int = config.DEFAULT_BITRATE_KBPS
    gop_length: int = config.DEFAULT_GOP_LENGTH
    encoder_threads: int = config.DEFAULT_ENCODER_THREADS
    credentials_in_url: bool = True

    @property
    def relay_stream_url(self) -> str:
        """Secondary stream used for the live relay (falls back to primary)."""
        return self.sub_stream_url or self.stream_url


def stream_number(camera_id: str) -> int:
    """
    Numeric relay mount id for a camera id.

    Uses the trailing digits (``camera-7`` -> 7). Ids without digits get a
    stable 31-bit checksum so repeated runs register the same mount.
    """
    match = re.search(r'(\d+)$', camera_id)
    if match:
        return int(match.group(1))
    return zlib.crc32(camera_id.encode('utf-8')) & 0x7FFFFFFF


def load_camera_config(config_path: str) -> CameraConfig:
    """
    Load a camera configuration from JSON file.

    Args:
        config_path: Path to camera-N.json

    Returns:
        CameraConfig

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If the file is not valid JSON or a required key is missing
    """
    config_file = Path(config_path)

    if not config_file.exists():
        raise FileNotFoundError(
            f"Camera configuration file not found: {config_path}\n"
            f"Expected location: {config_file.absolute()}"
        )

    try:
        with open(config_file, 'r') as f:
            raw = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in camera configuration file {config_path}: {e}")

    return camera_config_from_dict(config_file.stem, raw)


def camera_config_from_dict(camera_id: str, raw: dict) -> CameraConfig:
    """Build a CameraConfig from the parsed JSON object."""
    for key in ('ipAddress', 'streamURL'):
        if not raw.get(key):
            raise ValueError(f"Camera '{camera_id}': missing required key '{key}'")

    codec = str(raw.get('type', 'h264')).lower()
    if codec not in SUPPORTED_CODECS:
        raise ValueError(f"Camera '{camera_id}': unsupported type '{codec}' (expected h264 or h265)")

    priority = str(raw.get('hardwareEncoderPriority', config.DEFAULT_HARDWARE_PRIORITY)).lower()
    if priority not in HARDWARE_PRIORITIES:
        raise ValueError(
            f"Camera '{camera_id}': unknown hardwareEncoderPriority '{priority}' "
            f"(expected one of {', '.join(HARDWARE_PRIORITIES)})"
        )

    split_every = int(raw.get('splitEvery', config.DEFAULT_SPLIT_EVERY_S))
    snapshot_every = int(raw.get('snapshotEvery', config.DEFAULT_SNAPSHOT_EVERY_S))
    if split_every < 1 or snapshot_every < 1:
        raise ValueError(f"Camera '{camera_id}': splitEvery and snapshotEvery must be >= 1")

    stream_id: Optional[int] = raw.get('streamId')

    return CameraConfig(
        camera_id=camera_id,
        stream_id=int(stream_id) if stream_id is not None else stream_number(camera_id),
        name=raw.get('name', camera_id),
        ip_address=raw['ipAddress'],
        port=int(raw.get('port', 554)),
        rtsp_username=raw.get('rtspUsername', ''),
        rtsp_password=raw.get('rtspPassword', ''),
        stream_url=raw['streamURL'],
        sub_stream_url=raw.get('subStreamURL', ''),
        snapshot_url=raw.get('snapshotURL', ''),
        output_path=Path(raw.get('outputPath', str(config.OUTPUT_ROOT))),
        codec=codec,
        rtp_port=int(raw.get('rtpPort', 0)),
        split_every=split_every,
        snapshot_every=snapshot_every,
        hardware_priority=priority,
        bitrate_kbps=int(raw.get('bitrate', config.DEFAULT_BITRATE_KBPS)),
        gop_length=int(raw.get('gopLength', config.DEFAULT_GOP_LENGTH)),
        encoder_threads=int(raw.get('encoderThreads', config.DEFAULT_ENCODER_THREADS)),
        credentials_in_url=bool(raw.get('credentialsInUrl', True)),
    )
