"""Utility modules for the NVR agent."""
from .camera_loader import CameraConfig, load_camera_config, stream_number
from .utils import (
    PortAllocationError,
    build_snapshot_url,
    build_stream_url,
    find_free_port,
    generate_transaction_id,
    sanitize_stream_url,
)

__all__ = [
    'CameraConfig',
    'load_camera_config',
    'stream_number',
    'PortAllocationError',
    'build_snapshot_url',
    'build_stream_url',
    'find_free_port',
    'generate_transaction_id',
    'sanitize_stream_url',
]
