"""
NVR Utility Functions
Common helper functions used by the relay and recording pipelines
"""
import random
import socket
import string
from datetime import datetime
from pathlib import Path
from typing import Optional
from urllib.parse import quote

TRANSACTION_ALPHABET = string.digits + string.ascii_uppercase + string.ascii_lowercase
TRANSACTION_LENGTH = 15

# strftime pattern shared by segments and snapshots
TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"


class PortAllocationError(RuntimeError):
    """No free port left in the configured search range."""


def generate_transaction_id(length: int = TRANSACTION_LENGTH) -> str:
    """
    Generate a random alphanumeric transaction id.

    Only used to correlate requests and responses in the logs.
    """
    return ''.join(random.choice(TRANSACTION_ALPHABET) for _ in range(length))


def build_stream_url(ip_address: str, port: int, path: str,
                     username: str = "", password: str = "",
                     credentials_in_url: bool = True) -> str:
    """
    Build an RTSP URL for a camera stream path.

    Args:
        ip_address: Camera address
        port: RTSP port
        path: Stream path (e.g. "/Streaming/Channels/101")
        username: RTSP user
        password: RTSP password
        credentials_in_url: Embed user:password@ in the URL. Some camera models
                            reject embedded credentials and only accept them
                            through the RTSP auth handshake.

    Returns:
        Full rtsp:// URL
    """
    if path and not path.startswith('/'):
        path = '/' + path

    auth = ""
    if credentials_in_url and username:
        auth = f"{quote(username, safe='')}:{quote(password, safe='')}@"

    return f"rtsp://{auth}{ip_address}:{port}{path}"


def sanitize_stream_url(url: str, password: str) -> str:
    """Mask the password in a URL before logging it."""
    if not password:
        return url
    return url.replace(quote(password, safe=''), '****').replace(password, '****')


def build_snapshot_url(ip_address: str, path: str) -> str:
    """HTTP URL for the camera's still-image endpoint."""
    if path.startswith('http://') or path.startswith('https://'):
        return path
    if path and not path.startswith('/'):
        path = '/' + path
    return f"http://{ip_address}{path}"


def output_directory(output_root: Path, kind: str, camera_id: str) -> Path:
    """
    Per-camera output directory, created on demand.

    Args:
        output_root: Output root from the camera config
        kind: "videos", "snapshots" or "logs"
        camera_id: Camera id (e.g. "camera-1")
    """
    directory = Path(output_root) / kind / camera_id
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def snapshot_path(output_root: Path, camera_id: str, now: Optional[datetime] = None) -> Path:
    """<root>/snapshots/<camera_id>/<camera_id>-<timestamp>.jpeg"""
    timestamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
    return output_directory(output_root, 'snapshots', camera_id) / f"{camera_id}-{timestamp}.jpeg"


def log_path(output_root: Path, camera_id: str) -> Path:
    """<root>/logs/<camera_id>/log.txt"""
    return output_directory(output_root, 'logs', camera_id) / 'log.txt'


def find_free_port(start: int, end: int, host: str = '127.0.0.1') -> int:
    """
    Find a free local port in [start, end].

    Each candidate is bound, put in listen state and released again.

    Raises:
        PortAllocationError: If every port in the range is taken
    """
    for port in range(start, end + 1):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((host, port))
            sock.listen(1)
        except OSError:
            continue
        finally:
            sock.close()
        return port

    raise PortAllocationError(f"No free port in range {start}-{end}")
