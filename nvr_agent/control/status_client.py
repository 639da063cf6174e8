"""
Service controller client.

The controller (a separate process bridging to systemd) listens on a
SOCK_STREAM Unix socket and expects a fixed 100-byte request:

    size_t len(command) | command | size_t len(camera_id) | camera_id | zero padding

size_t uses the host's native size and byte order. The reply is a short text,
normally {"status": "<unit state>"}.
"""
import json
import logging
import re
import socket
import struct
from pathlib import Path
from typing import Dict, Optional

from nvr_agent import config

logger = logging.getLogger(__name__)

COMMANDS = ('start', 'stop', 'restart', 'status')
REQUEST_SIZE = 100
SIZE_FIELD = struct.Struct("@N")


class StatusClientError(RuntimeError):
    """The controller could not be reached or the request is malformed."""


def encode_request(command: str, camera_id: str) -> bytes:
    """
    Pack a (command, camera_id) request into the fixed-size buffer.

    Raises:
        ValueError: Unknown command or request longer than the buffer
    """
    if command not in COMMANDS:
        raise ValueError(f"Unknown command '{command}' (expected one of {', '.join(COMMANDS)})")

    payload = b""
    for text in (command, camera_id):
        data = text.encode('utf-8')
        payload += SIZE_FIELD.pack(len(data)) + data

    if len(payload) > REQUEST_SIZE:
        raise ValueError(f"Request for '{camera_id}' does not fit in {REQUEST_SIZE} bytes")
    return payload.ljust(REQUEST_SIZE, b"\0")


def parse_response(text: str) -> Dict:
    """{"status": "active"} -> dict; anything else is returned as {"error": text}."""
    text = text.strip("\0").strip()
    try:
        response = json.loads(text)
    except json.JSONDecodeError:
        return {"error": text}
    return response if isinstance(response, dict) else {"error": text}


def camera_id_from_path(path: str) -> Optional[str]:
    """'/nvr/cameras/camera-3.json' -> 'camera-3'"""
    match = re.search(r'(camera-[^/]*?)\.json$', str(path))
    return match.group(1) if match else None


def send_command(command: str, camera_id: str, socket_path: str = config.STATUS_SOCKET,
                 timeout_s: float = 5.0) -> Dict:
    """
    Send one request to the controller and return the parsed reply.

    Raises:
        StatusClientError: If the controller is unreachable or does not answer
    """
    request = encode_request(command, camera_id)
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout_s)
    try:
        sock.connect(socket_path)
        sock.sendall(request)
        reply = sock.recv(REQUEST_SIZE - 1)
    except OSError as exc:
        raise StatusClientError(f"Controller at '{socket_path}' unavailable: {exc}")
    finally:
        sock.close()

    if not reply:
        raise StatusClientError("Controller closed the connection without replying")

    logger.debug(f"{command} {camera_id} -> {reply!r}")
    return parse_response(reply.decode('utf-8', errors='replace'))
