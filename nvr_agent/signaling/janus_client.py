"""
Relay signaling client - Janus streaming plugin over a Unix socket.

Registers the camera's local RTP feed as a Janus streaming mountpoint so
WebRTC viewers can attach to it. Requests and responses are plain JSON
objects without framing; see JsonResponseReader for how responses are cut.

Nothing in this module raises on protocol problems. Failed exchanges come
back as a failure sentinel (is_failure() is True) and are logged here.
"""
import json
import logging
import os
import socket
import threading
import time
from typing import Callable, Dict, List, Optional

from nvr_agent import config
from nvr_agent.signaling.json_reader import JsonResponseReader
from nvr_agent.utils.camera_loader import stream_number
from nvr_agent.utils.utils import generate_transaction_id

logger = logging.getLogger(__name__)

FAILURE = "nvr-failure"
RTP_PAYLOAD_TYPE = 96
H264_FMTP = "profile-level-id=42e01f;packetization-mode=1"


def failure(reason: str) -> Dict:
    """Failure sentinel returned in place of a relay response."""
    return {"janus": FAILURE, "reason": reason}


def is_failure(response: Optional[Dict]) -> bool:
    return not response or response.get("janus") == FAILURE


def build_media(camera_id: str, stream_id: int, port: int, codec: str) -> List[Dict]:
    """
    Media list for a streaming-plugin "create" request (one video line).

    Args:
        camera_id: Camera id, used in the media id
        stream_id: Numeric mountpoint id
        port: Local UDP port the pipeline sends RTP to
        codec: "h264" or "h265"
    """
    codec = codec.lower()
    media = {
        "mid": f"{camera_id}_{stream_id}_{os.getpid()}",
        "type": "video",
        "codec": codec,
        "is_private": False,
        "port": port,
        "pt": RTP_PAYLOAD_TYPE,
        "rtpmap": f"{codec.upper()}/90000",
    }
    if codec == "h264":
        media["fmtp"] = H264_FMTP
    return [media]


class JanusClient:
    """
    Control-plane client for one relay connection.

    Session flow:
        connect() -> get_session_id() [create] -> get_plugin_handle_id() [attach]
        -> create_stream() -> keep_alive() ... disconnect()

    Session and handle ids are created on first need and cached for the
    lifetime of the socket.
    """

    def __init__(self, socket_path: str = config.JANUS_SOCKET,
                 timeout_s: float = config.SIGNALING_TIMEOUT_S,
                 keepalive_interval_s: float = config.KEEPALIVE_INTERVAL_S,
                 plugin: str = config.JANUS_PLUGIN,
                 socket_factory: Optional[Callable[[], object]] = None,
                 recv_size: int = 65536):
        """
        Args:
            socket_path: Relay Unix socket path
            timeout_s: Upper bound for reading one response
            keepalive_interval_s: Seconds between keepalives once streaming
            plugin: Plugin package name to attach to
            socket_factory: Returns an unconnected socket-like object
                            (defaults to AF_UNIX / SOCK_SEQPACKET)
            recv_size: Max bytes per recv() call
        """
        self.socket_path = socket_path
        self.timeout_s = timeout_s
        self.keepalive_interval_s = keepalive_interval_s
        self.plugin = plugin
        self.recv_size = recv_size
        self._socket_factory = socket_factory or (
            lambda: socket.socket(socket.AF_UNIX, socket.SOCK_SEQPACKET)
        )

        self._sock = None
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._keepalive_thread: Optional[threading.Thread] = None

        self.session_id: Optional[int] = None
        self.handle_id: Optional[int] = None
        self.stream_id: Optional[int] = None
        self.connected = False
        self.streaming = False
        self.keepalives_sent = 0

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect(self) -> bool:
        """Open the relay socket. Safe to call repeatedly."""
        if self.connected:
            return True

        logger.info(f"Connecting to relay with socket '{self.socket_path}'")
        sock = None
        try:
            sock = self._socket_factory()
            sock.connect(self.socket_path)
        except OSError as exc:
            logger.error(f"Could not connect to relay socket '{self.socket_path}': {exc}")
            if sock is not None:
                sock.close()
            return False

        self._sock = sock
        self._stop_event.clear()
        self.connected = True
        return True

    def disconnect(self):
        """
        Destroy the registered stream (best effort), stop the keepalive and
        close the socket.
        """
        if self.connected and self.streaming and self.stream_id is not None:
            if not self.destroy_stream(self.stream_id):
                logger.warning(f"Could not destroy stream '{self.stream_id}' on disconnect")

        self.connected = False
        self.streaming = False
        self._stop_event.set()

        with self._lock:
            sock, self._sock = self._sock, None
        if sock is not None:
            try:
                sock.close()
            except OSError as exc:
                logger.warning(f"Error closing relay socket: {exc}")

        thread = self._keepalive_thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=self.timeout_s + 1)
        self._keepalive_thread = None

        self.session_id = None
        self.handle_id = None
        logger.info("Disconnected from relay")

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    def get_session_id(self) -> Optional[int]:
        """Create (once) and return the relay session id."""
        if self.session_id is not None:
            return self.session_id

        request = {"janus": "create", "transaction": generate_transaction_id()}
        session_id = self._data_id(self._perform_request(request))
        if session_id is None:
            logger.error("Could not create relay session")
            return None

        self.session_id = session_id
        logger.info(f"Relay session {session_id} created")
        return self.session_id

    def get_plugin_handle_id(self, session_id: int) -> Optional[int]:
        """Attach (once) to the streaming plugin and return the handle id."""
        if self.handle_id is not None:
            return self.handle_id

        request = {
            "janus": "attach",
            "session_id": session_id,
            "plugin": self.plugin,
            "transaction": generate_transaction_id(),
        }
        handle_id = self._data_id(self._perform_request(request))
        if handle_id is None:
            logger.error(f"Could not attach to plugin '{self.plugin}'")
            return None

        self.handle_id = handle_id
        logger.info(f"Attached to '{self.plugin}' with handle {handle_id}")
        return self.handle_id

    # ------------------------------------------------------------------
    # Stream management
    # ------------------------------------------------------------------

    def get_stream_list(self) -> List[Dict]:
        """Mountpoints currently registered on the relay (empty on failure)."""
        response = self._send_message({"request": "list"})
        if is_failure(response):
            return []
        streams = self._plugin_data(response).get("list", [])
        return streams if isinstance(streams, list) else []

    def find_stream_id(self, description: str) -> Optional[int]:
        """Id of the mountpoint whose description matches, or None."""
        for stream in self.get_stream_list():
            if stream.get("description") == description:
                return stream.get("id")
        return None

    def destroy_stream(self, stream_id: int) -> bool:
        """
        Destroy a mountpoint.

        Only a response confirming the same id with status "destroyed" counts
        as success.
        """
        response = self._send_message({"request": "destroy", "id": stream_id})
        data = self._plugin_data(response)

        if data.get("destroyed") == stream_id and data.get("streaming") == "destroyed":
            logger.info(f"Destroyed stream '{stream_id}'")
            if self.stream_id == stream_id:
                self.streaming = False
            return True

        logger.error(f"Could not destroy stream with ID '{stream_id}'")
        logger.error(f"Destroy response: {json.dumps(response)}")
        return False

    def create_stream(self, camera_id: str, port: int, codec: str = "h264",
                      stream_id: Optional[int] = None) -> bool:
        """
        Register the camera's RTP feed as a mountpoint.

        An existing mountpoint with the same id is destroyed first, so the
        latest registration always wins.

        Args:
            camera_id: Camera id, used as mountpoint name and description
            port: Local UDP port receiving the RTP feed
            codec: Codec of the RTP feed
            stream_id: Mountpoint id (defaults to the camera id's number)

        Returns:
            True if the relay confirmed the new mountpoint
        """
        if not self.connected:
            logger.warning("Cannot create stream: not connected to relay")
            return False

        if stream_id is None:
            stream_id = stream_number(camera_id)

        for stream in self.get_stream_list():
            if stream.get("id") == stream_id:
                logger.warning(f"Destroying existing stream with ID '{stream_id}'")
                self.destroy_stream(stream_id)
                break

        logger.info(f"Creating relay stream '{camera_id}' (id={stream_id}, port={port}, codec={codec})")

        body = {
            "request": "create",
            "type": "rtp",
            "name": camera_id,
            "description": camera_id,
            "id": stream_id,
            "media": build_media(camera_id, stream_id, port, codec),
        }
        response = self._send_message(body)
        data = self._plugin_data(response)

        if is_failure(response):
            logger.error(f"Could not create stream: {response.get('reason')}")
            self.streaming = False
        elif data.get("streaming") == "created" or "created" in data:
            stream = data.get("stream") or {}
            self.stream_id = stream.get("id", stream_id)
            self.streaming = True
            logger.info(f"Stream '{camera_id}' created with ID '{self.stream_id}'")
        else:
            logger.warning(f"Unexpected create response: {json.dumps(response)}")
            self.streaming = False

        return self.streaming

    # ------------------------------------------------------------------
    # Keepalive
    # ------------------------------------------------------------------

    def keep_alive(self):
        """Start the background keepalive task (once per connection)."""
        if self._keepalive_thread and self._keepalive_thread.is_alive():
            return
        if not self.connected:
            logger.warning("Keepalive not started: not connected")
            return

        self._keepalive_thread = threading.Thread(
            target=self._keepalive_loop,
            name=f"relay-keepalive-{self.stream_id}",
            daemon=True,
        )
        self._keepalive_thread.start()

    def _keepalive_loop(self):
        logger.info(f"Keepalive started ({self.keepalive_interval_s:.0f}s interval)")
        while self.connected:
            if self._stop_event.wait(timeout=self.keepalive_interval_s):
                break
            if not self.connected:
                break

            request = {
                "janus": "keepalive",
                "session_id": self.session_id,
                "handle_id": self.handle_id,
                "transaction": generate_transaction_id(),
            }
            response = self._perform_request(request)
            if is_failure(response) or response.get("janus") not in ("ack", "success"):
                logger.error(f"Keepalive not acknowledged, stopping: {json.dumps(response)}")
                break
            self.keepalives_sent += 1
        logger.info("Keepalive stopped")

    # ------------------------------------------------------------------
    # Wire helpers
    # ------------------------------------------------------------------

    def _send_message(self, body: Dict) -> Dict:
        """Wrap a plugin body in a "message" envelope and send it."""
        session_id = self.get_session_id()
        if session_id is None:
            return failure("no relay session")
        handle_id = self.get_plugin_handle_id(session_id)
        if handle_id is None:
            return failure("no plugin handle")

        request = {
            "janus": "message",
            "session_id": session_id,
            "handle_id": handle_id,
            "transaction": generate_transaction_id(),
            "body": body,
        }
        return self._perform_request(request)

    def _perform_request(self, request: Dict) -> Dict:
        """Send one request and read its response. One exchange at a time."""
        payload = json.dumps(request)
        with self._lock:
            sock = self._sock
            if not self.connected or sock is None:
                return failure("not connected")

            logger.debug(f"-> {payload}")
            try:
                sock.send(payload.encode('utf-8'))
            except OSError as exc:
                logger.error(f"Could not send request {request.get('transaction')}: {exc}")
                return failure("send failed")
            text = self._read_response(sock)

        return self._parse_response(text, request)

    def _read_response(self, sock) -> str:
        """
        Read until a balanced JSON object arrives or the deadline passes.
        On timeout the partial buffer is returned as-is.
        """
        reader = JsonResponseReader()
        deadline = time.monotonic() + self.timeout_s

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(f"Response incomplete after {self.timeout_s}s, using partial buffer")
                break
            try:
                sock.settimeout(remaining)
                chunk = sock.recv(self.recv_size)
            except socket.timeout:
                logger.warning(f"Response incomplete after {self.timeout_s}s, using partial buffer")
                break
            except OSError as exc:
                logger.error(f"Error reading relay response: {exc}")
                break
            if not chunk:
                break
            if reader.feed(chunk):
                break

        return reader.text()

    @staticmethod
    def _parse_response(text: str, request: Dict) -> Dict:
        transaction = request.get("transaction")
        if not text:
            logger.error(f"Empty response for transaction {transaction}")
            return failure("empty response")

        logger.debug(f"<- {text}")
        try:
            response = json.loads(text)
        except json.JSONDecodeError as exc:
            logger.error(f"Malformed response for transaction {transaction}: {exc}")
            return failure("malformed response")

        if not isinstance(response, dict):
            logger.error(f"Unexpected response type for transaction {transaction}: {text}")
            return failure("malformed response")

        if response.get("janus") == "error" or "error" in response:
            error = response.get("error") or {}
            reason = error.get("reason", error) if isinstance(error, dict) else error
            logger.error(f"Relay error for transaction {transaction}: {reason}")
            return failure(str(reason))

        data = (response.get("plugindata") or {}).get("data")
        if isinstance(data, dict) and "error" in data:
            logger.error(f"Plugin error for transaction {transaction}: {data.get('error')}")
            return failure(str(data.get("error")))

        return response

    @staticmethod
    def _data_id(response: Dict) -> Optional[int]:
        if is_failure(response):
            return None
        data = response.get("data") or {}
        return data.get("id")

    @staticmethod
    def _plugin_data(response: Dict) -> Dict:
        if is_failure(response):
            return {}
        data = (response.get("plugindata") or {}).get("data")
        return data if isinstance(data, dict) else {}
