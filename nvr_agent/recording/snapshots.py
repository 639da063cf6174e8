"""
Snapshot capture - scheduling, HTTP fetch and JPEG validation.

Scheduling follows media time, not wall-clock time: the first snapshot is
taken on the first buffer, the next one after `snapshot_every` seconds of
media have passed through the recording branch.

Fetches run on a single background worker so the streaming thread never
blocks on HTTP.
"""
import logging
import queue
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

import requests
from requests.auth import HTTPDigestAuth

from nvr_agent import config
from nvr_agent.utils.camera_loader import CameraConfig
from nvr_agent.utils.utils import build_snapshot_url, snapshot_path

logger = logging.getLogger(__name__)

JPEG_MAGIC = b"\xff\xd8\xff"
NS_PER_SECOND = 1_000_000_000


def is_valid_jpeg(data: bytes) -> bool:
    """A snapshot is valid iff it starts with the JPEG SOI marker."""
    return data[:3] == JPEG_MAGIC


def validate_snapshot(path: Path) -> bool:
    """Keep the file if it is a JPEG, delete it otherwise."""
    path = Path(path)
    try:
        with open(path, 'rb') as f:
            head = f.read(3)
    except OSError as exc:
        logger.error(f"Cannot read snapshot {path}: {exc}")
        return False

    if is_valid_jpeg(head):
        return True

    logger.warning(f"Invalid snapshot (header {head.hex() or 'empty'}), deleting {path}")
    path.unlink()
    return False


class SnapshotScheduler:
    """Decides, buffer by buffer, when a snapshot is due."""

    def __init__(self, interval_s: int):
        self.interval_ns = int(interval_s) * NS_PER_SECOND
        self.media_since_snapshot_ns = 0
        self.started = False

    def on_buffer(self, duration_ns: Optional[int]) -> bool:
        """
        Args:
            duration_ns: Media duration of the buffer (None if unknown)

        Returns:
            True if a snapshot should be taken now
        """
        if not self.started:
            self.started = True
            self.media_since_snapshot_ns = 0
            return True

        if duration_ns:
            self.media_since_snapshot_ns += duration_ns

        if self.media_since_snapshot_ns >= self.interval_ns:
            self.media_since_snapshot_ns = 0
            return True
        return False


class SnapshotFetcher:
    """HTTP GET with digest auth into <root>/snapshots/<camera_id>/."""

    def __init__(self, camera: CameraConfig, session: Optional[requests.Session] = None,
                 timeout_s: float = config.SNAPSHOT_TIMEOUT_S):
        self.camera = camera
        self.url = build_snapshot_url(camera.ip_address, camera.snapshot_url)
        self.timeout_s = timeout_s
        self.session = session or requests.Session()
        if camera.rtsp_username:
            self.session.auth = HTTPDigestAuth(camera.rtsp_username, camera.rtsp_password)
        self.attempts = 0
        self.kept = 0

    def fetch(self, now: Optional[datetime] = None) -> Optional[Path]:
        """
        Fetch one snapshot.

        Returns:
            Path of the kept snapshot, or None if the fetch or validation failed
        """
        cam = self.camera.camera_id
        self.attempts += 1
        path = snapshot_path(self.camera.output_path, cam, now)

        try:
            response = self.session.get(self.url, timeout=self.timeout_s)
            response.raise_for_status()
        except requests.exceptions.RequestException as exc:
            logger.error(f"[{cam}] snapshot request failed: {exc}")
            return None

        with open(path, 'wb') as f:
            f.write(response.content)

        if not validate_snapshot(path):
            return None

        self.kept += 1
        logger.info(f"[{cam}] snapshot saved: {path.name}")
        return path

    def close(self):
        self.session.close()


class SnapshotWorker:
    """Single background thread draining snapshot requests."""

    _STOP = object()

    def __init__(self, fetcher: SnapshotFetcher):
        self.fetcher = fetcher
        self._requests: "queue.Queue" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._pending = threading.Event()

    def start(self):
        self._thread = threading.Thread(
            target=self._run,
            name=f"snapshots-{self.fetcher.camera.camera_id}",
            daemon=True,
        )
        self._thread.start()

    def request(self) -> bool:
        """Queue a snapshot unless one is already waiting. Returns True if queued."""
        if self._pending.is_set():
            logger.debug(f"[{self.fetcher.camera.camera_id}] snapshot already pending, skipping")
            return False
        self._pending.set()
        self._requests.put(datetime.now())
        return True

    def _run(self):
        while True:
            item = self._requests.get()
            if item is self._STOP:
                break
            self._pending.clear()
            try:
                self.fetcher.fetch(item)
            except OSError as exc:
                logger.error(f"[{self.fetcher.camera.camera_id}] cannot write snapshot: {exc}")

    def stop(self, timeout: float = config.SNAPSHOT_TIMEOUT_S):
        """Finish the current fetch (bounded) and close the HTTP session."""
        self._requests.put(self._STOP)
        if self._thread:
            self._thread.join(timeout=timeout)
        self.fetcher.close()
