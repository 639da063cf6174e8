"""
Segment lifecycle - rotation events and relocation of finished segments.

splitmuxsink writes every segment into a hidden temporary directory:

    <root>/videos/<camera_id>/.recording/<camera_id>-<timestamp>.mp4

and posts "splitmuxsink-fragment-opened" / "splitmuxsink-fragment-closed"
element messages. Those are translated into SegmentEvents here; a closed
segment is then copied into <root>/videos/<camera_id>/ and the temporary
file removed.

Copies run on a SegmentRelocator thread. Files an interrupted attempt left
in the temporary directory are recovered before the next attempt starts.
"""
import logging
import queue
import shutil
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

from nvr_agent import config
from nvr_agent.state.segment_state import SegmentState
from nvr_agent.utils.utils import TIMESTAMP_FORMAT, output_directory

logger = logging.getLogger(__name__)

TEMP_DIR_NAME = ".recording"
FRAGMENT_OPENED = "splitmuxsink-fragment-opened"
FRAGMENT_CLOSED = "splitmuxsink-fragment-closed"


class SegmentEventKind(str, Enum):
    STARTED = "started"
    ENDED = "ended"


@dataclass(frozen=True)
class SegmentEvent:
    kind: SegmentEventKind
    path: Path
    running_time: Optional[int] = None  # ns


def segment_event_from_structure(name: str, location: Optional[str],
                                 running_time: Optional[int] = None) -> Optional[SegmentEvent]:
    """Map an element message structure to a SegmentEvent (None if unrelated)."""
    if not location:
        return None
    if name == FRAGMENT_OPENED:
        return SegmentEvent(SegmentEventKind.STARTED, Path(location), running_time)
    if name == FRAGMENT_CLOSED:
        return SegmentEvent(SegmentEventKind.ENDED, Path(location), running_time)
    return None


def segment_event_from_message(message) -> Optional[SegmentEvent]:
    """Translate a splitmuxsink element message, ignoring everything else."""
    structure = message.get_structure()
    if structure is None:
        return None
    name = structure.get_name()
    if name not in (FRAGMENT_OPENED, FRAGMENT_CLOSED):
        return None

    ok, running_time = structure.get_uint64("running-time")
    return segment_event_from_structure(
        name, structure.get_string("location"), running_time if ok else None
    )


def temporary_directory(output_root: Path, camera_id: str) -> Path:
    directory = output_directory(output_root, 'videos', camera_id) / TEMP_DIR_NAME
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def stranded_segments(output_root: Path, camera_id: str) -> List[Path]:
    """Temporary segments currently in the camera's .recording directory."""
    return sorted(temporary_directory(output_root, camera_id).glob("*.mp4"))


def temporary_location(output_root: Path, camera_id: str, now: Optional[datetime] = None) -> Path:
    """Temporary path for a segment opening now."""
    timestamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
    return temporary_directory(output_root, camera_id) / f"{camera_id}-{timestamp}.mp4"


def destination_for(temp_path: Path, output_root: Path, camera_id: str) -> Optional[Path]:
    """
    Final location for a temporary segment, or None if the path is not a
    temporary segment of this camera.
    """
    temp_path = Path(temp_path)
    expected_dir = Path(output_root) / 'videos' / camera_id / TEMP_DIR_NAME
    if temp_path.parent != expected_dir:
        return None
    return expected_dir.parent / temp_path.name


def relocate_segment(temp_path: Path, output_root: Path, camera_id: str) -> Optional[Path]:
    """
    Copy a finished segment to its final location, then delete the temporary.

    Paths outside the temporary directory are left alone. A failed copy
    leaves the temporary file in place and removes any partial destination.

    Returns:
        Destination path, or None if nothing was moved
    """
    temp_path = Path(temp_path)
    destination = destination_for(temp_path, output_root, camera_id)
    if destination is None:
        logger.warning(f"[{camera_id}] not a temporary segment, leaving in place: {temp_path}")
        return None

    if not temp_path.exists():
        logger.error(f"[{camera_id}] finished segment missing: {temp_path}")
        return None

    destination.parent.mkdir(parents=True, exist_ok=True)
    try:
        shutil.copy2(temp_path, destination)
    except OSError as exc:
        logger.error(f"[{camera_id}] failed to copy {temp_path} -> {destination}: {exc}")
        if destination.exists():
            destination.unlink()
        return None

    temp_path.unlink()
    logger.info(f"[{camera_id}] segment saved: {destination}")
    return destination


class SegmentTracker:
    """Apply SegmentEvents to a camera's SegmentState."""

    def __init__(self, state: SegmentState, output_root: Path, split_every_s: int):
        self.state = state
        self.output_root = Path(output_root)
        self.split_every_s = split_every_s

    def handle(self, event: SegmentEvent) -> Optional[Path]:
        """
        Returns:
            Destination path of a relocated segment, else None
        """
        cam = self.state.camera_id

        if event.kind == SegmentEventKind.STARTED:
            self.state.active_path = event.path
            self.state.segment_started_at = time.time()
            self.state.segments_opened += 1
            ends_at = datetime.fromtimestamp(self.state.segment_started_at + self.split_every_s)
            logger.info(
                f"[{cam}] segment #{self.state.segments_opened} started: {event.path.name} "
                f"(runs {self.split_every_s}s, until ~{ends_at.strftime('%H:%M:%S')})"
            )
            return None

        if self.state.active_path == event.path:
            self.state.active_path = None
        destination = relocate_segment(event.path, self.output_root, cam)
        if destination is not None:
            self.state.relocated_count += 1
        return destination

    def recover(self, paths: List[Path]) -> List[Path]:
        """
        Relocate temporary segments an earlier attempt left unclosed.

        Paths that no longer exist (already relocated by a queued ENDED event)
        are skipped.

        Returns:
            Destination paths of the recovered segments
        """
        cam = self.state.camera_id
        recovered = []
        for path in paths:
            path = Path(path)
            if not path.exists():
                continue
            if self.state.active_path == path:
                self.state.active_path = None
            logger.warning(f"[{cam}] recovering unfinished segment: {path.name}")
            destination = relocate_segment(path, self.output_root, cam)
            if destination is not None:
                self.state.relocated_count += 1
                recovered.append(destination)
        return recovered


class SegmentRelocator:
    """
    Applies segment events on a background thread, in arrival order, so
    segment copies never block the recorder's main loop.
    """

    _STOP = object()

    def __init__(self, tracker: SegmentTracker):
        self.tracker = tracker
        self._items: "queue.Queue" = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(
            target=self._run,
            name=f"segments-{self.tracker.state.camera_id}",
            daemon=True,
        )
        self._thread.start()

    def submit(self, event: SegmentEvent):
        self._items.put(event)

    def recover(self, paths: List[Path]):
        """Queue stranded temporary segments for relocation."""
        if paths:
            self._items.put(list(paths))

    def _run(self):
        while True:
            item = self._items.get()
            if item is self._STOP:
                break
            try:
                if isinstance(item, SegmentEvent):
                    self.tracker.handle(item)
                else:
                    self.tracker.recover(item)
            except OSError as exc:
                logger.error(f"[{self.tracker.state.camera_id}] segment relocation failed: {exc}")

    def stop(self, timeout: float = config.RELOCATE_TIMEOUT_S) -> bool:
        """
        Finish queued relocations (bounded) and stop the thread.

        Returns:
            True if the queue was drained in time
        """
        self._items.put(self._STOP)
        if self._thread is None:
            return True
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning(
                f"[{self.tracker.state.camera_id}] segment relocation still running after {timeout}s"
            )
            return False
        self._thread = None
        return True
