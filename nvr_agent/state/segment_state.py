"""
Segment State - per-camera context for segmented recording.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass
class SegmentState:
    """Mutable recording state for one camera."""
    camera_id: str
    active_path: Optional[Path] = None
    segment_started_at: Optional[float] = None  # Wall clock
    last_snapshot_at: Optional[float] = None  # Wall clock
    error_count: int = 0
    connected: bool = False
    segments_opened: int = 0
    relocated_count: int = 0
    snapshot_attempts: int = 0
    snapshots_kept: int = 0
