"""
Recording Module
Segment rotation and relocation, snapshot scheduling, reconnect policy.
segment_recorder needs GStreamer and is imported directly.
"""
from .reconnect import ReconnectLoop, backoff_delay
from .segments import (
    SegmentEvent, SegmentEventKind, SegmentRelocator, SegmentTracker, relocate_segment, stranded_segments,
)
from .snapshots import SnapshotFetcher, SnapshotScheduler, is_valid_jpeg, validate_snapshot
from .timeline import TimestampNormalizer

__all__ = [
    'ReconnectLoop',
    'backoff_delay',
    'SegmentEvent',
    'SegmentEventKind',
    'SegmentRelocator',
    'SegmentTracker',
    'relocate_segment',
    'stranded_segments',
    'SnapshotFetcher',
    'SnapshotScheduler',
    'is_valid_jpeg',
    'validate_snapshot',
    'TimestampNormalizer',
]
