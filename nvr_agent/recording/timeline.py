"""
Timestamp normalization for the recording branch.

Some cameras send buffers without a duration. The muxer then sees
zero-length frames, so the duration is derived from the gap to the
previous buffer's timestamp.
"""
import logging
from typing import Optional

logger = logging.getLogger(__name__)

# Same value as Gst.CLOCK_TIME_NONE
CLOCK_TIME_NONE = 2 ** 64 - 1


def _valid(value: Optional[int]) -> bool:
    return value is not None and value != CLOCK_TIME_NONE


class TimestampNormalizer:
    """Tracks the previous pts and fills in missing durations."""

    def __init__(self):
        self.previous_pts: Optional[int] = None
        self.derived_count = 0

    def normalize(self, pts: Optional[int], duration: Optional[int]) -> Optional[int]:
        """
        Duration a buffer should carry.

        Args:
            pts: Presentation timestamp in ns (None / CLOCK_TIME_NONE if unset)
            duration: Reported duration in ns (None / CLOCK_TIME_NONE if unset)

        Returns:
            The reported duration if positive, else the positive pts delta,
            else None
        """
        result = None
        if _valid(duration) and duration > 0:
            result = duration
        elif _valid(pts) and _valid(self.previous_pts) and pts > self.previous_pts:
            result = pts - self.previous_pts
            self.derived_count += 1
            if self.derived_count == 1:
                logger.info("Source buffers carry no duration, deriving from timestamps")

        if _valid(pts):
            self.previous_pts = pts
        return result

    def reset(self):
        self.previous_pts = None
