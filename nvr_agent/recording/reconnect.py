"""
Reconnect policy for the recording pipeline.

One attempt = build a pipeline, run it until it stops. Attempts that never
streamed count as errors; past the bound the loop gives up so the process can
exit and be restarted by its supervisor.
"""
import logging
import threading
from typing import Callable, Optional

from nvr_agent import config

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base_s: float, max_s: float) -> float:
    """Delay before retry number `attempt` (1-based): base * 2**(n-1), capped."""
    return min(base_s * 2 ** (max(attempt, 1) - 1), max_s)


class ReconnectLoop:
    """Bounded retry loop interruptible by a stop event."""

    def __init__(self, attempt: Callable[[], bool], stop_event: threading.Event,
                 name: str = "recorder",
                 max_attempts: int = config.MAX_RECONNECT_ATTEMPTS,
                 base_delay_s: float = config.RECONNECT_BASE_DELAY_S,
                 max_delay_s: float = config.RECONNECT_MAX_DELAY_S,
                 on_error_count: Optional[Callable[[int], None]] = None):
        """
        Args:
            attempt: Runs one pipeline; returns True if media was streamed
            stop_event: Set to end the loop
            name: Label for log lines
            max_attempts: Consecutive failures tolerated
            base_delay_s: First retry delay
            max_delay_s: Retry delay cap
            on_error_count: Called with the error count after every attempt
        """
        self.attempt = attempt
        self.stop_event = stop_event
        self.name = name
        self.max_attempts = max_attempts
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self.on_error_count = on_error_count
        self.error_count = 0
        self.attempts = 0

    def run(self) -> bool:
        """
        Returns:
            True when stopped by the stop event, False when the retry bound
            was exceeded
        """
        while not self.stop_event.is_set():
            self.attempts += 1
            streamed = self.attempt()

            if self.stop_event.is_set():
                break

            if streamed:
                if self.error_count:
                    logger.info(f"[{self.name}] recovered after {self.error_count} failed attempt(s)")
                self.error_count = 0
            else:
                self.error_count += 1
                logger.warning(f"[{self.name}] connection attempt failed ({self.error_count}/{self.max_attempts})")

            if self.on_error_count:
                self.on_error_count(self.error_count)

            if self.error_count > self.max_attempts:
                logger.error(f"[{self.name}] giving up after {self.error_count} consecutive failures")
                return False

            delay = backoff_delay(self.error_count, self.base_delay_s, self.max_delay_s)
            logger.info(f"[{self.name}] reconnecting in {delay:.1f}s")
            if self.stop_event.wait(delay):
                break

        logger.info(f"[{self.name}] reconnect loop stopped")
        return True
