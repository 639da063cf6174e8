"""
Bus fault policy - decides how the relay pipeline reacts to bus messages.

Messages are first translated into BusEvent values (see bus_handler), so the
policy can be exercised with synthetic event sequences.

A controller is any object offering:
    set_state(RunState) -> bool
    recalculate_latency() -> bool
    quit()
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from nvr_agent.state.pipeline_state import PipelineState, RunState

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    ERROR = "error"
    EOS = "eos"
    WARNING = "warning"
    BUFFERING = "buffering"
    CLOCK_LOST = "clock_lost"
    LATENCY = "latency"
    STATE_CHANGED = "state_changed"
    STREAM_START = "stream_start"
    PROGRESS = "progress"
    OTHER = "other"


@dataclass(frozen=True)
class BusEvent:
    kind: EventKind
    source: str = "unknown"
    message: str = ""
    debug: Optional[str] = None
    transient: bool = False     # resource read/open/busy errors from the source
    percent: int = 100          # buffering only
    new_state: Optional[RunState] = None  # pipeline state changes only


class FaultPolicy:
    """Apply fault handling rules to a stream of BusEvents."""

    def __init__(self, state: PipelineState, controller):
        """
        Args:
            state: Relay pipeline state, updated as events arrive
            controller: Object driving the real pipeline
        """
        self.state = state
        self.controller = controller
        self.transient_errors = 0

    def handle(self, event: BusEvent) -> bool:
        """
        Process one event.

        Returns:
            False once the pipeline has been quiesced, True otherwise
        """
        cam = self.state.camera_id
        kind = event.kind

        if kind == EventKind.ERROR:
            if event.transient:
                self.transient_errors += 1
                self.state.error_count += 1
                logger.warning(
                    f"[{cam}] transient error from {event.source}: {event.message} "
                    f"({self.transient_errors} so far, waiting for source to recover)"
                )
                if event.debug:
                    logger.debug(f"[{cam}] debug info: {event.debug}")
                return not self.state.quiesced
            logger.error(f"[{cam}] pipeline error from {event.source}: {event.message}")
            if event.debug:
                logger.debug(f"[{cam}] debug info: {event.debug}")
            self._quiesce("error")

        elif kind == EventKind.EOS:
            logger.info(f"[{cam}] end of stream")
            self._quiesce("end of stream")

        elif kind == EventKind.WARNING:
            logger.warning(f"[{cam}] warning from {event.source}: {event.message}")

        elif kind == EventKind.BUFFERING:
            self._on_buffering(event.percent)

        elif kind == EventKind.CLOCK_LOST:
            logger.warning(f"[{cam}] clock lost, restarting playback")
            self._set_state(RunState.PAUSED)
            self._set_state(RunState.PLAYING)

        elif kind == EventKind.LATENCY:
            if not self.controller.recalculate_latency():
                logger.warning(f"[{cam}] latency recalculation failed")

        elif kind == EventKind.STATE_CHANGED:
            if event.new_state is not None:
                self.state.run_state = event.new_state
                logger.info(f"[{cam}] pipeline state: {event.new_state.value}")

        elif kind == EventKind.STREAM_START:
            logger.info(f"[{cam}] stream started")

        elif kind == EventKind.PROGRESS:
            logger.debug(f"[{cam}] progress: {event.message}")

        return not self.state.quiesced

    def _on_buffering(self, percent: int):
        if self.state.is_live or self.state.quiesced:
            return
        if percent < 100 and self.state.run_state == RunState.PLAYING:
            logger.info(f"[{self.state.camera_id}] buffering {percent}%, pausing")
            self._set_state(RunState.PAUSED)
        elif percent >= 100 and self.state.run_state == RunState.PAUSED:
            logger.info(f"[{self.state.camera_id}] buffering done, resuming")
            self._set_state(RunState.PLAYING)

    def _set_state(self, run_state: RunState):
        if self.state.quiesced:
            return
        if self.controller.set_state(run_state):
            self.state.run_state = run_state

    def _quiesce(self, reason: str):
        """Move to READY and stop the loop, only the first time."""
        if self.state.quiesced:
            return
        logger.info(f"[{self.state.camera_id}] quiescing pipeline ({reason})")
        self.controller.set_state(RunState.READY)
        self.state.run_state = RunState.READY
        self.state.quiesced = True
        self.controller.quit()
