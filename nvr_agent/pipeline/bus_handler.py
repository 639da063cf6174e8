"""
GStreamer Bus Handler - translates bus messages into BusEvents.
The fault policy decides what to do with them; element messages (muxer
fragment notifications) go to an optional separate callback.
"""
import logging
import gi
gi.require_version('Gst', '1.0')
from gi.repository import Gst

from nvr_agent.pipeline.bus_events import BusEvent, EventKind
from nvr_agent.state.pipeline_state import RunState

logger = logging.getLogger(__name__)

# Source errors the rtspsrc reconnect logic is expected to recover from
TRANSIENT_RESOURCE_ERRORS = (
    Gst.ResourceError.READ,
    Gst.ResourceError.OPEN_READ,
    Gst.ResourceError.OPEN_READ_WRITE,
    Gst.ResourceError.BUSY,
)

_RUN_STATES = {
    Gst.State.NULL: RunState.NULL,
    Gst.State.READY: RunState.READY,
    Gst.State.PAUSED: RunState.PAUSED,
    Gst.State.PLAYING: RunState.PLAYING,
}


def is_transient_error(err) -> bool:
    domain = Gst.ResourceError.quark()
    return any(err.matches(domain, code) for code in TRANSIENT_RESOURCE_ERRORS)


def translate_message(message, pipeline) -> BusEvent:
    """Convert a Gst.Message into a BusEvent."""
    t = message.type
    src_name = message.src.get_name() if message.src else "unknown"

    if t == Gst.MessageType.ERROR:
        err, debug = message.parse_error()
        return BusEvent(EventKind.ERROR, src_name, err.message, debug,
                        transient=is_transient_error(err))

    if t == Gst.MessageType.EOS:
        return BusEvent(EventKind.EOS, src_name)

    if t == Gst.MessageType.WARNING:
        err, debug = message.parse_warning()
        return BusEvent(EventKind.WARNING, src_name, err.message, debug)

    if t == Gst.MessageType.BUFFERING:
        return BusEvent(EventKind.BUFFERING, src_name, percent=message.parse_buffering())

    if t == Gst.MessageType.CLOCK_LOST:
        return BusEvent(EventKind.CLOCK_LOST, src_name)

    if t == Gst.MessageType.LATENCY:
        return BusEvent(EventKind.LATENCY, src_name)

    if t == Gst.MessageType.STATE_CHANGED:
        if message.src == pipeline:
            old, new, pending = message.parse_state_changed()
            return BusEvent(EventKind.STATE_CHANGED, src_name,
                            f"{old.value_nick} -> {new.value_nick}",
                            new_state=_RUN_STATES.get(new))
        return BusEvent(EventKind.OTHER, src_name)

    if t == Gst.MessageType.STREAM_START:
        return BusEvent(EventKind.STREAM_START, src_name)

    if t == Gst.MessageType.PROGRESS:
        progress_type, code, text = message.parse_progress()
        return BusEvent(EventKind.PROGRESS, src_name, f"{code}: {text}")

    return BusEvent(EventKind.OTHER, src_name)


class BusHandler:
    """Attach to a pipeline bus and dispatch translated events."""

    def __init__(self, pipeline, on_event, on_element=None):
        """
        Args:
            pipeline: GStreamer pipeline
            on_event: Callable taking a BusEvent
            on_element: Optional callable taking the raw element Gst.Message
        """
        self.pipeline = pipeline
        self.on_event = on_event
        self.on_element = on_element

        # Watch is attached to the calling thread's default main context
        self.bus = pipeline.get_bus()
        self.bus.add_signal_watch()
        self._handler_id = self.bus.connect("message", self._on_bus_message)
        logger.info(f"Bus handler attached to {pipeline.get_name()}")

    def _on_bus_message(self, bus, message):
        if message.type == Gst.MessageType.ELEMENT:
            if self.on_element:
                self.on_element(message)
            return True

        event = translate_message(message, self.pipeline)
        if event.kind != EventKind.OTHER:
            self.on_event(event)
        return True

    def detach(self):
        """Remove the signal watch (call before dropping the pipeline)."""
        if self._handler_id is not None:
            self.bus.disconnect(self._handler_id)
            self.bus.remove_signal_watch()
            self._handler_id = None
