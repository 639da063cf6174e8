"""State objects owned by the relay and recording workers."""
from .pipeline_state import Codec, PipelineState, RunState
from .segment_state import SegmentState

__all__ = [
    'Codec',
    'PipelineState',
    'RunState',
    'SegmentState',
]
