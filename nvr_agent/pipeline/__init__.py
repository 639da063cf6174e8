"""
Pipeline Module
Relay pipeline construction, hardware selection and fault handling.
GStreamer-bound modules (relay_builder, bus_handler, orchestrator) are
imported directly by their users.
"""
from .bus_events import BusEvent, EventKind, FaultPolicy
from .hardware import BACKENDS, Backend, select_backend
from .pad_linker import LinkResult, link_pad

__all__ = [
    'BACKENDS',
    'Backend',
    'BusEvent',
    'EventKind',
    'FaultPolicy',
    'LinkResult',
    'link_pad',
    'select_backend',
]
