"""
Signaling Module
Relay (Janus streaming plugin) control-plane client
"""
from .janus_client import JanusClient, is_failure
from .json_reader import JsonResponseReader

__all__ = ['JanusClient', 'JsonResponseReader', 'is_failure']
