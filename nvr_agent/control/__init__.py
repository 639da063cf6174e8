"""Client for the service controller IPC socket."""
from .status_client import StatusClientError, camera_id_from_path, send_command

__all__ = ['StatusClientError', 'camera_id_from_path', 'send_command']
