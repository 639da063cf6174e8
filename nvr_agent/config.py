"""
NVR Agent Configuration
Process-wide settings with environment variable support.
Per-camera settings live in the camera JSON file (see utils.camera_loader).
"""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env file from the package directory
env_path = Path(__file__).parent / '.env'
if env_path.exists():
    load_dotenv(dotenv_path=env_path)


# =============================================================================
# OUTPUT LAYOUT
# =============================================================================

# Output root used when a camera file does not set "outputPath"
OUTPUT_ROOT = Path(os.getenv('NVR_OUTPUT_ROOT', '/nvr'))

# Directory holding camera-N.json files
CAMERA_DIR = Path(os.getenv('NVR_CAMERA_DIR', str(OUTPUT_ROOT / 'cameras')))

# Rotating log file (per camera)
LOG_LEVEL = os.getenv('NVR_LOG_LEVEL', 'INFO').upper()
LOG_MAX_BYTES = int(os.getenv('NVR_LOG_MAX_BYTES', str(10 * 1024 * 1024)))
LOG_BACKUP_COUNT = int(os.getenv('NVR_LOG_BACKUP_COUNT', '3'))

# =============================================================================
# RELAY SIGNALING (Janus streaming plugin over a Unix socket)
# =============================================================================

JANUS_SOCKET = os.getenv('NVR_JANUS_SOCKET', '/tmp/nvr')
JANUS_PLUGIN = os.getenv('NVR_JANUS_PLUGIN', 'janus.plugin.streaming')

# Upper bound for reading one response, independent of socket timeouts
SIGNALING_TIMEOUT_S = float(os.getenv('NVR_SIGNALING_TIMEOUT_S', '3.0'))

# Keepalive period while a stream is registered
KEEPALIVE_INTERVAL_S = float(os.getenv('NVR_KEEPALIVE_INTERVAL_S', '30'))

# =============================================================================
# LIVE RELAY PIPELINE
# =============================================================================

# UDP port search range for the local RTP target (rtpPort=0 in camera file)
RTP_PORT_MIN = int(os.getenv('NVR_RTP_PORT_MIN', '5000'))
RTP_PORT_MAX = int(os.getenv('NVR_RTP_PORT_MAX', '5999'))
RTP_HOST = os.getenv('NVR_RTP_HOST', '127.0.0.1')

# rtspsrc jitter buffer (ms)
RTSP_LATENCY_MS = int(os.getenv('NVR_RTSP_LATENCY_MS', '100'))

# Encoder defaults (overridable per camera)
DEFAULT_BITRATE_KBPS = int(os.getenv('NVR_BITRATE_KBPS', '1024'))
DEFAULT_GOP_LENGTH = int(os.getenv('NVR_GOP_LENGTH', '30'))
DEFAULT_ENCODER_THREADS = int(os.getenv('NVR_ENCODER_THREADS', '2'))
DEFAULT_HARDWARE_PRIORITY = os.getenv('NVR_HARDWARE_PRIORITY', 'auto').lower()

# =============================================================================
# SEGMENTED RECORDING
# =============================================================================

DEFAULT_SPLIT_EVERY_S = int(os.getenv('NVR_SPLIT_EVERY_S', '300'))
DEFAULT_SNAPSHOT_EVERY_S = int(os.getenv('NVR_SNAPSHOT_EVERY_S', '30'))
SNAPSHOT_TIMEOUT_S = float(os.getenv('NVR_SNAPSHOT_TIMEOUT_S', '10'))

# Reconnect policy: give up after this many consecutive failed attempts
MAX_RECONNECT_ATTEMPTS = int(os.getenv('NVR_MAX_RECONNECT_ATTEMPTS', '10'))
RECONNECT_BASE_DELAY_S = float(os.getenv('NVR_RECONNECT_BASE_DELAY_S', '1'))
RECONNECT_MAX_DELAY_S = float(os.getenv('NVR_RECONNECT_MAX_DELAY_S', '30'))

# Grace period for the muxer to write its trailer on shutdown
EOS_TIMEOUT_S = int(os.getenv('NVR_EOS_TIMEOUT_S', '5'))

# Upper bound for pending segment copies to finish on shutdown
RELOCATE_TIMEOUT_S = float(os.getenv('NVR_RELOCATE_TIMEOUT_S', '30'))

# =============================================================================
# SERVICE CONTROLLER IPC
# =============================================================================

STATUS_SOCKET = os.getenv('NVR_STATUS_SOCKET', 'server.socket')


# =============================================================================
# CONFIGURATION VALIDATION
# =============================================================================

def validate_config():
    """Validate configuration values on import"""
    if RTP_PORT_MIN < 1 or RTP_PORT_MAX > 65535 or RTP_PORT_MIN > RTP_PORT_MAX:
        raise ValueError(
            f"Invalid RTP port range {RTP_PORT_MIN}-{RTP_PORT_MAX}.\n"
            "Set NVR_RTP_PORT_MIN / NVR_RTP_PORT_MAX within 1-65535"
        )

    if SIGNALING_TIMEOUT_S <= 0:
        raise ValueError("SIGNALING_TIMEOUT_S must be positive")

    if KEEPALIVE_INTERVAL_S <= 0:
        raise ValueError("KEEPALIVE_INTERVAL_S must be positive")

    if MAX_RECONNECT_ATTEMPTS < 1:
        raise ValueError("MAX_RECONNECT_ATTEMPTS must be at least 1")


# Validate configuration on import
validate_config()


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def get_config_summary():
    """Get a summary of current configuration for logging"""
    return {
        'output_root': str(OUTPUT_ROOT),
        'camera_dir': str(CAMERA_DIR),
        'log_level': LOG_LEVEL,
        'janus_socket': JANUS_SOCKET,
        'janus_plugin': JANUS_PLUGIN,
        'signaling_timeout_s': SIGNALING_TIMEOUT_S,
        'keepalive_interval_s': KEEPALIVE_INTERVAL_S,
        'rtp_port_range': f"{RTP_PORT_MIN}-{RTP_PORT_MAX}",
        'rtsp_latency_ms': RTSP_LATENCY_MS,
        'hardware_priority': DEFAULT_HARDWARE_PRIORITY,
        'max_reconnect_attempts': MAX_RECONNECT_ATTEMPTS,
        'reconnect_delay_s': f"{RECONNECT_BASE_DELAY_S}-{RECONNECT_MAX_DELAY_S}",
        'status_socket': STATUS_SOCKET,
    }
