"""NVR camera agent: segmented recording and live relay per camera."""

__version__ = "0.1.0"
