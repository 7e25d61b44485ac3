"""USB sound card naming and per-device RTSP audio streams."""

__version__ = "1.0.0"
