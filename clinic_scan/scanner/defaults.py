"""
Default values for the scanner.

Keep this module dependency-free; the CLI imports it before logging is set up.
"""

DEFAULT_FACING = "environment-facing"
DEFAULT_DEVICES = (0, 1, 2)
DEFAULT_CAPTURE_RESOLUTION = (1280, 720)
DEFAULT_READY_TIMEOUT_MS = 0
DEFAULT_PREFER_NATIVE = True
DEFAULT_POLL_INTERVAL_MS = 16
DEFAULT_DEBOUNCE_WINDOW_MS = 1500
DEFAULT_FALLBACK_FPS = 10.0
DEFAULT_FALLBACK_REGION = (250, 250)
DEFAULT_REPORT_BENIGN_MISS = True
DEFAULT_LOG_LEVEL = "INFO"
