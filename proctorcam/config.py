import os
import secrets
from pathlib import Path

from .errors import ConfigError

# ----------------- CONFIG -----------------
BASE_DIR = Path(os.environ.get("PROCTORCAM_HOME", Path.cwd()))
UPLOAD_DIR = Path(os.environ.get("PROCTORCAM_UPLOAD_DIR", BASE_DIR / "uploads"))
LOG_FILE = os.environ.get("PROCTORCAM_LOG_FILE", str(BASE_DIR / "proctoring_log.txt"))

# external ML / scoring backend
BACKEND_URL = os.environ.get("PROCTORCAM_BACKEND_URL", "http://127.0.0.1:8000")
REQUEST_TIMEOUT = float(os.environ.get("PROCTORCAM_REQUEST_TIMEOUT", "5"))
MAX_ATTEMPTS = int(os.environ.get("PROCTORCAM_MAX_ATTEMPTS", "3"))
BACKOFF_BASE = float(os.environ.get("PROCTORCAM_BACKOFF_BASE", "1.0"))

MAX_IMAGE_BYTES = int(os.environ.get("PROCTORCAM_MAX_IMAGE_BYTES", str(4 * 1024 * 1024)))  # 4MB
# also hand stored webcam images to the backend
FORWARD_WEBCAM = os.environ.get("PROCTORCAM_FORWARD_WEBCAM", "0") == "1"

# JWT config - prefer env var in production
JWT_SECRET = os.environ.get("JWT_SECRET")
if not JWT_SECRET:
    JWT_SECRET = secrets.token_hex(32)
    print("WARNING: JWT_SECRET not set in environment. Using a generated ephemeral secret (tokens will be invalid after restart).")
JWT_ALGORITHM = "HS256"
JWT_EXP_DAYS = int(os.environ.get("JWT_EXP_DAYS", "1"))

# capture channels
EYE_TRACKING = "eye-tracking"
WEBCAM = "webcam"

DEFAULT_CAPACITY = {
    EYE_TRACKING: 60,  # 1 minute worth at 1 per second
    WEBCAM: 30,
}


class CaptureConfig:
    """Per-session capture settings."""

    def __init__(self, channel=EYE_TRACKING, interval_ms=1000, quality=0.85,
                 capacity=None, width=640, height=480, flush_interval_ms=None):
        if channel not in DEFAULT_CAPACITY:
            raise ConfigError(f"unknown capture channel: {channel}")
        if capacity is None:
            capacity = DEFAULT_CAPACITY[channel]
        if interval_ms <= 0:
            raise ConfigError("interval_ms must be > 0")
        if not 0 < quality <= 1:
            raise ConfigError("quality must be in (0, 1]")
        if capacity <= 0:
            raise ConfigError("capacity must be > 0")
        if flush_interval_ms is not None and flush_interval_ms <= 0:
            raise ConfigError("flush_interval_ms must be > 0")
        self.channel = channel
        self.interval_ms = int(interval_ms)
        self.quality = float(quality)
        self.capacity = int(capacity)
        self.width = int(width)
        self.height = int(height)
        self.flush_interval_ms = flush_interval_ms

    def __repr__(self):
        return (f"CaptureConfig(channel={self.channel!r}, interval_ms={self.interval_ms}, "
                f"quality={self.quality}, capacity={self.capacity})")
