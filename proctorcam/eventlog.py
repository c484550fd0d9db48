import datetime
import threading

from . import config

_lock = threading.Lock()
_log_file = None


def initialize_log(path=None):
    """Start a fresh log file; events are printed only until this is called."""
    global _log_file
    with _lock:
        _log_file = path or config.LOG_FILE
        with open(_log_file, "w") as f:
            f.write("Proctoring Capture Log\n")
            f.write("=" * 50 + "\n")
            f.write(f"Session started: {datetime.datetime.now()}\n\n")


def log_event(event_type, details):
    ts = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    entry = f"[{ts}] {event_type}: {details}\n"
    print(entry.strip())
    with _lock:
        if _log_file is None:
            return
        try:
            with open(_log_file, "a") as f:
                f.write(entry)
        except OSError as e:
            print("log write error:", e)
