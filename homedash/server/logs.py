"""
Process-wide log buffer: bounded in-memory lines mirrored to a log file.
"""
import threading
from typing import Optional

from homedash.document import now_iso

LOG_BUFFER_MAX_LINES = 5000

_log_lock = threading.Lock()
_log_lines = []
_log_file = None


def set_log_file(path: Optional[str]):
    global _log_file
    with _log_lock:
        _log_file = path


def _append_log_line(line: str):
    with _log_lock:
        ts_line = f"[{now_iso()}] {line}"
        _log_lines.append(ts_line)
        if len(_log_lines) > LOG_BUFFER_MAX_LINES:
            _log_lines[:] = _log_lines[-LOG_BUFFER_MAX_LINES:]
        if not _log_file:
            return
        try:
            with open(_log_file, "a", encoding="utf-8") as f:
                f.write(ts_line + "\n")
        except OSError:
            # the in-memory buffer still has the line
            pass


def log(msg: str):
    print(f"[{now_iso()}] {msg}")
    _append_log_line(msg)


def log_flask(msg: str):
    _append_log_line(msg)


def log_lines():
    with _log_lock:
        return list(_log_lines)


def clear_logs():
    with _log_lock:
        _log_lines.clear()
