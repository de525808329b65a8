import threading
import time
from typing import Any, Dict

UPSTREAM = "up"
DOWNSTREAM = "down"


class TrafficStats:
    """Thread-safe counters shared by the listeners and every session."""

    def __init__(self):
        self.lock = threading.Lock()
        self.start_time = time.time()
        self.total_sessions = 0
        self.active_sessions = 0
        self.failed_dials = 0
        self.bytes_up = 0
        self.bytes_down = 0
        self.discovery_replies = 0
        self.discovery_dropped = 0

    def session_opened(self):
        with self.lock:
            self.total_sessions += 1
            self.active_sessions += 1

    def session_closed(self):
        with self.lock:
            self.active_sessions -= 1

    def dial_failed(self):
        with self.lock:
            self.failed_dials += 1

    def add_traffic(self, direction: str, count: int):
        with self.lock:
            if direction == UPSTREAM:
                self.bytes_up += count
            else:
                self.bytes_down += count

    def probe_answered(self):
        with self.lock:
            self.discovery_replies += 1

    def probe_dropped(self):
        with self.lock:
            self.discovery_dropped += 1

    def snapshot(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "uptime": int(time.time() - self.start_time),
                "total_sessions": self.total_sessions,
                "active_sessions": self.active_sessions,
                "failed_dials": self.failed_dials,
                "bytes_up": self.bytes_up,
                "bytes_down": self.bytes_down,
                "discovery_replies": self.discovery_replies,
                "discovery_dropped": self.discovery_dropped,
            }


def format_bytes(num):
    for unit in ['bytes', 'KB', 'MB', 'GB', 'TB']:
        if num < 1024.0:
            return f"{num:.2f} {unit}"
        num /= 1024.0
    return f"{num:.2f} PB"
