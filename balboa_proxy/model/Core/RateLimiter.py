import threading
import time


class RateLimiter:
    """Per-source sliding window limiter. A limit of 0 disables it."""

    def __init__(self, limit: int = 0, window: float = 60.0):
        self.limit = limit
        self.window = window
        self.requests = {}
        self.lock = threading.Lock()

    def check_limit(self, source_ip: str) -> bool:
        """Record one request from ``source_ip``; False once over the limit."""
        if self.limit <= 0:
            return True

        now = time.monotonic()
        with self.lock:
            recent = [t for t in self.requests.get(source_ip, []) if now - t < self.window]
            if len(recent) >= self.limit:
                self.requests[source_ip] = recent
                return False
            recent.append(now)
            self.requests[source_ip] = recent
            self._prune(now)
            return True

    def _prune(self, now: float):
        # Forget sources that have gone quiet so the table stays small.
        stale = [ip for ip, times in self.requests.items() if not times or now - times[-1] >= self.window]
        for ip in stale:
            del self.requests[ip]
