# common/rate_limiter.py
import os
import threading
import time
from typing import Dict, List

from fastapi import HTTPException, status


class SlidingWindowLimiter:
    """
    Simple sliding-window rate limiter: N hits / WINDOW seconds per key.
    """

    def __init__(self, max_hits: int, window_seconds: int = 60, detail: str = "Too many requests"):
        self.max_hits = max_hits
        self.window_seconds = window_seconds
        self.detail = detail
        self._log: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str) -> None:
        """
        Record one hit for key, raising HTTP 429 when the window is full.

        Disabled entirely when TESTING=1.
        """
        if os.getenv("TESTING") == "1":
            return

        now = time.time()
        window_start = now - self.window_seconds

        with self._lock:
            timestamps = [ts for ts in self._log.get(key, []) if ts >= window_start]
            if len(timestamps) >= self.max_hits:
                raise HTTPException(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    detail=self.detail,
                )
            timestamps.append(now)
            self._log[key] = timestamps
