# common/circuit_breaker.py
import threading
from datetime import timedelta
from typing import Optional

from .clock import utcnow


class CircuitBreaker:
    """
    In-memory circuit breaker for outbound calls to a peer service.

    States:
    - closed: all requests pass, count failures
    - open: requests are blocked immediately
    - half_open: allow a trial request after reset timeout
    """

    def __init__(self, name: str, max_failures: int = 3, reset_timeout_seconds: int = 30):
        self.name = name
        self.max_failures = max_failures
        self.reset_timeout = timedelta(seconds=reset_timeout_seconds)
        self.failure_count = 0
        self.state = "closed"  # "closed" | "open" | "half_open"
        self.last_failure_time = None
        self._lock = threading.Lock()

    def allow_request(self) -> bool:
        """
        Return True if a request may go through, False while the circuit is open.
        """
        with self._lock:
            if self.state != "open":
                return True
            if self.last_failure_time is None:
                return False
            if utcnow() - self.last_failure_time >= self.reset_timeout:
                self.state = "half_open"
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            self.failure_count = 0
            self.state = "closed"
            self.last_failure_time = None

    def record_failure(self) -> None:
        """
        Count a failure; a failed half-open trial reopens the circuit at once.
        """
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = utcnow()
            if self.state == "half_open" or self.failure_count >= self.max_failures:
                self.state = "open"

    def reset(self, state: Optional[str] = None) -> None:
        with self._lock:
            self.failure_count = 0
            self.last_failure_time = None
            self.state = state or "closed"
