# common/circuit_breaker.py
import threading
from datetime import datetime, timedelta
from typing import Optional


class CircuitBreaker:
    """
    In-memory circuit breaker guarding calls into the booking store.

    States:
    - closed: calls pass, failures are counted
    - open: calls are refused immediately
    - half_open: after the reset timeout a single trial call goes through;
      other callers are refused until that trial records success or failure
    """

    def __init__(self, name: str, max_failures: int = 3, reset_timeout_seconds: int = 30):
        self.name = name
        self.max_failures = max_failures
        self.reset_timeout = timedelta(seconds=reset_timeout_seconds)
        self.failure_count = 0
        self.state = "closed"  # "closed" | "open" | "half_open"
        self.last_failure_time: Optional[datetime] = None
        self._trial_in_flight = False
        self._lock = threading.Lock()

    def allow_request(self) -> bool:
        """
        Return True if a call may go through.

        Every caller that gets True must report back through record_success
        or record_failure, otherwise a half-open circuit never settles.
        """
        with self._lock:
            if self.state == "closed":
                return True
            if self.state == "open":
                if self.last_failure_time is None:
                    return False
                if datetime.utcnow() - self.last_failure_time < self.reset_timeout:
                    return False
                self.state = "half_open"
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def record_success(self) -> None:
        with self._lock:
            self.failure_count = 0
            self.state = "closed"
            self.last_failure_time = None
            self._trial_in_flight = False

    def record_failure(self) -> None:
        """
        Count a failure; a failed half-open trial re-opens the circuit at once.
        """
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = datetime.utcnow()
            self._trial_in_flight = False
            if self.state == "half_open" or self.failure_count >= self.max_failures:
                self.state = "open"
