"""Health state of a single outbound IP."""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass
from datetime import datetime, timezone


class HealthState(enum.Enum):
    """Health state of an IP."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    RECOVERING = "recovering"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class StatusInfo:
    """Serializable snapshot of an IP's health status."""

    ip: str
    state: str
    consecutive_failures: int
    consecutive_successes: int
    last_check: datetime | None
    last_error: str = ""


class IPStatus:
    """Current health status of one IP, driven by check results."""

    def __init__(self, ip: str) -> None:
        self.ip = ip
        self.state = HealthState.HEALTHY
        self.consecutive_failures = 0
        self.consecutive_successes = 0
        self.last_check: datetime | None = None
        self.last_error: BaseException | None = None
        self._lock = threading.Lock()

    def is_healthy(self) -> bool:
        """True if the IP may be used."""
        with self._lock:
            return self.state is HealthState.HEALTHY

    def record_success(self, success_threshold: int) -> bool:
        """Record a passed check; return True if the state changed."""
        with self._lock:
            self.last_check = datetime.now(timezone.utc)
            self.last_error = None
            self.consecutive_failures = 0
            self.consecutive_successes += 1
            old_state = self.state
            if self.state is HealthState.UNHEALTHY:
                self.state = HealthState.RECOVERING
                self.consecutive_successes = 1
            elif self.state is HealthState.RECOVERING:
                if self.consecutive_successes >= success_threshold:
                    self.state = HealthState.HEALTHY
            return old_state is not self.state

    def record_failure(self, error: BaseException, failure_threshold: int) -> bool:
        """Record a failed check; return True if the state changed."""
        with self._lock:
            self.last_check = datetime.now(timezone.utc)
            self.last_error = error
            self.consecutive_successes = 0
            self.consecutive_failures += 1
            old_state = self.state
            if self.state is HealthState.HEALTHY:
                if self.consecutive_failures >= failure_threshold:
                    self.state = HealthState.UNHEALTHY
            elif self.state is HealthState.RECOVERING:
                self.state = HealthState.UNHEALTHY
            return old_state is not self.state

    def info(self) -> StatusInfo:
        """A snapshot of the status."""
        with self._lock:
            return StatusInfo(
                ip=self.ip,
                state=str(self.state),
                consecutive_failures=self.consecutive_failures,
                consecutive_successes=self.consecutive_successes,
                last_check=self.last_check,
                last_error="" if self.last_error is None else str(self.last_error),
            )