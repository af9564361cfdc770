"""Per-IP circuit breaker."""

from __future__ import annotations

import enum
import threading
import time
from dataclasses import dataclass


class CircuitState(enum.Enum):
    """State of a circuit."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds and timeout for the circuit breaker."""

    failure_threshold: int = 5
    success_threshold: int = 2
    timeout: float = 30.0


@dataclass(frozen=True)
class CircuitStats:
    """Snapshot of one IP's circuit."""

    state: CircuitState
    failures: int


@dataclass
class _IPState:
    failures: int = 0
    successes: int = 0
    state: CircuitState = CircuitState.CLOSED
    last_failure: float = 0.0


class CircuitBreaker:
    """Manages circuit breaker state per IP."""

    def __init__(self, config: CircuitBreakerConfig | None = None) -> None:
        self._config = config or CircuitBreakerConfig()
        self._states: dict[str, _IPState] = {}
        self._lock = threading.Lock()

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    def is_healthy(self, ip: str) -> bool:
        """True if requests to ``ip`` should be allowed."""
        with self._lock:
            st = self._states.get(ip)
            if st is None:
                return True
            if st.state is CircuitState.OPEN:
                if time.monotonic() - st.last_failure >= self._config.timeout:
                    st.state = CircuitState.HALF_OPEN
                    st.successes = 0
                    return True
                return False
            return True

    def record_success(self, ip: str) -> None:
        """Record a successful request to ``ip``."""
        with self._lock:
            st = self._states.get(ip)
            if st is None:
                return
            if st.state is CircuitState.HALF_OPEN:
                st.successes += 1
                if st.successes >= self._config.success_threshold:
                    st.state = CircuitState.CLOSED
                    st.failures = 0
                    st.successes = 0
            elif st.state is CircuitState.CLOSED:
                st.failures = 0

    def record_failure(self, ip: str) -> None:
        """Record a failed request to ``ip``."""
        with self._lock:
            st = self._states.setdefault(ip, _IPState())
            st.last_failure = time.monotonic()
            if st.state is CircuitState.CLOSED:
                st.failures += 1
                if st.failures >= self._config.failure_threshold:
                    st.state = CircuitState.OPEN
            elif st.state is CircuitState.HALF_OPEN:
                st.state = CircuitState.OPEN
                st.successes = 0

    def state(self, ip: str) -> CircuitState:
        """Current state of the circuit for ``ip``."""
        with self._lock:
            st = self._states.get(ip)
            return CircuitState.CLOSED if st is None else st.state

    def stats(self) -> dict[str, CircuitStats]:
        """State and failure count of every tracked IP."""
        with self._lock:
            return {
                ip: CircuitStats(state=st.state, failures=st.failures)
                for ip, st in self._states.items()
            }

    def reset(self, ip: str) -> None:
        """Forget the state of ``ip``."""
        with self._lock:
            self._states.pop(ip, None)

    def reset_all(self) -> None:
        """Forget the state of every IP."""
        with self._lock:
            self._states.clear()