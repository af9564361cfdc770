"""Concurrent connection limits, per outbound IP and in total."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

log = logging.getLogger(__name__)


class LimitReachedError(Exception):
    """A connection slot could not be acquired."""


class IPLimitReachedError(LimitReachedError):
    """The per-IP connection limit has been reached."""

    def __init__(self, ip: str) -> None:
        super().__init__(f"connection limit reached for IP {ip}")
        self.ip = ip


class TotalLimitReachedError(LimitReachedError):
    """The total connection limit has been reached."""

    def __init__(self) -> None:
        super().__init__("total connection limit reached")


class Limiter:
    """Tracks and limits concurrent connections."""

    def __init__(self, max_per_ip: int, max_total: int, ips: Iterable[str] = ()) -> None:
        self._lock = threading.Lock()
        self._max_per_ip = max_per_ip
        self._max_total = max_total
        self._total = 0
        self._per_ip: dict[str, int] = dict.fromkeys(ips, 0)

    @property
    def max_per_ip(self) -> int:
        return self._max_per_ip

    @property
    def max_total(self) -> int:
        return self._max_total

    def update_limits(self, max_per_ip: int, max_total: int) -> None:
        """Change the limits at runtime."""
        with self._lock:
            self._max_per_ip = max_per_ip
            self._max_total = max_total
        log.info("limits_updated max_per_ip=%d max_total=%d", max_per_ip, max_total)

    def acquire(self, ip: str) -> None:
        """Take a connection slot for ``ip`` or raise a LimitReachedError."""
        with self._lock:
            if self._total >= self._max_total:
                raise TotalLimitReachedError()
            count = self._per_ip.setdefault(ip, 0)
            if count >= self._max_per_ip:
                raise IPLimitReachedError(ip)
            self._per_ip[ip] = count + 1
            self._total += 1

    def release(self, ip: str) -> None:
        """Give back a connection slot for ``ip``."""
        with self._lock:
            if ip in self._per_ip:
                self._per_ip[ip] -= 1
            self._total -= 1

    @contextmanager
    def slot(self, ip: str) -> Iterator[str]:
        """Hold a connection slot for ``ip`` for the duration of the block."""
        self.acquire(ip)
        try:
            yield ip
        finally:
            self.release(ip)

    def ip_count(self, ip: str) -> int:
        """Current number of connections for ``ip``."""
        with self._lock:
            return self._per_ip.get(ip, 0)

    def total_count(self) -> int:
        """Current total number of connections."""
        with self._lock:
            return self._total

    def is_ip_available(self, ip: str) -> bool:
        """True if ``ip`` has a free connection slot."""
        with self._lock:
            return self._per_ip.get(ip, 0) < self._max_per_ip

    def available_ips(self, ips: Iterable[str]) -> list[str]:
        """The IPs among ``ips`` that have free slots, in the given order."""
        return [ip for ip in ips if self.is_ip_available(ip)]

    def stats(self) -> dict[str, int]:
        """Current counts: the key ``total`` plus one key per IP."""
        with self._lock:
            result = {"total": self._total}
            result.update(self._per_ip)
            return result