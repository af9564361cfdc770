"""Least-recently-used selection of outbound IPs, per destination host."""

from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from outboundlb.history import History

log = logging.getLogger(__name__)


class NoAvailableIPsError(Exception):
    """No outbound IP can take another connection."""

    def __init__(self, host: str = "") -> None:
        super().__init__("no available IPs")
        self.host = host


@runtime_checkable
class IPLimiter(Protocol):
    """Something that knows which IPs have free connection slots."""

    def is_ip_available(self, ip: str) -> bool:
        """True if ``ip`` has a free connection slot."""

    def available_ips(self, ips: Sequence[str]) -> list[str]:
        """The IPs among ``ips`` that have free slots, in the given order."""


@runtime_checkable
class IPHealthChecker(Protocol):
    """Something that knows which IPs are healthy."""

    def is_healthy(self, ip: str) -> bool:
        """True if ``ip`` is healthy."""

    def healthy_ips(self, ips: Sequence[str]) -> list[str]:
        """The healthy IPs among ``ips``, in the given order."""


@dataclass(frozen=True)
class BalancerStats:
    """Totals over the balancer's usage history."""

    total_hosts: int
    total_entries: int
    entries_per_ip: dict[str, int] = field(default_factory=dict)


@dataclass
class BalancerConfig:
    """Settings for the balancer; ``history_window`` is in seconds."""

    ips: Sequence[str]
    history_window: float = 300.0
    history_size: int = 100
    limiter: IPLimiter | None = None
    health_checker: IPHealthChecker | None = None
    cleanup_interval: float = 30.0


class LRUBalancer:
    """Picks, for each host, the IP used least within the recent history."""

    def __init__(self, config: BalancerConfig) -> None:
        self._ips = list(config.ips)
        self._window = float(config.history_window)
        self._size = config.history_size
        self._limiter = config.limiter
        self._health_checker = config.health_checker
        self._cleanup_interval = config.cleanup_interval
        self._history = History()
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def history_window(self) -> float:
        with self._lock:
            return self._window

    @property
    def history_size(self) -> int:
        with self._lock:
            return self._size

    def update_history_config(self, window: float, size: int) -> None:
        """Change the history window (seconds) and size at runtime."""
        with self._lock:
            self._window = float(window)
            self._size = size
        log.info("history_config_updated window=%s size=%d", window, size)

    def start(self) -> None:
        """Start the background cleanup of expired history."""
        if self._thread is not None:
            raise RuntimeError("balancer already started")
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._cleanup_loop, name="balancer-cleanup", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop the background cleanup and wait for it to end."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def cleanup(self) -> tuple[int, int]:
        """Drop expired history now; return (entries, hosts) removed."""
        removed_entries, removed_hosts = self._history.cleanup(self.history_window)
        if removed_entries or removed_hosts:
            log.debug(
                "history_cleanup removed_entries=%d removed_hosts=%d",
                removed_entries,
                removed_hosts,
            )
        return removed_entries, removed_hosts

    def _cleanup_loop(self) -> None:
        while not self._stop_event.wait(self._cleanup_interval):
            self.cleanup()

    def select(self, host: str) -> str:
        """The best IP for ``host``: lowest recent use, oldest last use on ties."""
        available = self.available_ips()
        if not available:
            log.debug("balancer_no_available_ips host=%s total_ips=%d", host, len(self._ips))
            raise NoAvailableIPsError(host)

        with self._lock:
            window, size = self._window, self._size
        entries = self._history.filtered(host, window, size)

        usage = Counter(entry.ip for entry in entries)
        last_used: dict[str, float] = {}
        for entry in entries:
            previous = last_used.get(entry.ip)
            if previous is None or entry.timestamp > previous:
                last_used[entry.ip] = entry.timestamp

        selected = available[0]
        min_usage: int | None = None
        oldest_use: float | None = None
        for ip in available:
            count = usage[ip]
            last = last_used.get(ip)
            if min_usage is None or count < min_usage:
                min_usage, selected, oldest_use = count, ip, last
            elif count == min_usage and (
                last is None or (oldest_use is not None and last < oldest_use)
            ):
                selected, oldest_use = ip, last

        log.debug("balancer_selection host=%s selected=%s usage=%s", host, selected, min_usage)
        return selected

    def record(self, host: str, ip: str) -> None:
        """Record that ``ip`` was used for ``host``."""
        self._history.record(host, ip)

    def stats(self) -> BalancerStats:
        """Number of hosts, entries, and entries per IP in the history."""
        snapshot = self._history.stats()
        return BalancerStats(
            total_hosts=snapshot.total_hosts,
            total_entries=snapshot.total_entries,
            entries_per_ip=dict(snapshot.entries_per_ip),
        )

    def available_ips(self) -> list[str]:
        """IPs that are healthy and under their connection limit.

        When every IP is unhealthy, all of them are considered healthy.
        """
        ips = list(self._ips)
        if self._health_checker is not None:
            healthy = list(self._health_checker.healthy_ips(ips))
            if healthy:
                ips = healthy
            else:
                log.warning("all_ips_unhealthy using_all=true total_ips=%d", len(ips))
        if self._limiter is not None:
            return list(self._limiter.available_ips(ips))
        return ips


def new_balancer(config: BalancerConfig) -> LRUBalancer:
    """Create the default balancer."""
    return LRUBalancer(config)