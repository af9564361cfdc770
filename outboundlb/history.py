"""Per-host record of which outbound IPs were used and when."""

from __future__ import annotations

import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Entry:
    """One use of an IP; ``timestamp`` is a monotonic clock reading."""

    ip: str
    timestamp: float


class HostHistory:
    """Usage history of a single host, oldest entry first."""

    def __init__(self) -> None:
        self._entries: deque[Entry] = deque()
        self._lock = threading.Lock()

    def add(self, ip: str) -> None:
        """Record a use of ``ip`` now."""
        with self._lock:
            self._entries.append(Entry(ip, time.monotonic()))

    def filtered(self, window: float, max_size: int) -> list[Entry]:
        """Entries newer than ``window`` seconds, most recent first, at most ``max_size``."""
        cutoff = time.monotonic() - window
        result: list[Entry] = []
        with self._lock:
            for entry in reversed(self._entries):
                if len(result) >= max_size:
                    break
                if entry.timestamp > cutoff:
                    result.append(entry)
        return result

    def cleanup(self, window: float) -> int:
        """Drop entries older than ``window`` seconds; return how many were dropped."""
        cutoff = time.monotonic() - window
        with self._lock:
            kept = deque(e for e in self._entries if e.timestamp > cutoff)
            removed = len(self._entries) - len(kept)
            self._entries = kept
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _snapshot(self) -> list[Entry]:
        with self._lock:
            return list(self._entries)

    def _oldest_timestamp(self) -> float | None:
        with self._lock:
            return self._entries[0].timestamp if self._entries else None

    def _pop_oldest(self) -> bool:
        with self._lock:
            if not self._entries:
                return False
            self._entries.popleft()
            return True


@dataclass(frozen=True)
class HistoryStats:
    """Totals over the whole history."""

    total_hosts: int
    total_entries: int
    entries_per_ip: dict[str, int] = field(default_factory=dict)


class History:
    """Usage history for all hosts, optionally capped in total size."""

    def __init__(self, max_total_entries: int = 0) -> None:
        self._hosts: dict[str, HostHistory] = {}
        self._lock = threading.Lock()
        self._max_total_entries = max_total_entries
        self._total_entries = 0

    def get_or_create(self, host: str) -> HostHistory:
        """The history of ``host``, created if missing."""
        with self._lock:
            return self._hosts.setdefault(host, HostHistory())

    def record(self, host: str, ip: str) -> None:
        """Record a use of ``ip`` for ``host``, evicting the oldest entry if full."""
        with self._lock:
            if self._max_total_entries > 0:
                while self._total_entries >= self._max_total_entries:
                    if not self._evict_oldest():
                        break
            self._hosts.setdefault(host, HostHistory()).add(ip)
            self._total_entries += 1

    def _evict_oldest(self) -> bool:
        oldest_host: str | None = None
        oldest_time = 0.0
        for host, hh in self._hosts.items():
            ts = hh._oldest_timestamp()
            if ts is not None and (oldest_host is None or ts < oldest_time):
                oldest_host, oldest_time = host, ts
        if oldest_host is None:
            return False
        hh = self._hosts[oldest_host]
        if hh._pop_oldest():
            self._total_entries -= 1
        if len(hh) == 0:
            del self._hosts[oldest_host]
        return True

    def filtered(self, host: str, window: float, max_size: int) -> list[Entry]:
        """Recent entries for ``host``; empty if the host is unknown."""
        with self._lock:
            hh = self._hosts.get(host)
        if hh is None:
            return []
        return hh.filtered(window, max_size)

    def cleanup(self, window: float) -> tuple[int, int]:
        """Drop expired entries and empty hosts; return (entries, hosts) removed."""
        removed_entries = 0
        with self._lock:
            for hh in self._hosts.values():
                removed_entries += hh.cleanup(window)
            empty = [host for host, hh in self._hosts.items() if len(hh) == 0]
            for host in empty:
                del self._hosts[host]
            self._total_entries = max(0, self._total_entries - removed_entries)
        return removed_entries, len(empty)

    def stats(self) -> HistoryStats:
        """Number of hosts, entries, and entries per IP."""
        per_ip: Counter[str] = Counter()
        total = 0
        with self._lock:
            hosts = len(self._hosts)
            for hh in self._hosts.values():
                entries = hh._snapshot()
                total += len(entries)
                per_ip.update(e.ip for e in entries)
        return HistoryStats(hosts, total, dict(per_ip))