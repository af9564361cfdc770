"""Periodic health checking of a set of outbound IPs."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from outboundlb.checkers import Checker
from outboundlb.health_status import HealthState, IPStatus, StatusInfo

log = logging.getLogger(__name__)


@dataclass
class HealthCheckerConfig:
    """What to check, how often, and when to flip an IP's state."""

    ips: Sequence[str]
    checker: Checker
    interval: float = 10.0
    timeout: float = 5.0
    failure_threshold: int = 3
    success_threshold: int = 2


class HealthChecker:
    """Runs health checks for every configured IP in the background."""

    def __init__(self, config: HealthCheckerConfig) -> None:
        self.config = config
        self._statuses: dict[str, IPStatus] = {ip: IPStatus(ip) for ip in config.ips}
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Start checking: once immediately, then every interval."""
        if self._thread is not None:
            raise RuntimeError("health checker already started")
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="health-checker", daemon=True)
        self._thread.start()
        log.info(
            "health_checker_started interval=%s timeout=%s failure_threshold=%d success_threshold=%d",
            self.config.interval,
            self.config.timeout,
            self.config.failure_threshold,
            self.config.success_threshold,
        )

    def stop(self) -> None:
        """Stop checking and wait for the running round to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        log.info("health_checker_stopped")

    def is_healthy(self, ip: str) -> bool:
        """True if ``ip`` is healthy; unknown IPs count as healthy."""
        status = self._statuses.get(ip)
        return status is None or status.is_healthy()

    def healthy_ips(self, ips: Iterable[str]) -> list[str]:
        """The healthy IPs among ``ips``, in the given order."""
        return [ip for ip in ips if self.is_healthy(ip)]

    def all_status(self) -> list[StatusInfo]:
        """A status snapshot for every configured IP."""
        return [status.info() for status in self._statuses.values()]

    def check_all(self) -> None:
        """Check every IP concurrently and wait for all results."""
        ips = list(self._statuses)
        if ips:
            with ThreadPoolExecutor(max_workers=len(ips)) as pool:
                list(pool.map(self._check_ip, ips))
        healthy, unhealthy = self.counts()
        log.debug("health_check_round healthy=%d unhealthy=%d", healthy, unhealthy)

    def counts(self) -> tuple[int, int]:
        """Number of (healthy, unhealthy) IPs."""
        healthy = sum(1 for status in self._statuses.values() if status.is_healthy())
        return healthy, len(self._statuses) - healthy

    def _loop(self) -> None:
        self.check_all()
        while not self._stop_event.wait(self.config.interval):
            self.check_all()

    def _check_ip(self, ip: str) -> None:
        status = self._statuses.get(ip)
        if status is None:
            return
        start = time.monotonic()
        try:
            self.config.checker.check(ip, self.config.timeout)
        except Exception as exc:  # any failing check marks the IP down
            if status.record_failure(exc, self.config.failure_threshold):
                log.warning(
                    "ip_health_state_changed ip=%s state=%s error=%s",
                    ip,
                    status.info().state,
                    exc,
                )
            else:
                log.debug(
                    "health_check_failed ip=%s error=%s consecutive_failures=%d",
                    ip,
                    exc,
                    status.consecutive_failures,
                )
            return
        if status.record_success(self.config.success_threshold):
            log.info("ip_health_state_changed ip=%s state=%s", ip, status.info().state)
        else:
            log.debug(
                "health_check_success ip=%s duration=%.3fs", ip, time.monotonic() - start
            )


__all__ = ["HealthChecker", "HealthCheckerConfig", "HealthState"]