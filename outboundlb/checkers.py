"""Health checks performed from a given source IP."""

from __future__ import annotations

import abc
import http.client
import socket
from urllib.parse import urljoin, urlsplit

_REDIRECT_CODES = frozenset({301, 302, 303, 307, 308})
_MAX_REDIRECTS = 10


class HealthCheckError(Exception):
    """A health check did not pass."""


class Checker(abc.ABC):
    """A health check that can be run from a source IP."""

    @abc.abstractmethod
    def check(self, source_ip: str, timeout: float | None = None) -> None:
        """Run the check from ``source_ip``; raise HealthCheckError on failure."""


def _effective_timeout(own: float, deadline: float | None) -> float:
    if deadline is None:
        return own
    if deadline <= 0:
        raise HealthCheckError("deadline exceeded")
    return min(own, deadline)


def _split_host_port(target: str) -> tuple[str, int]:
    if target.startswith("["):
        host, _, rest = target[1:].partition("]")
        if not rest.startswith(":"):
            raise HealthCheckError(f"invalid target {target!r}: missing port")
        port_text = rest[1:]
    else:
        host, sep, port_text = target.rpartition(":")
        if not sep:
            raise HealthCheckError(f"invalid target {target!r}: missing port")
    try:
        port = int(port_text)
    except ValueError:
        raise HealthCheckError(f"invalid target {target!r}: bad port") from None
    return host, port


class TCPChecker(Checker):
    """Passes when a TCP connection to ``target`` (host:port) can be opened."""

    def __init__(self, target: str, timeout: float) -> None:
        self.target = target
        self.timeout = timeout

    def check(self, source_ip: str, timeout: float | None = None) -> None:
        limit = _effective_timeout(self.timeout, timeout)
        host, port = _split_host_port(self.target)
        try:
            conn = socket.create_connection(
                (host, port), timeout=limit, source_address=(source_ip, 0)
            )
        except OSError as exc:
            raise HealthCheckError(f"tcp connect failed: {exc}") from exc
        conn.close()


class HTTPChecker(Checker):
    """Passes when a GET of ``url`` ends in a 2xx or 3xx status."""

    def __init__(self, url: str, timeout: float) -> None:
        self.url = url
        self.timeout = timeout

    def check(self, source_ip: str, timeout: float | None = None) -> None:
        limit = _effective_timeout(self.timeout, timeout)
        url = self.url
        for _ in range(_MAX_REDIRECTS + 1):
            status, location = self._get(url, source_ip, limit)
            if status in _REDIRECT_CODES and location:
                url = urljoin(url, location)
                continue
            if 200 <= status < 400:
                return
            raise HealthCheckError(f"unexpected status code: {status}")
        raise HealthCheckError(f"stopped after {_MAX_REDIRECTS} redirects")

    @staticmethod
    def _get(url: str, source_ip: str, timeout: float) -> tuple[int, str | None]:
        parts = urlsplit(url)
        try:
            port = parts.port
        except ValueError as exc:
            raise HealthCheckError(f"failed to create request: {exc}") from exc
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise HealthCheckError(f"failed to create request: invalid URL {url!r}")

        if parts.scheme == "https":
            conn: http.client.HTTPConnection = http.client.HTTPSConnection(
                parts.hostname, port or 443, timeout=timeout, source_address=(source_ip, 0)
            )
        else:
            conn = http.client.HTTPConnection(
                parts.hostname, port or 80, timeout=timeout, source_address=(source_ip, 0)
            )

        path = parts.path or "/"
        if parts.query:
            path = f"{path}?{parts.query}"
        try:
            conn.request("GET", path, headers={"Connection": "close"})
            response = conn.getresponse()
            return response.status, response.getheader("Location")
        except (OSError, http.client.HTTPException) as exc:
            raise HealthCheckError(f"http request failed: {exc}") from exc
        finally:
            conn.close()