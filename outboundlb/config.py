"""Proxy configuration: defaults, YAML files, durations and validation."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

LOG_LEVELS = ("trace", "debug", "info", "warn", "error")
LOG_FORMATS = ("json", "text")

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_COMPONENT = r"(?:\d+\.?\d*|\.\d+)(?:ns|us|µs|μs|ms|s|m|h)"
_DURATION_RE = re.compile(rf"[-+]?(?:{_COMPONENT})+")
_PART_RE = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


class ConfigError(ValueError):
    """The configuration could not be loaded or is invalid."""


def parse_duration(text: str) -> float:
    """Parse a duration such as ``300ms`` or ``1h30m`` into seconds."""
    if text in ("0", "+0", "-0"):
        return 0.0
    if not _DURATION_RE.fullmatch(text):
        raise ConfigError(f"invalid duration {text!r}")
    sign = -1.0 if text.startswith("-") else 1.0
    total = sum(float(number) * _UNITS[unit] for number, unit in _PART_RE.findall(text))
    return sign * total


def _kind(kind: str) -> dict[str, str]:
    return {"kind": kind}


@dataclass
class Config:
    """All settings of the proxy; durations are in seconds."""

    ips: list[str] = field(default_factory=list, metadata=_kind("list"))
    port: int = field(default=3128, metadata=_kind("int"))
    metrics_port: int = field(default=9090, metadata=_kind("int"))
    auth: str = field(default="", metadata=_kind("str"))
    timeout: float = field(default=30.0, metadata=_kind("duration"))
    idle_timeout: float = field(default=60.0, metadata=_kind("duration"))
    max_conns_per_ip: int = field(default=100, metadata=_kind("int"))
    max_conns_total: int = field(default=1000, metadata=_kind("int"))
    history_window: float = field(default=300.0, metadata=_kind("duration"))
    history_size: int = field(default=100, metadata=_kind("int"))
    history_max_total_entries: int = field(default=100000, metadata=_kind("int"))
    log_level: str = field(default="info", metadata=_kind("str"))
    log_format: str = field(default="json", metadata=_kind("str"))
    config_file: str = ""

    tcp_keepalive: float = field(default=30.0, metadata=_kind("duration"))
    idle_conn_timeout: float = field(default=90.0, metadata=_kind("duration"))
    tls_handshake_timeout: float = field(default=10.0, metadata=_kind("duration"))
    expect_continue_timeout: float = field(default=1.0, metadata=_kind("duration"))

    circuit_breaker_enabled: bool = field(default=False, metadata=_kind("bool"))
    cb_failure_threshold: int = field(default=5, metadata=_kind("int"))
    cb_success_threshold: int = field(default=2, metadata=_kind("int"))
    cb_timeout: float = field(default=30.0, metadata=_kind("duration"))

    health_check_enabled: bool = field(default=False, metadata=_kind("bool"))
    health_check_type: str = field(default="tcp", metadata=_kind("str"))
    health_check_interval: float = field(default=10.0, metadata=_kind("duration"))
    health_check_timeout: float = field(default=5.0, metadata=_kind("duration"))
    health_check_target: str = field(default="1.1.1.1:443", metadata=_kind("str"))
    health_check_failure_threshold: int = field(default=3, metadata=_kind("int"))
    health_check_success_threshold: int = field(default=2, metadata=_kind("int"))

    def validate(self) -> None:
        """Raise ConfigError if any setting is out of range."""
        if not self.ips:
            raise ConfigError("at least one outbound IP is required (--ips)")
        for ip in self.ips:
            if not _is_ip(ip):
                raise ConfigError(f"invalid IP address: {ip}")
        if not 1 <= self.port <= 65535:
            raise ConfigError(f"invalid port: {self.port}")
        if not 1 <= self.metrics_port <= 65535:
            raise ConfigError(f"invalid metrics port: {self.metrics_port}")
        if self.port == self.metrics_port:
            raise ConfigError("proxy port and metrics port must be different")
        if self.auth and ":" not in self.auth:
            raise ConfigError("auth must be in 'user:pass' format")
        if self.timeout <= 0:
            raise ConfigError("timeout must be positive")
        if self.idle_timeout <= 0:
            raise ConfigError("idle-timeout must be positive")
        if self.max_conns_per_ip < 1:
            raise ConfigError("max-conns-per-ip must be at least 1")
        if self.max_conns_total < 1:
            raise ConfigError("max-conns-total must be at least 1")
        if self.history_window <= 0:
            raise ConfigError("history-window must be positive")
        if self.history_size < 1:
            raise ConfigError("history-size must be at least 1")
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(
                f"invalid log level: {self.log_level} "
                "(must be trace, debug, info, warn, or error)"
            )
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"invalid log format: {self.log_format} (must be json or text)")

    def auth_credentials(self) -> tuple[str, str] | None:
        """(username, password) if auth is configured, else None."""
        if not self.auth:
            return None
        head, sep, tail = self.auth.partition(":")
        if not sep:
            return None
        return head, tail


def _is_ip(text: str) -> bool:
    if "%" in text:
        return False
    try:
        ipaddress.ip_address(text)
    except ValueError:
        return False
    return True


def _scalar_text(value: Any) -> str | None:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    return None


def _coerce(key: str, kind: str, value: Any) -> Any:
    if value is None:
        return {"list": [], "int": 0, "str": "", "bool": False, "duration": 0.0}[kind]
    if kind == "duration":
        if isinstance(value, str):
            return parse_duration(value)
        if isinstance(value, int) and not isinstance(value, bool):
            return value / 1e9
    elif kind == "int":
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    elif kind == "bool":
        if isinstance(value, bool):
            return value
    elif kind == "str":
        text = _scalar_text(value)
        if text is not None:
            return text
    elif kind == "list":
        if isinstance(value, list):
            items = [_scalar_text(item) for item in value]
            if all(item is not None for item in items):
                return items
    raise ConfigError(f"parsing config file: cannot use {value!r} for {key}")


def load_from_file(path: str | Path) -> Config:
    """Load a Config from a YAML file; missing keys keep their defaults."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"reading config file: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"parsing config file: {exc}") from exc

    config = Config()
    if data is None:
        return config
    if not isinstance(data, dict):
        raise ConfigError("parsing config file: top level must be a mapping")

    values = {}
    for f in fields(Config):
        kind = f.metadata.get("kind")
        if kind is not None and f.name in data:
            values[f.name] = _coerce(f.name, kind, data[f.name])
    return replace(config, **values)