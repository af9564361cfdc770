"""Command line: flags, environment variables, config file, and the service loop."""

from __future__ import annotations

import argparse
import json
import logging
import os
import queue
import re
import signal
import sys
from collections.abc import Mapping, Sequence
from dataclasses import replace
from datetime import datetime, timezone

from outboundlb.balancer import BalancerConfig, new_balancer
from outboundlb.checkers import Checker, HTTPChecker, TCPChecker
from outboundlb.config import Config, ConfigError, load_from_file, parse_duration
from outboundlb.healthchecker import HealthChecker, HealthCheckerConfig
from outboundlb.limiter import Limiter
from outboundlb.watcher import ConfigWatcher

log = logging.getLogger("outboundlb")

ENV_PREFIX = "OUTBOUND_LB_"
TRACE = 5

# (flag, Config field, kind, help)
_SETTINGS = (
    ("ips", "ips", "list", "Comma-separated list of outbound IPs"),
    ("port", "port", "int", "Proxy listening port"),
    ("metrics-port", "metrics_port", "int", "Metrics server port"),
    ("auth", "auth", "str", "Basic auth credentials (user:pass)"),
    ("timeout", "timeout", "duration", "Connection timeout"),
    ("idle-timeout", "idle_timeout", "duration", "Idle connection timeout"),
    ("max-conns-per-ip", "max_conns_per_ip", "int", "Max connections per outbound IP"),
    ("max-conns-total", "max_conns_total", "int", "Max total connections"),
    ("history-window", "history_window", "duration", "LRU history time window"),
    ("history-size", "history_size", "int", "Max history entries per host"),
    ("log-level", "log_level", "str", "Log level (debug, info, warn, error)"),
    ("log-format", "log_format", "str", "Log format (json, text)"),
    ("tcp-keepalive", "tcp_keepalive", "duration", "TCP keep-alive interval"),
    ("idle-conn-timeout", "idle_conn_timeout", "duration", "Idle HTTP connection timeout"),
    ("tls-handshake-timeout", "tls_handshake_timeout", "duration", "TLS handshake timeout"),
    ("expect-continue-timeout", "expect_continue_timeout", "duration", "Expect-continue timeout"),
    ("history-max-total-entries", "history_max_total_entries", "int", "Max total history entries"),
    ("circuit-breaker-enabled", "circuit_breaker_enabled", "bool", "Enable circuit breaker"),
    ("cb-failure-threshold", "cb_failure_threshold", "int", "Circuit breaker failure threshold"),
    ("cb-success-threshold", "cb_success_threshold", "int", "Circuit breaker success threshold"),
    ("cb-timeout", "cb_timeout", "duration", "Circuit breaker timeout"),
    ("health-check-enabled", "health_check_enabled", "bool", "Enable active health checks"),
    ("health-check-type", "health_check_type", "str", "Health check type: tcp or http"),
    ("health-check-interval", "health_check_interval", "duration", "Health check interval"),
    ("health-check-timeout", "health_check_timeout", "duration", "Health check timeout"),
    (
        "health-check-target",
        "health_check_target",
        "str",
        "Health check target (host:port for tcp, URL for http)",
    ),
    (
        "health-check-failure-threshold",
        "health_check_failure_threshold",
        "int",
        "Failures before marking IP unhealthy",
    ),
    (
        "health-check-success-threshold",
        "health_check_success_threshold",
        "int",
        "Successes before marking IP healthy",
    ),
)
_FIELD_BY_FLAG = {flag: field for flag, field, _, _ in _SETTINGS}
_FIELD_BY_FLAG["config"] = "config_file"
_FLAG_BY_FIELD = {field: flag for flag, field in _FIELD_BY_FLAG.items()}

_TRUE = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE = frozenset({"0", "f", "F", "FALSE", "false", "False"})
_INT_RE = re.compile(r"[+-]?\d+")


def _parse_bool(text: str) -> bool:
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"invalid boolean {text!r}")


def _parse_int(text: str) -> int:
    if not _INT_RE.fullmatch(text):
        raise ValueError(f"invalid integer {text!r}")
    return int(text)


def _bool_arg(text: str) -> bool:
    try:
        return _parse_bool(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def _duration_arg(text: str) -> float:
    try:
        return parse_duration(text)
    except ConfigError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def _int_arg(text: str) -> int:
    try:
        return _parse_int(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def _list_arg(text: str) -> list[str]:
    return text.split(",") if text else []


def build_parser() -> argparse.ArgumentParser:
    """The argument parser; only flags given on the command line end up set."""
    parser = argparse.ArgumentParser(
        prog="outbound-lb",
        description="HTTP proxy that balances outgoing connections across local IPs.",
        argument_default=argparse.SUPPRESS,
    )
    for flag, field, kind, help_text in _SETTINGS:
        option = f"--{flag}"
        if kind == "list":
            parser.add_argument(
                option, dest=field, action="extend", type=_list_arg, help=help_text
            )
        elif kind == "bool":
            parser.add_argument(
                option, dest=field, nargs="?", const=True, type=_bool_arg, help=help_text
            )
        elif kind == "int":
            parser.add_argument(option, dest=field, type=_int_arg, help=help_text)
        elif kind == "duration":
            parser.add_argument(option, dest=field, type=_duration_arg, help=help_text)
        else:
            parser.add_argument(option, dest=field, help=help_text)
    parser.add_argument("--config", dest="config_file", help="Config file path (YAML)")
    return parser


def _env_value(kind: str, raw: str) -> object:
    if kind == "list":
        return [part.strip() for part in raw.split(",")]
    if kind == "int":
        return _parse_int(raw)
    if kind == "bool":
        return _parse_bool(raw)
    if kind == "duration":
        return parse_duration(raw)
    return raw


def load_from_env(
    config: Config, explicit: frozenset[str] | set[str], environ: Mapping[str, str]
) -> Config:
    """Apply OUTBOUND_LB_* variables for settings not given as flags.

    Empty or unparsable values are ignored.
    """
    values = {}
    for flag, field, kind, _ in _SETTINGS:
        raw = environ.get(ENV_PREFIX + field.upper(), "")
        if not raw or flag in explicit:
            continue
        try:
            values[field] = _env_value(kind, raw)
        except ValueError:
            continue
    return replace(config, **values)


def merge_configs(
    file_config: Config, cli_config: Config, explicit: frozenset[str] | set[str]
) -> Config:
    """The file configuration with the explicitly given flags laid over it."""
    values = {
        _FIELD_BY_FLAG[flag]: getattr(cli_config, _FIELD_BY_FLAG[flag])
        for flag in explicit
        if flag in _FIELD_BY_FLAG and flag != "config"
    }
    return replace(file_config, **values, config_file=cli_config.config_file)


def parse_flags(
    argv: Sequence[str] | None = None, environ: Mapping[str, str] | None = None
) -> Config:
    """Build the configuration from flags, environment and config file, then validate it."""
    given = vars(build_parser().parse_args(argv))
    explicit = frozenset(_FLAG_BY_FIELD[name] for name in given)
    config = replace(Config(), **given)
    config = load_from_env(config, explicit, os.environ if environ is None else environ)

    if config.config_file:
        try:
            file_config = load_from_file(config.config_file)
        except ConfigError as exc:
            raise ConfigError(f"loading config file: {exc}") from exc
        config = merge_configs(file_config, config, explicit)

    try:
        config.validate()
    except ConfigError as exc:
        raise ConfigError(f"validating config: {exc}") from exc
    return config


class _JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry)


_LEVELS = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def _configure_logging(level: str, fmt: str) -> None:
    logging.addLevelName(TRACE, "TRACE")
    handler = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        handler.setFormatter(_JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
    root.addHandler(handler)
    root.setLevel(_LEVELS.get(level, logging.INFO))


def _make_checker(config: Config) -> Checker:
    if config.health_check_type == "http":
        log.info("health_check_configured type=http target=%s", config.health_check_target)
        return HTTPChecker(config.health_check_target, config.health_check_timeout)
    log.info("health_check_configured type=tcp target=%s", config.health_check_target)
    return TCPChecker(config.health_check_target, config.health_check_timeout)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the service until SIGINT or SIGTERM; SIGHUP reloads the config file."""
    try:
        config = parse_flags(argv)
    except ConfigError as exc:
        print(f"failed to parse configuration: {exc}", file=sys.stderr)
        return 1

    _configure_logging(config.log_level, config.log_format)
    log.info(
        "outbound-lb starting ips=%s port=%d metrics_port=%d",
        ",".join(config.ips),
        config.port,
        config.metrics_port,
    )

    limiter = Limiter(config.max_conns_per_ip, config.max_conns_total, config.ips)

    health_checker = None
    if config.health_check_enabled:
        health_checker = HealthChecker(
            HealthCheckerConfig(
                ips=config.ips,
                checker=_make_checker(config),
                interval=config.health_check_interval,
                timeout=config.health_check_timeout,
                failure_threshold=config.health_check_failure_threshold,
                success_threshold=config.health_check_success_threshold,
            )
        )
        health_checker.start()

    balancer = new_balancer(
        BalancerConfig(
            ips=config.ips,
            history_window=config.history_window,
            history_size=config.history_size,
            limiter=limiter,
            health_checker=health_checker,
        )
    )
    balancer.start()

    watcher = None
    if config.config_file:
        watcher = ConfigWatcher(config.config_file, config)

        def apply(new_config: Config) -> None:
            _configure_logging(new_config.log_level, new_config.log_format)
            limiter.update_limits(new_config.max_conns_per_ip, new_config.max_conns_total)
            balancer.update_history_config(new_config.history_window, new_config.history_size)

        watcher.register_callback(apply)
        try:
            watcher.start()
        except OSError as exc:
            log.error("failed to start config watcher error=%s", exc)

    signals: queue.SimpleQueue[int] = queue.SimpleQueue()
    hangup = getattr(signal, "SIGHUP", None)
    wanted = [signal.SIGINT, signal.SIGTERM] + ([hangup] if hangup is not None else [])
    previous = {sig: signal.signal(sig, lambda signum, _frame: signals.put(signum)) for sig in wanted}

    try:
        while True:
            try:
                signum = signals.get(timeout=0.5)
            except queue.Empty:
                continue
            if hangup is not None and signum == hangup:
                log.info("received SIGHUP, reloading configuration")
                if watcher is None:
                    log.warning("config reload requested but no config file specified")
                    continue
                try:
                    watcher.reload()
                except ConfigError as exc:
                    log.error("config reload failed error=%s", exc)
                continue
            log.info("received shutdown signal signal=%s", signal.Signals(signum).name)
            break
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    if watcher is not None:
        watcher.stop()
    balancer.stop()
    if health_checker is not None:
        health_checker.stop()
    log.info("outbound-lb stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())