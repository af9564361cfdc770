"""Hot reloading of the configuration file."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from outboundlb.config import LOG_FORMATS, LOG_LEVELS, Config, ConfigError, load_from_file

log = logging.getLogger(__name__)

_DEBOUNCE_SECONDS = 0.1

Callback = Callable[[Config], None]


class ValidationError(ConfigError):
    """A hot-reloadable setting has an invalid value."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


def validate_reloadable(config: Config) -> None:
    """Raise ValidationError if a hot-reloadable setting is invalid."""
    if config.log_level not in LOG_LEVELS:
        raise ValidationError("log_level", "must be trace, debug, info, warn, or error")
    if config.log_format not in LOG_FORMATS:
        raise ValidationError("log_format", "must be json or text")
    if config.max_conns_per_ip < 1:
        raise ValidationError("max_conns_per_ip", "must be at least 1")
    if config.max_conns_total < 1:
        raise ValidationError("max_conns_total", "must be at least 1")
    if config.history_window <= 0:
        raise ValidationError("history_window", "must be positive")
    if config.history_size < 1:
        raise ValidationError("history_size", "must be at least 1")


_RELOADABLE = (
    "log_level",
    "log_format",
    "max_conns_per_ip",
    "max_conns_total",
    "history_window",
    "history_size",
)
_RESTART_ONLY = (
    ("ips", "requires restart"),
    ("port", "requires restart"),
    ("metrics_port", "requires restart"),
    ("auth", "requires restart for security"),
    ("timeout", "requires restart"),
)


def _log_changes(old: Config, new: Config) -> None:
    for name in _RELOADABLE:
        before, after = getattr(old, name), getattr(new, name)
        if before != after:
            log.info("config_changed field=%s old=%s new=%s", name, before, after)
    for name, reason in _RESTART_ONLY:
        if getattr(old, name) != getattr(new, name):
            log.warning("config_change_ignored field=%s reason=%s", name, reason)


class _FileEvents(FileSystemEventHandler):
    def __init__(self, watcher: ConfigWatcher, target: str) -> None:
        super().__init__()
        self._watcher = watcher
        self._target = target

    def _matches(self, path: str | bytes) -> bool:
        return os.path.abspath(os.fsdecode(path)) == self._target

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._matches(event.src_path):
            self._watcher._schedule_reload()

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._matches(event.src_path):
            self._watcher._schedule_reload()

    def on_moved(self, event: FileSystemEvent) -> None:
        dest = getattr(event, "dest_path", "")
        if not event.is_directory and dest and self._matches(dest):
            self._watcher._schedule_reload()


class ConfigWatcher:
    """Watches a configuration file and notifies callbacks when it changes."""

    def __init__(self, path: str | Path, initial: Config) -> None:
        self._path = Path(path)
        self._current = initial
        self._callbacks: list[Callback] = []
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._observer: Observer | None = None
        self._stopped = False

    @property
    def path(self) -> Path:
        return self._path

    def start(self) -> None:
        """Begin watching the file; raise FileNotFoundError if it is missing."""
        if not self._path.is_file():
            raise FileNotFoundError(f"config file not found: {self._path}")
        target = os.path.abspath(self._path)
        observer = Observer()
        observer.schedule(_FileEvents(self, target), os.path.dirname(target), recursive=False)
        observer.daemon = True
        observer.start()
        with self._lock:
            self._stopped = False
            self._observer = observer
        log.info("config_watcher_started path=%s", self._path)

    def stop(self) -> None:
        """Stop watching and cancel any pending reload."""
        with self._lock:
            self._stopped = True
            timer, self._timer = self._timer, None
            observer, self._observer = self._observer, None
        if timer is not None:
            timer.cancel()
        if observer is not None:
            observer.stop()
            observer.join()
        log.info("config_watcher_stopped")

    def current(self) -> Config:
        """The configuration currently in effect."""
        with self._lock:
            return self._current

    def register_callback(self, callback: Callback) -> None:
        """Call ``callback`` with the new configuration after each reload."""
        with self._lock:
            self._callbacks.append(callback)

    def reload(self) -> Config:
        """Load the file now, validate it, and notify callbacks."""
        new_config = load_from_file(self._path)
        validate_reloadable(new_config)
        with self._lock:
            old_config, self._current = self._current, new_config
            callbacks = list(self._callbacks)
        _log_changes(old_config, new_config)
        for callback in callbacks:
            callback(new_config)
        log.info("config_reloaded path=%s", self._path)
        return new_config

    def _schedule_reload(self) -> None:
        with self._lock:
            if self._stopped:
                return
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(_DEBOUNCE_SECONDS, self._reload_quietly)
            self._timer.daemon = True
            self._timer.start()

    def _reload_quietly(self) -> None:
        try:
            self.reload()
        except ConfigError as exc:
            log.error("config_reload_failed error=%s", exc)