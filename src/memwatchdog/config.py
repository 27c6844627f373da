"""Configuration management for Memory Watchdog."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Union

import yaml

from .exceptions import ConfigError
from .handlers import BaseHandler, NullHandler
from .monitor import BaseMonitor
from .reporters import EventReporter, LoggingEventReporter

_TRUE_VALUES = ("true", "t", "yes", "y", "1", "on")
_FALSE_VALUES = ("false", "f", "no", "n", "0", "off")


def to_boolean(value: Any, default: Optional[bool] = None) -> Optional[bool]:
    """Interpret an environment-style flag, falling back to ``default``."""
    if isinstance(value, bool):
        return value
    if value is None:
        return default

    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    return default


def _parse_int(key: str, value: Any) -> int:
    try:
        return int(str(value).strip())
    except ValueError:
        raise ConfigError(f"{key}: expected an integer, got {value!r}") from None


def _parse_float(key: str, value: Any) -> float:
    try:
        return float(str(value).strip())
    except ValueError:
        raise ConfigError(f"{key}: expected a number, got {value!r}") from None


def _parse_bool(key: str, value: Any) -> bool:
    parsed = to_boolean(value)
    if parsed is None:
        raise ConfigError(f"{key}: expected a boolean, got {value!r}")
    return parsed


def _parse_str(key: str, value: Any) -> Optional[str]:
    text = str(value).strip()
    return text or None


# Settings field -> (setting key, parser)
_SETTING_KEYS: dict[str, tuple[str, Callable[[str, Any], Any]]] = {
    "dump_heap": ("MEMWD_DUMP_HEAP", _parse_bool),
    "sleep_time_seconds": ("MEMWD_SLEEP_TIME_SEC", _parse_int),
    "max_strikes": ("MEMWD_MAX_STRIKES", _parse_int),
    "disable_web_worker_killer": ("MEMWD_DISABLE_WEB_WORKER_KILLER", _parse_bool),
    "max_heap_fragmentation": ("MEMWD_MAX_HEAP_FRAG", _parse_float),
    "max_memory_growth": ("MEMWD_MAX_MEM_GROWTH", _parse_float),
    "web_worker_max_memory_mb": ("WEB_WORKER_MAX_MEMORY", _parse_int),
    "job_check_interval_seconds": ("JOB_MEMORY_KILLER_CHECK_INTERVAL", _parse_int),
    "job_max_rss_kb": ("JOB_MEMORY_KILLER_MAX_RSS", _parse_int),
    "job_grace_time_seconds": ("JOB_MEMORY_KILLER_GRACE_TIME", _parse_int),
    "job_hard_limit_rss_kb": ("JOB_MEMORY_KILLER_HARD_LIMIT_RSS", _parse_int),
    "event_webhook_url": ("MEMWD_EVENT_WEBHOOK_URL", _parse_str),
}


@dataclass
class Settings:
    """Environment-derived settings consumed by the configurator."""

    dump_heap: bool = False

    # Web (request-serving) role
    sleep_time_seconds: int = 60
    max_strikes: int = 5
    disable_web_worker_killer: bool = False
    max_heap_fragmentation: float = 0.5
    max_memory_growth: float = 3.0
    web_worker_max_memory_mb: int = 1200

    # Job (background worker) role
    job_check_interval_seconds: int = 3
    job_max_rss_kb: int = 0  # soft limit, 0 disables
    job_grace_time_seconds: int = 300
    job_hard_limit_rss_kb: int = 0  # hard limit, 0 disables

    # Telemetry
    event_webhook_url: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Create settings from environment variables."""
        return cls.from_dict(os.environ if environ is None else environ)

    @classmethod
    def from_yaml(
        cls, path: Union[str, Path], environ: Optional[Mapping[str, str]] = None
    ) -> "Settings":
        """Load settings from a YAML file; its keys override the environment."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Settings file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ConfigError(f"Settings file must contain a mapping: {path}")

        merged = dict(os.environ if environ is None else environ)
        merged.update({str(key).upper(): value for key, value in data.items()})
        return cls.from_dict(merged)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Settings":
        """Create settings from a mapping of setting keys to raw values."""
        settings = cls()

        for attr, (key, parse) in _SETTING_KEYS.items():
            value = data.get(key)
            if value is None or value == "":
                continue
            setattr(settings, attr, parse(key, value))

        return settings

    def validate(self, role: Optional[str] = None) -> list[str]:
        """Validate settings, return list of errors.

        With ``role`` ("web" or "job") only the keys that role reads are
        checked.
        """
        errors = []

        if role in (None, "web"):
            if self.sleep_time_seconds <= 0:
                errors.append("MEMWD_SLEEP_TIME_SEC must be positive")
            if self.max_strikes < 0:
                errors.append("MEMWD_MAX_STRIKES must not be negative")
            if self.max_heap_fragmentation <= 0:
                errors.append("MEMWD_MAX_HEAP_FRAG must be positive")
            if self.max_memory_growth <= 0:
                errors.append("MEMWD_MAX_MEM_GROWTH must be positive")
            if self.web_worker_max_memory_mb <= 0:
                errors.append("WEB_WORKER_MAX_MEMORY must be positive")

        if role in (None, "job"):
            if self.job_grace_time_seconds < 0:
                errors.append("JOB_MEMORY_KILLER_GRACE_TIME must not be negative")
            if self.job_max_rss_kb < 0:
                errors.append("JOB_MEMORY_KILLER_MAX_RSS must not be negative")
            if self.job_hard_limit_rss_kb < 0:
                errors.append("JOB_MEMORY_KILLER_HARD_LIMIT_RSS must not be negative")

        return errors

    def to_dict(self) -> dict[str, Any]:
        """Export settings keyed by their setting names."""
        return {key: getattr(self, attr) for attr, (key, _) in _SETTING_KEYS.items()}


@dataclass(frozen=True)
class MonitorEntry:
    """A monitor together with its strike budget."""

    monitor: BaseMonitor
    max_strikes: int
    name: str


class MonitorStack:
    """Ordered builder for the monitors a watchdog evaluates each tick."""

    def __init__(self):
        self._entries: list[MonitorEntry] = []

    def push(
        self, monitor: BaseMonitor, max_strikes: int, name: Optional[str] = None
    ) -> "MonitorStack":
        """Append a monitor; ``max_strikes=0`` makes it zero-tolerance."""
        name = name or monitor.name

        if max_strikes < 0:
            raise ConfigError(f"Monitor '{name}': max_strikes must not be negative")
        if any(entry.name == name for entry in self._entries):
            raise ConfigError(f"Monitor '{name}' is already in the stack")

        self._entries.append(MonitorEntry(monitor=monitor, max_strikes=max_strikes, name=name))
        return self

    def entries(self) -> tuple[MonitorEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


@dataclass(frozen=True)
class Configuration:
    """Everything a watchdog loop needs. Read-only once built."""

    handler: BaseHandler = field(default_factory=NullHandler)
    sleep_interval_seconds: float = 60
    monitors: tuple[MonitorEntry, ...] = ()
    write_heap_dumps_on_violation: bool = False
    event_reporter: EventReporter = field(default_factory=LoggingEventReporter)

    def __post_init__(self):
        # Accept any sequence of entries but store an immutable one
        object.__setattr__(self, "monitors", tuple(self.monitors))

        errors = self.validate()
        if errors:
            raise ConfigError("; ".join(errors))

    def validate(self) -> list[str]:
        """Validate configuration, return list of errors."""
        errors = []

        if not self.sleep_interval_seconds > 0:
            errors.append("sleep_interval_seconds must be positive")

        names = [entry.name for entry in self.monitors]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            errors.append(f"Duplicate monitor names: {', '.join(duplicates)}")

        for entry in self.monitors:
            if entry.max_strikes < 0:
                errors.append(f"Monitor '{entry.name}': max_strikes must not be negative")

        return errors

    @property
    def monitor_names(self) -> list[str]:
        return [entry.name for entry in self.monitors]

    def to_dict(self) -> dict[str, Any]:
        """Export configuration to dictionary."""
        return {
            "handler": type(self.handler).__name__,
            "sleep_interval_seconds": self.sleep_interval_seconds,
            "write_heap_dumps_on_violation": self.write_heap_dumps_on_violation,
            "event_reporter": type(self.event_reporter).__name__,
            "monitors": [
                {
                    "name": entry.name,
                    "type": type(entry.monitor).__name__,
                    "max_strikes": entry.max_strikes,
                    "options": entry.monitor.describe(),
                }
                for entry in self.monitors
            ],
        }

