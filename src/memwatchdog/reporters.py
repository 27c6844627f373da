"""Event reporters for Memory Watchdog."""

from __future__ import annotations

import json
import logging
import os
import queue
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import requests

from .exceptions import ReporterError

logger = logging.getLogger("memwatchdog")


class WatchdogEvent:
    """A structured state transition of the watchdog."""

    STARTED = "started"
    MONITOR_OK = "monitor_ok"
    STRIKE_RECORDED = "strike_recorded"
    THRESHOLD_EXCEEDED = "threshold_exceeded"
    HEAP_DUMP_REQUESTED = "heap_dump_requested"
    HANDLER_INVOKED = "handler_invoked"
    HANDLER_FAILED = "handler_failed"
    MONITOR_ERROR = "monitor_error"
    STOPPED = "stopped"

    def __init__(
        self,
        kind: str,
        attributes: Optional[dict] = None,
        timestamp: Optional[datetime] = None,
        pid: Optional[int] = None,
    ):
        self.kind = kind
        self.attributes = dict(attributes or {})
        self.timestamp = timestamp or datetime.now(timezone.utc)
        self.pid = pid if pid is not None else os.getpid()

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "event": self.kind,
            "timestamp": self.timestamp.isoformat(),
            "pid": self.pid,
            **self.attributes,
        }


class EventReporter(ABC):
    """Base class for event sinks."""

    def report(self, kind: str, attributes: Optional[dict] = None) -> None:
        """Record an event of ``kind`` with its attributes."""
        self.emit(WatchdogEvent(kind, attributes))

    @abstractmethod
    def emit(self, event: WatchdogEvent) -> None:
        """Deliver an event. May raise; the watchdog contains failures."""
        pass


class NullEventReporter(EventReporter):
    """Discards every event."""

    def emit(self, event: WatchdogEvent) -> None:
        pass


class LoggingEventReporter(EventReporter):
    """Writes each event as one JSON log line."""

    _levels = {
        WatchdogEvent.MONITOR_OK: logging.DEBUG,
        WatchdogEvent.STARTED: logging.INFO,
        WatchdogEvent.STOPPED: logging.INFO,
        WatchdogEvent.STRIKE_RECORDED: logging.WARNING,
        WatchdogEvent.THRESHOLD_EXCEEDED: logging.WARNING,
        WatchdogEvent.HEAP_DUMP_REQUESTED: logging.WARNING,
        WatchdogEvent.HANDLER_INVOKED: logging.WARNING,
        WatchdogEvent.HANDLER_FAILED: logging.ERROR,
        WatchdogEvent.MONITOR_ERROR: logging.ERROR,
    }

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("memwatchdog.events")

    def emit(self, event: WatchdogEvent) -> None:
        level = self._levels.get(event.kind, logging.INFO)
        if not self.logger.isEnabledFor(level):
            return
        self.logger.log(level, json.dumps(event.to_dict(), default=str, sort_keys=True))


class WebhookEventReporter(EventReporter):
    """Posts each event as JSON to a telemetry endpoint."""

    def __init__(
        self,
        url: str,
        method: str = "POST",
        headers: Optional[dict] = None,
        timeout: float = 5,
    ):
        self.url = url
        self.method = method
        self.headers = headers or {}
        self.timeout = timeout

    def emit(self, event: WatchdogEvent) -> None:
        try:
            response = requests.request(
                method=self.method,
                url=self.url,
                data=json.dumps(event.to_dict(), default=str),
                headers={"Content-Type": "application/json", **self.headers},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise ReporterError(f"Webhook error: {e}") from e


class CompositeEventReporter(EventReporter):
    """Fans events out to several reporters."""

    def __init__(self, reporters: Iterable[EventReporter]):
        self.reporters = list(reporters)

    def emit(self, event: WatchdogEvent) -> None:
        for reporter in self.reporters:
            try:
                reporter.emit(event)
            except Exception as e:
                logger.error(f"Event reporter {type(reporter).__name__} failed: {e}")


class QueuedEventReporter(EventReporter):
    """Hands events to ``reporter`` on a background thread.

    ``emit`` never blocks the caller. When ``maxsize`` events are already
    waiting the new one is dropped and counted in ``dropped``.
    """

    thread_name = "memory-watchdog-reporter"

    def __init__(self, reporter: EventReporter, maxsize: int = 100):
        self.reporter = reporter
        self.dropped = 0
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    def emit(self, event: WatchdogEvent) -> None:
        if self._closed.is_set():
            self.dropped += 1
            return

        self._ensure_worker()
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            logger.warning(f"Event queue full, dropped '{event.kind}' event")

    def close(self, timeout: Optional[float] = None) -> bool:
        """Deliver what is queued, then stop. Returns True once the worker is done."""
        self._closed.set()
        with self._lock:
            thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def _ensure_worker(self):
        with self._lock:
            if self._thread is None:
                self._thread = threading.Thread(
                    target=self._deliver, name=self.thread_name, daemon=True
                )
                self._thread.start()

    def _deliver(self):
        while True:
            try:
                event = self._queue.get(timeout=0.1)
            except queue.Empty:
                if self._closed.is_set():
                    return
                continue

            try:
                self.reporter.emit(event)
            except Exception as e:
                logger.error(f"Event reporter {type(self.reporter).__name__} failed: {e}")


class EventReporterFactory:
    """Factory for creating reporter instances."""

    _reporters: dict[str, type] = {
        "log": LoggingEventReporter,
        "webhook": WebhookEventReporter,
        "null": NullEventReporter,
    }

    @classmethod
    def create(cls, reporter_type: str, **options: Any) -> EventReporter:
        """Create a reporter instance by type name."""
        reporter_class = cls._reporters.get(reporter_type.lower())
        if not reporter_class:
            raise ValueError(f"Unknown reporter type: {reporter_type}")
        return reporter_class(**options)

    @classmethod
    def register(cls, name: str, reporter_class: type):
        """Register a custom reporter type."""
        cls._reporters[name.lower()] = reporter_class
