"""Main watchdog loop implementation."""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Mapping, Optional

from . import heap_dump
from .config import Configuration, MonitorEntry
from .exceptions import WatchdogError
from .monitor import ViolationResult
from .reporters import WatchdogEvent

logger = logging.getLogger("memwatchdog")


class LoopState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class Watchdog:
    """Supervises the current process until a monitor runs out of strikes.

    Every ``sleep_interval_seconds`` each monitor in the configured stack is
    evaluated in order. Consecutive violations of a monitor count as strikes;
    a clean evaluation resets them. Once a monitor collects more than its
    ``max_strikes`` the handler is invoked and the loop ends. A watchdog is
    single-use: after it stops it cannot be started again.
    """

    thread_name = "memory-watchdog"

    def __init__(self, configuration: Optional[Configuration] = None):
        self.configuration = configuration or Configuration()
        self._state = LoopState.IDLE
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._strikes: dict[str, int] = {}

    @property
    def state(self) -> LoopState:
        with self._state_lock:
            return self._state

    @property
    def strikes(self) -> dict[str, int]:
        """Snapshot of the current strike counts, empty unless running."""
        return dict(self._strikes)

    def start(self, configuration: Optional[Configuration] = None, background: bool = True):
        """Start supervising.

        Runs on a daemon thread by default; with ``background=False`` the
        loop runs in the calling thread and returns once it has stopped.
        """
        with self._state_lock:
            if self._state is not LoopState.IDLE:
                raise WatchdogError(f"Cannot start watchdog in state '{self._state.value}'")
            if configuration is not None:
                self.configuration = configuration
            self._state = LoopState.RUNNING
            self._strikes = {entry.name: 0 for entry in self.configuration.monitors}

        self._report(
            WatchdogEvent.STARTED,
            {
                "monitors": self.configuration.monitor_names,
                "sleep_interval_seconds": self.configuration.sleep_interval_seconds,
                "handler": type(self.configuration.handler).__name__,
            },
        )

        if background:
            self._thread = threading.Thread(target=self._run, name=self.thread_name, daemon=True)
            self._thread.start()
        else:
            self._run()

    def stop(self):
        """Request the loop to stop at its next wake-up. Safe from any thread."""
        with self._state_lock:
            if self._state is LoopState.IDLE:
                self._state = LoopState.STOPPED
                return
        self._stop_event.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for a background loop to finish. Returns True if it has."""
        if self._thread is not None:
            self._thread.join(timeout)
            return not self._thread.is_alive()
        return self.state is LoopState.STOPPED

    def _run(self):
        reason = "stop_requested"
        try:
            while True:
                self._stop_event.wait(self.configuration.sleep_interval_seconds)
                if self._stop_event.is_set():
                    break
                if self._tick():
                    reason = "handler_invoked"
                    break
        except Exception as e:
            reason = "error"
            logger.exception(f"Watchdog loop failed: {e}")
        finally:
            with self._state_lock:
                self._state = LoopState.STOPPED
            self._report(WatchdogEvent.STOPPED, {"reason": reason, "strikes": self.strikes})
            self._strikes = {}

    def _tick(self) -> bool:
        """Evaluate every monitor once. Returns True if the handler fired.

        All monitors are evaluated and their strikes recorded before the
        first breach in stack order (if any) is handled.
        """
        breach: Optional[tuple[MonitorEntry, int, ViolationResult]] = None

        for entry in self.configuration.monitors:
            try:
                result = self._evaluate(entry)
            except Exception as e:
                # A broken monitor counts as healthy for this tick
                self._strikes[entry.name] = 0
                self._report(
                    WatchdogEvent.MONITOR_ERROR,
                    {"monitor": entry.name, "error": str(e), "error_class": type(e).__name__},
                )
                continue

            if not result.violated:
                self._strikes[entry.name] = 0
                self._report(WatchdogEvent.MONITOR_OK, {"monitor": entry.name})
                continue

            strikes = self._strikes.get(entry.name, 0) + 1
            self._strikes[entry.name] = strikes
            self._report(
                WatchdogEvent.STRIKE_RECORDED,
                {
                    **result.payload,
                    "monitor": entry.name,
                    "strikes": strikes,
                    "max_strikes": entry.max_strikes,
                },
            )

            if strikes > entry.max_strikes and breach is None:
                breach = (entry, strikes, result)

        if breach is None:
            return False

        self._handle_breach(*breach)
        return True

    def _evaluate(self, entry: MonitorEntry) -> ViolationResult:
        result = entry.monitor.call()
        if not isinstance(result, ViolationResult):
            raise WatchdogError(
                f"Monitor returned {type(result).__name__}, expected ViolationResult"
            )
        if not isinstance(result.payload, Mapping):
            raise WatchdogError(
                f"Monitor payload is {type(result.payload).__name__}, expected a mapping"
            )
        return result

    def _handle_breach(self, entry: MonitorEntry, strikes: int, result: ViolationResult):
        attributes = {
            **result.payload,
            "monitor": entry.name,
            "strikes": strikes,
            "max_strikes": entry.max_strikes,
        }
        self._report(WatchdogEvent.THRESHOLD_EXCEEDED, attributes)

        if self.configuration.write_heap_dumps_on_violation:
            heap_dump.enqueue()
            self._report(WatchdogEvent.HEAP_DUMP_REQUESTED, {"monitor": entry.name})

        handler = self.configuration.handler
        try:
            handler.call()
        except Exception as e:
            logger.error(f"Handler {type(handler).__name__} failed: {e}")
            self._report(
                WatchdogEvent.HANDLER_FAILED,
                {
                    "monitor": entry.name,
                    "handler": type(handler).__name__,
                    "error": str(e),
                    "error_class": type(e).__name__,
                },
            )
            return

        self._report(
            WatchdogEvent.HANDLER_INVOKED,
            {"monitor": entry.name, "handler": type(handler).__name__},
        )

    def _report(self, kind: str, attributes: dict):
        try:
            self.configuration.event_reporter.report(kind, attributes)
        except Exception as e:
            logger.warning(f"Failed to report '{kind}' event: {e}")
