"""Hooks that tie the watchdog to a host server's worker lifecycle."""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from typing import Callable, Optional, Union

from . import heap_dump
from .config import Settings
from .configurator import ROLE_WEB, configure_for_role
from .watchdog import Watchdog

logger = logging.getLogger("memwatchdog.lifecycle")


class LifecycleEvents:
    """Registry of worker start/stop callbacks.

    The host calls ``do_worker_start`` once a worker process is ready to
    serve and ``do_worker_stop`` when it is shutting down.
    """

    def __init__(self):
        self._start_hooks: list[Callable[[], None]] = []
        self._stop_hooks: list[Callable[[], None]] = []

    def on_worker_start(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._start_hooks.append(callback)
        return callback

    def on_worker_stop(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._stop_hooks.append(callback)
        return callback

    def do_worker_start(self):
        self._call_all(self._start_hooks, "worker start")

    def do_worker_stop(self):
        self._call_all(self._stop_hooks, "worker stop")

    def _call_all(self, hooks: list[Callable[[], None]], phase: str):
        for hook in hooks:
            try:
                hook()
            except Exception as e:
                logger.error(f"{phase} hook {getattr(hook, '__name__', hook)!r} failed: {e}")


def install(
    role: str,
    settings: Optional[Settings] = None,
    events: Optional[LifecycleEvents] = None,
    heap_dump_dir: Optional[Union[str, Path]] = None,
) -> LifecycleEvents:
    """Start a watchdog on worker start and stop it on worker stop.

    When heap dumps are enabled for a web worker, a dump requested by the
    watchdog is written to ``heap_dump_dir`` (default: the system temp dir)
    on stop. Job workers are killed outright, so they never write one.
    """
    settings = settings or Settings.from_env()
    events = events or LifecycleEvents()
    current: dict[str, Watchdog] = {}

    def start_watchdog():
        watchdog = Watchdog(configure_for_role(role, settings))
        current["watchdog"] = watchdog
        watchdog.start()
        logger.info(f"Memory watchdog started for {role} worker")

    def stop_watchdog():
        watchdog = current.pop("watchdog", None)
        if watchdog is not None:
            watchdog.stop()

    def write_heap_dump():
        path = heap_dump.write(heap_dump_dir or tempfile.gettempdir())
        if path is None:
            logger.debug("No heap dump requested")

    events.on_worker_start(start_watchdog)
    events.on_worker_stop(stop_watchdog)
    if settings.dump_heap and role == ROLE_WEB:
        events.on_worker_stop(write_heap_dump)

    return events
