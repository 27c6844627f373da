"""Build watchdog configurations for each supervised process role."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from .config import Configuration, MonitorStack, Settings
from .exceptions import ConfigError
from .handlers import GracefulShutdownHandler, TermProcessHandler
from .monitor import HeapFragmentation, RssMemoryLimit, UniqueMemoryGrowth
from .reporters import (
    CompositeEventReporter,
    EventReporter,
    EventReporterFactory,
    QueuedEventReporter,
)

MIN_JOB_SLEEP_INTERVAL_S = 2

ROLE_WEB = "web"
ROLE_JOB = "job"
ROLES = (ROLE_WEB, ROLE_JOB)


def _event_reporter(settings: Settings, logger: Optional[logging.Logger] = None) -> EventReporter:
    reporter = EventReporterFactory.create("log", logger=logger)
    if settings.event_webhook_url:
        # Delivered off the loop thread so a slow endpoint cannot delay ticks
        webhook = EventReporterFactory.create("webhook", url=settings.event_webhook_url)
        return CompositeEventReporter([reporter, QueuedEventReporter(webhook)])
    return reporter


def _check(settings: Settings, role: str):
    errors = settings.validate(role=role)
    if errors:
        raise ConfigError("; ".join(errors))


def configure_for_web(
    settings: Settings, shutdown: Optional[Callable[[], None]] = None
) -> Configuration:
    """Configuration for a request-serving worker.

    ``shutdown`` is the host server's graceful-stop hook, if it has one.
    """
    _check(settings, ROLE_WEB)

    stack = MonitorStack()
    if settings.disable_web_worker_killer:
        stack.push(
            HeapFragmentation(max_heap_fragmentation=settings.max_heap_fragmentation),
            max_strikes=settings.max_strikes,
        )
        stack.push(
            UniqueMemoryGrowth(max_mem_growth=settings.max_memory_growth),
            max_strikes=settings.max_strikes,
        )
    else:
        stack.push(
            RssMemoryLimit(memory_limit_bytes=settings.web_worker_max_memory_mb * 1024 * 1024),
            max_strikes=settings.max_strikes,
        )

    return Configuration(
        handler=GracefulShutdownHandler(shutdown=shutdown),
        sleep_interval_seconds=settings.sleep_time_seconds,
        monitors=stack.entries(),
        write_heap_dumps_on_violation=settings.dump_heap,
        event_reporter=_event_reporter(settings),
    )


def job_sleep_interval(settings: Settings) -> int:
    return max(settings.job_check_interval_seconds, MIN_JOB_SLEEP_INTERVAL_S)


def configure_for_job(settings: Settings) -> Configuration:
    """Configuration for a background-job worker.

    The soft limit tolerates ``grace_time / sleep_interval`` strikes
    (truncated); the hard limit tolerates none. Either is left out when its
    limit is unset or zero. Heap dumps are never requested: the handler
    kills the process before a dump could be written.
    """
    _check(settings, ROLE_JOB)
    sleep_interval = job_sleep_interval(settings)

    stack = MonitorStack()
    if settings.job_max_rss_kb:
        stack.push(
            RssMemoryLimit(
                memory_limit_bytes=settings.job_max_rss_kb * 1024,
                monitor_name="rss_memory_soft_limit",
            ),
            max_strikes=settings.job_grace_time_seconds // sleep_interval,
        )

    if settings.job_hard_limit_rss_kb:
        stack.push(
            RssMemoryLimit(
                memory_limit_bytes=settings.job_hard_limit_rss_kb * 1024,
                monitor_name="rss_memory_hard_limit",
            ),
            max_strikes=0,
        )

    return Configuration(
        handler=TermProcessHandler(),
        sleep_interval_seconds=sleep_interval,
        monitors=stack.entries(),
        event_reporter=_event_reporter(settings, logging.getLogger("memwatchdog.job")),
    )


def configure_for_role(role: str, settings: Optional[Settings] = None) -> Configuration:
    """Dispatch to the configurator for ``role`` ("web" or "job")."""
    settings = settings or Settings.from_env()

    if role == ROLE_WEB:
        return configure_for_web(settings)
    if role == ROLE_JOB:
        return configure_for_job(settings)
    raise ConfigError(f"Unknown role: {role!r} (expected one of {', '.join(ROLES)})")
