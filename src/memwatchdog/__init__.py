"""
Memory Watchdog - in-process memory supervision for server workers

A background loop that periodically evaluates memory monitors, counts
consecutive violations as strikes, and hands the worker over to a
corrective handler once a monitor runs out of strikes.
"""

__version__ = "1.0.0"

from .config import Configuration, MonitorStack, Settings
from .configurator import configure_for_job, configure_for_role, configure_for_web
from .watchdog import LoopState, Watchdog

__all__ = [
    "Configuration",
    "LoopState",
    "MonitorStack",
    "Settings",
    "Watchdog",
    "configure_for_job",
    "configure_for_role",
    "configure_for_web",
]
