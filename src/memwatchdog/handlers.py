"""Corrective actions taken once a monitor exhausts its strikes."""

from __future__ import annotations

import logging
import os
import signal
from abc import ABC, abstractmethod
from typing import Callable, Optional

from .exceptions import HandlerError

logger = logging.getLogger("memwatchdog.handlers")


class BaseHandler(ABC):
    """Base class for handlers."""

    @abstractmethod
    def call(self) -> None:
        """Carry out the corrective action."""
        pass


def _send_signal(pid: int, sig: int) -> None:
    try:
        os.kill(pid, sig)
    except OSError as e:
        raise HandlerError(f"Failed to send signal {sig} to process {pid}: {e}") from e


class NullHandler(BaseHandler):
    """Takes no action. Used for dry runs and as the unconfigured default."""

    def call(self) -> None:
        logger.info("Null handler invoked, no action taken")


class GracefulShutdownHandler(BaseHandler):
    """Ask the host runtime to stop accepting work and exit once safe.

    With a ``shutdown`` callable (e.g. a server's own graceful-stop hook)
    that is invoked; otherwise SIGTERM is sent to the process.
    """

    def __init__(self, shutdown: Optional[Callable[[], None]] = None, pid: Optional[int] = None):
        self.shutdown = shutdown
        self.pid = pid

    def call(self) -> None:
        if self.shutdown is not None:
            logger.warning("Requesting graceful shutdown from host runtime")
            try:
                self.shutdown()
            except Exception as e:
                raise HandlerError(f"Graceful shutdown request failed: {e}") from e
            return

        pid = self.pid or os.getpid()
        logger.warning(f"Sending SIGTERM to process {pid} for graceful shutdown")
        _send_signal(pid, signal.SIGTERM)


class TermProcessHandler(BaseHandler):
    """Terminate the process outright."""

    def __init__(self, pid: Optional[int] = None, sig: int = signal.SIGKILL):
        self.pid = pid
        self.sig = sig

    def call(self) -> None:
        pid = self.pid or os.getpid()
        logger.warning(f"Terminating process {pid} with signal {self.sig}")
        _send_signal(pid, self.sig)
