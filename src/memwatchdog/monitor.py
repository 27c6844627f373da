"""Resource monitors evaluated by the watchdog on every tick."""

from __future__ import annotations

import ctypes
import ctypes.util
import functools
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Optional

import psutil

from .exceptions import MeasurementError


@dataclass
class ViolationResult:
    """Outcome of a single monitor evaluation."""

    violated: bool
    payload: dict = field(default_factory=dict)


def rss_bytes(pid: Optional[int] = None) -> int:
    """Resident set size of the process."""
    try:
        return psutil.Process(pid).memory_info().rss
    except psutil.Error as e:
        raise MeasurementError(f"Cannot read RSS: {e}") from e


def uss_bytes(pid: Optional[int] = None) -> int:
    """Unique set size of the process (memory that would be freed if it exited)."""
    try:
        return psutil.Process(pid).memory_full_info().uss
    except psutil.Error as e:
        raise MeasurementError(f"Cannot read USS: {e}") from e


class _MallInfo2(ctypes.Structure):
    _fields_ = [
        (name, ctypes.c_size_t)
        for name in (
            "arena",
            "ordblks",
            "smblks",
            "hblks",
            "hblkhd",
            "usmblks",
            "fsmblks",
            "uordblks",
            "fordblks",
            "keepcost",
        )
    ]


@functools.lru_cache(maxsize=None)
def _mallinfo2():
    libc_path = ctypes.util.find_library("c")
    if not libc_path:
        return None

    libc = ctypes.CDLL(libc_path)
    func = getattr(libc, "mallinfo2", None)
    if func is None:
        return None

    func.restype = _MallInfo2
    func.argtypes = []
    return func


def heap_fragmentation() -> float:
    """Share of the malloc heap that is free but not returned to the OS.

    Requires glibc >= 2.33 (``mallinfo2``).
    """
    func = _mallinfo2()
    if func is None:
        raise MeasurementError("Heap statistics unavailable: libc has no mallinfo2")

    info = func()
    if info.arena == 0:
        return 0.0
    return info.fordblks / info.arena


class BaseMonitor(ABC):
    """Base class for monitors.

    A monitor samples one resource dimension and says whether it is over
    its threshold right now. Strike accounting belongs to the watchdog.
    """

    default_name = "monitor"

    def __init__(self, monitor_name: Optional[str] = None):
        self._name = monitor_name or self.default_name

    @property
    def name(self) -> str:
        return self._name

    @abstractmethod
    def call(self) -> ViolationResult:
        """Evaluate the monitor once."""
        pass

    def describe(self) -> dict:
        """Threshold options, for display."""
        return {}


class RssMemoryLimit(BaseMonitor):
    """Violates when resident memory is above an absolute byte limit."""

    default_name = "rss_memory_limit"

    def __init__(
        self,
        memory_limit_bytes: int,
        monitor_name: Optional[str] = None,
        rss_source: Callable[[], int] = rss_bytes,
    ):
        super().__init__(monitor_name)
        self.memory_limit_bytes = memory_limit_bytes
        self._rss_source = rss_source

    def call(self) -> ViolationResult:
        rss = self._rss_source()
        return ViolationResult(
            violated=rss > self.memory_limit_bytes,
            payload={
                "message": "rss memory limit exceeded",
                "memwd_rss_bytes": rss,
                "memwd_max_rss_bytes": self.memory_limit_bytes,
            },
        )

    def describe(self) -> dict:
        return {"memory_limit_bytes": self.memory_limit_bytes}


class HeapFragmentation(BaseMonitor):
    """Violates when the malloc heap fragmentation ratio is above a limit."""

    default_name = "heap_fragmentation"

    def __init__(
        self,
        max_heap_fragmentation: float,
        monitor_name: Optional[str] = None,
        fragmentation_source: Callable[[], float] = heap_fragmentation,
    ):
        super().__init__(monitor_name)
        self.max_heap_fragmentation = max_heap_fragmentation
        self._fragmentation_source = fragmentation_source

    def call(self) -> ViolationResult:
        fragmentation = self._fragmentation_source()
        return ViolationResult(
            violated=fragmentation > self.max_heap_fragmentation,
            payload={
                "message": "heap fragmentation limit exceeded",
                "memwd_cur_heap_frag": round(fragmentation, 4),
                "memwd_max_heap_frag": self.max_heap_fragmentation,
            },
        )

    def describe(self) -> dict:
        return {"max_heap_fragmentation": self.max_heap_fragmentation}


class UniqueMemoryGrowth(BaseMonitor):
    """Violates when unique memory has grown past a multiple of its baseline.

    The baseline is sampled when the monitor is constructed, so build it
    once the worker has finished booting.
    """

    default_name = "unique_memory_growth"

    def __init__(
        self,
        max_mem_growth: float,
        monitor_name: Optional[str] = None,
        uss_source: Callable[[], int] = uss_bytes,
    ):
        super().__init__(monitor_name)
        self.max_mem_growth = max_mem_growth
        self._uss_source = uss_source
        self.reference_mem = uss_source()

    def call(self) -> ViolationResult:
        if self.reference_mem <= 0:
            raise MeasurementError("Baseline unique memory is zero")

        current = self._uss_source()
        growth = current / self.reference_mem
        return ViolationResult(
            violated=growth > self.max_mem_growth,
            payload={
                "message": "memory limit exceeded",
                "memwd_uss_bytes": current,
                "memwd_ref_uss_bytes": self.reference_mem,
                "memwd_max_uss_growth": self.max_mem_growth,
                "memwd_cur_uss_growth": round(growth, 4),
            },
        )

    def describe(self) -> dict:
        return {"max_mem_growth": self.max_mem_growth, "reference_mem": self.reference_mem}
