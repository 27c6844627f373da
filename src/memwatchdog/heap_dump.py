"""Scheduled diagnostic heap dumps.

The watchdog only records that a dump is wanted; the dump itself is
written later (typically from the worker-stop hook), once the process is
no longer serving work.
"""

from __future__ import annotations

import gc
import json
import logging
import os
import threading
import time
from collections import Counter
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger("memwatchdog.heap_dump")

_lock = threading.Lock()
_enqueued = False


def enqueue() -> None:
    """Request a heap dump for this process."""
    global _enqueued
    with _lock:
        _enqueued = True


def is_enqueued() -> bool:
    with _lock:
        return _enqueued


def _clear() -> bool:
    global _enqueued
    with _lock:
        was_enqueued = _enqueued
        _enqueued = False
    return was_enqueued


def write(directory: Union[str, Path], top: int = 200) -> Optional[Path]:
    """Write an enqueued dump to ``directory``; no-op if none was requested.

    The dump is a histogram of live objects tracked by the garbage
    collector, keyed by type.
    """
    if not _clear():
        return None

    objects = gc.get_objects()
    counts = Counter(type(obj).__qualname__ for obj in objects)

    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"heap_dump.{os.getpid()}.{int(time.time())}.json"

    with open(path, "w") as f:
        json.dump(
            {
                "pid": os.getpid(),
                "written_at": time.time(),
                "total_objects": len(objects),
                "types": dict(counts.most_common(top)),
            },
            f,
            indent=2,
        )

    logger.info(f"Wrote heap dump to {path}")
    return path
