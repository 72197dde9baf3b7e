"""
Precision timing for stage instrumentation.

time.perf_counter_ns() is monotonic with nanosecond resolution;
wall-clock time can jump on NTP sync and is only used for the
AnalysisResult completion timestamp.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Callable, Generator, Optional

from utils.logger import get_logger

_log = get_logger(__name__)


@contextmanager
def timed(
    label: str,
    sink: Optional[Callable[[str, float], None]] = None,
    *,
    log: bool = True,
) -> Generator[dict, None, None]:
    """
    Context manager that measures elapsed time in milliseconds.

    Usage:
        with timed("vision_encode") as t:
            features = sessions.encode_vision(tensor)
        print(t["ms"])  # e.g. 412.7

    The dict is populated when the block exits, including when it
    exits with an exception; `sink(label, ms)` is called at the
    same point so partial timings survive a failing stage.
    """
    result: dict = {}
    start = time.perf_counter_ns()
    try:
        yield result
    finally:
        elapsed_ns = time.perf_counter_ns() - start
        result["ns"] = elapsed_ns
        result["ms"] = elapsed_ns / 1_000_000
        if sink is not None:
            sink(label, result["ms"])
        if log:
            _log.debug(label, latency_ms=round(result["ms"], 3))
