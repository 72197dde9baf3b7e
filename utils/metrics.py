"""
In-process metrics collector for stage latency percentiles.

Every pipeline stage records into `vlm_<stage>_ms`; outcome
counters (images_ok, images_failed, stop reasons) go through
increment(). snapshot() is what scripts.describe_images prints.

Thread-safety: every read and write of the sample windows and
counters happens under one lock.
"""

from __future__ import annotations

import statistics
import threading
import time
from collections import defaultdict, deque
from typing import Any, Dict


# Last 10,000 observations per metric.
_WINDOW = 10_000


class MetricsCollector:
    """Process-global, thread-safe latency tracker."""

    def __init__(self) -> None:
        self._data: Dict[str, deque] = defaultdict(lambda: deque(maxlen=_WINDOW))
        self._counts: Dict[str, int] = defaultdict(int)
        self._counters: Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()
        self._start_time = time.monotonic()

    def record(self, name: str, value_ms: float) -> None:
        """Record a latency observation in milliseconds."""
        with self._lock:
            self._data[name].append(value_ms)
            self._counts[name] += 1

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] += amount

    def counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def reset(self) -> None:
        with self._lock:
            self._data.clear()
            self._counts.clear()
            self._counters.clear()
            self._start_time = time.monotonic()

    def snapshot(self) -> Dict[str, Any]:
        """Return a JSON-serializable dict of all metrics with percentiles."""
        with self._lock:
            result: Dict[str, Any] = {
                "uptime_seconds": round(time.monotonic() - self._start_time, 1),
                "counters": dict(self._counters),
            }
            for name, values in list(self._data.items()):
                vals = sorted(values)
                n = len(vals)
                if n == 0:
                    continue
                result[name] = {
                    "count": self._counts[name],
                    "window": n,
                    "p50_ms": round(vals[n // 2], 3),
                    "p95_ms": round(vals[int(n * 0.95)], 3) if n >= 20 else None,
                    "p99_ms": round(vals[int(n * 0.99)], 3) if n >= 100 else None,
                    "mean_ms": round(statistics.mean(vals), 3),
                    "min_ms": round(vals[0], 3),
                    "max_ms": round(vals[-1], 3),
                }
            return result


# Singleton: import this wherever you need metrics.
metrics = MetricsCollector()
