"""
Timing Instrumentation — per-image stage timings and batch reports.

Architecture decisions:
  1. StageTimings.stage(name) records in a `finally`, so a stage that
     raises still contributes its partial duration. The pipeline
     hands the partial StageTimings to the caller on the exception.
  2. Every stage duration also feeds the process-wide
     MetricsCollector as `vlm_<stage>_ms` for percentile reporting.
  3. BatchReport keeps items in submission order, not completion
     order. Aggregate min/mean/max are over successful items; failed
     items still appear in durations_ms with their partial total.
"""

from __future__ import annotations

import statistics
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Generator, List, Optional

from utils.metrics import metrics
from utils.timing import timed

STAGES = ("preprocess", "vision_encode", "fusion", "generation", "total")


class StageTimings:
    """Ordered stage -> milliseconds for one image."""

    def __init__(self) -> None:
        self._ms: Dict[str, float] = {}

    def record(self, stage: str, ms: float) -> None:
        self._ms[stage] = self._ms.get(stage, 0.0) + ms
        metrics.record(f"vlm_{stage}_ms", ms)

    @contextmanager
    def stage(self, name: str) -> Generator[dict, None, None]:
        with timed(name, sink=self.record) as t:
            yield t

    def get(self, stage: str) -> Optional[float]:
        return self._ms.get(stage)

    @property
    def total_ms(self) -> float:
        """Recorded total, or the sum of recorded stages if total never closed."""
        if "total" in self._ms:
            return self._ms["total"]
        return sum(self._ms.values())

    def as_dict(self) -> Dict[str, float]:
        return {k: round(v, 3) for k, v in self._ms.items()}

    def __len__(self) -> int:
        return len(self._ms)

    def __contains__(self, stage: object) -> bool:
        return stage in self._ms

    def __repr__(self) -> str:
        inner = ", ".join(f"{k}={v:.1f}ms" for k, v in self._ms.items())
        return f"StageTimings({inner})"


@dataclass
class BatchItem:
    identifier: str
    duration_ms: float
    ok: bool
    result: Any = None
    error: Optional[Exception] = None
    timings: Optional[StageTimings] = None

    @property
    def error_kind(self) -> Optional[str]:
        if self.error is None:
            return None
        return getattr(self.error, "kind", type(self.error).__name__)


@dataclass
class BatchReport:
    """Outcome of a batch, in submission order."""

    items: List[BatchItem] = field(default_factory=list)
    init_ms: Optional[float] = None
    wall_ms: Optional[float] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add(
        self,
        identifier: str,
        duration_ms: float,
        *,
        result: Any = None,
        error: Optional[Exception] = None,
        timings: Optional[StageTimings] = None,
    ) -> BatchItem:
        item = BatchItem(
            identifier=identifier,
            duration_ms=duration_ms,
            ok=error is None,
            result=result,
            error=error,
            timings=timings,
        )
        with self._lock:
            self.items.append(item)
        return item

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def successes(self) -> int:
        return sum(1 for i in self.items if i.ok)

    @property
    def failures(self) -> int:
        return sum(1 for i in self.items if not i.ok)

    @property
    def durations_ms(self) -> List[float]:
        return [i.duration_ms for i in self.items]

    def _ok_durations(self) -> List[float]:
        return [i.duration_ms for i in self.items if i.ok]

    @property
    def min_ms(self) -> Optional[float]:
        vals = self._ok_durations()
        return min(vals) if vals else None

    @property
    def max_ms(self) -> Optional[float]:
        vals = self._ok_durations()
        return max(vals) if vals else None

    @property
    def mean_ms(self) -> Optional[float]:
        vals = self._ok_durations()
        if not vals:
            return None
        # clamp float rounding so min <= mean <= max holds exactly
        return min(max(statistics.fmean(vals), min(vals)), max(vals))

    @property
    def total_ms(self) -> float:
        """Summed processing time of the successful images."""
        return float(sum(self._ok_durations()))

    @property
    def success_rate(self) -> float:
        return self.successes / self.total if self.total else 0.0

    @property
    def failed(self) -> List[BatchItem]:
        return [i for i in self.items if not i.ok]

    def summary(self) -> Dict[str, Any]:
        """JSON-serializable view of the report."""

        def _r(v: Optional[float]) -> Optional[float]:
            return None if v is None else round(v, 3)

        return {
            "total": self.total,
            "successes": self.successes,
            "failures": self.failures,
            "success_rate": round(self.success_rate, 4),
            "min_ms": _r(self.min_ms),
            "mean_ms": _r(self.mean_ms),
            "max_ms": _r(self.max_ms),
            "total_ms": _r(self.total_ms),
            "durations_ms": [round(d, 3) for d in self.durations_ms],
            "failed": [
                {"identifier": i.identifier, "error_kind": i.error_kind, "error": str(i.error)}
                for i in self.failed
            ],
            "init_ms": _r(self.init_ms),
            "wall_ms": _r(self.wall_ms),
        }
