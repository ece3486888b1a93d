"""Per-stage timing for the estimation core (common)."""
from __future__ import annotations

import json
import statistics
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from typing import Deque, Dict, Iterator, List, Optional

HISTORY_SIZE = 1000


def _percentile(values: List[float], pct: float) -> Optional[float]:
    if not values:
        return None
    if pct <= 0:
        return values[0]
    if pct >= 100:
        return values[-1]
    rank = (pct / 100.0) * (len(values) - 1)
    lower = int(rank)
    upper = min(lower + 1, len(values) - 1)
    weight = rank - lower
    return values[lower] * (1 - weight) + values[upper] * weight


@dataclass
class Timing:
    """Running statistics of one stage, in seconds.

    `iteration` is the duration of the most recent run, `stamp` the data
    time (not wall time) the run belongs to.
    """
    label: str
    stamp: Optional[float] = None
    iteration: float = 0.0
    total: float = 0.0
    min: float = float("inf")
    max: float = 0.0
    mean: float = 0.0
    count: int = 0
    history: Deque[float] = field(default_factory=lambda: deque(maxlen=HISTORY_SIZE), repr=False)

    def record(self, duration: float, stamp: Optional[float] = None) -> None:
        self.stamp = stamp if stamp is not None else self.stamp
        self.iteration = duration
        self.total += duration
        self.count += 1
        self.min = min(self.min, duration)
        self.max = max(self.max, duration)
        self.mean = self.total / self.count
        self.history.append(duration)

    def copy(self) -> "Timing":
        return Timing(self.label, self.stamp, self.iteration, self.total, self.min,
                      self.max, self.mean, self.count, deque(self.history, maxlen=self.history.maxlen))

    def to_dict(self) -> Dict:
        out = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "history"}
        vals = sorted(self.history)
        out["p90"] = _percentile(vals, 90.0)
        out["p99"] = _percentile(vals, 99.0)
        if len(vals) > 1:
            out["stdev"] = statistics.pstdev(vals)
        return out


class TimingTracker:
    """Collect stage durations keyed by label.

    Not thread-safe on its own; the owner serializes access.
    """

    def __init__(self):
        self._timings: Dict[str, Timing] = {}

    @contextmanager
    def stage(self, label: str, stamp: Optional[float] = None) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record(label, time.perf_counter() - start, stamp)

    def record(self, label: str, duration: float, stamp: Optional[float] = None) -> Timing:
        timing = self._timings.get(label)
        if timing is None:
            timing = self._timings[label] = Timing(label)
        timing.record(duration, stamp)
        return timing

    def get(self, label: str) -> Optional[Timing]:
        return self._timings.get(label)

    def snapshot(self) -> Dict[str, Timing]:
        return {label: t.copy() for label, t in self._timings.items()}

    def summary(self) -> Dict[str, Dict]:
        return {label: t.to_dict() for label, t in self._timings.items()}

    def export_json(self, path: str) -> None:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.summary(), f, indent=2)

    def log_summary(self, logger) -> None:
        for label, t in sorted(self._timings.items()):
            logger.info(
                "Timing %s: n=%d | last=%.4fs | mean=%.4fs | min=%.4fs | max=%.4fs",
                label, t.count, t.iteration, t.mean, t.min if t.count else 0.0, t.max,
            )
