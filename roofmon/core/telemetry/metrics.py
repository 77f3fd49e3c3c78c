from __future__ import annotations

import math
import threading
from collections import deque
from typing import Any, Deque, Dict, Iterable, Optional, Tuple


def _tag_key(tags: Optional[Dict[str, Any]]) -> Tuple[Tuple[str, str], ...]:
    if not tags:
        return tuple()
    return tuple(sorted((str(k), str(v)) for k, v in tags.items() if v is not None))


class SelfMetrics:
    """
    Thread-safe counters and latency samples describing the monitoring core itself
    (evictions, suppressed alerts, subscriber failures, recovery latency).
    Bounded memory: histograms keep the last N samples.
    """

    def __init__(self, *, max_samples_per_histogram: int = 200):
        self.max_samples_per_histogram = max(10, int(max_samples_per_histogram))
        self._lock = threading.Lock()
        self._counters: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], int] = {}
        self._hist: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], Deque[float]] = {}

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._hist.clear()

    def inc(self, name: str, n: int = 1, tags: Optional[Dict[str, Any]] = None) -> None:
        k = (str(name), _tag_key(tags))
        with self._lock:
            self._counters[k] = int(self._counters.get(k, 0)) + int(n)

    def observe(self, name: str, value: float, tags: Optional[Dict[str, Any]] = None) -> None:
        k = (str(name), _tag_key(tags))
        with self._lock:
            if k not in self._hist:
                self._hist[k] = deque(maxlen=self.max_samples_per_histogram)
            self._hist[k].append(float(value))

    def counter(self, name: str, tags: Optional[Dict[str, Any]] = None) -> int:
        with self._lock:
            return int(self._counters.get((str(name), _tag_key(tags)), 0))

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
            hist = {k: list(v) for k, v in self._hist.items()}

        def fmt_key(name: str, tagt: Tuple[Tuple[str, str], ...]) -> str:
            if not tagt:
                return name
            suffix = ",".join([f"{k}={v}" for k, v in tagt])
            return f"{name}{{{suffix}}}"

        out_c = {fmt_key(k[0], k[1]): int(v) for k, v in counters.items()}
        out_h = {fmt_key(name, tagt): _stats(samples) for (name, tagt), samples in hist.items()}
        return {"counters": out_c, "histograms": out_h}


def nearest_rank(values: Iterable[float], p: float) -> float:
    """Nearest-rank percentile; 0.0 for an empty sample."""
    xs = sorted(float(x) for x in values)
    if not xs:
        return 0.0
    idx = math.ceil((float(p) / 100.0) * len(xs)) - 1
    return xs[max(0, min(idx, len(xs) - 1))]


def _stats(samples: Iterable[float]) -> Dict[str, float]:
    xs = [float(x) for x in samples]
    if not xs:
        return {"count": 0.0}
    xs.sort()
    count = float(len(xs))
    return {
        "count": count,
        "min": xs[0],
        "max": xs[-1],
        "avg": float(sum(xs)) / count,
        "p50": nearest_rank(xs, 50),
        "p95": nearest_rank(xs, 95),
    }
