# eventful/infra/timings.py
from __future__ import annotations
import logging
import math
import time
from typing import Dict, List

logger = logging.getLogger(__name__)


class _Running:
    """Welford's running mean/variance: constant memory per kind."""
    __slots__ = ("n", "mean", "m2")

    def __init__(self) -> None:
        self.n = 0
        self.mean = 0.0
        self.m2 = 0.0

    def add(self, x: float) -> None:
        self.n += 1
        delta = x - self.mean
        self.mean += delta / self.n
        self.m2 += delta * (x - self.mean)

    @property
    def std(self) -> float:
        # sample standard deviation, 0 for fewer than two samples
        if self.n < 2:
            return 0.0
        return math.sqrt(self.m2 / (self.n - 1))


# ------------ hot path: O(1) update ------------
# one accumulator per kind; no locks, single-threaded event loop
_TIMINGS: Dict[str, _Running] = {}


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    acc = _TIMINGS.get(kind)
    if acc is None:
        acc = _TIMINGS[kind] = _Running()
    acc.add(float(value))


class timeit:
    """async usage:
        async with timeit("db.purchase"):
            await fn()
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = now_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, now_ts() - self._t0)


# ------------ stats on demand ------------

def aggregates() -> List[Dict[str, float]]:
    # one record per kind: {"kind","n","mean","std"}
    return [
        {"kind": kind, "n": acc.n, "mean": acc.mean, "std": acc.std}
        for kind, acc in _TIMINGS.items()
    ]


def flush_to_log() -> int:
    """Log the aggregates and reset. Returns the number of kinds flushed."""
    rows = aggregates()
    for rec in rows:
        logger.info(
            "timing %s n=%d mean=%.6fs std=%.6fs",
            rec["kind"], rec["n"], rec["mean"], rec["std"],
        )
    _TIMINGS.clear()
    return len(rows)
