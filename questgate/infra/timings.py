# questgate/infra/timings.py
"""
Per-kind call durations for /api/timings.

Each kind keeps a running count, mean and sum of squared deviations
(Welford), so memory stays flat however long the process lives.
"""
from __future__ import annotations
import math
import time
from typing import Dict, List


class _Running:
    __slots__ = ("n", "mean", "m2", "max")

    def __init__(self) -> None:
        self.n = 0
        self.mean = 0.0
        self.m2 = 0.0
        self.max = 0.0

    def add(self, value: float) -> None:
        self.n += 1
        delta = value - self.mean
        self.mean += delta / self.n
        self.m2 += delta * (value - self.mean)
        if value > self.max:
            self.max = value

    @property
    def std(self) -> float:
        # sample stdev, 0 for a single observation
        if self.n < 2:
            return 0.0
        return math.sqrt(self.m2 / (self.n - 1))


# single-threaded event loop, no locks
_TIMINGS: Dict[str, _Running] = {}


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    stats = _TIMINGS.get(kind)
    if stats is None:
        stats = _TIMINGS[kind] = _Running()
    stats.add(float(value))


class timeit:
    """async usage:
        async with timeit("gameapi.bundles"):
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


def aggregates(clear: bool = False) -> List[Dict[str, float]]:
    out = [
        {"kind": kind, "n": s.n, "mean": s.mean, "std": s.std, "max": s.max}
        for kind, s in sorted(_TIMINGS.items())
    ]
    if clear:
        _TIMINGS.clear()
    return out


def reset() -> None:
    _TIMINGS.clear()
