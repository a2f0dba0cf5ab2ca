from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, List, Optional


def _percentile(vals: List[float], pct: float) -> Optional[float]:
    if not vals:
        return None
    v = sorted(vals)
    if len(v) == 1:
        return float(v[0])
    k = max(0, min(len(v) - 1, int(round((pct / 100.0) * (len(v) - 1)))))
    return float(v[k])


class Metrics:
    """In-process counters and latency samples (RPC traffic, failovers, tick outcomes)."""

    def __init__(self, max_samples: int = 2000) -> None:
        self._counters: Dict[str, int] = defaultdict(int)
        self._labeled: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._samples: Dict[str, List[float]] = defaultdict(list)
        self._max_samples = int(max_samples)

    def reset(self) -> None:
        self._counters.clear()
        self._labeled.clear()
        self._samples.clear()

    def inc(self, name: str, n: int = 1, *, label: Optional[str] = None) -> None:
        if not name:
            return
        if label:
            self._labeled[str(name)][str(label)] += int(n)
        else:
            self._counters[str(name)] += int(n)

    def count(self, name: str, *, label: Optional[str] = None) -> int:
        if label:
            return int(self._labeled.get(str(name), {}).get(str(label), 0))
        return int(self._counters.get(str(name), 0))

    def observe(self, name: str, value: float) -> None:
        if not name:
            return
        v = float(value)
        if v != v:  # NaN
            return
        bucket = self._samples[str(name)]
        bucket.append(v)
        if len(bucket) > self._max_samples:
            del bucket[: len(bucket) - self._max_samples]

    def snapshot(self) -> Dict[str, Any]:
        return {
            "counters": dict(self._counters),
            "labeled": {name: dict(counts) for name, counts in self._labeled.items()},
            "latency": {
                name: {
                    "count": len(vals),
                    "p50": _percentile(vals, 50.0),
                    "p95": _percentile(vals, 95.0),
                }
                for name, vals in self._samples.items()
            },
        }


METRICS = Metrics()
