"""Thread-safe in-process metrics: transaction counters and RPC latency samples."""

from __future__ import annotations

import math
import re
import threading
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from typing import Deque, Dict, Iterator, MutableMapping, Sequence

_METRIC_SANITIZE_RE = re.compile(r"[^a-zA-Z0-9_:]")

NAMESPACE = "rewards"
QUANTILES = (0.5, 0.95, 0.99)


def _metric_name(name: str) -> str:
    """Prometheus-safe name under the service namespace."""

    sanitized = _METRIC_SANITIZE_RE.sub("_", name).strip("_") or "unnamed"
    return f"{NAMESPACE}_{sanitized}"


def _quantile(ordered: Sequence[float], q: float) -> float:
    index = max(int(math.ceil(q * len(ordered))) - 1, 0)
    return float(ordered[min(index, len(ordered) - 1)])


class MetricsRegistry:
    """Counters and bounded latency samples behind a single lock.

    Counter names are dotted (``transactions.built.stake``); the dots become
    underscores on export.
    """

    def __init__(self, *, max_samples: int = 1024) -> None:
        self._lock = threading.RLock()
        self._counters: MutableMapping[str, float] = defaultdict(float)
        self._samples: MutableMapping[str, Deque[float]] = defaultdict(lambda: deque(maxlen=max_samples))

    def increment(self, name: str, amount: float = 1.0) -> None:
        with self._lock:
            self._counters[name] += amount

    def get(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0.0)

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            self._samples[name].append(float(value))

    @contextmanager
    def timed(self, name: str) -> Iterator[None]:
        """Observe the wall time of the block in milliseconds under ``name``."""

        started = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, (time.perf_counter() - started) * 1000.0)

    def snapshot(self) -> Dict[str, Dict]:
        with self._lock:
            counters = dict(self._counters)
            samples = {name: sorted(values) for name, values in self._samples.items() if values}
        summaries = {
            name: {
                "count": float(len(values)),
                "sum": float(sum(values)),
                **{f"p{int(q * 100)}": _quantile(values, q) for q in QUANTILES},
            }
            for name, values in samples.items()
        }
        return {"counters": counters, "summaries": summaries}

    def export_prometheus(self) -> str:
        snap = self.snapshot()
        lines = []
        for name, value in sorted(snap["counters"].items()):
            metric = _metric_name(name)
            lines.append(f"# TYPE {metric} counter")
            lines.append(f"{metric} {value}")
        for name, stats in sorted(snap["summaries"].items()):
            metric = _metric_name(name)
            lines.append(f"# TYPE {metric} summary")
            for q in QUANTILES:
                lines.append(f'{metric}{{quantile="{q}"}} {stats[f"p{int(q * 100)}"]}')
            lines.append(f"{metric}_sum {stats['sum']}")
            lines.append(f"{metric}_count {stats['count']}")
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._samples.clear()


METRICS = MetricsRegistry()


__all__ = ["METRICS", "MetricsRegistry"]
