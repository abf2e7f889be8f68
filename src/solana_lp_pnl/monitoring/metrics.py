"""Process-wide counters, gauges and sample summaries with Prometheus text export."""

from __future__ import annotations

import math
import re
import threading
from collections import defaultdict, deque
from statistics import fmean
from typing import Deque, Dict, List, MutableMapping, Sequence

_INVALID_CHARS = re.compile(r"[^a-zA-Z0-9_:]")
_QUANTILES = (0.5, 0.9, 0.99)


def prometheus_name(name: str, prefix: str = "") -> str:
    """``scan.positions_found`` becomes ``<prefix>scan_positions_found``."""

    sanitized = _INVALID_CHARS.sub("_", f"{prefix}{name}") or "_"
    return f"_{sanitized}" if sanitized[0].isdigit() else sanitized


def _quantile(ordered: Sequence[float], q: float) -> float:
    index = max(math.ceil(q * len(ordered)) - 1, 0)
    return ordered[min(index, len(ordered) - 1)]


class MetricsRegistry:
    """In-memory metrics shared by the CLI, the recorder and the HTTP API.

    Summaries keep the most recent ``max_samples`` observations per name.
    """

    def __init__(self, *, max_samples: int = 512, prefix: str = "lp_pnl_") -> None:
        self._lock = threading.Lock()
        self._prefix = prefix
        self._counters: MutableMapping[str, float] = defaultdict(float)
        self._gauges: Dict[str, float] = {}
        self._samples: MutableMapping[str, Deque[float]] = defaultdict(
            lambda: deque(maxlen=max_samples)
        )

    def increment(self, name: str, amount: float = 1.0) -> None:
        with self._lock:
            self._counters[name] += amount

    def get(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0.0)

    def gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = float(value)

    def get_gauge(self, name: str) -> float:
        with self._lock:
            return self._gauges.get(name, 0.0)

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            self._samples[name].append(float(value))

    def _summary(self, values: Sequence[float]) -> Dict[str, float]:
        ordered = sorted(values)
        stats = {"count": float(len(ordered)), "sum": math.fsum(ordered), "avg": fmean(ordered)}
        for q in _QUANTILES:
            stats[f"p{int(q * 100)}"] = _quantile(ordered, q)
        return stats

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            counters = dict(self._counters)
            gauges = dict(self._gauges)
            samples = {name: list(values) for name, values in self._samples.items() if values}
        return {
            "counters": counters,
            "gauges": gauges,
            "summaries": {name: self._summary(values) for name, values in samples.items()},
        }

    def export_prometheus(self) -> str:
        with self._lock:
            counters = sorted(self._counters.items())
            gauges = sorted(self._gauges.items())
            samples = sorted((name, sorted(values)) for name, values in self._samples.items() if values)

        lines: List[str] = []
        for kind, items in (("counter", counters), ("gauge", gauges)):
            for name, value in items:
                metric = prometheus_name(name, self._prefix)
                lines.append(f"# TYPE {metric} {kind}")
                lines.append(f"{metric} {value}")
        for name, ordered in samples:
            metric = prometheus_name(name, self._prefix)
            lines.append(f"# TYPE {metric} summary")
            for q in _QUANTILES:
                lines.append(f'{metric}{{quantile="{q}"}} {_quantile(ordered, q)}')
            lines.append(f"{metric}_sum {math.fsum(ordered)}")
            lines.append(f"{metric}_count {len(ordered)}")
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._samples.clear()


METRICS = MetricsRegistry()


__all__ = ["METRICS", "MetricsRegistry", "prometheus_name"]
