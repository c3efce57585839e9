"""
Sync Metrics — in-process registry with Prometheus text rendering

Counters for runs, items and conflicts, gauges for backlog, and histograms
for run duration.  No prometheus_client dependency: the host exposes
``to_prometheus()`` wherever it serves metrics.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

# Metric names
SYNC_RUNS = "memsync_sync_runs_total"
SYNC_ITEMS = "memsync_sync_items_total"
ITEM_FAILURES = "memsync_item_failures_total"
CONFLICTS_DETECTED = "memsync_conflicts_detected_total"
CONFLICTS_RESOLVED = "memsync_conflicts_resolved_total"
ROLLBACKS = "memsync_rollbacks_total"
SYNC_DURATION = "memsync_sync_duration_seconds"
FAILED_ITEMS = "memsync_failed_items"
TRACKED_ITEMS = "memsync_tracked_items"

DEFAULT_BUCKETS: Tuple[float, ...] = (0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0, 120.0)


@dataclass
class MetricsRegistry:
    """Simple in-memory metrics registry (no external deps)."""

    buckets: Tuple[float, ...] = DEFAULT_BUCKETS
    _counters: Dict[str, float] = field(default_factory=lambda: defaultdict(float))
    _gauges: Dict[str, float] = field(default_factory=dict)
    _hist_buckets: Dict[str, List[int]] = field(default_factory=dict)
    _hist_count: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    _hist_sum: Dict[str, float] = field(default_factory=lambda: defaultdict(float))
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    # -- Core metric operations --------------------------------------------

    def inc(
        self, name: str, labels: Optional[Dict[str, str]] = None, value: float = 1,
    ) -> None:
        """Increment a counter."""
        key = self._key(name, labels)
        with self._lock:
            self._counters[key] += value

    def set_gauge(
        self, name: str, value: float, labels: Optional[Dict[str, str]] = None,
    ) -> None:
        """Set a gauge value."""
        key = self._key(name, labels)
        with self._lock:
            self._gauges[key] = value

    def observe(
        self, name: str, value: float, labels: Optional[Dict[str, str]] = None,
    ) -> None:
        """Record a histogram observation."""
        key = self._key(name, labels)
        with self._lock:
            counts = self._hist_buckets.setdefault(key, [0] * len(self.buckets))
            for i, bound in enumerate(self.buckets):
                if value <= bound:
                    counts[i] += 1
            self._hist_count[key] += 1
            self._hist_sum[key] += value

    # -- Reads -------------------------------------------------------------

    def counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._counters.get(self._key(name, labels), 0)

    def gauge(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        with self._lock:
            return self._gauges.get(self._key(name, labels))

    def histogram_count(self, name: str, labels: Optional[Dict[str, str]] = None) -> int:
        with self._lock:
            return self._hist_count.get(self._key(name, labels), 0)

    @staticmethod
    def _key(name: str, labels: Optional[Dict[str, str]] = None) -> str:
        if not labels:
            return name
        label_str = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    # -- Prometheus rendering ----------------------------------------------

    def to_prometheus(self) -> str:
        """Render all metrics in Prometheus text exposition format."""
        lines: List[str] = []
        with self._lock:
            seen: set = set()
            for key, value in sorted(self._counters.items()):
                base = key.split("{")[0]
                if base not in seen:
                    lines.append(f"# TYPE {base} counter")
                    seen.add(base)
                lines.append(f"{key} {value:g}")

            seen = set()
            for key, value in sorted(self._gauges.items()):
                base = key.split("{")[0]
                if base not in seen:
                    lines.append(f"# TYPE {base} gauge")
                    seen.add(base)
                lines.append(f"{key} {value:g}")

            seen = set()
            for key in sorted(self._hist_buckets):
                base, _, rest = key.partition("{")
                labels = rest[:-1] if rest else ""
                if base not in seen:
                    lines.append(f"# TYPE {base} histogram")
                    seen.add(base)
                sep = "," if labels else ""
                for bound, count in zip(self.buckets, self._hist_buckets[key]):
                    lines.append(f'{base}_bucket{{{labels}{sep}le="{bound:g}"}} {count}')
                lines.append(
                    f'{base}_bucket{{{labels}{sep}le="+Inf"}} {self._hist_count[key]}'
                )
                suffix = f"{{{labels}}}" if labels else ""
                lines.append(f"{base}_count{suffix} {self._hist_count[key]}")
                lines.append(f"{base}_sum{suffix} {self._hist_sum[key]:.6f}")
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        """Reset all metrics."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._hist_buckets.clear()
            self._hist_count.clear()
            self._hist_sum.clear()


# Global singleton
metrics = MetricsRegistry()
