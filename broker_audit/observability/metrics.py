"""Counters and latency histograms for the audit pipeline. In-memory, thread-safe, Prometheus-shaped export."""

import threading
from typing import Any

RECORDS_SUBMITTED = "audit_records_submitted"
RECORDS_DROPPED = "audit_records_dropped"
RECORDS_PERSISTED = "audit_records_persisted"
RECORDS_FAILED = "audit_records_failed"
WRITE_RETRIES = "audit_write_retries"
CAPTURE_ERRORS = "audit_capture_errors"
RETENTION_DELETED = "retention_records_deleted"
RETENTION_RUNS = "retention_runs"
WRITE_LATENCY = "audit_write_latency_ms"
QUERY_LATENCY = "audit_query_latency_ms"

# Histograms keep only the most recent observations; count and sum cover all of them.
_HISTOGRAM_WINDOW = 1000


def _label_key(name: str, cluster: str | None, category: str | None) -> str | None:
    if cluster is not None:
        return f"{name}:cluster={cluster}"
    if category is not None:
        return f"{name}:category={category}"
    return None


class MetricsCollector:
    """
    One registry per process, shared by writer, retention and query engine.

    Unlabelled counters and labelled counters are kept apart: a labelled
    increment never adds to the plain total of the same name.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, float] = {}
        self._labelled: dict[str, dict[str, float]] = {}
        self._windows: dict[str, list[float]] = {}
        self._totals: dict[str, tuple[int, float]] = {}

    def increment(
        self,
        name: str,
        value: float = 1.0,
        *,
        cluster: str | None = None,
        category: str | None = None,
    ) -> None:
        key = _label_key(name, cluster, category)
        with self._lock:
            if key is None:
                self._counters[name] = self._counters.get(name, 0) + value
            else:
                series = self._labelled.setdefault(name, {})
                series[key] = series.get(key, 0) + value

    def observe_latency(self, name: str, latency_ms: float) -> None:
        with self._lock:
            window = self._windows.setdefault(name, [])
            window.append(latency_ms)
            if len(window) > _HISTOGRAM_WINDOW:
                del window[: len(window) - _HISTOGRAM_WINDOW]
            count, total = self._totals.get(name, (0, 0.0))
            self._totals[name] = (count + 1, total + latency_ms)

    def counter(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0)

    def export_metrics(self) -> dict[str, Any]:
        """Snapshot of every series; safe to serialise as JSON."""
        with self._lock:
            histograms = {}
            for name, window in self._windows.items():
                count, total = self._totals[name]
                histograms[name] = {"count": count, "sum": total, "values": list(window)}
            return {
                "counters": dict(self._counters),
                "counters_by_labels": {name: dict(series) for name, series in self._labelled.items()},
                "histograms": histograms,
            }

    def reset(self) -> None:
        with self._lock:
            for registry in (self._counters, self._labelled, self._windows, self._totals):
                registry.clear()
