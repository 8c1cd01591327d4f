"""Metric sinks for agent-queue.

Queue events go to an OpenTelemetry meter named ``agentqueue`` when
``opentelemetry`` is importable. Otherwise they accumulate in the process-wide
:class:`MetricsCollector`, which tests and the CLI can read back.
"""

from __future__ import annotations

import threading
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Any

try:
    from opentelemetry import metrics as _otel_metrics

    HAS_OTEL = True
except ImportError:
    _otel_metrics = None  # type: ignore[assignment]
    HAS_OTEL = False

Attributes = dict[str, Any]


@dataclass
class _Observation:
    value: float
    attributes: Attributes = field(default_factory=dict)


class MetricsCollector:
    """In-memory counters, histograms and gauges guarded by one lock.

    Every counter increment is kept with its attributes so totals can be
    broken down afterwards, e.g. dead-letters per worker.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: defaultdict[str, list[_Observation]] = defaultdict(list)
        self._histograms: defaultdict[str, list[_Observation]] = defaultdict(list)
        self._gauges: dict[str, _Observation] = {}

    def add_counter(self, name: str, value: float = 1.0, attributes: Attributes | None = None) -> None:
        with self._lock:
            self._counters[name].append(_Observation(value, dict(attributes or {})))

    def record_histogram(self, name: str, value: float, attributes: Attributes | None = None) -> None:
        with self._lock:
            self._histograms[name].append(_Observation(value, dict(attributes or {})))

    def set_gauge(self, name: str, value: float, attributes: Attributes | None = None) -> None:
        """Replace the gauge's value; only the latest reading is kept."""
        with self._lock:
            self._gauges[name] = _Observation(value, dict(attributes or {}))

    def counter_breakdown(self, name: str, attribute: str) -> dict[str, float]:
        """Totals of counter *name* grouped by the value of *attribute*.

        Increments recorded without *attribute* are grouped under ``""``.
        """
        totals: Counter[str] = Counter()
        with self._lock:
            for obs in self._counters.get(name, []):
                totals[str(obs.attributes.get(attribute, ""))] += obs.value
        return dict(totals)

    def get_snapshot(self) -> dict[str, Any]:
        """Counter totals, histogram samples and latest gauge values."""
        with self._lock:
            return {
                "counters": {
                    name: sum(obs.value for obs in series)
                    for name, series in self._counters.items()
                },
                "histograms": {
                    name: [{"value": obs.value, "attributes": obs.attributes} for obs in series]
                    for name, series in self._histograms.items()
                },
                "gauges": {name: obs.value for name, obs in self._gauges.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
            self._gauges.clear()


_collector = MetricsCollector()


def get_collector() -> MetricsCollector:
    return _collector


def get_metrics_snapshot() -> dict[str, Any]:
    """Snapshot of the process-wide collector."""
    return _collector.get_snapshot()


def reset_metrics() -> None:
    """Clear the process-wide collector (for testing only)."""
    _collector.reset()


def _get_meter() -> Any:
    assert _otel_metrics is not None
    return _otel_metrics.get_meter("agentqueue")
