"""
Metrics Collection for pet-waker

Counters, gauges and timers, optionally scoped to a project, for watching
how often projects are woken, how long wakes and probes take and how many
requests fail at each stage.
"""

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


@dataclass
class MetricValue:
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class CounterValue(MetricValue):
    count: int = 0


@dataclass
class GaugeValue(MetricValue):
    value: float = 0.0


@dataclass
class TimerValue(MetricValue):
    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0

    @property
    def avg_ms(self) -> float:
        """Average duration in milliseconds."""
        return self.total_ms / self.count if self.count > 0 else 0.0

    def record(self, duration_ms: float):
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict:
        return {
            "count": self.count,
            "total_ms": self.total_ms,
            "avg_ms": self.avg_ms,
            "min_ms": self.min_ms if self.min_ms != float("inf") else 0,
            "max_ms": self.max_ms,
            "timestamp": self.timestamp.isoformat(),
        }


class MetricsCollector:
    """Thread-safe metrics collector."""

    def __init__(self):
        self._lock = threading.RLock()
        self._counters: Dict[str, CounterValue] = {}
        self._gauges: Dict[str, GaugeValue] = {}
        self._timers: Dict[str, TimerValue] = {}

        # Project-specific metrics
        self._project_counters: Dict[str, Dict[str, CounterValue]] = defaultdict(dict)
        self._project_timers: Dict[str, Dict[str, TimerValue]] = defaultdict(dict)

    def increment_counter(
        self,
        name: str,
        value: int = 1,
        project: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ):
        with self._lock:
            key = self._build_key(name, labels)
            counters = self._project_counters[project] if project else self._counters

            if key not in counters:
                counters[key] = CounterValue()
            counters[key].count += value
            counters[key].timestamp = datetime.now(timezone.utc)

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        with self._lock:
            self._gauges[self._build_key(name, labels)] = GaugeValue(value=value)

    def record_timer(
        self,
        name: str,
        duration_ms: float,
        project: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ):
        with self._lock:
            key = self._build_key(name, labels)
            timers = self._project_timers[project] if project else self._timers

            if key not in timers:
                timers[key] = TimerValue()
            timers[key].record(duration_ms)

    def get_counter(
        self, name: str, project: Optional[str] = None, labels: Optional[Dict[str, str]] = None
    ) -> Optional[CounterValue]:
        with self._lock:
            key = self._build_key(name, labels)
            if project:
                return self._project_counters.get(project, {}).get(key)
            return self._counters.get(key)

    def get_gauge(
        self, name: str, labels: Optional[Dict[str, str]] = None
    ) -> Optional[GaugeValue]:
        with self._lock:
            return self._gauges.get(self._build_key(name, labels))

    def get_timer(
        self, name: str, project: Optional[str] = None, labels: Optional[Dict[str, str]] = None
    ) -> Optional[TimerValue]:
        with self._lock:
            key = self._build_key(name, labels)
            if project:
                return self._project_timers.get(project, {}).get(key)
            return self._timers.get(key)

    def get_all_metrics(self) -> Dict[str, Dict]:
        """Get all metrics as a dictionary."""
        with self._lock:
            return {
                "counters": {
                    k: {"count": v.count, "timestamp": v.timestamp.isoformat()}
                    for k, v in self._counters.items()
                },
                "gauges": {
                    k: {"value": v.value, "timestamp": v.timestamp.isoformat()}
                    for k, v in self._gauges.items()
                },
                "timers": {k: v.to_dict() for k, v in self._timers.items()},
                "projects": {
                    project: self._project_metrics(project)
                    for project in self._project_counters.keys() | self._project_timers.keys()
                },
            }

    def get_project_metrics(self, project: str) -> Dict[str, Dict]:
        with self._lock:
            return self._project_metrics(project)

    def _project_metrics(self, project: str) -> Dict[str, Dict]:
        counters = self._project_counters.get(project, {})
        timers = self._project_timers.get(project, {})
        return {
            "counters": {
                k: {"count": v.count, "timestamp": v.timestamp.isoformat()}
                for k, v in counters.items()
            },
            "timers": {k: v.to_dict() for k, v in timers.items()},
        }

    def reset_metrics(self, project: Optional[str] = None):
        """Reset metrics (useful for testing)."""
        with self._lock:
            if project:
                self._project_counters.pop(project, None)
                self._project_timers.pop(project, None)
            else:
                self._counters.clear()
                self._gauges.clear()
                self._timers.clear()
                self._project_counters.clear()
                self._project_timers.clear()

    def _build_key(self, name: str, labels: Optional[Dict[str, str]] = None) -> str:
        if not labels:
            return name

        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}[{label_str}]"


# Global metrics collector instance
metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return metrics


class MetricNames:
    """Common metric names for consistency."""

    # Request metrics
    REQUESTS_TOTAL = "requests_total"
    REQUEST_DURATION = "request_duration_ms"
    REQUESTS_FAILED = "requests_failed_total"

    # Wake metrics
    WAKES_STARTED = "wakes_started_total"
    WAKES_ATTACHED = "wakes_attached_total"
    WAKES_FAILED = "wakes_failed_total"
    WAKE_DURATION = "wake_duration_ms"
    WAKES_IN_FLIGHT = "wakes_in_flight"

    # Readiness metrics
    PROBE_ATTEMPTS = "probe_attempts_total"
    PROBE_FAILURES = "probe_failures_total"
    PROBE_DURATION = "probe_duration_ms"

    # Proxy metrics
    PROXY_REQUESTS = "proxy_requests_total"
    PROXY_DURATION = "proxy_duration_ms"
    PROXY_ERRORS = "proxy_errors_total"
