"""
Tracing and metrics for advisor runs.

1. TraceSpan / Tracer: lightweight span tree for one analysis
2. AdvisorMetrics: in-process counters shared by every analysis of a
   QueryAdvisor, with an optional exporter
3. MetricsExporter: protocol for forwarding to an external backend, with
   logging and in-memory implementations

Usage:
    tracer = Tracer(enabled=True)
    tracer.start_span("enumerate", relations=3)
    ...
    tracer.end_span()

    metrics = AdvisorMetrics()
    metrics.record_analysis(duration_ms=4.2, findings_count=3, errors_count=0, truncated=False)
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)


# =============================================================================
# In-Process Tracing
# =============================================================================


@dataclass
class TraceSpan:
    """A single span in a trace tree."""

    name: str
    start_time: float
    end_time: float | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    children: list["TraceSpan"] = field(default_factory=list)

    @property
    def duration_ms(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time) * 1000

    def end(self) -> None:
        self.end_time = time.perf_counter()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "duration_ms": self.duration_ms,
            "attributes": self.attributes,
            "children": [c.to_dict() for c in self.children],
        }


class Tracer:
    """
    Span tree for the phases of one analysis (snapshot, classify,
    enumerate, report). One tracer per analysis; not shared across threads.
    """

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self._root: TraceSpan | None = None
        self._stack: list[TraceSpan] = []

    def start_span(self, name: str, **attributes: Any) -> TraceSpan:
        span = TraceSpan(
            name=name,
            start_time=time.perf_counter(),
            attributes=attributes,
        )
        if self.enabled:
            if self._stack:
                self._stack[-1].children.append(span)
            else:
                self._root = span
            self._stack.append(span)
        return span

    def end_span(self) -> None:
        if self.enabled and self._stack:
            self._stack[-1].end()
            self._stack.pop()

    def get_trace(self) -> dict[str, Any] | None:
        if self._root:
            return self._root.to_dict()
        return None


# =============================================================================
# Exporters
# =============================================================================


class MetricsExporter(Protocol):
    """Backend that receives metric samples."""

    def record_counter(self, name: str, value: int, labels: dict[str, str]) -> None:
        ...

    def record_histogram(self, name: str, value: float, labels: dict[str, str]) -> None:
        ...


class LoggingMetricsExporter:
    """Writes every sample to a logger. Useful while developing."""

    def __init__(self, logger_name: str = "planadvisor.metrics") -> None:
        self._logger = logging.getLogger(logger_name)

    def record_counter(self, name: str, value: int, labels: dict[str, str]) -> None:
        self._logger.info("COUNTER %s +%d %s", name, value, labels)

    def record_histogram(self, name: str, value: float, labels: dict[str, str]) -> None:
        self._logger.info("HISTOGRAM %s %.3f %s", name, value, labels)


class InMemoryMetricsExporter:
    """Keeps samples in memory, for tests."""

    def __init__(self) -> None:
        self._counters: dict[str, int] = {}
        self._histograms: dict[str, list[float]] = {}

    def record_counter(self, name: str, value: int, labels: dict[str, str]) -> None:
        key = self._make_key(name, labels)
        self._counters[key] = self._counters.get(key, 0) + value

    def record_histogram(self, name: str, value: float, labels: dict[str, str]) -> None:
        self._histograms.setdefault(self._make_key(name, labels), []).append(value)

    def _make_key(self, name: str, labels: dict[str, str]) -> str:
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        return self._counters.get(self._make_key(name, labels or {}), 0)

    def get_histogram(self, name: str, labels: dict[str, str] | None = None) -> list[float]:
        return self._histograms.get(self._make_key(name, labels or {}), [])


# =============================================================================
# Advisor Metrics
# =============================================================================


@dataclass
class AdvisorMetrics:
    """
    Counters for every analysis a QueryAdvisor runs.

    Updated from worker threads during ``analyze_many``, so writes go
    through a lock.
    """

    analyses_total: int = 0
    findings_total: int = 0
    errors_total: int = 0
    truncations_total: int = 0
    failed_analyses_total: int = 0

    analysis_durations_ms: list[float] = field(default_factory=list)
    findings_per_analysis: list[int] = field(default_factory=list)

    _max_samples: int = 1000
    _exporter: MetricsExporter | None = field(default=None, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_analysis(
        self,
        duration_ms: float,
        findings_count: int,
        errors_count: int,
        truncated: bool,
    ) -> None:
        with self._lock:
            self.analyses_total += 1
            self.findings_total += findings_count
            self.errors_total += errors_count
            if truncated:
                self.truncations_total += 1

            self.analysis_durations_ms.append(duration_ms)
            self.findings_per_analysis.append(findings_count)
            if len(self.analysis_durations_ms) > self._max_samples:
                self.analysis_durations_ms = self.analysis_durations_ms[-self._max_samples:]
            if len(self.findings_per_analysis) > self._max_samples:
                self.findings_per_analysis = self.findings_per_analysis[-self._max_samples:]

        if self._exporter is not None:
            self._exporter.record_counter("analyses_total", 1, {"truncated": str(truncated).lower()})
            self._exporter.record_histogram("analysis_duration_ms", duration_ms, {})
            self._exporter.record_counter("findings_total", findings_count, {})

    def record_failure(self, error_type: str) -> None:
        """An analysis that ended in a fatal error (unknown table, ...)."""
        with self._lock:
            self.failed_analyses_total += 1
        if self._exporter is not None:
            self._exporter.record_counter("failed_analyses_total", 1, {"error_type": error_type})

    def record_rule_execution(
        self,
        rule_id: str,
        status: str,
        runtime_ms: float,
        findings_count: int,
    ) -> None:
        if self._exporter is not None:
            self._exporter.record_histogram(
                "rule_duration_ms",
                runtime_ms,
                {"rule_id": rule_id, "status": status},
            )
            self._exporter.record_counter(
                "rule_findings_total",
                findings_count,
                {"rule_id": rule_id},
            )

    @property
    def avg_duration_ms(self) -> float:
        if not self.analysis_durations_ms:
            return 0.0
        return sum(self.analysis_durations_ms) / len(self.analysis_durations_ms)

    @property
    def p95_duration_ms(self) -> float:
        if not self.analysis_durations_ms:
            return 0.0
        sorted_durations = sorted(self.analysis_durations_ms)
        idx = int(len(sorted_durations) * 0.95)
        return sorted_durations[min(idx, len(sorted_durations) - 1)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "analyses_total": self.analyses_total,
            "findings_total": self.findings_total,
            "errors_total": self.errors_total,
            "truncations_total": self.truncations_total,
            "failed_analyses_total": self.failed_analyses_total,
            "avg_duration_ms": self.avg_duration_ms,
            "p95_duration_ms": self.p95_duration_ms,
        }
