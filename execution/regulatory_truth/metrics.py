"""
Metrics Collection for the Regulatory Pipeline

Counts stage coordination outcomes, reasoning runs and extraction work.
One collector lives on the application context; there is no global instance.
"""

import threading
import logging
from dataclasses import dataclass, field
from collections import defaultdict
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)


@dataclass
class PipelineMetricsSnapshot:
    """Aggregated pipeline metrics."""
    # Stage coordination
    stage_events: dict = field(default_factory=lambda: defaultdict(int))

    # Reasoning runs
    total_runs: int = 0
    runs_by_outcome: dict = field(default_factory=lambda: defaultdict(int))
    total_latency_ms: float = 0
    latencies: list = field(default_factory=list)

    # Extraction
    extraction_jobs: int = 0
    extraction_failures: int = 0
    assertions_accepted: int = 0
    assertions_rejected: int = 0

    @property
    def avg_latency_ms(self) -> float:
        """Average reasoning run latency."""
        if self.total_runs == 0:
            return 0
        return self.total_latency_ms / self.total_runs

    @property
    def p95_latency_ms(self) -> float:
        """95th percentile reasoning run latency."""
        if not self.latencies:
            return 0
        sorted_latencies = sorted(self.latencies)
        index = int(len(sorted_latencies) * 0.95)
        return sorted_latencies[min(index, len(sorted_latencies) - 1)]

    @property
    def error_rate(self) -> float:
        if self.total_runs == 0:
            return 0
        return self.runs_by_outcome.get("ERROR", 0) / self.total_runs

    def to_dict(self) -> dict:
        return {
            "stages": dict(self.stage_events),
            "reasoning": {
                "total": self.total_runs,
                "by_outcome": dict(self.runs_by_outcome),
                "error_rate": f"{self.error_rate:.2%}",
                "latency_ms": {
                    "avg": round(self.avg_latency_ms, 2),
                    "p95": round(self.p95_latency_ms, 2),
                },
            },
            "extraction": {
                "jobs": self.extraction_jobs,
                "failures": self.extraction_failures,
                "assertions_accepted": self.assertions_accepted,
                "assertions_rejected": self.assertions_rejected,
            },
        }


class PipelineMetrics:
    """
    Thread-safe metrics collector.

    Usage:
        metrics = PipelineMetrics()
        coordinator = StageCoordinator(store, REGULATORY_PIPELINE, metrics=metrics)
        pipeline = ReasoningPipeline(store, metrics=metrics)
        metrics.to_dict()
    """

    def __init__(self, max_history: int = 1000):
        self._lock = threading.Lock()
        self._max_history = max_history
        self._start_time = datetime.now()
        self.metrics = PipelineMetricsSnapshot()

    def reset(self):
        """Reset all metrics (for testing)."""
        with self._lock:
            self.metrics = PipelineMetricsSnapshot()
            self._start_time = datetime.now()

    def record_stage_event(self, name: str):
        """Count a coordinator outcome: starts, refusals, timeouts, completions, failures."""
        with self._lock:
            self.metrics.stage_events[name] += 1

    def record_reasoning(self, outcome: str, latency_ms: float):
        with self._lock:
            self.metrics.total_runs += 1
            self.metrics.runs_by_outcome[outcome] += 1
            self.metrics.total_latency_ms += latency_ms
            self.metrics.latencies.append(latency_ms)
            # Keep latencies list bounded
            if len(self.metrics.latencies) > self._max_history:
                self.metrics.latencies = self.metrics.latencies[-self._max_history:]

    def record_extraction(self, accepted: int, rejected: int, failed: bool = False):
        """Record one extraction job."""
        with self._lock:
            self.metrics.extraction_jobs += 1
            self.metrics.assertions_accepted += accepted
            self.metrics.assertions_rejected += rejected
            if failed:
                self.metrics.extraction_failures += 1

    def get_uptime(self) -> timedelta:
        return datetime.now() - self._start_time

    def to_dict(self) -> dict:
        with self._lock:
            result = self.metrics.to_dict()
        result["uptime_seconds"] = round(self.get_uptime().total_seconds(), 1)
        return result
