from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest, write_to_textfile

if TYPE_CHECKING:
    from loadgen import ResultRecord


LATENCY_BUCKETS_S = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)


@dataclass
class MetricsSnapshot:
    success_count: int
    failure_count: int
    attempt_count: int
    retry_count: int
    sink_error_count: int
    success_latencies_ms: list[float] = field(default_factory=list)

    @property
    def completed_count(self) -> int:
        return self.success_count + self.failure_count

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("success_latencies_ms")
        payload["completed_count"] = self.completed_count
        return payload


class MetricsAggregator:
    """Thread-safe success/failure accounting for one run.

    Every mutation takes the instance lock. Counts are also mirrored into a
    private Prometheus registry so a run can be exported as a text file
    without touching the process-wide default registry.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._success_count = 0
        self._failure_count = 0
        self._attempt_count = 0
        self._retry_count = 0
        self._sink_error_count = 0
        self._success_latencies_ms: list[float] = []
        self._records: list[ResultRecord] = []

        self.registry = CollectorRegistry()
        self._requests_total = Counter(
            "loadtest_requests_total",
            "Work items resolved, by terminal outcome.",
            ["outcome"],
            registry=self.registry,
        )
        self._attempts_total = Counter(
            "loadtest_attempts_total",
            "HTTP attempts made across all work items.",
            registry=self.registry,
        )
        self._sink_errors_total = Counter(
            "loadtest_sink_errors_total",
            "Result records that could not be written to the sink.",
            registry=self.registry,
        )
        self._latency_seconds = Histogram(
            "loadtest_request_latency_seconds",
            "Latency of successful work items, including retries.",
            buckets=LATENCY_BUCKETS_S,
            registry=self.registry,
        )

    def record_success(self, latency_ms: float, attempts: int = 1) -> None:
        with self._lock:
            self._success_count += 1
            self._attempt_count += attempts
            self._retry_count += max(0, attempts - 1)
            self._success_latencies_ms.append(float(latency_ms))
            self._requests_total.labels(outcome="success").inc()
            self._attempts_total.inc(attempts)
            self._latency_seconds.observe(float(latency_ms) / 1000.0)

    def record_failure(self, attempts: int = 1) -> None:
        with self._lock:
            self._failure_count += 1
            self._attempt_count += attempts
            self._retry_count += max(0, attempts - 1)
            self._requests_total.labels(outcome="failure").inc()
            self._attempts_total.inc(attempts)

    def record_sink_error(self) -> None:
        with self._lock:
            self._sink_error_count += 1
            self._sink_errors_total.inc()

    def record(self, result: ResultRecord) -> None:
        if result.ok:
            self.record_success(result.latency_ms, result.attempts)
        else:
            self.record_failure(result.attempts)
        with self._lock:
            self._records.append(result)

    def records(self) -> list[ResultRecord]:
        with self._lock:
            return list(self._records)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                success_count=self._success_count,
                failure_count=self._failure_count,
                attempt_count=self._attempt_count,
                retry_count=self._retry_count,
                sink_error_count=self._sink_error_count,
                success_latencies_ms=list(self._success_latencies_ms),
            )

    def render_prometheus(self) -> str:
        return generate_latest(self.registry).decode("utf-8")

    def write_prometheus_textfile(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        write_to_textfile(str(path), self.registry)
