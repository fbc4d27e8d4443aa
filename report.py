from __future__ import annotations

import json
import math
import statistics
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loadgen import percentile
from metrics import MetricsSnapshot


@dataclass
class RunSummary:
    total_requests: int
    successful: int
    failed: int
    elapsed_ms: int
    throughput_rps: Optional[float]
    mean_latency_ms: Optional[float]
    total_attempts: int
    total_retries: int
    sink_errors: int
    client_latency_mean_ms: Optional[float]
    client_latency_p50_ms: Optional[float]
    client_latency_p90_ms: Optional[float]
    client_latency_p99_ms: Optional[float]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _fmt(value: Optional[float], digits: int = 2) -> str:
    if value is None or math.isnan(value):
        return "-"
    return f"{value:.{digits}f}"


def compute_run_summary(
    *,
    total_requests: int,
    snapshot: MetricsSnapshot,
    elapsed_ms: int,
) -> RunSummary:
    """Derive the end-of-run figures from the final aggregator state.

    Throughput counts successful requests only. Mean latency is wall time
    divided by successful requests, which is the figure the summary has
    always reported; the per-request client latencies are summarized
    separately.
    """
    successful = snapshot.success_count
    throughput_rps = (
        float(successful / (elapsed_ms / 1000.0)) if elapsed_ms > 0 else None
    )
    mean_latency_ms = float(elapsed_ms / successful) if successful > 0 else None

    latencies = [value for value in snapshot.success_latencies_ms if value >= 0]
    return RunSummary(
        total_requests=total_requests,
        successful=successful,
        failed=snapshot.failure_count,
        elapsed_ms=elapsed_ms,
        throughput_rps=throughput_rps,
        mean_latency_ms=mean_latency_ms,
        total_attempts=snapshot.attempt_count,
        total_retries=snapshot.retry_count,
        sink_errors=snapshot.sink_error_count,
        client_latency_mean_ms=float(statistics.fmean(latencies)) if latencies else None,
        client_latency_p50_ms=percentile(latencies, 50.0),
        client_latency_p90_ms=percentile(latencies, 90.0),
        client_latency_p99_ms=percentile(latencies, 99.0),
    )


def format_summary_lines(summary: RunSummary) -> list[str]:
    return [
        f"All requests completed in {summary.elapsed_ms} ms.",
        f"Total successful requests: {summary.successful}",
        f"Total failed requests: {summary.failed}",
        f"Throughput: {_fmt(summary.throughput_rps)} requests/s.",
        f"Average response time: {_fmt(summary.mean_latency_ms)} ms.",
    ]


def write_summary_json(output_path: Path, summary: RunSummary) -> None:
    output_path.write_text(json.dumps(summary.to_dict(), indent=2), encoding="utf-8")


def write_summary_markdown(
    output_path: Path,
    run_name: str,
    resolved_config: dict[str, Any],
    summary: RunSummary,
) -> None:
    generated_at = datetime.now(timezone.utc).isoformat()
    lines: list[str] = []
    lines.append(f"# Load Test Summary - {run_name}")
    lines.append("")
    lines.append(f"Generated at (UTC): `{generated_at}`")
    lines.append("")
    lines.append("## Configuration")
    lines.append("")
    lines.append("```json")
    lines.append(json.dumps(resolved_config, indent=2))
    lines.append("```")
    lines.append("")
    lines.append("## Results")
    lines.append("")
    lines.append(
        "| Requests | OK | Failed | Attempts | Retries | Elapsed ms | Throughput req/s | "
        "Mean ms | Client mean ms | p50 ms | p90 ms | p99 ms |"
    )
    lines.append("|---:|---:|---:|---:|---:|---:|---:|---:|---:|---:|---:|---:|")
    lines.append(
        "| "
        f"{summary.total_requests} | "
        f"{summary.successful} | "
        f"{summary.failed} | "
        f"{summary.total_attempts} | "
        f"{summary.total_retries} | "
        f"{summary.elapsed_ms} | "
        f"{_fmt(summary.throughput_rps)} | "
        f"{_fmt(summary.mean_latency_ms)} | "
        f"{_fmt(summary.client_latency_mean_ms)} | "
        f"{_fmt(summary.client_latency_p50_ms)} | "
        f"{_fmt(summary.client_latency_p90_ms)} | "
        f"{_fmt(summary.client_latency_p99_ms)} |"
    )
    if summary.sink_errors:
        lines.append("")
        lines.append(f"Result file write errors: {summary.sink_errors}")

    output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
