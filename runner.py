from __future__ import annotations

import csv
import json
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import httpx
from loguru import logger

from loadgen import (
    RequestSettings,
    ResultRecord,
    RetryPolicy,
    WorkerContext,
    WorkSource,
    now_unix_ms,
    worker_loop,
)
from metrics import MetricsAggregator, MetricsSnapshot
from report import RunSummary, compute_run_summary, write_summary_json, write_summary_markdown


CSV_HEADER = ["Start Time", "Request Type", "Latency (ms)", "Response Code"]


class SinkOpenError(RuntimeError):
    """The result file could not be created, so the run never started."""


@dataclass
class RunConfig:
    url: str = "http://localhost:8080/skiers"
    total_requests: int = 10000
    workers: int = 32
    max_retries: int = 5
    timeout_s: float = 30.0
    expected_status: int = 201
    retry_client_errors: bool = True
    backoff_base_s: float = 0.0
    backoff_max_s: float = 5.0
    backoff_jitter: bool = True
    season_id: str = "2022"
    day_id: str = "1"
    seed: int = 42
    output_csv: Path = Path("load_test_results.csv")
    report_dir: Optional[Path] = None
    metrics_file: Optional[Path] = None
    run_name: Optional[str] = None

    def validate(self) -> None:
        if not self.url:
            raise ValueError("url must not be empty")
        if self.total_requests < 1:
            raise ValueError(f"total_requests must be >= 1, got {self.total_requests}")
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.timeout_s <= 0:
            raise ValueError(f"timeout_s must be > 0, got {self.timeout_s}")
        if self.backoff_base_s < 0 or self.backoff_max_s < 0:
            raise ValueError("backoff delays must be >= 0")


class CSVResultSink:
    """Append-only CSV result log, flushed after every record.

    The file is opened and the header written on construction, so a path
    that cannot be written fails before any request is sent.
    """

    def __init__(self, output_path: Path) -> None:
        self.output_path = output_path
        output_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = output_path.open("w", encoding="utf-8", newline="")
        self._writer = csv.writer(self._file, lineterminator="\n")
        self._lock = threading.Lock()
        self.lines_written = 0
        self._writer.writerow(CSV_HEADER)
        self._file.flush()

    def write(self, record: ResultRecord) -> None:
        with self._lock:
            self._writer.writerow(record.to_csv_row())
            self._file.flush()
            self.lines_written += 1

    def close(self) -> None:
        with self._lock:
            if not self._file.closed:
                self._file.close()

    def __enter__(self) -> CSVResultSink:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


@dataclass
class RunResult:
    summary: RunSummary
    snapshot: MetricsSnapshot
    output_csv: Path
    report_dir: Optional[Path] = None
    metrics_file: Optional[Path] = None
    worker_counts: list[int] = field(default_factory=list)


def _build_policy(config: RunConfig) -> RetryPolicy:
    return RetryPolicy(
        max_retries=config.max_retries,
        expected_status=config.expected_status,
        retry_client_errors=config.retry_client_errors,
        backoff_base_s=config.backoff_base_s,
        backoff_max_s=config.backoff_max_s,
        backoff_jitter=config.backoff_jitter,
    )


def _resolved_config_dict(config: RunConfig, started_at_unix_ms: int) -> dict[str, Any]:
    payload = asdict(config)
    payload["output_csv"] = str(config.output_csv)
    payload["report_dir"] = str(config.report_dir) if config.report_dir else None
    payload["metrics_file"] = str(config.metrics_file) if config.metrics_file else None
    payload["started_at_utc"] = datetime.fromtimestamp(
        started_at_unix_ms / 1000.0, tz=timezone.utc
    ).isoformat()
    return payload


def _write_reports(
    report_dir: Path,
    config: RunConfig,
    started_at_unix_ms: int,
    summary: RunSummary,
) -> None:
    report_dir.mkdir(parents=True, exist_ok=True)
    resolved_config = _resolved_config_dict(config, started_at_unix_ms)
    (report_dir / "config.json").write_text(
        json.dumps(resolved_config, indent=2), encoding="utf-8"
    )
    write_summary_json(report_dir / "summary.json", summary)
    write_summary_markdown(
        output_path=report_dir / "summary.md",
        run_name=config.run_name or "run",
        resolved_config=resolved_config,
        summary=summary,
    )


def run_load_test(
    config: RunConfig,
    transport: Optional[httpx.BaseTransport] = None,
    cancel_event: Optional[threading.Event] = None,
) -> RunResult:
    config.validate()
    started_at_unix_ms = now_unix_ms()

    try:
        sink = CSVResultSink(config.output_csv)
    except OSError as exc:
        raise SinkOpenError(f"Failed to create CSV file {config.output_csv}: {exc}") from exc

    work_source = WorkSource(config.total_requests)
    aggregator = MetricsAggregator()
    settings = RequestSettings(
        url=config.url,
        timeout_s=float(config.timeout_s),
        season_id=config.season_id,
        day_id=config.day_id,
    )
    limits = httpx.Limits(
        max_connections=max(config.workers, 1),
        max_keepalive_connections=max(config.workers, 1),
    )

    logger.info(
        f"Starting load test: {config.total_requests} requests, "
        f"{config.workers} workers, target {config.url}"
    )
    started = time.perf_counter()
    worker_counts: list[int] = []
    try:
        with httpx.Client(limits=limits, timeout=config.timeout_s, transport=transport) as client:
            ctx = WorkerContext(
                work_source=work_source,
                policy=_build_policy(config),
                aggregator=aggregator,
                sink=sink,
                client=client,
                settings=settings,
                cancel_event=cancel_event if cancel_event is not None else threading.Event(),
            )
            with ThreadPoolExecutor(
                max_workers=config.workers, thread_name_prefix="loadtest-worker"
            ) as pool:
                futures = []
                for worker_id in range(config.workers):
                    worker_seed = config.seed + (worker_id * 971)
                    futures.append(
                        pool.submit(worker_loop, worker_id, ctx, random.Random(worker_seed))
                    )
                # Wait for every worker before surfacing the first failure.
                errors: list[BaseException] = []
                for future in futures:
                    exc = future.exception()
                    if exc is not None:
                        errors.append(exc)
                    else:
                        worker_counts.append(future.result())
                if errors:
                    raise errors[0]
    finally:
        sink.close()

    elapsed_ms = int((time.perf_counter() - started) * 1000)
    snapshot = aggregator.snapshot()
    summary = compute_run_summary(
        total_requests=config.total_requests,
        snapshot=snapshot,
        elapsed_ms=elapsed_ms,
    )
    logger.info(
        f"Load test finished in {elapsed_ms} ms: "
        f"{snapshot.success_count} ok, {snapshot.failure_count} failed"
    )

    if config.report_dir is not None:
        _write_reports(config.report_dir, config, started_at_unix_ms, summary)
    if config.metrics_file is not None:
        aggregator.write_prometheus_textfile(config.metrics_file)

    return RunResult(
        summary=summary,
        snapshot=snapshot,
        output_csv=config.output_csv,
        report_dir=config.report_dir,
        metrics_file=config.metrics_file,
        worker_counts=worker_counts,
    )
