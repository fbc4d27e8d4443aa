from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from report import format_summary_lines
from runner import RunConfig, RunResult, SinkOpenError, run_load_test


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Expected an integer, got '{value}'.") from exc
    if parsed <= 0:
        raise argparse.ArgumentTypeError(f"Value must be > 0, got {parsed}.")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Fixed-count POST load test for the skier lift-ride API."
    )

    parser.add_argument("--url", default="http://localhost:8080/skiers")
    parser.add_argument(
        "--requests",
        dest="total_requests",
        type=_positive_int,
        default=10000,
        help="Total number of lift rides to post.",
    )
    parser.add_argument("--workers", type=_positive_int, default=32)
    parser.add_argument(
        "--max-retries",
        type=int,
        default=5,
        help="Retries allowed after the first attempt of each request.",
    )
    parser.add_argument("--timeout-s", type=float, default=30.0)
    parser.add_argument("--expected-status", type=int, default=201)
    parser.add_argument(
        "--retry-client-errors",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Retry 4xx responses like 5xx ones.",
    )
    parser.add_argument(
        "--backoff-base-s",
        type=float,
        default=0.0,
        help="Base delay for exponential backoff between attempts; 0 retries immediately.",
    )
    parser.add_argument("--backoff-max-s", type=float, default=5.0)
    parser.add_argument("--backoff-jitter", action=argparse.BooleanOptionalAction, default=True)

    parser.add_argument("--season-id", default="2022")
    parser.add_argument("--day-id", default="1")
    parser.add_argument("--seed", type=int, default=42)

    parser.add_argument("--output-csv", type=Path, default=Path("load_test_results.csv"))
    parser.add_argument("--report-dir", type=Path, default=None)
    parser.add_argument("--metrics-file", type=Path, default=None)
    parser.add_argument("--run-name", default=None)
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"],
    )

    return parser


def _validate_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if args.max_retries < 0:
        parser.error("--max-retries must be >= 0")
    if args.timeout_s <= 0:
        parser.error("--timeout-s must be > 0")
    if args.backoff_base_s < 0 or args.backoff_max_s < 0:
        parser.error("--backoff-base-s and --backoff-max-s must be >= 0")
    if not args.url.startswith(("http://", "https://")):
        parser.error(f"--url must be an http(s) URL, got {args.url}")


def _configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level)


def config_from_args(args: argparse.Namespace) -> RunConfig:
    return RunConfig(
        url=args.url,
        total_requests=args.total_requests,
        workers=args.workers,
        max_retries=args.max_retries,
        timeout_s=args.timeout_s,
        expected_status=args.expected_status,
        retry_client_errors=bool(args.retry_client_errors),
        backoff_base_s=args.backoff_base_s,
        backoff_max_s=args.backoff_max_s,
        backoff_jitter=bool(args.backoff_jitter),
        season_id=args.season_id,
        day_id=args.day_id,
        seed=args.seed,
        output_csv=args.output_csv,
        report_dir=args.report_dir,
        metrics_file=args.metrics_file,
        run_name=args.run_name,
    )


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _validate_args(parser, args)
    _configure_logging(args.log_level)

    config = config_from_args(args)
    try:
        result: RunResult = run_load_test(config)
    except SinkOpenError as exc:
        logger.error(str(exc))
        return 1

    for line in format_summary_lines(result.summary):
        print(line)
    if result.report_dir is not None:
        print(f"Reports written to: {result.report_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
