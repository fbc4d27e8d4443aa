from __future__ import annotations

import enum
import json
import math
import random
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

import httpx
from loguru import logger

if TYPE_CHECKING:
    from metrics import MetricsAggregator


FAILED_SENTINEL = -1
REQUEST_TYPE = "POST"


def now_unix_ms() -> int:
    return int(time.time() * 1000)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def percentile(values: list[float], pct: float) -> Optional[float]:
    if not values:
        return None
    if pct <= 0:
        return float(min(values))
    if pct >= 100:
        return float(max(values))
    ordered = sorted(values)
    index = (len(ordered) - 1) * (pct / 100.0)
    low = math.floor(index)
    high = math.ceil(index)
    if low == high:
        return float(ordered[low])
    fraction = index - low
    return float((ordered[low] * (1.0 - fraction)) + (ordered[high] * fraction))


class WorkSource:
    """Hands out skier ids 1..total, each exactly once, to any number of threads."""

    def __init__(self, total: int) -> None:
        if total < 1:
            raise ValueError(f"total must be >= 1, got {total}")
        self.total = total
        self._next_id = 1
        self._lock = threading.Lock()

    def next(self) -> Optional[int]:
        with self._lock:
            if self._next_id > self.total:
                return None
            issued = self._next_id
            self._next_id += 1
            return issued

    @property
    def issued(self) -> int:
        with self._lock:
            return self._next_id - 1


@dataclass(frozen=True)
class LiftRide:
    resortID: int
    seasonID: str
    dayID: str
    skierID: str
    time: int
    liftID: int


def build_lift_ride(
    skier_id: int,
    rng: random.Random,
    season_id: str = "2022",
    day_id: str = "1",
) -> LiftRide:
    return LiftRide(
        resortID=rng.randint(1, 10),
        seasonID=season_id,
        dayID=day_id,
        skierID=str(skier_id),
        time=rng.randint(1, 360),
        liftID=rng.randint(1, 40),
    )


def encode_payload(ride: LiftRide) -> bytes:
    return json.dumps(asdict(ride), separators=(",", ":")).encode("utf-8")


class OutcomeClass(enum.Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    UNEXPECTED = "unexpected"


class Decision(enum.Enum):
    ACCEPT = "accept"
    RETRY = "retry"
    GIVE_UP = "give_up"


@dataclass(frozen=True)
class AttemptOutcome:
    status_code: Optional[int]
    latency_ms: float
    error: Optional[str] = None

    @property
    def is_transport_error(self) -> bool:
        return self.status_code is None


class RetryPolicy:
    """Classifies one attempt and decides whether the item gets another one.

    ``attempt_number`` is 1-based and counts the attempt that produced the
    outcome. A retryable outcome is given up once ``attempt_number`` exceeds
    ``max_retries``, so an item gets at most ``max_retries + 1`` attempts.

    4xx responses are retried by default even though an identical request
    is unlikely to succeed; pass ``retry_client_errors=False`` to treat them
    as unexpected instead.
    """

    def __init__(
        self,
        max_retries: int = 5,
        expected_status: int = 201,
        retry_client_errors: bool = True,
        backoff_base_s: float = 0.0,
        backoff_max_s: float = 5.0,
        backoff_jitter: bool = True,
    ) -> None:
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")
        if backoff_base_s < 0 or backoff_max_s < 0:
            raise ValueError("backoff delays must be >= 0")
        self.max_retries = max_retries
        self.expected_status = expected_status
        self.retry_client_errors = retry_client_errors
        self.backoff_base_s = backoff_base_s
        self.backoff_max_s = backoff_max_s
        self.backoff_jitter = backoff_jitter

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def outcome_class(self, outcome: AttemptOutcome) -> OutcomeClass:
        status = outcome.status_code
        if status is None:
            return OutcomeClass.RETRYABLE
        if status == self.expected_status:
            return OutcomeClass.SUCCESS
        if 400 <= status < 500:
            if self.retry_client_errors:
                return OutcomeClass.RETRYABLE
            return OutcomeClass.UNEXPECTED
        if 500 <= status < 600:
            return OutcomeClass.RETRYABLE
        return OutcomeClass.UNEXPECTED

    def classify(self, attempt_number: int, outcome: AttemptOutcome) -> Decision:
        kind = self.outcome_class(outcome)
        if kind is OutcomeClass.SUCCESS:
            return Decision.ACCEPT
        if kind is OutcomeClass.UNEXPECTED:
            return Decision.GIVE_UP
        if attempt_number > self.max_retries:
            return Decision.GIVE_UP
        return Decision.RETRY

    def backoff_s(self, attempt_number: int, rng: random.Random) -> float:
        if self.backoff_base_s <= 0:
            return 0.0
        delay = min(self.backoff_max_s, self.backoff_base_s * (2 ** (attempt_number - 1)))
        if self.backoff_jitter:
            return rng.uniform(0.0, delay)
        return delay


@dataclass
class RequestSettings:
    url: str
    timeout_s: float
    season_id: str = "2022"
    day_id: str = "1"


@dataclass(frozen=True)
class ResultRecord:
    start_time: str
    request_type: str
    latency_ms: int
    status_code: int
    skier_id: int
    attempts: int
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status_code != FAILED_SENTINEL

    def to_csv_row(self) -> list[Any]:
        return [self.start_time, self.request_type, self.latency_ms, self.status_code]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _failure_record(
    start_time: str, skier_id: int, attempts: int, error: Optional[str]
) -> ResultRecord:
    return ResultRecord(
        start_time=start_time,
        request_type=REQUEST_TYPE,
        latency_ms=FAILED_SENTINEL,
        status_code=FAILED_SENTINEL,
        skier_id=skier_id,
        attempts=attempts,
        error=error,
    )


@dataclass
class WorkerContext:
    work_source: WorkSource
    policy: RetryPolicy
    aggregator: "MetricsAggregator"
    sink: Any
    client: httpx.Client
    settings: RequestSettings
    commit_lock: threading.Lock = field(default_factory=threading.Lock)
    cancel_event: threading.Event = field(default_factory=threading.Event)


def _headers() -> dict[str, str]:
    return {"Content-Type": "application/json"}


def send_once(client: httpx.Client, settings: RequestSettings, body: bytes) -> AttemptOutcome:
    started = time.perf_counter()
    try:
        response = client.post(
            settings.url,
            content=body,
            headers=_headers(),
            timeout=settings.timeout_s,
        )
    except httpx.TimeoutException as exc:
        return AttemptOutcome(
            status_code=None,
            latency_ms=(time.perf_counter() - started) * 1000.0,
            error=f"timeout: {exc}",
        )
    except httpx.HTTPError as exc:
        return AttemptOutcome(
            status_code=None,
            latency_ms=(time.perf_counter() - started) * 1000.0,
            error=f"{type(exc).__name__}: {exc}",
        )
    return AttemptOutcome(
        status_code=int(response.status_code),
        latency_ms=(time.perf_counter() - started) * 1000.0,
    )


def execute_request(ctx: WorkerContext, skier_id: int, rng: random.Random) -> ResultRecord:
    """Drive one skier id through the retry policy to a terminal record."""
    ride = build_lift_ride(
        skier_id, rng, season_id=ctx.settings.season_id, day_id=ctx.settings.day_id
    )
    start_time = now_iso()
    started = time.perf_counter()

    attempt = 0
    last_error: Optional[str] = None
    while True:
        attempt += 1
        try:
            body = encode_payload(ride)
        except (TypeError, ValueError) as exc:
            outcome = AttemptOutcome(status_code=None, latency_ms=0.0, error=f"encode: {exc}")
        else:
            outcome = send_once(ctx.client, ctx.settings, body)

        if outcome.status_code is not None:
            logger.debug(f"Request {skier_id} status code: {outcome.status_code}")
        decision = ctx.policy.classify(attempt, outcome)

        if decision is Decision.ACCEPT:
            latency_ms = int((time.perf_counter() - started) * 1000)
            return ResultRecord(
                start_time=start_time,
                request_type=REQUEST_TYPE,
                latency_ms=latency_ms,
                status_code=int(outcome.status_code),
                skier_id=skier_id,
                attempts=attempt,
            )

        last_error = outcome.error or f"HTTP {outcome.status_code}"
        if decision is Decision.GIVE_UP:
            if ctx.policy.outcome_class(outcome) is OutcomeClass.UNEXPECTED:
                logger.error(
                    f"Request {skier_id} got unexpected status {outcome.status_code}, giving up"
                )
            else:
                logger.error(f"Request #{skier_id} failed after {attempt} attempts: {last_error}")
            return _failure_record(start_time, skier_id, attempt, last_error)

        logger.warning(f"Request {skier_id} failed (attempt {attempt}): {last_error}")
        if ctx.cancel_event.is_set():
            return _failure_record(start_time, skier_id, attempt, "cancelled")
        delay = ctx.policy.backoff_s(attempt, rng)
        if delay > 0 and ctx.cancel_event.wait(timeout=delay):
            return _failure_record(start_time, skier_id, attempt, "cancelled")


def commit_record(ctx: WorkerContext, record: ResultRecord) -> None:
    # Sink append and counter update form one unit for any snapshot reader.
    with ctx.commit_lock:
        try:
            ctx.sink.write(record)
        except OSError as exc:
            ctx.aggregator.record_sink_error()
            logger.error(f"Failed to write result for request {record.skier_id}: {exc}")
        ctx.aggregator.record(record)


def worker_loop(worker_id: int, ctx: WorkerContext, rng: random.Random) -> int:
    resolved = 0
    while not ctx.cancel_event.is_set():
        skier_id = ctx.work_source.next()
        if skier_id is None:
            break
        try:
            record = execute_request(ctx, skier_id, rng)
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"Worker {worker_id} crashed on request {skier_id}")
            record = _failure_record(now_iso(), skier_id, 0, str(exc))
        commit_record(ctx, record)
        resolved += 1
    logger.debug(f"Worker {worker_id} finished after {resolved} requests")
    return resolved
