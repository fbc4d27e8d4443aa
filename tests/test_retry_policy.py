"""
Unit tests for RetryPolicy classification and backoff.
"""

import random

import pytest

from loadgen import AttemptOutcome, Decision, OutcomeClass, RetryPolicy


def _status(code):
    return AttemptOutcome(status_code=code, latency_ms=1.0)


TRANSPORT_ERROR = AttemptOutcome(status_code=None, latency_ms=1.0, error="connection refused")


@pytest.mark.parametrize(
    "outcome,expected",
    [
        (_status(201), OutcomeClass.SUCCESS),
        (_status(400), OutcomeClass.RETRYABLE),
        (_status(429), OutcomeClass.RETRYABLE),
        (_status(499), OutcomeClass.RETRYABLE),
        (_status(500), OutcomeClass.RETRYABLE),
        (_status(503), OutcomeClass.RETRYABLE),
        (_status(599), OutcomeClass.RETRYABLE),
        (_status(200), OutcomeClass.UNEXPECTED),
        (_status(204), OutcomeClass.UNEXPECTED),
        (_status(301), OutcomeClass.UNEXPECTED),
        (_status(100), OutcomeClass.UNEXPECTED),
        (_status(600), OutcomeClass.UNEXPECTED),
        (TRANSPORT_ERROR, OutcomeClass.RETRYABLE),
    ],
)
def test_outcome_class_by_status_range(outcome, expected):
    assert RetryPolicy().outcome_class(outcome) is expected


def test_client_errors_can_be_made_terminal():
    policy = RetryPolicy(retry_client_errors=False)
    assert policy.outcome_class(_status(404)) is OutcomeClass.UNEXPECTED
    assert policy.classify(1, _status(404)) is Decision.GIVE_UP
    # 5xx stays retryable either way.
    assert policy.classify(1, _status(502)) is Decision.RETRY


def test_accept_and_unexpected_ignore_attempt_number():
    policy = RetryPolicy()
    for attempt in (1, 3, 6, 50):
        assert policy.classify(attempt, _status(201)) is Decision.ACCEPT
        assert policy.classify(attempt, _status(301)) is Decision.GIVE_UP


def test_budget_allows_six_attempts_by_default():
    """Attempts 1..5 may retry; the 6th failed attempt ends the item."""
    policy = RetryPolicy()
    assert policy.max_attempts == 6
    decisions = [policy.classify(n, _status(503)) for n in range(1, 7)]
    assert decisions == [Decision.RETRY] * 5 + [Decision.GIVE_UP]
    assert policy.classify(6, TRANSPORT_ERROR) is Decision.GIVE_UP


def test_zero_retries_gives_up_after_first_failure():
    policy = RetryPolicy(max_retries=0)
    assert policy.classify(1, _status(500)) is Decision.GIVE_UP


def test_classification_is_deterministic():
    policy = RetryPolicy()
    for outcome in (_status(201), _status(404), _status(503), _status(302), TRANSPORT_ERROR):
        for attempt in range(1, 8):
            first = policy.classify(attempt, outcome)
            assert all(policy.classify(attempt, outcome) is first for _ in range(5))


def test_custom_expected_status():
    policy = RetryPolicy(expected_status=200)
    assert policy.classify(1, _status(200)) is Decision.ACCEPT
    assert policy.classify(1, _status(201)) is Decision.GIVE_UP


def test_backoff_is_immediate_by_default():
    policy = RetryPolicy()
    rng = random.Random(0)
    assert [policy.backoff_s(n, rng) for n in range(1, 6)] == [0.0] * 5


def test_exponential_backoff_is_capped():
    policy = RetryPolicy(backoff_base_s=0.1, backoff_max_s=0.5, backoff_jitter=False)
    rng = random.Random(0)
    assert [policy.backoff_s(n, rng) for n in range(1, 6)] == pytest.approx(
        [0.1, 0.2, 0.4, 0.5, 0.5]
    )


def test_jittered_backoff_stays_within_bounds():
    policy = RetryPolicy(backoff_base_s=0.1, backoff_max_s=1.0, backoff_jitter=True)
    rng = random.Random(7)
    for attempt in range(1, 10):
        delay = policy.backoff_s(attempt, rng)
        assert 0.0 <= delay <= min(1.0, 0.1 * 2 ** (attempt - 1))


@pytest.mark.parametrize(
    "kwargs",
    [{"max_retries": -1}, {"backoff_base_s": -0.1}, {"backoff_max_s": -1.0}],
)
def test_rejects_invalid_settings(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)
