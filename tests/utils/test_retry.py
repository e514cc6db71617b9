import random
from datetime import UTC, datetime

from librarysync.utils.retry import (
    backoff_delay_seconds,
    exp_backoff_delays,
    parse_retry_after_seconds,
)


def test_exp_backoff_delays_double_until_capped() -> None:
    assert exp_backoff_delays(5, 900, 4) == [5, 10, 20, 40]
    assert exp_backoff_delays(5, 30, 5) == [5, 10, 20, 30, 30]


def test_backoff_delay_without_jitter_is_nominal() -> None:
    assert backoff_delay_seconds(0, base_s=5, max_delay_s=900) == 5
    assert backoff_delay_seconds(3, base_s=5, max_delay_s=900) == 40


def test_backoff_delays_are_monotone_and_capped_with_jitter() -> None:
    rng = random.Random(7)
    delays = [
        backoff_delay_seconds(failures, base_s=5, max_delay_s=900, jitter_s=5, rng=rng)
        for failures in range(12)
    ]

    assert delays == sorted(delays)
    assert all(delay <= 900 for delay in delays)
    assert delays[-1] == 900


def test_backoff_jitter_is_clamped_to_base() -> None:
    rng = random.Random(1)
    for _ in range(50):
        delay = backoff_delay_seconds(0, base_s=2, max_delay_s=900, jitter_s=60, rng=rng)
        assert 2 <= delay <= 4


def test_backoff_handles_huge_failure_counts() -> None:
    assert backoff_delay_seconds(10_000, base_s=5, max_delay_s=900) == 900


def test_parse_retry_after_seconds_variants() -> None:
    assert parse_retry_after_seconds("7", default=5) == 7.0
    assert parse_retry_after_seconds(None, default=5) == 5
    assert parse_retry_after_seconds("   ", default=5) == 5
    assert parse_retry_after_seconds("soon", default=5) == 5
    assert parse_retry_after_seconds("-3", default=5) == 0.0


def test_parse_retry_after_http_date() -> None:
    now = datetime(2024, 1, 1, tzinfo=UTC)

    value = parse_retry_after_seconds("Mon, 01 Jan 2024 00:00:30 GMT", default=5, now=now)

    assert value == 30.0
