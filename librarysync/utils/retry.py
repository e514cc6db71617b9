"""Backoff helpers for job-level retries."""

from __future__ import annotations

from email.utils import parsedate_to_datetime
import random
from datetime import UTC, datetime

__all__ = [
    "backoff_delay_seconds",
    "exp_backoff_delays",
    "parse_retry_after_seconds",
]


def exp_backoff_delays(base_s: float, max_delay_s: float, attempts: int) -> list[float]:
    """Return the nominal (jitter free) delay for each of ``attempts`` failures."""

    return [
        min(max_delay_s, max(0.0, base_s) * (2**index)) for index in range(max(0, attempts))
    ]


def backoff_delay_seconds(
    failures: int,
    *,
    base_s: float,
    max_delay_s: float,
    jitter_s: float = 0.0,
    rng: random.Random | None = None,
) -> float:
    """Delay before retry number ``failures`` (zero based).

    Jitter is clamped to ``base_s`` so consecutive delays never decrease, and
    the result is capped at ``max_delay_s``.
    """

    base = max(0.0, float(base_s))
    exponent = max(0, int(failures))
    nominal = base * (2 ** min(exponent, 32))
    spread = min(max(0.0, float(jitter_s)), base)
    jitter = (rng or random).uniform(0.0, spread) if spread > 0 else 0.0
    return min(float(max_delay_s), nominal + jitter)


def parse_retry_after_seconds(
    value: str | None, *, default: float, now: datetime | None = None
) -> float:
    """Parse a ``Retry-After`` header given as seconds or as an HTTP date."""

    if value is None:
        return default
    text = value.strip()
    if not text:
        return default
    try:
        return max(0.0, float(text))
    except ValueError:
        pass
    try:
        target = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        return default
    if target is None:
        return default
    if target.tzinfo is None:
        target = target.replace(tzinfo=UTC)
    reference = now or datetime.now(UTC)
    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=UTC)
    return max(0.0, (target - reference).total_seconds())
