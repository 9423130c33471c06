from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TypeVar

from otcsync.errors import ErrorCategory, classify_rpc_error

T = TypeVar("T")

RETRYABLE_CATEGORIES = frozenset({ErrorCategory.TRANSIENT, ErrorCategory.RATE_LIMIT})


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay_seconds: float = 0.0


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with +/-20% deterministic jitter, capped at ``max_delay_seconds``."""

    base_delay_seconds: float = 0.4
    max_delay_seconds: float = 4.0
    jitter_seed: int = 0

    def exponential(self, attempt: int) -> float:
        attempt = max(1, attempt)
        raw = self.base_delay_seconds * (2 ** (attempt - 1))
        jitter = 0.8 + 0.4 * random.Random(self.jitter_seed + attempt).random()
        return min(self.max_delay_seconds, raw) * jitter


def _seconds_until(value: str) -> float | None:
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


def parse_retry_after_seconds(value: str | None) -> float | None:
    """Accepts both forms of Retry-After: delta seconds or an HTTP date."""
    text = (value or "").strip()
    if not text:
        return None
    try:
        seconds = float(text)
    except ValueError:
        return _seconds_until(text)
    return seconds if seconds >= 0 else None


def compute_delay(
    *,
    attempt: int,
    policy: BackoffPolicy,
    retry_after_header: str | None = None,
) -> float:
    hinted = parse_retry_after_seconds(retry_after_header)
    if hinted is None:
        return policy.exponential(attempt)
    return min(policy.max_delay_seconds, hinted)


def rpc_retry_classifier(policy: BackoffPolicy) -> Callable[[Exception, int], RetryDecision]:
    def _classify(exc: Exception, attempt: int) -> RetryDecision:
        if classify_rpc_error(exc) not in RETRYABLE_CATEGORIES:
            return RetryDecision(retry=False)
        delay = compute_delay(
            attempt=attempt,
            policy=policy,
            retry_after_header=getattr(exc, "retry_after", None),
        )
        return RetryDecision(retry=True, delay_seconds=delay)

    return _classify


async def async_retry(  # noqa: UP047
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    classify: Callable[[Exception, int], RetryDecision],
    on_retry: Callable[[Exception, int, float], None] | None = None,
    sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``fn`` until it succeeds, the error is not retryable, or attempts run out."""
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as exc:
            decision = classify(exc, attempt)
            if not decision.retry or attempt == max_attempts:
                raise
            delay = max(0.0, decision.delay_seconds)
            if on_retry is not None:
                on_retry(exc, attempt, delay)
        await sleep_fn(delay)
        attempt += 1
