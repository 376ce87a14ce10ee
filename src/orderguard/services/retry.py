from __future__ import annotations

import random
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RetryAttempt:
    attempt: int
    delay_ms: int
    error_type: str


def compute_delay_ms(
    *,
    attempt: int,
    base_delay_ms: int,
    max_delay_ms: int,
    backoff_factor: float,
    prng: random.Random | None,
) -> int:
    raw_delay_ms = min(max_delay_ms, int(base_delay_ms * (backoff_factor ** max(0, attempt - 1))))
    if prng is None:
        return raw_delay_ms
    return int(raw_delay_ms * (0.5 + prng.random()))


def retry_with_backoff(  # noqa: UP047
    fn: Callable[[], T],
    *,
    max_attempts: int,
    base_delay_ms: int,
    retry_on_exceptions: Sequence[type[Exception]],
    max_delay_ms: int | None = None,
    backoff_factor: float = 2.0,
    jitter_seed: int | None = None,
    sleep_fn: Callable[[float], None] | None = None,
    on_retry: Callable[[RetryAttempt], None] | None = None,
) -> T:
    """Call ``fn`` until it succeeds or ``max_attempts`` is reached.

    ``backoff_factor=1`` gives a fixed delay between attempts. Jitter is applied
    only when ``jitter_seed`` is given, so tests stay deterministic.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    if base_delay_ms < 0:
        raise ValueError("delay values must be >= 0")

    sleep = sleep_fn or time.sleep
    retryable = tuple(retry_on_exceptions)
    prng = random.Random(jitter_seed) if jitter_seed is not None else None
    ceiling_ms = max_delay_ms if max_delay_ms is not None else base_delay_ms * 16

    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except Exception as exc:
            if not isinstance(exc, retryable) or attempt >= max_attempts:
                raise
            delay_ms = compute_delay_ms(
                attempt=attempt,
                base_delay_ms=base_delay_ms,
                max_delay_ms=ceiling_ms,
                backoff_factor=backoff_factor,
                prng=prng,
            )
            if on_retry is not None:
                on_retry(
                    RetryAttempt(attempt=attempt, delay_ms=delay_ms, error_type=type(exc).__name__)
                )
            sleep(delay_ms / 1000.0)

    raise RuntimeError("retry loop exhausted unexpectedly")
