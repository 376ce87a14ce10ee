from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import UTC, datetime, time, timedelta

MS_PER_SECOND = 1000
SECONDS_PER_DAY = 24 * 60 * 60


def ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def epoch_ms(value: datetime) -> int:
    return int(ensure_aware(value).timestamp() * MS_PER_SECOND)


def local_date_key(value: datetime) -> str:
    """Calendar date of ``value`` in its own zone, used as the daily-reset marker."""
    return ensure_aware(value).date().isoformat()


def seconds_until_midnight(value: datetime) -> int:
    now = ensure_aware(value)
    midnight = datetime.combine(now.date() + timedelta(days=1), time(0), tzinfo=now.tzinfo)
    # subtract in UTC so DST transitions are counted
    remaining = midnight.astimezone(UTC) - now.astimezone(UTC)
    return max(0, math.floor(remaining.total_seconds()))


def prune_timestamps(timestamps: Iterable[int], *, now_ms: int, retention_seconds: int) -> list[int]:
    window_ms = retention_seconds * MS_PER_SECOND
    return [ts for ts in timestamps if now_ms - ts < window_ms]


def timestamps_within(timestamps: Iterable[int], *, now_ms: int, window_seconds: int) -> list[int]:
    window_ms = window_seconds * MS_PER_SECOND
    return [ts for ts in timestamps if now_ms - ts < window_ms]


def ceil_seconds(ms: int) -> int:
    return math.ceil(ms / MS_PER_SECOND)


def ceil_minutes(seconds: int) -> int:
    return math.ceil(seconds / 60)


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'' if count == 1 else 's'}"


def format_time_remaining(seconds: int) -> str:
    if seconds < 60:
        return _plural(seconds, "second")
    if seconds < 3600:
        return _plural(ceil_minutes(seconds), "minute")
    hours = seconds // 3600
    minutes = math.ceil((seconds % 3600) / 60)
    if minutes > 0:
        return f"{_plural(hours, 'hour')} and {_plural(minutes, 'minute')}"
    return _plural(hours, "hour")
