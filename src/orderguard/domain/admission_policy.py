from __future__ import annotations

from dataclasses import dataclass, replace

from orderguard.domain.models import (
    CooldownType,
    ExemptionDetails,
    OrderHistory,
    RateLimitResult,
)
from orderguard.domain.time_windows import (
    MS_PER_SECOND,
    ceil_minutes,
    ceil_seconds,
    prune_timestamps,
    timestamps_within,
)

EXEMPTION_REASON = "recent cancellation"


@dataclass(frozen=True)
class AdmissionLimits:
    max_active_orders: int = 2
    min_order_interval_seconds: int = 300
    max_daily_orders: int = 20
    suspicious_threshold: int = 5
    burst_window_seconds: int = 1800
    burst_retry_after_seconds: int = 1800
    cancel_exemption_ttl_seconds: int = 600
    post_exemption_cooldown_seconds: int = 0
    history_retention_seconds: int = 86400
    max_tracked_devices: int = 5

    def validate(self) -> None:
        if self.max_active_orders < 1:
            raise ValueError("AdmissionLimits max_active_orders must be >= 1")
        if self.max_daily_orders < 1:
            raise ValueError("AdmissionLimits max_daily_orders must be >= 1")
        if self.suspicious_threshold < 1:
            raise ValueError("AdmissionLimits suspicious_threshold must be >= 1")
        if self.min_order_interval_seconds < 0:
            raise ValueError("AdmissionLimits min_order_interval_seconds must be >= 0")
        if self.max_tracked_devices < 1:
            raise ValueError("AdmissionLimits max_tracked_devices must be >= 1")

    def with_hints(
        self,
        *,
        max_active_orders: int | None = None,
        min_interval_minutes: float | None = None,
        max_daily_orders: int | None = None,
    ) -> AdmissionLimits:
        """Adopt positive limit hints returned by the admission backend."""
        changes: dict[str, int] = {}
        if max_active_orders is not None and max_active_orders > 0:
            changes["max_active_orders"] = int(max_active_orders)
        if min_interval_minutes is not None and min_interval_minutes > 0:
            changes["min_order_interval_seconds"] = int(min_interval_minutes * 60)
        if max_daily_orders is not None and max_daily_orders > 0:
            changes["max_daily_orders"] = int(max_daily_orders)
        return replace(self, **changes) if changes else self


def apply_date_rollover(history: OrderHistory, *, today: str) -> bool:
    if history.last_reset_date == today:
        return False
    history.daily_order_count = 0
    history.last_reset_date = today
    return True


def track_device(history: OrderHistory, device_id: str | None, *, max_devices: int) -> bool:
    deduped = list(dict.fromkeys(history.device_ids))
    if device_id and device_id not in deduped:
        deduped.append(device_id)
    deduped = deduped[-max_devices:]
    if deduped == history.device_ids:
        return False
    history.device_ids = deduped
    return True


def normalize_history(
    history: OrderHistory,
    *,
    today: str,
    now_ms: int,
    device_id: str | None,
    limits: AdmissionLimits,
) -> bool:
    """Apply rollover, retention pruning, expiry pruning and device tracking.

    Returns True when the record changed and should be written back.
    """
    changed = apply_date_rollover(history, today=today)

    pruned = prune_timestamps(
        history.order_timestamps,
        now_ms=now_ms,
        retention_seconds=limits.history_retention_seconds,
    )
    if pruned != history.order_timestamps:
        history.order_timestamps = pruned
        changed = True

    token = history.cancel_exemption_token
    if token is not None and token.expires_at <= now_ms:
        history.cancel_exemption_token = None
        changed = True
    cooldown = history.post_exemption_cooldown
    if cooldown is not None and cooldown.expires_at <= now_ms:
        history.post_exemption_cooldown = None
        changed = True

    if track_device(history, device_id, max_devices=limits.max_tracked_devices):
        changed = True
    return changed


def exemption_decision(history: OrderHistory, *, now_ms: int) -> RateLimitResult | None:
    token = history.cancel_exemption_token
    if token is None or not token.grants_exemption(now_ms):
        return None
    return RateLimitResult(
        allowed=True,
        exemption_reason=EXEMPTION_REASON,
        exemption=ExemptionDetails(order_id=token.order_id, expires_at=token.expires_at),
        fallback=True,
    )


def post_exemption_decision(history: OrderHistory, *, now_ms: int) -> RateLimitResult | None:
    cooldown = history.post_exemption_cooldown
    if cooldown is None or cooldown.expires_at <= now_ms:
        return None
    remaining = ceil_seconds(cooldown.expires_at - now_ms)
    minutes = ceil_minutes(remaining)
    return RateLimitResult(
        allowed=False,
        reason=(
            f"Please wait {minutes} minute{'s' if minutes > 1 else ''} after using "
            "exemption before placing another order."
        ),
        retry_after_seconds=remaining,
        cooldown_type=CooldownType.POST_EXEMPTION,
        fallback=True,
    )


def active_orders_decision(active_count: int, limits: AdmissionLimits) -> RateLimitResult | None:
    if active_count < limits.max_active_orders:
        return None
    return RateLimitResult(
        allowed=False,
        reason=(
            f"You have {active_count} active orders. Please wait for them to complete "
            "before placing a new order."
        ),
        active_orders=active_count,
        cooldown_type=CooldownType.ACTIVE_ORDERS,
        fallback=True,
    )


def min_interval_decision(
    history: OrderHistory,
    *,
    now_ms: int,
    active_count: int,
    limits: AdmissionLimits,
) -> RateLimitResult | None:
    interval_seconds = limits.min_order_interval_seconds
    recent = timestamps_within(
        history.order_timestamps, now_ms=now_ms, window_seconds=interval_seconds
    )
    if not recent:
        return None
    oldest = min(recent)
    wait_ms = interval_seconds * MS_PER_SECOND - (now_ms - oldest)
    # clock skew can put a timestamp in the future; never ask for more than one interval
    retry_after = min(interval_seconds, max(1, ceil_seconds(wait_ms)))
    minutes = ceil_minutes(retry_after)
    return RateLimitResult(
        allowed=False,
        reason=f"Please wait {minutes} minute{'s' if minutes > 1 else ''} between orders.",
        retry_after_seconds=retry_after,
        active_orders=active_count,
        cooldown_type=CooldownType.FREQUENCY,
        fallback=True,
    )


def daily_ceiling_decision(
    history: OrderHistory,
    *,
    seconds_to_midnight: int,
    active_count: int,
    limits: AdmissionLimits,
) -> RateLimitResult | None:
    if history.daily_order_count < limits.max_daily_orders:
        return None
    return RateLimitResult(
        allowed=False,
        reason=(
            f"You've reached the daily limit of {limits.max_daily_orders} orders. "
            "Please try again tomorrow."
        ),
        retry_after_seconds=seconds_to_midnight,
        active_orders=active_count,
        cooldown_type=CooldownType.DAILY_LIMIT,
        daily_count=history.daily_order_count,
        remaining_today=0,
        fallback=True,
    )


def burst_decision(
    history: OrderHistory,
    *,
    now_ms: int,
    active_count: int,
    limits: AdmissionLimits,
) -> RateLimitResult | None:
    recent = timestamps_within(
        history.order_timestamps, now_ms=now_ms, window_seconds=limits.burst_window_seconds
    )
    if len(recent) < limits.suspicious_threshold:
        return None
    return RateLimitResult(
        allowed=False,
        reason="Too many orders in a short period. Please try again later.",
        retry_after_seconds=limits.burst_retry_after_seconds,
        active_orders=active_count,
        cooldown_type=CooldownType.BURST,
        fallback=True,
    )


def allowed_decision(
    history: OrderHistory, *, active_count: int, limits: AdmissionLimits
) -> RateLimitResult:
    return RateLimitResult(
        allowed=True,
        active_orders=active_count,
        daily_count=history.daily_order_count,
        remaining_today=max(0, limits.max_daily_orders - history.daily_order_count),
        fallback=True,
    )
