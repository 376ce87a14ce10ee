from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from orderguard.adapters.clock import Clock
from orderguard.adapters.order_ledger import ActiveOrderSource
from orderguard.domain.admission_policy import (
    AdmissionLimits,
    active_orders_decision,
    allowed_decision,
    apply_date_rollover,
    burst_decision,
    daily_ceiling_decision,
    exemption_decision,
    min_interval_decision,
    normalize_history,
    post_exemption_decision,
)
from orderguard.domain.models import (
    CancelExemptionToken,
    CooldownType,
    OrderHistory,
    PostExemptionCooldown,
    RateLimitResult,
)
from orderguard.domain.time_windows import (
    MS_PER_SECOND,
    epoch_ms,
    format_time_remaining,
    local_date_key,
    prune_timestamps,
    seconds_until_midnight,
)
from orderguard.logging_context import with_logging_context
from orderguard.services.device_fingerprint import DeviceFingerprint
from orderguard.services.history_cache import HistoryCache
from orderguard.services.identity_locks import IdentityLockTable, IdentityLockTimeout
from orderguard.services.identity_resolver import IdentityResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlacementOutcome:
    result: RateLimitResult
    order_id: str | None = None

    @property
    def placed(self) -> bool:
        return self.order_id is not None


class AdmissionEngine:
    """Decides whether an identity may place an order and records what it did.

    The engine is an advisory speed-bump: every unexpected failure inside
    ``can_place_order`` results in ``allowed=True``.
    """

    def __init__(
        self,
        *,
        history_cache: HistoryCache,
        active_orders: ActiveOrderSource,
        identity_resolver: IdentityResolver,
        device_fingerprint: DeviceFingerprint,
        clock: Clock,
        limits: AdmissionLimits | None = None,
        locks: IdentityLockTable | None = None,
    ) -> None:
        self._cache = history_cache
        self._active_orders = active_orders
        self._identity_resolver = identity_resolver
        self._device_fingerprint = device_fingerprint
        self._clock = clock
        self._limits = limits or AdmissionLimits()
        self._limits.validate()
        self._locks = locks or IdentityLockTable()

    @property
    def limits(self) -> AdmissionLimits:
        return self._limits

    def apply_learned_limits(
        self,
        *,
        max_active_orders: int | None = None,
        min_interval_minutes: float | None = None,
        max_daily_orders: int | None = None,
    ) -> AdmissionLimits:
        updated = self._limits.with_hints(
            max_active_orders=max_active_orders,
            min_interval_minutes=min_interval_minutes,
            max_daily_orders=max_daily_orders,
        )
        if updated != self._limits:
            logger.info(
                "admission_limits_learned",
                extra={
                    "extra": {
                        "max_active_orders": updated.max_active_orders,
                        "min_order_interval_seconds": updated.min_order_interval_seconds,
                        "max_daily_orders": updated.max_daily_orders,
                    }
                },
            )
            self._limits = updated
        return updated

    def resolve_identity(self, identity: str | None = None) -> str:
        return identity if identity is not None else self._identity_resolver.resolve()

    def has_strong_identity(self) -> bool:
        return self._identity_resolver.has_strong_identity()

    def is_remote_tier_available(self) -> bool:
        return self._cache.store.has_remote_tier()

    def clear_caches(self) -> None:
        self._cache.invalidate()

    @staticmethod
    def format_time_remaining(seconds: int) -> str:
        return format_time_remaining(seconds)

    def history(self, identity: str | None = None) -> OrderHistory:
        resolved = self.resolve_identity(identity)
        with self._locks.hold(resolved):
            return self._cache.get_history(resolved)

    def can_place_order(self, identity: str | None = None) -> RateLimitResult:
        try:
            resolved = self.resolve_identity(identity)
            with with_logging_context(identity=resolved):
                result = self._evaluate(resolved)
                logger.info(
                    "admission_decision",
                    extra={
                        "extra": {
                            "allowed": result.allowed,
                            "cooldown_type": result.cooldown_type,
                            "retry_after_seconds": result.retry_after_seconds,
                            "active_orders": result.active_orders,
                            "exempted": result.exemption_reason is not None,
                        }
                    },
                )
                return result
        except Exception:
            logger.exception("admission_check_failed_open")
            return RateLimitResult.fail_open()

    def _load_normalized(self, identity: str, *, now_ms: int, today: str) -> OrderHistory:
        # cache reads and write-backs share the identity's critical section with recorders
        with self._locks.hold(identity):
            history = self._cache.get_history(identity)
            changed = normalize_history(
                history,
                today=today,
                now_ms=now_ms,
                device_id=self._device_fingerprint.get_or_create(),
                limits=self._limits,
            )
            if changed:
                self._cache.put_history(identity, history)
            return history

    def _sync_active_orders(
        self, identity: str, history: OrderHistory
    ) -> tuple[OrderHistory, int]:
        """Mirror the ledger's open orders into the stored history.

        The ledger is queried outside the identity lock. The write-back re-reads
        the history under the lock so a placement recorded meanwhile survives.
        """
        try:
            open_orders = list(self._active_orders.list_open_orders(identity))
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "active_order_lookup_failed",
                extra={"extra": {"error_type": type(exc).__name__}},
            )
            return history, 0
        with self._locks.hold(identity):
            current = self._cache.get_history(identity)
            if open_orders != current.active_order_ids:
                current.active_order_ids = open_orders
                self._cache.put_history(identity, current)
        return current, len(open_orders)

    def _evaluate(self, identity: str) -> RateLimitResult:
        now = self._clock.now()
        now_ms = epoch_ms(now)
        limits = self._limits
        history = self._load_normalized(identity, now_ms=now_ms, today=local_date_key(now))

        exempted = exemption_decision(history, now_ms=now_ms)
        if exempted is not None:
            return exempted

        cooldown = post_exemption_decision(history, now_ms=now_ms)
        if cooldown is not None:
            return cooldown

        history, active_count = self._sync_active_orders(identity, history)
        denied = active_orders_decision(active_count, limits)
        if denied is not None:
            return denied

        denied = min_interval_decision(
            history, now_ms=now_ms, active_count=active_count, limits=limits
        )
        if denied is not None:
            return denied

        denied = daily_ceiling_decision(
            history,
            seconds_to_midnight=seconds_until_midnight(now),
            active_count=active_count,
            limits=limits,
        )
        if denied is not None:
            return denied

        denied = burst_decision(history, now_ms=now_ms, active_count=active_count, limits=limits)
        if denied is not None:
            return denied

        return allowed_decision(history, active_count=active_count, limits=limits)

    def _mutate(
        self,
        operation: str,
        identity: str | None,
        mutate: Callable[[OrderHistory, int], bool],
        *,
        order_id: str | None = None,
    ) -> bool:
        try:
            resolved = self.resolve_identity(identity)
            with with_logging_context(identity=resolved, order_id=order_id):
                with self._locks.hold(resolved):
                    history = self._cache.get_history(resolved)
                    if not mutate(history, epoch_ms(self._clock.now())):
                        return False
                    persisted = self._cache.put_history(resolved, history)
                logger.info(operation, extra={"extra": {"persisted": persisted}})
                return persisted
        except Exception:
            logger.exception(f"{operation}_failed")
            return False

    def record_order_placement(self, order_id: str, identity: str | None = None) -> bool:
        def _apply(history: OrderHistory, now_ms: int) -> bool:
            apply_date_rollover(history, today=local_date_key(self._clock.now()))
            history.order_timestamps.append(now_ms)
            history.order_timestamps = prune_timestamps(
                history.order_timestamps,
                now_ms=now_ms,
                retention_seconds=self._limits.history_retention_seconds,
            )
            history.active_order_ids.append(order_id)
            history.daily_order_count += 1
            return True

        return self._mutate("order_placement_recorded", identity, _apply, order_id=order_id)

    def record_order_completion(self, order_id: str, identity: str | None = None) -> bool:
        def _apply(history: OrderHistory, _now_ms: int) -> bool:
            history.active_order_ids = [
                active_id for active_id in history.active_order_ids if active_id != order_id
            ]
            return True

        return self._mutate("order_completion_recorded", identity, _apply, order_id=order_id)

    def grant_cancellation_exemption(self, order_id: str, identity: str | None = None) -> bool:
        def _apply(history: OrderHistory, now_ms: int) -> bool:
            history.cancel_exemption_token = CancelExemptionToken(
                order_id=order_id,
                expires_at=now_ms + self._limits.cancel_exemption_ttl_seconds * MS_PER_SECOND,
                used=False,
            )
            return True

        return self._mutate("cancellation_exemption_granted", identity, _apply, order_id=order_id)

    def use_exemption_token(self, identity: str | None = None) -> bool:
        def _apply(history: OrderHistory, now_ms: int) -> bool:
            token = history.cancel_exemption_token
            if token is None:
                logger.warning("exemption_token_missing")
                return False
            token.used = True
            cooldown_seconds = self._limits.post_exemption_cooldown_seconds
            if cooldown_seconds > 0:
                history.post_exemption_cooldown = PostExemptionCooldown(
                    expires_at=now_ms + cooldown_seconds * MS_PER_SECOND
                )
            return True

        return self._mutate("exemption_token_used", identity, _apply)

    def record_post_exemption_cooldown(
        self, retry_after_seconds: int, identity: str | None = None
    ) -> bool:
        """Mirror a post-exemption cooldown reported by the admission backend."""

        def _apply(history: OrderHistory, now_ms: int) -> bool:
            if retry_after_seconds <= 0:
                return False
            history.post_exemption_cooldown = PostExemptionCooldown(
                expires_at=now_ms + retry_after_seconds * MS_PER_SECOND
            )
            return True

        return self._mutate("post_exemption_cooldown_mirrored", identity, _apply)

    @property
    def locks(self) -> IdentityLockTable:
        return self._locks

    def admit_and_record(
        self, place: Callable[[], str], identity: str | None = None
    ) -> PlacementOutcome:
        """Check, place and record under the identity's lock.

        ``place`` performs the actual order placement and returns its id; it is
        only called when the check allows the order. Its exceptions propagate.
        """
        resolved = self.resolve_identity(identity)
        try:
            with self._locks.hold(resolved):
                result = self.can_place_order(resolved)
                if not result.allowed:
                    return PlacementOutcome(result=result)
                order_id = place()
                self.record_order_placement(order_id, resolved)
                if result.exemption_reason is not None:
                    self.use_exemption_token(resolved)
                return PlacementOutcome(result=result, order_id=order_id)
        except IdentityLockTimeout:
            logger.warning("placement_in_flight", extra={"extra": {"identity": resolved}})
            return PlacementOutcome(
                result=RateLimitResult(
                    allowed=False,
                    reason="Another order is already being placed. Please wait a moment.",
                    retry_after_seconds=1,
                    cooldown_type=CooldownType.IN_FLIGHT,
                    fallback=True,
                )
            )
