from __future__ import annotations

import logging
from collections.abc import Callable
from threading import Lock

from orderguard.adapters.admission_backend import (
    AdmissionBackendClient,
    AdmissionBackendError,
    ExemptionUseOutcome,
)
from orderguard.adapters.clock import Clock
from orderguard.domain.identity import is_session_identity
from orderguard.domain.models import CooldownType, RateLimitResult
from orderguard.domain.time_windows import MS_PER_SECOND, epoch_ms
from orderguard.logging_context import with_logging_context
from orderguard.services.admission_engine import AdmissionEngine, PlacementOutcome
from orderguard.services.identity_locks import IdentityLockTimeout

logger = logging.getLogger(__name__)


class OrderAdmissionService:
    """Server-first admission with the local engine as fallback.

    Anonymous (``session_``) identities are decided locally only. For the
    others the backend answer is authoritative and cached briefly; when the
    backend cannot answer, the local engine decides.
    """

    def __init__(
        self,
        engine: AdmissionEngine,
        *,
        clock: Clock,
        backend: AdmissionBackendClient | None = None,
        server_cache_ttl_seconds: float = 10.0,
    ) -> None:
        self._engine = engine
        self._clock = clock
        self._backend = backend
        self._server_cache_ttl_ms = int(server_cache_ttl_seconds * MS_PER_SECOND)
        self._server_cache: dict[str, tuple[RateLimitResult, int]] = {}
        self._lock = Lock()

    @property
    def engine(self) -> AdmissionEngine:
        return self._engine

    def _uses_backend(self, identity: str) -> bool:
        return self._backend is not None and not is_session_identity(identity)

    def _cached_result(self, identity: str, now_ms: int) -> RateLimitResult | None:
        with self._lock:
            entry = self._server_cache.get(identity)
        if entry is None or entry[1] <= now_ms:
            return None
        return entry[0]

    def _remember_result(self, identity: str, result: RateLimitResult, now_ms: int) -> None:
        with self._lock:
            expired = [
                key for key, (_, until_ms) in self._server_cache.items() if until_ms <= now_ms
            ]
            for key in expired:
                del self._server_cache[key]
            self._server_cache[identity] = (result, now_ms + self._server_cache_ttl_ms)

    @property
    def server_cache_size(self) -> int:
        with self._lock:
            return len(self._server_cache)

    def _invalidate(self, identity: str) -> None:
        with self._lock:
            self._server_cache.pop(identity, None)

    def clear_caches(self) -> None:
        with self._lock:
            self._server_cache.clear()
        self._engine.clear_caches()

    def can_place_order(self, identity: str | None = None) -> RateLimitResult:
        try:
            resolved = self._engine.resolve_identity(identity)
            if not self._uses_backend(resolved):
                return self._engine.can_place_order(resolved)
            with with_logging_context(identity=resolved):
                return self._check_with_backend(resolved)
        except Exception:
            logger.exception("admission_service_failed_open")
            return RateLimitResult.fail_open()

    def _check_with_backend(self, identity: str) -> RateLimitResult:
        assert self._backend is not None
        now_ms = epoch_ms(self._clock.now())
        cached = self._cached_result(identity, now_ms)
        if cached is not None:
            return cached

        try:
            decision = self._backend.check_rate_limits(identity)
        except AdmissionBackendError as exc:
            logger.warning(
                "admission_backend_unavailable_local_fallback",
                extra={"extra": {"error": str(exc), "status_code": exc.status_code}},
            )
            return self._engine.can_place_order(identity)

        self._engine.apply_learned_limits(
            max_active_orders=decision.hints.max_active_orders,
            min_interval_minutes=decision.hints.min_interval_minutes,
            max_daily_orders=decision.hints.max_daily_orders,
        )
        result = decision.result
        if (
            not result.allowed
            and result.cooldown_type is CooldownType.POST_EXEMPTION
            and result.retry_after_seconds
            and result.retry_after_seconds > 0
        ):
            self._engine.record_post_exemption_cooldown(result.retry_after_seconds, identity)

        self._remember_result(identity, result, epoch_ms(self._clock.now()))
        logger.info(
            "admission_backend_decision",
            extra={"extra": {"allowed": result.allowed, "cooldown_type": result.cooldown_type}},
        )
        return result

    def record_order_placement(self, order_id: str, identity: str | None = None) -> bool:
        resolved = self._engine.resolve_identity(identity)
        self._invalidate(resolved)
        if self._uses_backend(resolved):
            assert self._backend is not None
            try:
                self._backend.record_order_placement(resolved, order_id)
            except AdmissionBackendError:
                logger.warning("admission_backend_record_placement_failed", exc_info=True)
        return self._engine.record_order_placement(order_id, resolved)

    def record_order_completion(self, order_id: str, identity: str | None = None) -> bool:
        resolved = self._engine.resolve_identity(identity)
        self._invalidate(resolved)
        return self._engine.record_order_completion(order_id, resolved)

    def grant_cancellation_exemption(self, order_id: str, identity: str | None = None) -> bool:
        resolved = self._engine.resolve_identity(identity)
        self._invalidate(resolved)
        if self._uses_backend(resolved):
            assert self._backend is not None
            try:
                self._backend.grant_cancellation_exemption(resolved, order_id)
            except AdmissionBackendError:
                logger.warning("admission_backend_grant_exemption_failed", exc_info=True)
        return self._engine.grant_cancellation_exemption(order_id, resolved)

    def use_exemption_token(self, identity: str | None = None) -> bool:
        resolved = self._engine.resolve_identity(identity)
        self._invalidate(resolved)
        if self._uses_backend(resolved):
            assert self._backend is not None
            outcome = self._backend.use_cancellation_exemption(resolved)
            if outcome is not ExemptionUseOutcome.ACCEPTED:
                logger.warning(
                    "admission_backend_exemption_not_used",
                    extra={"extra": {"outcome": outcome.value}},
                )
                return False
        return self._engine.use_exemption_token(resolved)

    def admit_and_record(
        self, place: Callable[[], str], identity: str | None = None
    ) -> PlacementOutcome:
        resolved = self._engine.resolve_identity(identity)
        try:
            with self._engine.locks.hold(resolved):
                result = self.can_place_order(resolved)
                if not result.allowed:
                    return PlacementOutcome(result=result)
                order_id = place()
                self.record_order_placement(order_id, resolved)
                if result.exemption_reason is not None:
                    self.use_exemption_token(resolved)
                return PlacementOutcome(result=result, order_id=order_id)
        except IdentityLockTimeout:
            logger.warning("placement_in_flight")
            return PlacementOutcome(
                result=RateLimitResult(
                    allowed=False,
                    reason="Another order is already being placed. Please wait a moment.",
                    retry_after_seconds=1,
                    cooldown_type=CooldownType.IN_FLIGHT,
                    fallback=True,
                )
            )
