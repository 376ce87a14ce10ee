from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from orderguard.domain.models import CooldownType, ExemptionDetails, RateLimitResult
from orderguard.services.retry import RetryAttempt, retry_with_backoff

logger = logging.getLogger(__name__)


class AdmissionBackendError(RuntimeError):
    """Raised when the admission backend cannot produce an answer."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class _RetryableBackendError(AdmissionBackendError):
    """Transport failure, 429 or 5xx; worth another attempt."""


def _is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class ExemptionUseOutcome(StrEnum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FAILED = "failed"


class _ExemptionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    order_id: str = Field(alias="orderId")
    expires_at: int = Field(alias="expiresAt")


class _RateLimitPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    allowed: bool
    reason: str | None = None
    retry_after: int | None = Field(default=None, alias="retryAfter")
    active_orders: int | None = Field(default=None, alias="activeOrders")
    exemption_reason: str | None = Field(default=None, alias="exemptionReason")
    cooldown_type: str | None = Field(default=None, alias="cooldownType")
    daily_count: int | None = Field(default=None, alias="dailyCount")
    remaining_today: int | None = Field(default=None, alias="remainingToday")
    exemption: _ExemptionPayload | None = None
    max_active_orders: int | None = Field(default=None, alias="maxActiveOrders")
    min_interval: float | None = Field(default=None, alias="minInterval")
    max_daily_orders: int | None = Field(default=None, alias="maxDailyOrders")


@dataclass(frozen=True)
class LimitHints:
    max_active_orders: int | None = None
    min_interval_minutes: float | None = None
    max_daily_orders: int | None = None


@dataclass(frozen=True)
class BackendDecision:
    result: RateLimitResult
    hints: LimitHints


def _coerce_cooldown_type(raw: str | None) -> CooldownType | None:
    if raw is None:
        return None
    try:
        return CooldownType(raw)
    except ValueError:
        return None


def parse_backend_decision(body: object) -> BackendDecision:
    try:
        payload = _RateLimitPayload.model_validate(body)
    except ValidationError as exc:
        raise AdmissionBackendError("admission backend returned a malformed decision") from exc
    exemption = (
        ExemptionDetails(order_id=payload.exemption.order_id, expires_at=payload.exemption.expires_at)
        if payload.exemption is not None
        else None
    )
    result = RateLimitResult(
        allowed=payload.allowed,
        reason=payload.reason,
        retry_after_seconds=payload.retry_after,
        active_orders=payload.active_orders,
        exemption_reason=payload.exemption_reason,
        cooldown_type=_coerce_cooldown_type(payload.cooldown_type),
        daily_count=payload.daily_count,
        remaining_today=payload.remaining_today,
        exemption=exemption,
    )
    hints = LimitHints(
        max_active_orders=payload.max_active_orders,
        min_interval_minutes=payload.min_interval,
        max_daily_orders=payload.max_daily_orders,
    )
    return BackendDecision(result=result, hints=hints)


class AdmissionBackendClient:
    """HTTP client for the authoritative server-side admission checks."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 2.0,
        max_retries: int = 2,
        retry_delay_ms: int = 500,
        transport: httpx.BaseTransport | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )
        self._max_retries = max_retries
        self._retry_delay_ms = retry_delay_ms
        self._sleep_fn = sleep_fn

    def close(self) -> None:
        self._client.close()

    def _get_decision_once(self, user_id: str) -> BackendDecision:
        try:
            response = self._client.get("/check-rate-limits", params={"userId": user_id})
        except httpx.HTTPError as exc:
            raise _RetryableBackendError(
                f"admission backend unreachable: {type(exc).__name__}"
            ) from exc
        if not response.is_success:
            error_cls = (
                _RetryableBackendError
                if _is_retryable_status(response.status_code)
                else AdmissionBackendError
            )
            raise error_cls(
                f"admission backend returned status={response.status_code}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise AdmissionBackendError("admission backend returned invalid JSON") from exc
        return parse_backend_decision(body)

    def check_rate_limits(self, user_id: str) -> BackendDecision:
        def _on_retry(attempt: RetryAttempt) -> None:
            logger.warning(
                "admission_backend_retry",
                extra={
                    "extra": {
                        "attempt": attempt.attempt,
                        "max_attempts": self._max_retries + 1,
                        "delay_ms": attempt.delay_ms,
                        "error_type": attempt.error_type,
                    }
                },
            )

        return retry_with_backoff(
            lambda: self._get_decision_once(user_id),
            max_attempts=self._max_retries + 1,
            base_delay_ms=self._retry_delay_ms,
            backoff_factor=1.0,
            retry_on_exceptions=(_RetryableBackendError,),
            sleep_fn=self._sleep_fn,
            on_retry=_on_retry,
        )

    def _post(self, path: str, payload: dict[str, str]) -> httpx.Response:
        try:
            return self._client.post(path, json=payload)
        except httpx.HTTPError as exc:
            raise AdmissionBackendError(f"admission backend unreachable: {type(exc).__name__}") from exc

    def record_order_placement(self, user_id: str, order_id: str) -> None:
        response = self._post("/record-order-placement", {"userId": user_id, "orderId": order_id})
        if not response.is_success:
            raise AdmissionBackendError(
                f"record-order-placement failed status={response.status_code}",
                status_code=response.status_code,
            )

    def grant_cancellation_exemption(self, user_id: str, order_id: str) -> None:
        response = self._post(
            "/grant-cancellation-exemption", {"userId": user_id, "orderId": order_id}
        )
        if not response.is_success:
            raise AdmissionBackendError(
                f"grant-cancellation-exemption refused status={response.status_code}",
                status_code=response.status_code,
            )

    def use_cancellation_exemption(self, user_id: str) -> ExemptionUseOutcome:
        try:
            response = self._post("/use-cancellation-exemption", {"userId": user_id})
        except AdmissionBackendError:
            logger.warning("admission_backend_use_exemption_unreachable", exc_info=True)
            return ExemptionUseOutcome.FAILED
        if response.is_success:
            return ExemptionUseOutcome.ACCEPTED
        if response.status_code in {400, 404}:
            return ExemptionUseOutcome.REJECTED
        logger.warning(
            "admission_backend_use_exemption_failed",
            extra={"extra": {"status_code": response.status_code}},
        )
        return ExemptionUseOutcome.FAILED
