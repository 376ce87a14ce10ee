from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class OrderLedgerStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    PICKING = "picking"
    PREPARING = "preparing"
    READY = "ready"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


OPEN_ORDER_STATUSES = frozenset(
    {
        OrderLedgerStatus.PENDING,
        OrderLedgerStatus.ACCEPTED,
        OrderLedgerStatus.PICKING,
        OrderLedgerStatus.PREPARING,
        OrderLedgerStatus.READY,
        OrderLedgerStatus.OUT_FOR_DELIVERY,
    }
)


def is_open_status(status: str) -> bool:
    try:
        return OrderLedgerStatus(status.strip().lower()) in OPEN_ORDER_STATUSES
    except ValueError:
        return False


class CooldownType(StrEnum):
    ACTIVE_ORDERS = "active_orders"
    FREQUENCY = "frequency"
    DAILY_LIMIT = "daily_limit"
    BURST = "burst"
    POST_EXEMPTION = "post_exemption"
    IN_FLIGHT = "in_flight"


class CancelExemptionToken(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId")
    expires_at: int = Field(alias="expiresAt")
    used: bool = False

    def grants_exemption(self, now_ms: int) -> bool:
        return not self.used and self.expires_at > now_ms


class PostExemptionCooldown(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    expires_at: int = Field(alias="expiresAt")


class OrderHistory(BaseModel):
    """Per-identity admission state, persisted as camelCase JSON."""

    model_config = ConfigDict(populate_by_name=True)

    active_order_ids: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("activeOrderIds", "activeOrders", "active_order_ids"),
        serialization_alias="activeOrderIds",
    )
    order_timestamps: list[int] = Field(default_factory=list, alias="orderTimestamps")
    daily_order_count: int = Field(default=0, alias="dailyOrderCount")
    last_reset_date: str = Field(default="", alias="lastResetDate")
    device_ids: list[str] = Field(default_factory=list, alias="deviceIds")
    cancel_exemption_token: CancelExemptionToken | None = Field(
        default=None, alias="cancelExemptionToken"
    )
    post_exemption_cooldown: PostExemptionCooldown | None = Field(
        default=None, alias="postExemptionCooldown"
    )

    @classmethod
    def default(cls, *, today: str, device_id: str | None = None) -> OrderHistory:
        return cls(last_reset_date=today, device_ids=[device_id] if device_id else [])

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str) -> OrderHistory:
        return cls.model_validate_json(raw)


@dataclass(frozen=True)
class ExemptionDetails:
    order_id: str
    expires_at: int


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    reason: str | None = None
    retry_after_seconds: int | None = None
    active_orders: int | None = None
    exemption_reason: str | None = None
    cooldown_type: CooldownType | None = None
    daily_count: int | None = None
    remaining_today: int | None = None
    fallback: bool = False
    exemption: ExemptionDetails | None = None

    @classmethod
    def fail_open(cls) -> RateLimitResult:
        return cls(allowed=True, fallback=True)

    def as_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {"allowed": self.allowed}
        optional = {
            "reason": self.reason,
            "retryAfter": self.retry_after_seconds,
            "activeOrders": self.active_orders,
            "exemptionReason": self.exemption_reason,
            "cooldownType": self.cooldown_type.value if self.cooldown_type else None,
            "dailyCount": self.daily_count,
            "remainingToday": self.remaining_today,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        if self.fallback:
            payload["fallback"] = True
        if self.exemption is not None:
            payload["exemption"] = {
                "orderId": self.exemption.order_id,
                "expiresAt": self.exemption.expires_at,
            }
        return payload
