from __future__ import annotations

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from orderguard.domain.admission_policy import AdmissionLimits


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    max_active_orders: int = Field(default=2, alias="ORDER_MAX_ACTIVE")
    min_order_interval_seconds: int = Field(default=300, alias="ORDER_MIN_INTERVAL_SECONDS")
    max_daily_orders: int = Field(default=20, alias="ORDER_MAX_DAILY")
    suspicious_threshold: int = Field(default=5, alias="ORDER_SUSPICIOUS_THRESHOLD")
    burst_window_seconds: int = Field(default=1800, alias="ORDER_BURST_WINDOW_SECONDS")
    burst_retry_after_seconds: int = Field(default=1800, alias="ORDER_BURST_RETRY_SECONDS")
    cancel_exemption_ttl_seconds: int = Field(default=600, alias="CANCEL_EXEMPTION_TTL_SECONDS")
    post_exemption_cooldown_seconds: int = Field(
        default=0, alias="POST_EXEMPTION_COOLDOWN_SECONDS"
    )
    history_retention_seconds: int = Field(default=86400, alias="HISTORY_RETENTION_SECONDS")
    max_tracked_devices: int = Field(default=5, alias="MAX_TRACKED_DEVICES")
    history_cache_ttl_seconds: float = Field(default=30.0, alias="HISTORY_CACHE_TTL_SECONDS")
    admission_timezone: str = Field(default="UTC", alias="ADMISSION_TIMEZONE")

    state_db_path: str = Field(default="orderguard_state.db", alias="STATE_DB_PATH")
    ledger_db_path: str | None = Field(default=None, alias="LEDGER_DB_PATH")
    ledger_match_telegram_ids: bool = Field(default=False, alias="LEDGER_MATCH_TELEGRAM_IDS")
    local_store_timeout_ms: int = Field(default=500, alias="LOCAL_STORE_TIMEOUT_MS")

    remote_store_url: str | None = Field(default=None, alias="REMOTE_STORE_URL")
    remote_store_token: SecretStr | None = Field(default=None, alias="REMOTE_STORE_TOKEN")
    remote_store_timeout_ms: int = Field(default=300, alias="REMOTE_STORE_TIMEOUT_MS")

    admission_backend_url: str | None = Field(default=None, alias="ADMISSION_BACKEND_URL")
    admission_backend_timeout_ms: int = Field(default=2000, alias="ADMISSION_BACKEND_TIMEOUT_MS")
    admission_backend_max_retries: int = Field(default=2, alias="ADMISSION_BACKEND_MAX_RETRIES")
    admission_backend_retry_delay_ms: int = Field(
        default=500, alias="ADMISSION_BACKEND_RETRY_DELAY_MS"
    )
    admission_server_cache_ttl_seconds: float = Field(
        default=10.0, alias="ADMISSION_SERVER_CACHE_TTL_SECONDS"
    )

    identity_lock_timeout_seconds: float = Field(default=5.0, alias="IDENTITY_LOCK_TIMEOUT_SECONDS")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @field_validator("max_active_orders", "max_daily_orders", "suspicious_threshold")
    def validate_positive_limit(cls, value: int) -> int:
        if value < 1:
            raise ValueError("order limits must be >= 1")
        return value

    @field_validator(
        "min_order_interval_seconds",
        "burst_retry_after_seconds",
        "post_exemption_cooldown_seconds",
        "admission_backend_max_retries",
        "admission_backend_retry_delay_ms",
    )
    def validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("value must be >= 0")
        return value

    @field_validator(
        "burst_window_seconds",
        "cancel_exemption_ttl_seconds",
        "history_retention_seconds",
        "max_tracked_devices",
        "local_store_timeout_ms",
        "remote_store_timeout_ms",
        "admission_backend_timeout_ms",
    )
    def validate_strictly_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be > 0")
        return value

    @field_validator(
        "history_cache_ttl_seconds",
        "admission_server_cache_ttl_seconds",
        "identity_lock_timeout_seconds",
    )
    def validate_seconds(cls, value: float) -> float:
        if value < 0:
            raise ValueError("seconds must be >= 0")
        return value

    @field_validator("admission_timezone")
    def validate_timezone(cls, value: str) -> str:
        candidate = value.strip()
        try:
            ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"ADMISSION_TIMEZONE is not a known zone: {value!r}") from exc
        return candidate

    @field_validator("remote_store_url", "admission_backend_url", "ledger_db_path", mode="before")
    def blank_as_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def admission_limits(self) -> AdmissionLimits:
        return AdmissionLimits(
            max_active_orders=self.max_active_orders,
            min_order_interval_seconds=self.min_order_interval_seconds,
            max_daily_orders=self.max_daily_orders,
            suspicious_threshold=self.suspicious_threshold,
            burst_window_seconds=self.burst_window_seconds,
            burst_retry_after_seconds=self.burst_retry_after_seconds,
            cancel_exemption_ttl_seconds=self.cancel_exemption_ttl_seconds,
            post_exemption_cooldown_seconds=self.post_exemption_cooldown_seconds,
            history_retention_seconds=self.history_retention_seconds,
            max_tracked_devices=self.max_tracked_devices,
        )

    def timezone(self) -> ZoneInfo:
        return ZoneInfo(self.admission_timezone)

    def resolved_ledger_db_path(self) -> str:
        return self.ledger_db_path or self.state_db_path

    def remote_tier_enabled(self) -> bool:
        return bool(self.remote_store_url)
