from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock

from pydantic import ValidationError

from orderguard.adapters.clock import Clock
from orderguard.domain.admission_policy import AdmissionLimits, normalize_history
from orderguard.domain.models import OrderHistory
from orderguard.domain.time_windows import (
    MS_PER_SECOND,
    epoch_ms,
    local_date_key,
    prune_timestamps,
)
from orderguard.services.tiered_store import TieredStore

logger = logging.getLogger(__name__)

HISTORY_KEY_PREFIX = "order_limits_"


def history_key(identity: str) -> str:
    return f"{HISTORY_KEY_PREFIX}{identity}"


@dataclass
class _CacheEntry:
    history: OrderHistory
    valid_until_ms: int


class HistoryCache:
    """Short-TTL per-identity cache in front of the tiered store."""

    def __init__(
        self,
        store: TieredStore,
        *,
        clock: Clock,
        device_id_provider: Callable[[], str | None],
        limits: AdmissionLimits | None = None,
        ttl_seconds: float = 30.0,
    ) -> None:
        self._store = store
        self._clock = clock
        self._device_id_provider = device_id_provider
        self._limits = limits or AdmissionLimits()
        self._ttl_ms = int(ttl_seconds * MS_PER_SECOND)
        self._entries: dict[str, _CacheEntry] = {}
        self._lock = Lock()

    @property
    def store(self) -> TieredStore:
        return self._store

    def _decode(self, identity: str, raw: str | None) -> OrderHistory | None:
        if raw is None:
            return None
        try:
            return OrderHistory.from_json(raw)
        except ValidationError:
            logger.warning(
                "order_history_decode_failed",
                extra={"extra": {"key": history_key(identity), "raw_length": len(raw)}},
            )
            return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _remember(self, identity: str, history: OrderHistory, now_ms: int) -> None:
        entry = _CacheEntry(
            history=history.model_copy(deep=True), valid_until_ms=now_ms + self._ttl_ms
        )
        with self._lock:
            expired = [
                key for key, cached in self._entries.items() if cached.valid_until_ms <= now_ms
            ]
            for key in expired:
                del self._entries[key]
            self._entries[identity] = entry

    def get_history(self, identity: str) -> OrderHistory:
        now = self._clock.now()
        now_ms = epoch_ms(now)
        with self._lock:
            entry = self._entries.get(identity)
            if entry is not None and now_ms < entry.valid_until_ms:
                cached = entry.history.model_copy(deep=True)
                cached.order_timestamps = prune_timestamps(
                    cached.order_timestamps,
                    now_ms=now_ms,
                    retention_seconds=self._limits.history_retention_seconds,
                )
                return cached

        today = local_date_key(now)
        device_id = self._device_id_provider()
        history = self._decode(identity, self._store.get(history_key(identity)))
        created = history is None
        if history is None:
            history = OrderHistory.default(today=today, device_id=device_id)

        changed = normalize_history(
            history,
            today=today,
            now_ms=now_ms,
            device_id=device_id,
            limits=self._limits,
        )
        if created or changed:
            self._store.set(history_key(identity), history.to_json())

        self._remember(identity, history, now_ms)
        return history

    def put_history(self, identity: str, history: OrderHistory) -> bool:
        now_ms = epoch_ms(self._clock.now())
        self._remember(identity, history, now_ms)
        return self._store.set(history_key(identity), history.to_json())

    def invalidate(self, identity: str | None = None) -> None:
        with self._lock:
            if identity is None:
                self._entries.clear()
            else:
                self._entries.pop(identity, None)
