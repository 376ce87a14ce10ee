from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from orderguard.adapters.kv_stores import KeyValueStoreError, MemoryKeyValueStore
from orderguard.config import Settings
from orderguard.domain.admission_policy import AdmissionLimits
from orderguard.domain.identity import HostContext
from orderguard.domain.models import OrderHistory
from orderguard.services.admission_engine import AdmissionEngine
from orderguard.services.device_fingerprint import DeviceFingerprint, DeviceSignals
from orderguard.services.history_cache import HistoryCache, history_key
from orderguard.services.identity_locks import IdentityLockTable
from orderguard.services.identity_resolver import build_identity_resolver
from orderguard.services.tiered_store import LOCAL_TIER, REMOTE_TIER, StoreTier, TieredStore


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys = {
        field.alias for field in Settings.model_fields.values() if isinstance(field.alias, str)
    }
    settings_env_keys.update({"HTTPX_LOG_LEVEL", "HTTPCORE_LOG_LEVEL"})
    for key in list(os.environ):
        if key in settings_env_keys:
            monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


@pytest.fixture(autouse=True)
def isolate_default_state_db_per_test(
    isolate_settings_from_host_env: None,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    del isolate_settings_from_host_env
    monkeypatch.setenv("STATE_DB_PATH", str(tmp_path / "orderguard_state.sqlite"))


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, *, seconds: float = 0.0, minutes: float = 0.0, hours: float = 0.0) -> None:
        self.current += timedelta(seconds=seconds, minutes=minutes, hours=hours)


class FakeActiveOrders:
    def __init__(self) -> None:
        self.orders: dict[str, list[str]] = {}
        self.error: Exception | None = None
        self.calls = 0

    def list_open_orders(self, identity: str) -> list[str]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.orders.get(identity, []))


class BrokenStore:
    def __init__(self) -> None:
        self.reads = 0
        self.writes = 0

    def get(self, key: str) -> str | None:
        self.reads += 1
        raise KeyValueStoreError(f"tier down for key={key}")

    def set(self, key: str, value: str) -> None:
        del value
        self.writes += 1
        raise KeyValueStoreError(f"tier down for key={key}")


@dataclass
class EngineHarness:
    engine: AdmissionEngine
    clock: FakeClock
    active_orders: FakeActiveOrders
    local_store: MemoryKeyValueStore
    durable_store: MemoryKeyValueStore
    session_store: MemoryKeyValueStore
    cache: HistoryCache

    def seed_history(self, identity: str, history: OrderHistory) -> None:
        self.local_store.set(history_key(identity), history.to_json())
        self.cache.invalidate(identity)

    def stored_history(self, identity: str) -> OrderHistory:
        raw = self.local_store.get(history_key(identity))
        assert raw is not None
        return OrderHistory.from_json(raw)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 10, 12, 0, tzinfo=UTC))


@pytest.fixture
def make_engine(clock: FakeClock):
    def _make(
        *,
        limits: AdmissionLimits | None = None,
        telegram_user_id: int | str | None = 42,
        remote_store: object | None = None,
        lock_timeout_seconds: float = 5.0,
    ) -> EngineHarness:
        limits = limits or AdmissionLimits()
        local_store = MemoryKeyValueStore()
        durable_store = MemoryKeyValueStore()
        session_store = MemoryKeyValueStore()
        tiers = [StoreTier(LOCAL_TIER, local_store)]
        if remote_store is not None:
            tiers.insert(0, StoreTier(REMOTE_TIER, remote_store))  # type: ignore[arg-type]
        fingerprint = DeviceFingerprint(
            durable_store,
            clock=clock,
            signals_provider=lambda: DeviceSignals(user_agent="pytest", language="en-US"),
        )
        cache = HistoryCache(
            TieredStore(tiers),
            clock=clock,
            device_id_provider=fingerprint.get_or_create,
            limits=limits,
        )
        active_orders = FakeActiveOrders()
        host = HostContext(telegram_user_id=telegram_user_id)
        engine = AdmissionEngine(
            history_cache=cache,
            active_orders=active_orders,
            identity_resolver=build_identity_resolver(
                host_context=lambda: host,
                durable_store=durable_store,
                session_store=session_store,
                clock=clock,
            ),
            device_fingerprint=fingerprint,
            clock=clock,
            limits=limits,
            locks=IdentityLockTable(timeout_seconds=lock_timeout_seconds),
        )
        return EngineHarness(
            engine=engine,
            clock=clock,
            active_orders=active_orders,
            local_store=local_store,
            durable_store=durable_store,
            session_store=session_store,
            cache=cache,
        )

    return _make


@pytest.fixture
def broken_store() -> BrokenStore:
    return BrokenStore()
