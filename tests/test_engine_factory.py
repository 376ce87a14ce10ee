from __future__ import annotations

import httpx

from orderguard.config import Settings
from orderguard.domain.identity import HostContext
from orderguard.services.engine_factory import (
    build_admission_engine,
    build_admission_service,
    build_history_store,
)
from orderguard.services.tiered_store import LOCAL_TIER, REMOTE_TIER


def test_engine_uses_local_tier_only_by_default(clock) -> None:
    engine = build_admission_engine(
        Settings(), clock=clock, host_context=lambda: HostContext(telegram_user_id=5)
    )

    assert engine.is_remote_tier_available() is False
    assert engine.resolve_identity() == "tg_5"
    assert engine.can_place_order().allowed is True


def test_remote_tier_is_placed_before_local_and_survives_outage(clock) -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.method)
        return httpx.Response(503)

    settings = Settings(REMOTE_STORE_URL="http://kv.test", REMOTE_STORE_TOKEN="t0ken")
    engine = build_admission_engine(
        settings,
        clock=clock,
        host_context=lambda: HostContext(telegram_user_id=5),
        remote_transport=httpx.MockTransport(handler),
    )

    assert engine.is_remote_tier_available() is True
    store = build_history_store(settings, remote_transport=httpx.MockTransport(handler))
    assert store.tier_names == (REMOTE_TIER, LOCAL_TIER)
    assert engine.record_order_placement("O1") is True
    engine.clear_caches()
    assert engine.can_place_order().allowed is False
    assert "GET" in calls and "PUT" in calls


def test_service_talks_to_configured_backend(clock) -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return httpx.Response(200, json={"allowed": True, "maxDailyOrders": 40})

    settings = Settings(ADMISSION_BACKEND_URL="http://admission.test")
    service = build_admission_service(
        settings,
        clock=clock,
        backend_transport=httpx.MockTransport(handler),
        host_context=lambda: HostContext(telegram_user_id=5),
    )

    assert service.can_place_order().allowed is True
    assert seen == ["/check-rate-limits"]
    assert service.engine.limits.max_daily_orders == 40


def test_service_without_backend_url_decides_locally(clock) -> None:
    service = build_admission_service(
        Settings(), clock=clock, host_context=lambda: HostContext(telegram_user_id=5)
    )

    assert service.record_order_placement("O1") is True
    assert service.can_place_order().allowed is False
