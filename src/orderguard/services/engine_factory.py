from __future__ import annotations

import logging
from collections.abc import Callable

import httpx

from orderguard.adapters.admission_backend import AdmissionBackendClient
from orderguard.adapters.clock import Clock, SystemClock
from orderguard.adapters.kv_stores import (
    HttpKeyValueStore,
    KeyValueStore,
    MemoryKeyValueStore,
    SqliteKeyValueStore,
)
from orderguard.adapters.order_ledger import (
    ActiveOrderSource,
    LedgerActiveOrderSource,
    SqliteOrderLedger,
)
from orderguard.config import Settings
from orderguard.domain.identity import HostContext
from orderguard.services.admission_engine import AdmissionEngine
from orderguard.services.admission_service import OrderAdmissionService
from orderguard.services.device_fingerprint import DeviceFingerprint, DeviceSignals
from orderguard.services.history_cache import HistoryCache
from orderguard.services.identity_locks import IdentityLockTable
from orderguard.services.identity_resolver import build_identity_resolver
from orderguard.services.tiered_store import LOCAL_TIER, REMOTE_TIER, StoreTier, TieredStore

logger = logging.getLogger(__name__)

DEVICE_NAMESPACE = "device"
HISTORY_NAMESPACE = "order_history"


def _no_host_context() -> HostContext:
    return HostContext()


def build_history_store(
    settings: Settings,
    *,
    remote_transport: httpx.BaseTransport | None = None,
) -> TieredStore:
    local_store = SqliteKeyValueStore(
        settings.state_db_path,
        namespace=HISTORY_NAMESPACE,
        timeout_seconds=settings.local_store_timeout_ms / 1000,
    )
    tiers: list[StoreTier] = []
    if settings.remote_tier_enabled():
        assert settings.remote_store_url is not None
        token = (
            settings.remote_store_token.get_secret_value()
            if settings.remote_store_token is not None
            else None
        )
        tiers.append(
            StoreTier(
                REMOTE_TIER,
                HttpKeyValueStore(
                    settings.remote_store_url,
                    token=token,
                    timeout_seconds=settings.remote_store_timeout_ms / 1000,
                    transport=remote_transport,
                ),
            )
        )
    tiers.append(StoreTier(LOCAL_TIER, local_store))
    return TieredStore(tiers)


def build_active_order_source(settings: Settings) -> ActiveOrderSource:
    ledger = SqliteOrderLedger(
        settings.resolved_ledger_db_path(),
        timeout_seconds=settings.local_store_timeout_ms / 1000,
    )
    return LedgerActiveOrderSource(
        ledger, match_telegram_ids=settings.ledger_match_telegram_ids
    )


def build_admission_engine(
    settings: Settings,
    *,
    host_context: Callable[[], HostContext] = _no_host_context,
    clock: Clock | None = None,
    session_store: KeyValueStore | None = None,
    durable_store: KeyValueStore | None = None,
    active_orders: ActiveOrderSource | None = None,
    signals_provider: Callable[[], DeviceSignals] | None = None,
    remote_transport: httpx.BaseTransport | None = None,
) -> AdmissionEngine:
    clock = clock or SystemClock(settings.timezone())
    limits = settings.admission_limits()
    durable_store = durable_store or SqliteKeyValueStore(
        settings.state_db_path,
        namespace=DEVICE_NAMESPACE,
        timeout_seconds=settings.local_store_timeout_ms / 1000,
    )
    session_store = session_store or MemoryKeyValueStore()

    fingerprint = DeviceFingerprint(
        durable_store,
        clock=clock,
        signals_provider=signals_provider or DeviceSignals.from_runtime,
    )
    resolver = build_identity_resolver(
        host_context=host_context,
        durable_store=durable_store,
        session_store=session_store,
        clock=clock,
    )
    history_cache = HistoryCache(
        build_history_store(settings, remote_transport=remote_transport),
        clock=clock,
        device_id_provider=fingerprint.get_or_create,
        limits=limits,
        ttl_seconds=settings.history_cache_ttl_seconds,
    )
    logger.debug(
        "admission_engine_built",
        extra={
            "extra": {
                "tiers": list(history_cache.store.tier_names),
                "timezone": settings.admission_timezone,
            }
        },
    )
    return AdmissionEngine(
        history_cache=history_cache,
        active_orders=active_orders or build_active_order_source(settings),
        identity_resolver=resolver,
        device_fingerprint=fingerprint,
        clock=clock,
        limits=limits,
        locks=IdentityLockTable(timeout_seconds=settings.identity_lock_timeout_seconds),
    )


def build_admission_service(
    settings: Settings,
    *,
    engine: AdmissionEngine | None = None,
    clock: Clock | None = None,
    backend_transport: httpx.BaseTransport | None = None,
    sleep_fn: Callable[[float], None] | None = None,
    **engine_kwargs: object,
) -> OrderAdmissionService:
    clock = clock or SystemClock(settings.timezone())
    engine = engine or build_admission_engine(settings, clock=clock, **engine_kwargs)  # type: ignore[arg-type]
    backend = None
    if settings.admission_backend_url:
        backend = AdmissionBackendClient(
            settings.admission_backend_url,
            timeout_seconds=settings.admission_backend_timeout_ms / 1000,
            max_retries=settings.admission_backend_max_retries,
            retry_delay_ms=settings.admission_backend_retry_delay_ms,
            transport=backend_transport,
            sleep_fn=sleep_fn,
        )
    return OrderAdmissionService(
        engine,
        clock=clock,
        backend=backend,
        server_cache_ttl_seconds=settings.admission_server_cache_ttl_seconds,
    )
