from __future__ import annotations

import logging

from orderguard.adapters.kv_stores import MemoryKeyValueStore
from orderguard.domain.models import OrderHistory
from orderguard.domain.time_windows import epoch_ms
from orderguard.services.history_cache import HistoryCache, history_key
from orderguard.services.tiered_store import LOCAL_TIER, StoreTier, TieredStore


def _cache(clock, backing: MemoryKeyValueStore, *, ttl_seconds: float = 30.0) -> HistoryCache:
    return HistoryCache(
        TieredStore([StoreTier(LOCAL_TIER, backing)]),
        clock=clock,
        device_id_provider=lambda: "fp_test_1",
        ttl_seconds=ttl_seconds,
    )


def test_missing_record_is_created_with_defaults(clock) -> None:
    backing = MemoryKeyValueStore()
    cache = _cache(clock, backing)

    history = cache.get_history("tg_1")

    assert history.last_reset_date == "2024-03-10"
    assert history.device_ids == ["fp_test_1"]
    assert history.daily_order_count == 0
    assert backing.get(history_key("tg_1")) == history.to_json()


def test_cached_history_is_a_copy(clock) -> None:
    cache = _cache(clock, MemoryKeyValueStore())

    first = cache.get_history("tg_1")
    first.active_order_ids.append("leaked")
    second = cache.get_history("tg_1")

    assert second.active_order_ids == []


def test_cache_serves_until_ttl_then_rereads_store(clock) -> None:
    backing = MemoryKeyValueStore()
    cache = _cache(clock, backing, ttl_seconds=30)
    cache.get_history("tg_1")

    edited = OrderHistory(last_reset_date="2024-03-10", daily_order_count=7, device_ids=["fp_test_1"])
    backing.set(history_key("tg_1"), edited.to_json())

    clock.advance(seconds=29)
    assert cache.get_history("tg_1").daily_order_count == 0
    clock.advance(seconds=2)
    assert cache.get_history("tg_1").daily_order_count == 7


def test_corrupt_record_is_replaced_with_default(clock, caplog) -> None:
    backing = MemoryKeyValueStore({history_key("tg_1"): "{not json"})
    cache = _cache(clock, backing)

    with caplog.at_level(logging.WARNING):
        history = cache.get_history("tg_1")

    assert history.daily_order_count == 0
    assert any(r.getMessage() == "order_history_decode_failed" for r in caplog.records)
    assert OrderHistory.from_json(backing.get(history_key("tg_1"))) == history


def test_put_history_updates_cache_and_store(clock) -> None:
    backing = MemoryKeyValueStore()
    cache = _cache(clock, backing)
    history = cache.get_history("tg_1")
    history.order_timestamps.append(epoch_ms(clock.now()))

    assert cache.put_history("tg_1", history) is True
    history.order_timestamps.clear()

    assert len(cache.get_history("tg_1").order_timestamps) == 1
    assert len(OrderHistory.from_json(backing.get(history_key("tg_1"))).order_timestamps) == 1


def test_cache_hit_drops_timestamps_past_retention(clock) -> None:
    cache = _cache(clock, MemoryKeyValueStore(), ttl_seconds=7 * 24 * 3600)
    history = cache.get_history("tg_1")
    history.order_timestamps.append(epoch_ms(clock.now()))
    cache.put_history("tg_1", history)

    clock.advance(hours=24)

    assert cache.get_history("tg_1").order_timestamps == []


def test_invalidate_forces_store_read(clock) -> None:
    backing = MemoryKeyValueStore()
    cache = _cache(clock, backing)
    cache.get_history("tg_1")
    backing.set(
        history_key("tg_1"),
        OrderHistory(last_reset_date="2024-03-10", daily_order_count=3).to_json(),
    )

    cache.invalidate("tg_1")

    assert cache.get_history("tg_1").daily_order_count == 3


def test_expired_entries_are_dropped_when_new_ones_arrive(clock) -> None:
    cache = _cache(clock, MemoryKeyValueStore(), ttl_seconds=30)
    for n in range(200):
        cache.get_history(f"local_u{n}")
    assert len(cache) == 200

    clock.advance(hours=2)
    cache.get_history("tg_1")

    assert len(cache) == 1
