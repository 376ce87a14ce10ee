from __future__ import annotations

import logging

import pytest

from orderguard.adapters.kv_stores import MemoryKeyValueStore
from orderguard.services.tiered_store import LOCAL_TIER, REMOTE_TIER, StoreTier, TieredStore


def test_read_returns_first_tier_with_value() -> None:
    remote = MemoryKeyValueStore({"k": "remote"})
    local = MemoryKeyValueStore({"k": "local", "only_local": "x"})
    store = TieredStore([StoreTier(REMOTE_TIER, remote), StoreTier(LOCAL_TIER, local)])

    assert store.get("k") == "remote"
    assert store.get("only_local") == "x"
    assert store.get("missing") is None


def test_failing_tier_is_skipped_on_read(broken_store, caplog) -> None:
    local = MemoryKeyValueStore({"k": "local"})
    store = TieredStore([StoreTier(REMOTE_TIER, broken_store), StoreTier(LOCAL_TIER, local)])

    with caplog.at_level(logging.WARNING):
        assert store.get("k") == "local"

    record = next(r for r in caplog.records if r.getMessage() == "store_tier_read_failed")
    assert getattr(record, "extra")["tier"] == REMOTE_TIER
    assert getattr(record, "extra")["error_type"] == "KeyValueStoreError"


def test_write_succeeds_when_any_tier_accepts(broken_store) -> None:
    local = MemoryKeyValueStore()
    store = TieredStore([StoreTier(REMOTE_TIER, broken_store), StoreTier(LOCAL_TIER, local)])

    assert store.set("k", "v") is True
    assert local.get("k") == "v"
    assert broken_store.writes == 1


def test_write_fails_when_every_tier_fails(broken_store, caplog) -> None:
    store = TieredStore([StoreTier(LOCAL_TIER, broken_store)])

    with caplog.at_level(logging.ERROR):
        assert store.set("k", "v") is False
    assert any(r.getMessage() == "store_write_failed_all_tiers" for r in caplog.records)
    assert store.get("k") is None


def test_tier_configuration_is_validated() -> None:
    with pytest.raises(ValueError, match="at least one tier"):
        TieredStore([])
    with pytest.raises(ValueError, match="unique"):
        TieredStore(
            [StoreTier(LOCAL_TIER, MemoryKeyValueStore()), StoreTier(LOCAL_TIER, MemoryKeyValueStore())]
        )


def test_remote_tier_detection() -> None:
    local_only = TieredStore([StoreTier(LOCAL_TIER, MemoryKeyValueStore())])
    assert local_only.has_remote_tier() is False
    assert local_only.tier_names == (LOCAL_TIER,)
