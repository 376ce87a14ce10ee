from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from orderguard.adapters.kv_stores import KeyValueStore

logger = logging.getLogger(__name__)

REMOTE_TIER = "remote"
LOCAL_TIER = "local"


@dataclass(frozen=True)
class StoreTier:
    name: str
    store: KeyValueStore


class TieredStore:
    """Chain of backing stores tried in order.

    Reads return the first value found; a tier that errors or has no value
    passes the read on. Writes go to every tier and succeed when any tier
    accepts them. Nothing raises: a read that fails everywhere returns None.
    """

    def __init__(self, tiers: Sequence[StoreTier]) -> None:
        if not tiers:
            raise ValueError("TieredStore needs at least one tier")
        names = [tier.name for tier in tiers]
        if len(set(names)) != len(names):
            raise ValueError(f"TieredStore tier names must be unique: {names}")
        self._tiers = tuple(tiers)

    @property
    def tier_names(self) -> tuple[str, ...]:
        return tuple(tier.name for tier in self._tiers)

    def has_remote_tier(self) -> bool:
        return REMOTE_TIER in self.tier_names

    def get(self, key: str) -> str | None:
        for tier in self._tiers:
            try:
                value = tier.store.get(key)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "store_tier_read_failed",
                    extra={"extra": {"tier": tier.name, "key": key, "error_type": type(exc).__name__}},
                )
                continue
            if value is not None:
                return value
        return None

    def set(self, key: str, value: str) -> bool:
        written: list[str] = []
        for tier in self._tiers:
            try:
                tier.store.set(key, value)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "store_tier_write_failed",
                    extra={"extra": {"tier": tier.name, "key": key, "error_type": type(exc).__name__}},
                )
                continue
            written.append(tier.name)
        if not written:
            logger.error("store_write_failed_all_tiers", extra={"extra": {"key": key}})
        return bool(written)
