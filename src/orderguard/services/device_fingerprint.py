from __future__ import annotations

import locale
import logging
import platform
import sys
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from orderguard.adapters.clock import Clock
from orderguard.adapters.kv_stores import KeyValueStore
from orderguard.domain.time_windows import epoch_ms
from orderguard.services.identity_resolver import to_base36

logger = logging.getLogger(__name__)

DEVICE_ID_KEY = "device_fingerprint"


@dataclass(frozen=True)
class DeviceSignals:
    user_agent: str = ""
    language: str = ""
    color_depth: int | None = None
    screen_width: int | None = None
    screen_height: int | None = None
    timezone_offset_minutes: int | None = None
    cookie_enabled: bool = False
    local_storage: bool = False
    indexed_db: bool = False
    orientation: str = ""
    vendor: str = ""

    def components(self) -> str:
        screen = f"{self.screen_width or ''}x{self.screen_height or ''}"
        parts = [
            self.user_agent,
            self.language,
            "" if self.color_depth is None else str(self.color_depth),
            screen,
            "" if self.timezone_offset_minutes is None else str(self.timezone_offset_minutes),
            str(self.cookie_enabled).lower(),
            str(self.local_storage).lower(),
            str(self.indexed_db).lower(),
            self.orientation,
            self.vendor,
        ]
        return "|".join(parts)

    @classmethod
    def from_runtime(cls) -> DeviceSignals:
        offset = datetime.now().astimezone().utcoffset()
        language, _encoding = locale.getlocale()
        return cls(
            user_agent=f"python/{platform.python_version()} ({platform.platform()})",
            language=language or "",
            timezone_offset_minutes=int(offset.total_seconds() // 60) if offset is not None else None,
            local_storage=True,
            vendor=platform.python_implementation(),
            orientation=sys.byteorder,
        )


def fold_hash(text: str) -> int:
    """``hash = hash * 31 + code`` kept in signed 32-bit range."""
    value = 0
    for char in text:
        value = (value * 31 + ord(char)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return value


class DeviceFingerprint:
    """Low-entropy device id persisted in the device-durable store.

    Limits casual multi-accounting only; it is not a security boundary.
    """

    def __init__(
        self,
        durable_store: KeyValueStore,
        *,
        clock: Clock,
        signals_provider: Callable[[], DeviceSignals] = DeviceSignals.from_runtime,
    ) -> None:
        self._store = durable_store
        self._clock = clock
        self._signals_provider = signals_provider
        self._device_id: str | None = None

    def get_or_create(self) -> str:
        if self._device_id is not None:
            return self._device_id
        try:
            device_id = self._store.get(DEVICE_ID_KEY)
            if not device_id:
                components = self._signals_provider().components()
                now_ms = epoch_ms(self._clock.now())
                device_id = f"fp_{to_base36(abs(fold_hash(components)))}_{to_base36(now_ms)}"
                self._store.set(DEVICE_ID_KEY, device_id)
        except Exception:  # noqa: BLE001
            logger.warning("device_fingerprint_fallback", exc_info=True)
            return self._timestamp_id()
        self._device_id = device_id
        return device_id

    def _timestamp_id(self) -> str:
        try:
            return f"fp_{to_base36(epoch_ms(self._clock.now()))}"
        except Exception:  # noqa: BLE001
            return "fp_0"
