from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock, RLock


class IdentityLockTimeout(RuntimeError):
    """Raised when another operation holds the identity's lock for too long."""

    def __init__(self, identity: str, timeout_seconds: float) -> None:
        super().__init__(
            f"LOCKED: identity operation still in flight after {timeout_seconds:.2f}s"
        )
        self.identity = identity
        self.timeout_seconds = timeout_seconds


@dataclass
class _LockSlot:
    lock: RLock = field(default_factory=RLock)
    users: int = 0


class IdentityLockTable:
    """One re-entrant lock per identity; identities never contend with each other.

    A slot lives only while some caller holds or waits on it.
    """

    def __init__(self, *, timeout_seconds: float = 5.0) -> None:
        if timeout_seconds < 0:
            raise ValueError("timeout_seconds must be >= 0")
        self._timeout_seconds = timeout_seconds
        self._slots: dict[str, _LockSlot] = {}
        self._table_lock = Lock()

    def _check_out(self, identity: str) -> _LockSlot:
        with self._table_lock:
            slot = self._slots.get(identity)
            if slot is None:
                slot = _LockSlot()
                self._slots[identity] = slot
            slot.users += 1
            return slot

    def _check_in(self, identity: str, slot: _LockSlot) -> None:
        with self._table_lock:
            slot.users -= 1
            if slot.users == 0:
                self._slots.pop(identity, None)

    def __len__(self) -> int:
        with self._table_lock:
            return len(self._slots)

    @contextmanager
    def hold(self, identity: str, *, timeout_seconds: float | None = None) -> Iterator[None]:
        timeout = self._timeout_seconds if timeout_seconds is None else timeout_seconds
        slot = self._check_out(identity)
        try:
            if not slot.lock.acquire(timeout=timeout):
                raise IdentityLockTimeout(identity, timeout)
            try:
                yield
            finally:
                slot.lock.release()
        finally:
            self._check_in(identity, slot)
