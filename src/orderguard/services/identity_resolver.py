from __future__ import annotations

import logging
import secrets
from collections.abc import Callable, Sequence
from typing import Protocol

from orderguard.adapters.clock import Clock
from orderguard.adapters.kv_stores import KeyValueStore
from orderguard.domain.identity import HostContext, IdentityKind, ResolvedIdentity
from orderguard.domain.time_windows import epoch_ms

logger = logging.getLogger(__name__)

SESSION_TOKEN_KEY = "order_session"
LINKED_USER_KEY = "current_user_id"

_BASE36_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(value: int) -> str:
    if value < 0:
        return "-" + to_base36(-value)
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


class IdentityStrategy(Protocol):
    def resolve(self) -> ResolvedIdentity | None: ...


class TelegramIdentityStrategy:
    def __init__(self, host_context: Callable[[], HostContext]) -> None:
        self._host_context = host_context

    def resolve(self) -> ResolvedIdentity | None:
        telegram_id = self._host_context().verified_telegram_id()
        if telegram_id is None:
            return None
        return ResolvedIdentity(kind=IdentityKind.STRONG, value=telegram_id)


class LinkedAccountStrategy:
    def __init__(self, durable_store: KeyValueStore) -> None:
        self._store = durable_store

    def resolve(self) -> ResolvedIdentity | None:
        user_id = self._store.get(LINKED_USER_KEY)
        if user_id is None or not user_id.strip():
            return None
        return ResolvedIdentity(kind=IdentityKind.LINKED, value=user_id.strip())

    def link(self, user_id: str) -> None:
        self._store.set(LINKED_USER_KEY, user_id.strip())

    def unlink(self) -> None:
        self._store.set(LINKED_USER_KEY, "")


class SessionTokenStrategy:
    """Weakest tier: a random token kept for the session's lifetime. Never fails."""

    def __init__(
        self,
        session_store: KeyValueStore,
        *,
        clock: Clock,
        token_factory: Callable[[], str] | None = None,
    ) -> None:
        self._store = session_store
        self._clock = clock
        self._token_factory = token_factory or (lambda: to_base36(secrets.randbits(64)))

    def resolve(self) -> ResolvedIdentity:
        now_ms = epoch_ms(self._clock.now())
        try:
            token = self._store.get(SESSION_TOKEN_KEY)
            if not token:
                token = f"{now_ms}_{self._token_factory()}"
                self._store.set(SESSION_TOKEN_KEY, token)
        except Exception:  # noqa: BLE001
            logger.warning("anonymous_token_store_unavailable", exc_info=True)
            token = str(now_ms)
        return ResolvedIdentity(kind=IdentityKind.ANONYMOUS, value=token)


class IdentityResolver:
    """Evaluates identity strategies in order; the first non-empty answer wins."""

    def __init__(
        self,
        strategies: Sequence[IdentityStrategy],
        *,
        fallback: SessionTokenStrategy,
    ) -> None:
        self._strategies = tuple(strategies)
        self._fallback = fallback

    def resolve_identity(self) -> ResolvedIdentity:
        for strategy in self._strategies:
            try:
                resolved = strategy.resolve()
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "identity_strategy_failed",
                    extra={
                        "extra": {
                            "strategy": type(strategy).__name__,
                            "error_type": type(exc).__name__,
                        }
                    },
                )
                continue
            if resolved is not None:
                return resolved
        return self._fallback.resolve()

    def resolve(self) -> str:
        return self.resolve_identity().key

    def has_strong_identity(self) -> bool:
        return self.resolve_identity().kind is IdentityKind.STRONG

    def _linked_strategy(self) -> LinkedAccountStrategy | None:
        for strategy in self._strategies:
            if isinstance(strategy, LinkedAccountStrategy):
                return strategy
        return None

    def link_user(self, user_id: str) -> bool:
        """Remember a backend user id so later resolutions yield ``local_<id>``."""
        strategy = self._linked_strategy()
        if strategy is None or not user_id.strip():
            return False
        strategy.link(user_id)
        return True

    def unlink_user(self) -> bool:
        strategy = self._linked_strategy()
        if strategy is None:
            return False
        strategy.unlink()
        return True


def build_identity_resolver(
    *,
    host_context: Callable[[], HostContext],
    durable_store: KeyValueStore,
    session_store: KeyValueStore,
    clock: Clock,
) -> IdentityResolver:
    return IdentityResolver(
        [TelegramIdentityStrategy(host_context), LinkedAccountStrategy(durable_store)],
        fallback=SessionTokenStrategy(session_store, clock=clock),
    )
