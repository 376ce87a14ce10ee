from __future__ import annotations

import re

import pytest

from orderguard.adapters.kv_stores import MemoryKeyValueStore
from orderguard.domain.identity import HostContext, IdentityKind
from orderguard.domain.time_windows import epoch_ms
from orderguard.services.identity_resolver import (
    LINKED_USER_KEY,
    SESSION_TOKEN_KEY,
    IdentityResolver,
    LinkedAccountStrategy,
    SessionTokenStrategy,
    TelegramIdentityStrategy,
    build_identity_resolver,
    to_base36,
)


def _resolver(clock, *, telegram_user_id=None, durable=None, session=None) -> IdentityResolver:
    host = HostContext(telegram_user_id=telegram_user_id)
    return build_identity_resolver(
        host_context=lambda: host,
        durable_store=durable if durable is not None else MemoryKeyValueStore(),
        session_store=session if session is not None else MemoryKeyValueStore(),
        clock=clock,
    )


def test_verified_telegram_id_wins(clock) -> None:
    durable = MemoryKeyValueStore({LINKED_USER_KEY: "u-9"})
    resolver = _resolver(clock, telegram_user_id=42, durable=durable)

    resolved = resolver.resolve_identity()

    assert resolved.kind is IdentityKind.STRONG
    assert resolver.resolve() == "tg_42"
    assert resolver.has_strong_identity() is True


@pytest.mark.parametrize("raw", ["", "  ", "abc", "12a"])
def test_unverified_telegram_id_falls_through_to_linked_user(clock, raw: str) -> None:
    durable = MemoryKeyValueStore({LINKED_USER_KEY: " u-9 "})
    resolver = _resolver(clock, telegram_user_id=raw, durable=durable)

    assert resolver.resolve() == "local_u-9"
    assert resolver.has_strong_identity() is False


def test_session_token_is_generated_once(clock) -> None:
    session = MemoryKeyValueStore()
    resolver = _resolver(clock, session=session)

    identity = resolver.resolve()

    assert re.fullmatch(rf"session_{epoch_ms(clock.now())}_[0-9a-z]+", identity)
    clock.advance(seconds=10)
    assert resolver.resolve() == identity
    assert session.get(SESSION_TOKEN_KEY) == identity.removeprefix("session_")


def test_session_store_failure_yields_timestamp_identity(clock, broken_store) -> None:
    strategy = SessionTokenStrategy(broken_store, clock=clock)

    resolved = strategy.resolve()

    assert resolved.key == f"session_{epoch_ms(clock.now())}"


def test_failing_strategy_is_skipped(clock, caplog) -> None:
    class _Exploding:
        def resolve(self):
            raise RuntimeError("host bridge missing")

    resolver = IdentityResolver(
        [_Exploding(), LinkedAccountStrategy(MemoryKeyValueStore({LINKED_USER_KEY: "u1"}))],
        fallback=SessionTokenStrategy(MemoryKeyValueStore(), clock=clock),
    )

    assert resolver.resolve() == "local_u1"
    assert any(r.getMessage() == "identity_strategy_failed" for r in caplog.records)


def test_link_and_unlink_user(clock) -> None:
    resolver = _resolver(clock, session=MemoryKeyValueStore({SESSION_TOKEN_KEY: "1_abc"}))

    assert resolver.resolve() == "session_1_abc"
    assert resolver.link_user("  u77 ") is True
    assert resolver.resolve() == "local_u77"
    assert resolver.unlink_user() is True
    assert resolver.resolve() == "session_1_abc"
    assert resolver.link_user("   ") is False


def test_resolver_without_linked_strategy_cannot_link(clock) -> None:
    resolver = IdentityResolver(
        [TelegramIdentityStrategy(lambda: HostContext())],
        fallback=SessionTokenStrategy(MemoryKeyValueStore(), clock=clock),
    )

    assert resolver.link_user("u1") is False
    assert resolver.unlink_user() is False


@pytest.mark.parametrize(
    ("value", "expected"), [(0, "0"), (35, "z"), (36, "10"), (1710072000000, "ltlgps00")]
)
def test_to_base36(value: int, expected: str) -> None:
    assert to_base36(value) == expected
