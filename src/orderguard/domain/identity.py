from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class IdentityKind(StrEnum):
    STRONG = "strong"
    LINKED = "linked"
    ANONYMOUS = "anonymous"


IDENTITY_PREFIXES = {
    IdentityKind.STRONG: "tg_",
    IdentityKind.LINKED: "local_",
    IdentityKind.ANONYMOUS: "session_",
}


@dataclass(frozen=True)
class ResolvedIdentity:
    kind: IdentityKind
    value: str

    @property
    def key(self) -> str:
        return f"{IDENTITY_PREFIXES[self.kind]}{self.value}"

    @property
    def is_anonymous(self) -> bool:
        return self.kind is IdentityKind.ANONYMOUS


def identity_kind(identity: str) -> IdentityKind | None:
    for kind, prefix in IDENTITY_PREFIXES.items():
        if identity.startswith(prefix):
            return kind
    return None


def strip_identity_prefix(identity: str) -> str:
    kind = identity_kind(identity)
    if kind is None:
        return identity
    return identity[len(IDENTITY_PREFIXES[kind]) :]


def is_session_identity(identity: str) -> bool:
    return identity_kind(identity) is IdentityKind.ANONYMOUS


@dataclass(frozen=True)
class HostContext:
    """What the hosting chat client tells us about the current actor."""

    telegram_user_id: int | str | None = None

    def verified_telegram_id(self) -> str | None:
        if self.telegram_user_id is None:
            return None
        candidate = str(self.telegram_user_id).strip()
        if not candidate.isdigit():
            return None
        return candidate
