from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import asdict, dataclass, replace


@dataclass(frozen=True)
class AdmissionLogContext:
    """Who and what the current admission call is about."""

    request_id: str | None = None
    identity: str | None = None
    order_id: str | None = None

    def as_fields(self) -> dict[str, str]:
        return {key: value for key, value in asdict(self).items() if value is not None}


_CURRENT: ContextVar[AdmissionLogContext] = ContextVar(
    "orderguard_log_context", default=AdmissionLogContext()
)


def current_log_context() -> AdmissionLogContext:
    return _CURRENT.get()


def get_logging_context() -> dict[str, str]:
    return _CURRENT.get().as_fields()


@contextmanager
def with_logging_context(
    *,
    request_id: str | None = None,
    identity: str | None = None,
    order_id: str | None = None,
) -> Iterator[AdmissionLogContext]:
    """Layer fields over the enclosing context; ``None`` keeps the outer value."""
    overrides = {
        key: value
        for key, value in (
            ("request_id", request_id),
            ("identity", identity),
            ("order_id", order_id),
        )
        if value is not None
    }
    context = replace(_CURRENT.get(), **overrides)
    token = _CURRENT.set(context)
    try:
        yield context
    finally:
        _CURRENT.reset(token)
