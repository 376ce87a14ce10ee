from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

from orderguard.domain.identity import IdentityKind, identity_kind, strip_identity_prefix
from orderguard.domain.models import OPEN_ORDER_STATUSES, OrderLedgerStatus
from orderguard.persistence.sqlite.sqlite_connection import (
    ensure_ledger_schema,
    sqlite_connection_context,
)

logger = logging.getLogger(__name__)


class OrderLedgerError(RuntimeError):
    """Raised when the order ledger cannot be queried."""


@dataclass(frozen=True)
class LedgerOrder:
    order_id: str
    user_id: str
    status: str
    order_number: str | None = None

    @property
    def display_id(self) -> str:
        return self.order_number or self.order_id


class ActiveOrderSource(Protocol):
    def list_open_orders(self, identity: str) -> list[str]: ...


class OrderLedger(Protocol):
    def find_orders(self, user_id: str, statuses: Iterable[str]) -> list[LedgerOrder]: ...


class SqliteOrderLedger:
    """Reference order ledger stored in SQLite."""

    def __init__(self, db_path: str, *, timeout_seconds: float = 0.5) -> None:
        self._db_path = db_path
        self._timeout_seconds = timeout_seconds
        with sqlite_connection_context(db_path, timeout_seconds=timeout_seconds) as conn:
            ensure_ledger_schema(conn)

    def upsert_order(
        self,
        *,
        order_id: str,
        user_id: str,
        status: str | OrderLedgerStatus,
        order_number: str | None = None,
    ) -> None:
        normalized_status = OrderLedgerStatus(str(status).strip().lower()).value
        now = datetime.now(UTC).isoformat()
        with sqlite_connection_context(self._db_path, timeout_seconds=self._timeout_seconds) as conn:
            conn.execute(
                """
                INSERT INTO ledger_orders(order_id, order_number, user_id, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(order_id) DO UPDATE SET
                    order_number = COALESCE(excluded.order_number, ledger_orders.order_number),
                    user_id = excluded.user_id,
                    status = excluded.status,
                    updated_at = excluded.updated_at
                """,
                (order_id, order_number, user_id, normalized_status, now, now),
            )

    def set_status(self, order_id: str, status: str | OrderLedgerStatus) -> bool:
        normalized_status = OrderLedgerStatus(str(status).strip().lower()).value
        with sqlite_connection_context(self._db_path, timeout_seconds=self._timeout_seconds) as conn:
            cursor = conn.execute(
                "UPDATE ledger_orders SET status = ?, updated_at = ? WHERE order_id = ?",
                (normalized_status, datetime.now(UTC).isoformat(), order_id),
            )
            return cursor.rowcount > 0

    def find_orders(self, user_id: str, statuses: Iterable[str]) -> list[LedgerOrder]:
        wanted = sorted({str(status) for status in statuses})
        if not wanted:
            return []
        placeholders = ",".join("?" for _ in wanted)
        try:
            with sqlite_connection_context(
                self._db_path, timeout_seconds=self._timeout_seconds
            ) as conn:
                rows = conn.execute(
                    f"""
                    SELECT order_id, order_number, user_id, status
                    FROM ledger_orders
                    WHERE user_id = ? AND status IN ({placeholders})
                    ORDER BY created_at, order_id
                    """,
                    (user_id, *wanted),
                ).fetchall()
        except sqlite3.Error as exc:
            raise OrderLedgerError(f"ledger query failed for user_id={user_id}") from exc
        return [
            LedgerOrder(
                order_id=str(row["order_id"]),
                user_id=str(row["user_id"]),
                status=str(row["status"]),
                order_number=str(row["order_number"]) if row["order_number"] else None,
            )
            for row in rows
        ]


class LedgerActiveOrderSource:
    """Maps an identity to its ledger user and lists that user's open orders.

    Only ``local_`` identities carry a ledger user id. ``tg_`` identities are
    matched only when ``match_telegram_ids`` is set; ``session_`` identities
    never are.
    """

    def __init__(self, ledger: OrderLedger, *, match_telegram_ids: bool = False) -> None:
        self._ledger = ledger
        self._match_telegram_ids = match_telegram_ids

    def ledger_user_id(self, identity: str) -> str | None:
        kind = identity_kind(identity)
        if kind is IdentityKind.LINKED:
            return strip_identity_prefix(identity) or None
        if kind is IdentityKind.STRONG and self._match_telegram_ids:
            return strip_identity_prefix(identity) or None
        return None

    def list_open_orders(self, identity: str) -> list[str]:
        user_id = self.ledger_user_id(identity)
        if user_id is None:
            logger.debug(
                "ledger_lookup_skipped",
                extra={"extra": {"identity_kind": str(identity_kind(identity))}},
            )
            return []
        orders = self._ledger.find_orders(user_id, (status.value for status in OPEN_ORDER_STATUSES))
        return [order.display_id for order in orders]
