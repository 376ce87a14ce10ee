from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager


def create_sqlite_connection(db_path: str, *, timeout_seconds: float = 30.0) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=timeout_seconds, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {max(1, int(timeout_seconds * 1000))}")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


@contextmanager
def sqlite_connection_context(
    db_path: str, *, timeout_seconds: float = 30.0
) -> Iterator[sqlite3.Connection]:
    conn = create_sqlite_connection(db_path, timeout_seconds=timeout_seconds)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def ensure_kv_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS kv_store (
            namespace TEXT NOT NULL,
            key TEXT NOT NULL,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (namespace, key)
        )
        """
    )


def ensure_ledger_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS ledger_orders (
            order_id TEXT PRIMARY KEY,
            order_number TEXT,
            user_id TEXT NOT NULL,
            status TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_ledger_orders_user_status ON ledger_orders(user_id, status)"
    )
    order_columns = {str(row["name"]) for row in conn.execute("PRAGMA table_info(ledger_orders)")}
    if "order_number" not in order_columns:
        conn.execute("ALTER TABLE ledger_orders ADD COLUMN order_number TEXT")
