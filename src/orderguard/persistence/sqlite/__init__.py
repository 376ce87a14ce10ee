from orderguard.persistence.sqlite.sqlite_connection import (
    create_sqlite_connection,
    ensure_kv_schema,
    ensure_ledger_schema,
    sqlite_connection_context,
)

__all__ = [
    "create_sqlite_connection",
    "ensure_kv_schema",
    "ensure_ledger_schema",
    "sqlite_connection_context",
]
