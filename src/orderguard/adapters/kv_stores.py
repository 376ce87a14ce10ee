from __future__ import annotations

import sqlite3
from threading import Lock
from typing import Protocol
from urllib.parse import quote

import httpx

from orderguard.persistence.sqlite.sqlite_connection import (
    ensure_kv_schema,
    sqlite_connection_context,
)


class KeyValueStoreError(RuntimeError):
    """Raised by a backing store when a read or write cannot be completed."""


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...


class MemoryKeyValueStore:
    """Process-local store; serves as the session-scoped tier."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._values: dict[str, str] = dict(initial or {})
        self._lock = Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._values.clear()


class SqliteKeyValueStore:
    """Device-durable tier backed by a local SQLite file."""

    def __init__(self, db_path: str, *, namespace: str = "default", timeout_seconds: float = 0.5) -> None:
        self._db_path = db_path
        self._namespace = namespace
        self._timeout_seconds = timeout_seconds
        with sqlite_connection_context(db_path, timeout_seconds=timeout_seconds) as conn:
            ensure_kv_schema(conn)

    def get(self, key: str) -> str | None:
        try:
            with sqlite_connection_context(
                self._db_path, timeout_seconds=self._timeout_seconds
            ) as conn:
                row = conn.execute(
                    "SELECT value FROM kv_store WHERE namespace = ? AND key = ?",
                    (self._namespace, key),
                ).fetchone()
        except sqlite3.Error as exc:
            raise KeyValueStoreError(f"sqlite read failed for key={key}") from exc
        return None if row is None else str(row["value"])

    def set(self, key: str, value: str) -> None:
        try:
            with sqlite_connection_context(
                self._db_path, timeout_seconds=self._timeout_seconds
            ) as conn:
                conn.execute(
                    """
                    INSERT INTO kv_store(namespace, key, value, updated_at)
                    VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(namespace, key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (self._namespace, key, value),
                )
        except sqlite3.Error as exc:
            raise KeyValueStoreError(f"sqlite write failed for key={key}") from exc

    def delete(self, key: str) -> None:
        try:
            with sqlite_connection_context(
                self._db_path, timeout_seconds=self._timeout_seconds
            ) as conn:
                conn.execute(
                    "DELETE FROM kv_store WHERE namespace = ? AND key = ?",
                    (self._namespace, key),
                )
        except sqlite3.Error as exc:
            raise KeyValueStoreError(f"sqlite delete failed for key={key}") from exc


class HttpKeyValueStore:
    """Remote synced tier exposed by the host runtime.

    Wire format: ``GET/PUT {base_url}/kv/{key}`` carrying ``{"value": "<str>"}``;
    a 404 on read means the key is absent.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout_seconds: float = 0.3,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    def _path(self, key: str) -> str:
        return f"/kv/{quote(key, safe='')}"

    def get(self, key: str) -> str | None:
        try:
            response = self._client.get(self._path(key))
            if response.status_code == 404:
                return None
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise KeyValueStoreError(f"remote read failed for key={key}") from exc
        value = payload.get("value") if isinstance(payload, dict) else None
        if value is None:
            return None
        if not isinstance(value, str):
            raise KeyValueStoreError(f"remote value for key={key} is not a string")
        return value

    def set(self, key: str, value: str) -> None:
        try:
            response = self._client.put(self._path(key), json={"value": value})
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise KeyValueStoreError(f"remote write failed for key={key}") from exc

    def close(self) -> None:
        self._client.close()
