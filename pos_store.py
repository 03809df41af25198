#!/usr/bin/env python3
# Key/value slots for the till: one sqlite table of key -> text payload
import os
import sqlite3
import threading
from typing import List, Optional, Protocol

DB_PATH = os.environ.get("POS_DB_PATH", "quickbill.db")


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


def connect(db_path: str = DB_PATH) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    if db_path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
    _ensure_kv_table(conn)
    return conn


def _ensure_kv_table(conn: sqlite3.Connection) -> None:
    conn.execute("""
    CREATE TABLE IF NOT EXISTS kv_store (
      key         TEXT PRIMARY KEY,
      value       TEXT NOT NULL,
      updated_utc TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
    )
    """)
    conn.commit()


class SQLiteStore:
    """String slots addressed by key, persisted in a single sqlite table."""

    def __init__(self, conn: Optional[sqlite3.Connection] = None, db_path: str = DB_PATH):
        self.conn = conn if conn is not None else connect(db_path)
        if conn is not None:
            conn.row_factory = sqlite3.Row
            _ensure_kv_table(conn)
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            row = self.conn.execute("SELECT value FROM kv_store WHERE key=?", (key,)).fetchone()
        return row["value"] if row else None

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO kv_store (key, value, updated_utc)
                VALUES (?, ?, strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
                ON CONFLICT(key) DO UPDATE SET
                  value=excluded.value,
                  updated_utc=excluded.updated_utc
                """,
                (key, value),
            )
            self.conn.commit()

    def remove(self, key: str) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM kv_store WHERE key=?", (key,))
            self.conn.commit()

    def keys(self) -> List[str]:
        with self._lock:
            rows = self.conn.execute("SELECT key FROM kv_store ORDER BY key").fetchall()
        return [row["key"] for row in rows]

    def close(self) -> None:
        self.conn.close()
