"""SQLite database operations for clients, credit and execution records.

This module provides the MeterDB class for persistent storage of:
- Clients and their token balances
- Credit transactions
- Execution records
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

SCHEMA_SQL = """
-- Clients table: token balance plus tokens held for in-flight executions
CREATE TABLE IF NOT EXISTS clients (
    client_id TEXT PRIMARY KEY,
    tokens_balance INTEGER NOT NULL DEFAULT 0 CHECK (tokens_balance >= 0),
    tokens_reserved INTEGER NOT NULL DEFAULT 0 CHECK (tokens_reserved >= 0),
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Credit transactions: one row per debit or top-up
CREATE TABLE IF NOT EXISTS credit_transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    client_id TEXT NOT NULL,
    amount INTEGER NOT NULL,
    balance_after INTEGER NOT NULL,
    type TEXT NOT NULL,
    reference TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (client_id) REFERENCES clients(client_id)
);

CREATE INDEX IF NOT EXISTS idx_credit_tx_client ON credit_transactions(client_id);

-- Executions table: append-only log of webhook attempts
CREATE TABLE IF NOT EXISTS executions (
    id TEXT PRIMARY KEY,
    webhook_id TEXT NOT NULL,
    client_id TEXT NOT NULL,
    request_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    status TEXT NOT NULL,
    status_code INTEGER NOT NULL DEFAULT 0,
    response TEXT,
    error TEXT,
    duration_ms INTEGER NOT NULL DEFAULT 0,
    tokens_used INTEGER NOT NULL DEFAULT 0,
    requested_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_executions_client ON executions(client_id, requested_at);
CREATE INDEX IF NOT EXISTS idx_executions_webhook ON executions(webhook_id, requested_at);
"""


class MeterDB:
    """SQLite database wrapper shared by the ledger and the record store.

    Provides:
    - WAL mode for crash recovery
    - Parameterized queries for SQL injection prevention
    - Schema initialization on first use
    - A connection lock so one instance can be shared across threads
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the database.

        Args:
            db_path: Path to the SQLite database file.
        """
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._initialize()

    @property
    def path(self) -> str:
        return self._db_path

    def _initialize(self) -> None:
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(SCHEMA_SQL)
        self._conn.commit()

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError("Database connection is closed")
        return self._conn

    def execute(self, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        """Execute a SQL statement with parameters and commit.

        Args:
            sql: SQL statement with ? placeholders.
            params: Tuple of parameter values.

        Returns:
            The cursor after execution.
        """
        with self._lock:
            conn = self._connection()
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
            return cursor

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield the connection for several statements committed together."""
        with self._lock:
            conn = self._connection()
            try:
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise

    def fetch_one(self, sql: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
        with self._lock:
            row = self._connection().execute(sql, params).fetchone()
        if row is None:
            return None
        return dict(row)

    def fetch_all(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._connection().execute(sql, params).fetchall()
        return [dict(row) for row in rows]

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> MeterDB:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()
