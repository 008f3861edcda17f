"""Append-only store for execution records."""

from __future__ import annotations

import sqlite3
from typing import Any

from hookmeter.db import MeterDB
from hookmeter.engine.errors import PersistenceError
from hookmeter.models import ExecutionRecord, ExecutionStatus, ExecutionSummary

_COLUMNS = (
    "id, webhook_id, client_id, request_type, payload, status, status_code, "
    "response, error, duration_ms, tokens_used, requested_at"
)


class ExecutionRecordStore:
    """SQLite-backed log of execution attempts.

    Records are inserted once and never updated or deleted.
    """

    def __init__(self, db: MeterDB) -> None:
        self._db = db

    def append(self, record: ExecutionRecord) -> None:
        """Persist a finalized record.

        Raises:
            PersistenceError: If the write fails, including a duplicate id.
        """
        try:
            self._db.execute(
                f"INSERT INTO executions ({_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.webhook_id,
                    record.client_id,
                    record.request_type.value,
                    record.payload,
                    record.status.value,
                    record.status_code,
                    record.response,
                    record.error,
                    record.duration_ms,
                    record.tokens_used,
                    record.requested_at,
                ),
            )
        except sqlite3.Error as exc:
            raise PersistenceError(
                f"Failed to persist execution record {record.id}: {exc}"
            ) from exc

    def get(self, execution_id: str) -> ExecutionRecord | None:
        row = self._db.fetch_one(
            f"SELECT {_COLUMNS} FROM executions WHERE id = ?", (execution_id,),
        )
        return None if row is None else self._row_to_record(row)

    def list_for_client(
        self,
        client_id: str,
        limit: int = 50,
        status: ExecutionStatus | None = None,
    ) -> list[ExecutionRecord]:
        """Most recent records for a client, newest first."""
        if status is None:
            rows = self._db.fetch_all(
                f"""SELECT {_COLUMNS} FROM executions
                    WHERE client_id = ?
                    ORDER BY requested_at DESC
                    LIMIT ?""",
                (client_id, limit),
            )
        else:
            rows = self._db.fetch_all(
                f"""SELECT {_COLUMNS} FROM executions
                    WHERE client_id = ? AND status = ?
                    ORDER BY requested_at DESC
                    LIMIT ?""",
                (client_id, ExecutionStatus(status).value, limit),
            )
        return [self._row_to_record(r) for r in rows]

    def list_for_webhook(self, webhook_id: str, limit: int = 50) -> list[ExecutionRecord]:
        rows = self._db.fetch_all(
            f"""SELECT {_COLUMNS} FROM executions
                WHERE webhook_id = ?
                ORDER BY requested_at DESC
                LIMIT ?""",
            (webhook_id, limit),
        )
        return [self._row_to_record(r) for r in rows]

    def summary(self, client_id: str, recent: int = 5) -> ExecutionSummary:
        """Aggregate counts, tokens and duration for a client's executions."""
        rows = self._db.fetch_all(
            """SELECT status, COUNT(*) AS n, SUM(tokens_used) AS tokens,
                      SUM(duration_ms) AS duration
               FROM executions WHERE client_id = ?
               GROUP BY status""",
            (client_id,),
        )
        by_status = {row["status"]: int(row["n"]) for row in rows}
        total = sum(by_status.values())
        tokens = sum(int(row["tokens"] or 0) for row in rows)
        duration = sum(int(row["duration"] or 0) for row in rows)
        return ExecutionSummary(
            client_id=client_id,
            total=total,
            by_status=by_status,
            tokens_used=tokens,
            avg_duration_ms=round(duration / total, 1) if total else 0.0,
            recent=self.list_for_client(client_id, limit=recent),
        )

    @staticmethod
    def _row_to_record(row: dict[str, Any]) -> ExecutionRecord:
        return ExecutionRecord.model_validate(row)
