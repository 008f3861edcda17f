"""Credit ledger: atomic reservation and debit of client tokens.

Every balance change is a single conditional UPDATE, so concurrent
executions for the same client can never overdraw the balance. A
reservation holds tokens between the balance check and the outbound call;
``debit`` turns the reservation into a permanent deduction.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, datetime
from typing import Any

from hookmeter.db import MeterDB
from hookmeter.engine.errors import LedgerError
from hookmeter.models import Client

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(UTC).isoformat()


class CreditLedger:
    """Token balance operations over the ``clients`` table."""

    def __init__(self, db: MeterDB) -> None:
        self._db = db

    def check_and_reserve(self, client_id: str, amount: int) -> bool:
        """Hold ``amount`` tokens if the unreserved balance covers it.

        Returns:
            True if the reservation was taken, False otherwise.
        """
        if amount < 0:
            raise ValueError("amount must be non-negative")
        cursor = self._db.execute(
            """UPDATE clients
               SET tokens_reserved = tokens_reserved + ?, updated_at = ?
               WHERE client_id = ?
                 AND is_active = 1
                 AND tokens_balance - tokens_reserved >= ?""",
            (amount, _now(), client_id, amount),
        )
        return cursor.rowcount == 1

    def debit(self, client_id: str, amount: int, reference: str | None = None) -> int:
        """Convert a reservation of ``amount`` into a deduction.

        The balance update and its transaction row commit together.

        Returns:
            The balance after the debit.

        Raises:
            LedgerError: If the client is unknown, holds no such reservation,
                or the database write fails.
        """
        try:
            with self._db.transaction() as conn:
                row = conn.execute(
                    """UPDATE clients
                       SET tokens_balance = tokens_balance - ?,
                           tokens_reserved = tokens_reserved - ?,
                           updated_at = ?
                       WHERE client_id = ?
                         AND tokens_reserved >= ?
                         AND tokens_balance >= ?
                       RETURNING tokens_balance""",
                    (amount, amount, _now(), client_id, amount, amount),
                ).fetchone()
                if row is None:
                    raise LedgerError(
                        f"No reservation of {amount} tokens for client '{client_id}'"
                    )
                balance_after = int(row["tokens_balance"])
                if amount:
                    self._record_transaction(
                        conn, client_id, -amount, balance_after, "debit", reference,
                    )
        except sqlite3.Error as exc:
            raise LedgerError(f"Debit failed for client '{client_id}': {exc}") from exc
        return balance_after

    def release(self, client_id: str, amount: int) -> None:
        """Drop a reservation that never reached the network step."""
        cursor = self._db.execute(
            """UPDATE clients
               SET tokens_reserved = tokens_reserved - ?, updated_at = ?
               WHERE client_id = ? AND tokens_reserved >= ?""",
            (amount, _now(), client_id, amount),
        )
        if cursor.rowcount != 1:
            logger.warning(
                "Release of %d tokens for client %s matched no reservation",
                amount, client_id,
            )

    def top_up(self, client_id: str, amount: int, reference: str | None = None) -> int:
        """Add tokens to a client's balance and return the new balance."""
        if amount <= 0:
            raise ValueError("top-up amount must be positive")
        with self._db.transaction() as conn:
            row = conn.execute(
                """UPDATE clients
                   SET tokens_balance = tokens_balance + ?, updated_at = ?
                   WHERE client_id = ?
                   RETURNING tokens_balance""",
                (amount, _now(), client_id),
            ).fetchone()
            if row is None:
                raise LedgerError(f"Unknown client '{client_id}'")
            balance_after = int(row["tokens_balance"])
            self._record_transaction(
                conn, client_id, amount, balance_after, "topup", reference,
            )
        return balance_after

    def balance(self, client_id: str) -> int | None:
        row = self._db.fetch_one(
            "SELECT tokens_balance FROM clients WHERE client_id = ?", (client_id,),
        )
        return None if row is None else int(row["tokens_balance"])

    def is_active(self, client_id: str) -> bool:
        """False for inactive and unknown clients."""
        row = self._db.fetch_one(
            "SELECT is_active FROM clients WHERE client_id = ?", (client_id,),
        )
        return row is not None and bool(row["is_active"])

    def reserved(self, client_id: str) -> int:
        row = self._db.fetch_one(
            "SELECT tokens_reserved FROM clients WHERE client_id = ?", (client_id,),
        )
        return 0 if row is None else int(row["tokens_reserved"])

    def transactions(self, client_id: str, limit: int = 100) -> list[dict[str, Any]]:
        return self._db.fetch_all(
            """SELECT amount, balance_after, type, reference, created_at
               FROM credit_transactions
               WHERE client_id = ?
               ORDER BY id DESC
               LIMIT ?""",
            (client_id, limit),
        )

    @staticmethod
    def _record_transaction(
        conn: sqlite3.Connection,
        client_id: str,
        amount: int,
        balance_after: int,
        tx_type: str,
        reference: str | None,
    ) -> None:
        conn.execute(
            """INSERT INTO credit_transactions
               (client_id, amount, balance_after, type, reference, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (client_id, amount, balance_after, tx_type, reference, _now()),
        )


class ClientProvider:
    """Reads client snapshots from the ledger database."""

    def __init__(self, db: MeterDB) -> None:
        self._db = db

    def get_by_client_id(self, client_id: str) -> Client | None:
        """Return the client with its spendable (unreserved) balance."""
        row = self._db.fetch_one(
            """SELECT client_id, tokens_balance - tokens_reserved AS available, is_active
               FROM clients WHERE client_id = ?""",
            (client_id,),
        )
        if row is None:
            return None
        return Client(
            client_id=row["client_id"],
            tokens_balance=max(int(row["available"]), 0),
            is_active=bool(row["is_active"]),
        )

    def upsert(self, client: Client) -> None:
        now = _now()
        self._db.execute(
            """INSERT INTO clients
               (client_id, tokens_balance, tokens_reserved, is_active, created_at, updated_at)
               VALUES (?, ?, 0, ?, ?, ?)
               ON CONFLICT(client_id) DO UPDATE SET
                 tokens_balance=excluded.tokens_balance,
                 is_active=excluded.is_active,
                 updated_at=excluded.updated_at""",
            (client.client_id, client.tokens_balance, int(client.is_active), now, now),
        )
