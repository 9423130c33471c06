from __future__ import annotations

import logging
import sqlite3

from otcsync.domain.events import BalanceUpdated, TxContext
from otcsync.domain.models import WriteOutcome, utc_now_iso
from otcsync.persistence.sqlite.sqlite_connection import ensure_index_schema

logger = logging.getLogger(__name__)


class SqliteBalancesRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only
        ensure_index_schema(conn)

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "balances"}})
            raise PermissionError("UnitOfWork is read-only; balances writes are blocked")

    def upsert(self, event: BalanceUpdated, context: TxContext) -> WriteOutcome:
        """Keep the newest encrypted balance snapshot per balance account."""
        self._ensure_writable()
        existing = self._conn.execute(
            "SELECT slot FROM balances WHERE address = ?", (event.balance,)
        ).fetchone()
        cursor = self._conn.execute(
            """
            INSERT INTO balances(
                address, controller, mint, encryption_key, nonce, ciphertexts,
                slot, signature, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(address) DO UPDATE SET
                controller = excluded.controller,
                mint = excluded.mint,
                encryption_key = excluded.encryption_key,
                nonce = excluded.nonce,
                ciphertexts = excluded.ciphertexts,
                slot = excluded.slot,
                signature = excluded.signature,
                updated_at = excluded.updated_at
            WHERE excluded.slot > balances.slot
            """,
            (
                event.balance,
                event.controller,
                event.mint,
                event.blob.encryption_key,
                event.blob.nonce,
                event.blob.flat_ciphertexts(),
                context.slot,
                context.signature,
                utc_now_iso(),
            ),
        )
        if existing is None:
            return WriteOutcome.INSERTED
        return WriteOutcome.UPDATED if cursor.rowcount > 0 else WriteOutcome.UNCHANGED

    def get_slot(self, address: str) -> int | None:
        row = self._conn.execute(
            "SELECT slot FROM balances WHERE address = ?", (address,)
        ).fetchone()
        return int(row["slot"]) if row is not None else None

    def count(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) AS n FROM balances").fetchone()
        return int(row["n"])
