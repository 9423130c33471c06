from __future__ import annotations

import logging
import sqlite3

from otcsync.domain.events import DealCreated, DealSettled, TxContext
from otcsync.domain.models import (
    CrankableDeal,
    Deal,
    DealStatus,
    WriteOutcome,
    unix_to_iso,
    utc_now_iso,
)
from otcsync.persistence.sqlite.sqlite_connection import ensure_index_schema

logger = logging.getLogger(__name__)


class SqliteDealsRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only
        ensure_index_schema(conn)

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "deals"}})
            raise PermissionError("UnitOfWork is read-only; deals writes are blocked")

    def _row_to_deal(self, row: sqlite3.Row) -> Deal:
        return Deal(
            address=str(row["address"]),
            base_mint=str(row["base_mint"]),
            quote_mint=str(row["quote_mint"]),
            expires_at=str(row["expires_at"]),
            allow_partial=bool(row["allow_partial"]),
            created_at=str(row["created_at"]),
            status=DealStatus(str(row["status"])),
            slot=int(row["slot"]),
            created_signature=row["created_signature"],
            settled_at=row["settled_at"],
            settled_signature=row["settled_signature"],
            settlement_ciphertexts=row["settlement_ciphertexts"],
        )

    def get(self, address: str) -> Deal | None:
        row = self._conn.execute("SELECT * FROM deals WHERE address = ?", (address,)).fetchone()
        return self._row_to_deal(row) if row is not None else None

    def upsert_created(self, event: DealCreated, context: TxContext) -> WriteOutcome:
        """Insert the deal, or refresh an open row from a strictly newer slot."""
        self._ensure_writable()
        now = utc_now_iso()
        values = (
            event.base_mint,
            event.quote_mint,
            unix_to_iso(event.expires_at),
            int(event.allow_partial),
            unix_to_iso(event.created_at),
            event.blob.encryption_key,
            event.blob.nonce,
            event.blob.flat_ciphertexts(),
            context.slot,
            context.signature,
        )
        existing = self._conn.execute(
            "SELECT slot, status FROM deals WHERE address = ?", (event.deal,)
        ).fetchone()
        if existing is None:
            self._conn.execute(
                """
                INSERT INTO deals(
                    address, base_mint, quote_mint, expires_at, allow_partial, created_at,
                    encryption_key, nonce, ciphertexts, slot, created_signature,
                    status, indexed_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (event.deal, *values, DealStatus.OPEN.value, now, now),
            )
            return WriteOutcome.INSERTED

        cursor = self._conn.execute(
            """
            UPDATE deals
            SET base_mint = ?, quote_mint = ?, expires_at = ?, allow_partial = ?,
                created_at = ?, encryption_key = ?, nonce = ?, ciphertexts = ?,
                slot = ?, created_signature = ?, updated_at = ?
            WHERE address = ? AND status = ? AND slot < ?
            """,
            (*values, now, event.deal, DealStatus.OPEN.value, context.slot),
        )
        return WriteOutcome.UPDATED if cursor.rowcount > 0 else WriteOutcome.UNCHANGED

    def apply_settlement(self, event: DealSettled, context: TxContext) -> WriteOutcome:
        """Close an open deal. Closed rows are never transitioned again."""
        self._ensure_writable()
        status = DealStatus.from_settlement_code(event.status)
        cursor = self._conn.execute(
            """
            UPDATE deals
            SET status = ?, settled_at = ?, settlement_status_code = ?,
                settlement_encryption_key = ?, settlement_nonce = ?,
                settlement_ciphertexts = ?, settled_signature = ?,
                slot = MAX(slot, ?), updated_at = ?
            WHERE address = ? AND status = ?
            """,
            (
                status.value,
                unix_to_iso(event.settled_at),
                event.status,
                event.blob.encryption_key,
                event.blob.nonce,
                event.blob.flat_ciphertexts(),
                context.signature,
                context.slot,
                utc_now_iso(),
                event.deal,
                DealStatus.OPEN.value,
            ),
        )
        if cursor.rowcount > 0:
            return WriteOutcome.UPDATED
        exists = self._conn.execute(
            "SELECT 1 FROM deals WHERE address = ?", (event.deal,)
        ).fetchone()
        return WriteOutcome.UNCHANGED if exists is not None else WriteOutcome.ORPHANED

    def list_expired_open(self, *, now_iso: str, limit: int) -> list[CrankableDeal]:
        rows = self._conn.execute(
            """
            SELECT address FROM deals
            WHERE status = ? AND expires_at < ?
            ORDER BY expires_at, address
            LIMIT ?
            """,
            (DealStatus.OPEN.value, now_iso, limit),
        ).fetchall()
        return [CrankableDeal(address=str(row["address"])) for row in rows]

    def count_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM deals GROUP BY status ORDER BY status"
        ).fetchall()
        return {str(row["status"]): int(row["n"]) for row in rows}
