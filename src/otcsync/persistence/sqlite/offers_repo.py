from __future__ import annotations

import logging
import sqlite3

from otcsync.domain.events import OfferCreated, OfferSettled, TxContext
from otcsync.domain.models import (
    CrankableOffer,
    DealStatus,
    Offer,
    OfferStatus,
    WriteOutcome,
    unix_to_iso,
    utc_now_iso,
)
from otcsync.persistence.sqlite.sqlite_connection import ensure_index_schema

logger = logging.getLogger(__name__)


class SqliteOffersRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only
        ensure_index_schema(conn)

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "offers"}})
            raise PermissionError("UnitOfWork is read-only; offers writes are blocked")

    def _row_to_offer(self, row: sqlite3.Row) -> Offer:
        return Offer(
            address=str(row["address"]),
            deal_address=str(row["deal_address"]),
            offer_index=int(row["offer_index"]),
            submitted_at=str(row["submitted_at"]),
            status=OfferStatus(str(row["status"])),
            slot=int(row["slot"]),
            created_signature=row["created_signature"],
            settled_at=row["settled_at"],
            settled_signature=row["settled_signature"],
            settlement_ciphertexts=row["settlement_ciphertexts"],
        )

    def get(self, address: str) -> Offer | None:
        row = self._conn.execute("SELECT * FROM offers WHERE address = ?", (address,)).fetchone()
        return self._row_to_offer(row) if row is not None else None

    def upsert_created(self, event: OfferCreated, context: TxContext) -> WriteOutcome:
        self._ensure_writable()
        now = utc_now_iso()
        values = (
            event.deal,
            event.offer_index,
            unix_to_iso(event.submitted_at),
            event.blob.encryption_key,
            event.blob.nonce,
            event.blob.flat_ciphertexts(),
            context.slot,
            context.signature,
        )
        existing = self._conn.execute(
            "SELECT slot FROM offers WHERE address = ?", (event.offer,)
        ).fetchone()
        if existing is None:
            self._conn.execute(
                """
                INSERT INTO offers(
                    address, deal_address, offer_index, submitted_at,
                    encryption_key, nonce, ciphertexts, slot, created_signature,
                    status, indexed_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (event.offer, *values, OfferStatus.OPEN.value, now, now),
            )
            return WriteOutcome.INSERTED

        cursor = self._conn.execute(
            """
            UPDATE offers
            SET deal_address = ?, offer_index = ?, submitted_at = ?,
                encryption_key = ?, nonce = ?, ciphertexts = ?,
                slot = ?, created_signature = ?, updated_at = ?
            WHERE address = ? AND status = ? AND slot < ?
            """,
            (*values, now, event.offer, OfferStatus.OPEN.value, context.slot),
        )
        return WriteOutcome.UPDATED if cursor.rowcount > 0 else WriteOutcome.UNCHANGED

    def apply_settlement(self, event: OfferSettled, context: TxContext) -> WriteOutcome:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            UPDATE offers
            SET status = ?, settled_at = ?, settlement_encryption_key = ?,
                settlement_nonce = ?, settlement_ciphertexts = ?,
                settled_signature = ?, slot = MAX(slot, ?), updated_at = ?
            WHERE address = ? AND status = ?
            """,
            (
                OfferStatus.SETTLED.value,
                unix_to_iso(event.settled_at),
                event.blob.encryption_key,
                event.blob.nonce,
                event.blob.flat_ciphertexts(),
                context.signature,
                context.slot,
                utc_now_iso(),
                event.offer,
                OfferStatus.OPEN.value,
            ),
        )
        if cursor.rowcount > 0:
            return WriteOutcome.UPDATED
        exists = self._conn.execute(
            "SELECT 1 FROM offers WHERE address = ?", (event.offer,)
        ).fetchone()
        return WriteOutcome.UNCHANGED if exists is not None else WriteOutcome.ORPHANED

    def list_open_for_closed_deals(self, *, limit: int) -> list[CrankableOffer]:
        # Inner join: an offer whose deal row has not been indexed yet is never eligible.
        rows = self._conn.execute(
            """
            SELECT o.address AS address, o.deal_address AS deal_address
            FROM offers o
            JOIN deals d ON d.address = o.deal_address
            WHERE o.status = ? AND d.status != ?
            ORDER BY o.deal_address, o.offer_index
            LIMIT ?
            """,
            (OfferStatus.OPEN.value, DealStatus.OPEN.value, limit),
        ).fetchall()
        return [
            CrankableOffer(address=str(row["address"]), deal_address=str(row["deal_address"]))
            for row in rows
        ]

    def count_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM offers GROUP BY status ORDER BY status"
        ).fetchall()
        return {str(row["status"]): int(row["n"]) for row in rows}
