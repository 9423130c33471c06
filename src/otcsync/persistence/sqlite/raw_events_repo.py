from __future__ import annotations

import logging
import sqlite3

from otcsync.domain.models import RawEvent, utc_now_iso
from otcsync.persistence.sqlite.sqlite_connection import ensure_index_schema

logger = logging.getLogger(__name__)


class SqliteRawEventsRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only
        ensure_index_schema(conn)

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "raw_events"}})
            raise PermissionError("UnitOfWork is read-only; raw_events writes are blocked")

    def insert(self, event: RawEvent) -> bool:
        """Insert once per (signature, event_name); returns False for a duplicate."""
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            INSERT INTO raw_events(signature, event_name, slot, block_time, raw_payload, indexed_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(signature, event_name) DO NOTHING
            """,
            (
                event.signature,
                event.event_name,
                event.slot,
                event.block_time,
                event.raw_payload,
                utc_now_iso(),
            ),
        )
        return cursor.rowcount > 0

    def count_for_signature(self, signature: str) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) AS n FROM raw_events WHERE signature = ?", (signature,)
        ).fetchone()
        return int(row["n"])

    def list_for_signature(self, signature: str) -> list[RawEvent]:
        rows = self._conn.execute(
            """
            SELECT event_name, signature, slot, block_time, raw_payload
            FROM raw_events WHERE signature = ? ORDER BY id
            """,
            (signature,),
        ).fetchall()
        return [
            RawEvent(
                event_name=str(row["event_name"]),
                signature=str(row["signature"]),
                slot=int(row["slot"]),
                block_time=row["block_time"],
                raw_payload=str(row["raw_payload"]),
            )
            for row in rows
        ]

    def count(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) AS n FROM raw_events").fetchone()
        return int(row["n"])
