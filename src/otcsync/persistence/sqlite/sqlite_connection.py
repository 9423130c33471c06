from __future__ import annotations

import sqlite3


def create_sqlite_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def ensure_index_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS raw_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            signature TEXT NOT NULL,
            event_name TEXT NOT NULL,
            slot INTEGER NOT NULL,
            block_time TEXT,
            raw_payload TEXT NOT NULL,
            indexed_at TEXT NOT NULL,
            UNIQUE(signature, event_name)
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_raw_events_slot ON raw_events(slot)")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS deals (
            address TEXT PRIMARY KEY,
            base_mint TEXT NOT NULL,
            quote_mint TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            allow_partial INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'open',
            encryption_key BLOB,
            nonce BLOB,
            ciphertexts BLOB,
            slot INTEGER NOT NULL,
            created_signature TEXT,
            settled_at TEXT,
            settlement_status_code INTEGER,
            settlement_encryption_key BLOB,
            settlement_nonce BLOB,
            settlement_ciphertexts BLOB,
            settled_signature TEXT,
            indexed_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_deals_status_expires_at ON deals(status, expires_at)"
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS offers (
            address TEXT PRIMARY KEY,
            deal_address TEXT NOT NULL,
            offer_index INTEGER NOT NULL,
            submitted_at TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'open',
            encryption_key BLOB,
            nonce BLOB,
            ciphertexts BLOB,
            slot INTEGER NOT NULL,
            created_signature TEXT,
            settled_at TEXT,
            settlement_encryption_key BLOB,
            settlement_nonce BLOB,
            settlement_ciphertexts BLOB,
            settled_signature TEXT,
            indexed_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_offers_status ON offers(status)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_offers_deal_address ON offers(deal_address)")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS balances (
            address TEXT PRIMARY KEY,
            controller TEXT NOT NULL,
            mint TEXT NOT NULL,
            encryption_key BLOB,
            nonce BLOB,
            ciphertexts BLOB,
            slot INTEGER NOT NULL,
            signature TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_balances_controller_mint ON balances(controller, mint)"
    )
