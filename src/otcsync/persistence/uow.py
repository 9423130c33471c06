from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from otcsync.persistence.interfaces import (
    BalancesRepoProtocol,
    DealsRepoProtocol,
    OffersRepoProtocol,
    RawEventsRepoProtocol,
)
from otcsync.persistence.sqlite.balances_repo import SqliteBalancesRepo
from otcsync.persistence.sqlite.deals_repo import SqliteDealsRepo
from otcsync.persistence.sqlite.offers_repo import SqliteOffersRepo
from otcsync.persistence.sqlite.raw_events_repo import SqliteRawEventsRepo
from otcsync.persistence.sqlite.sqlite_connection import (
    create_sqlite_connection,
    ensure_index_schema,
)

logger = logging.getLogger(__name__)


class UnitOfWork:
    def __init__(self, db_path: str, *, read_only: bool = False) -> None:
        self._db_path = db_path
        self.read_only = read_only
        self._conn: sqlite3.Connection | None = None
        self.raw_events: RawEventsRepoProtocol
        self.deals: DealsRepoProtocol
        self.offers: OffersRepoProtocol
        self.balances: BalancesRepoProtocol

    def __enter__(self) -> UnitOfWork:
        conn = create_sqlite_connection(self._db_path)
        ensure_index_schema(conn)
        if self.read_only:
            conn.execute("BEGIN")
        else:
            conn.execute("BEGIN IMMEDIATE")
        self._conn = conn
        self.raw_events = SqliteRawEventsRepo(conn, read_only=self.read_only)
        self.deals = SqliteDealsRepo(conn, read_only=self.read_only)
        self.offers = SqliteOffersRepo(conn, read_only=self.read_only)
        self.balances = SqliteBalancesRepo(conn, read_only=self.read_only)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._conn is None:
            return
        try:
            if exc_type is None:
                self._conn.commit()
            else:
                self._conn.rollback()
        finally:
            self._conn.close()
            self._conn = None


@dataclass(frozen=True)
class UnitOfWorkFactory:
    db_path: str
    read_only: bool = False

    def __call__(self) -> UnitOfWork:
        return UnitOfWork(self.db_path, read_only=self.read_only)

    def reader(self) -> UnitOfWorkFactory:
        return UnitOfWorkFactory(self.db_path, read_only=True)
