from otcsync.persistence.sqlite.balances_repo import SqliteBalancesRepo
from otcsync.persistence.sqlite.deals_repo import SqliteDealsRepo
from otcsync.persistence.sqlite.offers_repo import SqliteOffersRepo
from otcsync.persistence.sqlite.raw_events_repo import SqliteRawEventsRepo

__all__ = ["SqliteRawEventsRepo", "SqliteDealsRepo", "SqliteOffersRepo", "SqliteBalancesRepo"]
