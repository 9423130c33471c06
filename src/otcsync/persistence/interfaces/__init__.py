from otcsync.persistence.interfaces.balances_repo import BalancesRepoProtocol
from otcsync.persistence.interfaces.deals_repo import DealsRepoProtocol
from otcsync.persistence.interfaces.offers_repo import OffersRepoProtocol
from otcsync.persistence.interfaces.raw_events_repo import RawEventsRepoProtocol

__all__ = [
    "RawEventsRepoProtocol",
    "DealsRepoProtocol",
    "OffersRepoProtocol",
    "BalancesRepoProtocol",
]
