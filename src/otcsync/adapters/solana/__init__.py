from .backfill_adapter import BackfillAdapter, BackfillReport
from .event_decoder import EventDecoder
from .instrumentation import InMemoryMetricsSink, MetricsSink
from .live_adapter import LiveIngestionAdapter
from .log_stream import LogNotification, LogSubscription, WsSocket
from .rpc_client import RpcReliabilityConfig, SignatureInfo, SolanaRpcClient, TransactionRecord
from .settlement import SolanaCrankLedger, load_keypair

__all__ = [
    "BackfillAdapter",
    "BackfillReport",
    "EventDecoder",
    "InMemoryMetricsSink",
    "LiveIngestionAdapter",
    "LogNotification",
    "LogSubscription",
    "MetricsSink",
    "RpcReliabilityConfig",
    "SignatureInfo",
    "SolanaCrankLedger",
    "SolanaRpcClient",
    "TransactionRecord",
    "WsSocket",
    "load_keypair",
]
