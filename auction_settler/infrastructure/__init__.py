"""Shared infrastructure: data model, durable store and ledger access."""

from .auction_data import (
    Auction,
    FeeEstimate,
    LedgerEvent,
    LogEntry,
    LogLevel,
    QueueStatus,
    SchedulerConfig,
    SettlementQueueItem,
)
from .contract_abis import ContractABIs, TICKET_AUCTION_ABI, get_ticket_auction_abi
from .ledger_client import LedgerClient, PendingTransaction
from .settlement_store import SettlementStore

__all__ = [
    "Auction",
    "FeeEstimate",
    "LedgerEvent",
    "LogEntry",
    "LogLevel",
    "QueueStatus",
    "SchedulerConfig",
    "SettlementQueueItem",
    "ContractABIs",
    "TICKET_AUCTION_ABI",
    "get_ticket_auction_abi",
    "LedgerClient",
    "PendingTransaction",
    "SettlementStore",
]
