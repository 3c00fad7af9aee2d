"""
Auction Settler - settlement scheduler for TicketAuction auctions

Mirrors on-chain auction events into a local JSON store and settles every
expired auction with bounded retries.

Structure:
- infrastructure/: Data model, durable store, contract ABI and ledger client
- scheduler/: Event reconciler, settlement worker and supervisor
- cli.py: Operator commands (status, list, logs, settle, cleanup, run, config)
- config.py: Environment-driven settings
"""

__version__ = "0.1.0"

from .config import BlockchainConfig, SettlerConfig, load_config
from .exceptions import (
    ConfigurationError,
    LedgerError,
    SettlerError,
    StoreError,
    TransactionFailedError,
)
from .infrastructure import (
    Auction,
    LedgerClient,
    QueueStatus,
    SchedulerConfig,
    SettlementQueueItem,
    SettlementStore,
)
from .scheduler import (
    EventReconciler,
    SchedulerSupervisor,
    SettlementWorker,
    build_scheduler,
)

__all__ = [
    "BlockchainConfig",
    "SettlerConfig",
    "load_config",
    "ConfigurationError",
    "LedgerError",
    "SettlerError",
    "StoreError",
    "TransactionFailedError",
    "Auction",
    "LedgerClient",
    "QueueStatus",
    "SchedulerConfig",
    "SettlementQueueItem",
    "SettlementStore",
    "EventReconciler",
    "SchedulerSupervisor",
    "SettlementWorker",
    "build_scheduler",
]
