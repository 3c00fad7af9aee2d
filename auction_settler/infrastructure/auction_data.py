"""Data classes for mirrored auctions, the settlement queue and scheduler state.

Records are persisted as camelCase JSON documents. Token amounts are fixed-point
integers and are written as decimal strings so that no JSON consumer ever
parses them as floats.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Serialize a datetime as ISO-8601 UTC with a Z suffix."""
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp written by format_timestamp (or by older tooling)."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _amount(value: Any) -> int:
    return int(value) if value not in (None, "") else 0


class QueueStatus(str, Enum):
    """Status of a settlement queue item."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class LogLevel(str, Enum):
    """Severity of a persisted log entry."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


@dataclass
class Auction:
    """Local mirror of a TicketAuction auction. The ledger stays authoritative."""
    id: str
    ticket_id: str
    ticket_count: int
    start_price: int
    buy_now_price: int
    min_increment: int
    expiry_time: int
    seller: str
    highest_bid: int = 0
    highest_bidder: Optional[str] = None
    is_active: bool = True
    is_settled: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None
    settlement_tx_hash: Optional[str] = None
    settled_at: Optional[str] = None

    def is_expired(self, now: int) -> bool:
        """Check whether the auction's expiry time has passed (Unix seconds)."""
        return self.expiry_time <= now

    def needs_settlement(self, now: int) -> bool:
        """Expired, still active and not yet settled."""
        return self.is_expired(now) and self.is_active and not self.is_settled

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the persisted document shape."""
        return {
            "id": self.id,
            "ticketId": self.ticket_id,
            "ticketCount": self.ticket_count,
            "startPrice": str(self.start_price),
            "buyNowPrice": str(self.buy_now_price),
            "minIncrement": str(self.min_increment),
            "expiryTime": self.expiry_time,
            "seller": self.seller,
            "highestBidder": self.highest_bidder,
            "highestBid": str(self.highest_bid),
            "isActive": self.is_active,
            "isSettled": self.is_settled,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "transactionHash": self.transaction_hash,
            "blockNumber": self.block_number,
            "settlementTxHash": self.settlement_tx_hash,
            "settledAt": self.settled_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Auction":
        """Build from a persisted document."""
        return cls(
            id=str(data["id"]),
            ticket_id=str(data.get("ticketId", "")),
            ticket_count=int(data.get("ticketCount", 0)),
            start_price=_amount(data.get("startPrice")),
            buy_now_price=_amount(data.get("buyNowPrice")),
            min_increment=_amount(data.get("minIncrement")),
            expiry_time=int(data.get("expiryTime", 0)),
            seller=data.get("seller", ""),
            highest_bid=_amount(data.get("highestBid")),
            highest_bidder=data.get("highestBidder"),
            is_active=bool(data.get("isActive", False)),
            is_settled=bool(data.get("isSettled", False)),
            created_at=data.get("createdAt"),
            updated_at=data.get("updatedAt"),
            transaction_hash=data.get("transactionHash"),
            block_number=data.get("blockNumber"),
            settlement_tx_hash=data.get("settlementTxHash"),
            settled_at=data.get("settledAt"),
        )

    def __repr__(self):
        return (f"Auction(id={self.id}, ticket={self.ticket_id}, expiry={self.expiry_time}, "
                f"active={self.is_active}, settled={self.is_settled})")


@dataclass
class SettlementQueueItem:
    """An auction waiting for (or retrying) settlement."""
    auction_id: str
    status: QueueStatus = QueueStatus.PENDING
    attempt_count: int = 0
    next_attempt_at: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def is_eligible(self, now: datetime, max_attempts: int) -> bool:
        """Pending, past its backoff gate and still within the attempt budget."""
        if self.status != QueueStatus.PENDING or self.attempt_count >= max_attempts:
            return False
        if self.next_attempt_at is None:
            return True
        return parse_timestamp(self.next_attempt_at) <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "auctionId": self.auction_id,
            "status": self.status.value,
            "attemptCount": self.attempt_count,
            "nextAttemptAt": self.next_attempt_at,
            "errorMessage": self.error_message,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SettlementQueueItem":
        return cls(
            auction_id=str(data["auctionId"]),
            status=QueueStatus(data.get("status", QueueStatus.PENDING.value)),
            attempt_count=int(data.get("attemptCount", 0)),
            next_attempt_at=data.get("nextAttemptAt"),
            error_message=data.get("errorMessage"),
            created_at=data.get("createdAt"),
            updated_at=data.get("updatedAt"),
        )


@dataclass
class SchedulerConfig:
    """Persisted scheduler configuration singleton."""
    last_processed_block: int = 0
    settlement_interval_ms: int = 60000
    event_poll_interval_ms: int = 30000
    max_settlement_attempts: int = 5
    coordinator_address: Optional[str] = None
    contract_address: Optional[str] = None
    rpc_url: Optional[str] = None
    settlement_enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastProcessedBlock": self.last_processed_block,
            "settlementIntervalMs": self.settlement_interval_ms,
            "eventPollIntervalMs": self.event_poll_interval_ms,
            "maxSettlementAttempts": self.max_settlement_attempts,
            "coordinatorAddress": self.coordinator_address,
            "contractAddress": self.contract_address,
            "rpcUrl": self.rpc_url,
            "settlementEnabled": self.settlement_enabled,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SchedulerConfig":
        defaults = cls()
        return cls(
            last_processed_block=int(data.get("lastProcessedBlock", defaults.last_processed_block)),
            settlement_interval_ms=int(data.get("settlementIntervalMs", defaults.settlement_interval_ms)),
            event_poll_interval_ms=int(data.get("eventPollIntervalMs", defaults.event_poll_interval_ms)),
            max_settlement_attempts=int(data.get("maxSettlementAttempts", defaults.max_settlement_attempts)),
            coordinator_address=data.get("coordinatorAddress"),
            contract_address=data.get("contractAddress"),
            rpc_url=data.get("rpcUrl"),
            settlement_enabled=bool(data.get("settlementEnabled", defaults.settlement_enabled)),
        )


@dataclass
class LogEntry:
    """One entry of the persisted settlement log."""
    timestamp: str
    level: LogLevel
    message: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "level": self.level.value,
            "message": self.message,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogEntry":
        return cls(
            timestamp=data.get("timestamp", ""),
            level=LogLevel(data.get("level", LogLevel.INFO.value)),
            message=data.get("message", ""),
            data=data.get("data") or {},
        )


@dataclass
class LedgerEvent:
    """A decoded TicketAuction event with its position in the chain."""
    name: str
    args: Dict[str, Any]
    block_number: Optional[int] = None
    log_index: Optional[int] = None
    transaction_hash: Optional[str] = None


@dataclass
class FeeEstimate:
    """Fee parameters used to price a settlement transaction."""
    gas_price: int
    max_priority_fee: Optional[int] = None
