"""
Durable JSON store for mirrored auctions, the settlement queue,
the scheduler config and the settlement log.

Each collection is a single JSON document that is always read and written
whole. Writes go through a temp file and os.replace so a crash never leaves
a torn document behind. Methods are synchronous: under asyncio a
read-modify-write here cannot interleave with another task.
"""

import json
import logging
import os
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..exceptions import StoreError
from .auction_data import (
    Auction,
    LogEntry,
    LogLevel,
    QueueStatus,
    SchedulerConfig,
    SettlementQueueItem,
    format_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

AUCTIONS = "auctions"
QUEUE = "queue"
CONFIG = "config"
LOG = "log"

COLLECTION_FILES = {
    AUCTIONS: "auctions.json",
    QUEUE: "settlement-queue.json",
    CONFIG: "config.json",
    LOG: "settlement-log.json",
}

DEFAULT_LOG_RETENTION = 1000

_LOG_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class SettlementStore:
    """
    File-backed store owning the four scheduler collections.

    I/O failures and corrupt documents raise StoreError; callers treat that
    as fatal for the current cycle.
    """

    def __init__(
        self,
        data_dir: Union[str, Path] = "./settlement-data",
        log_retention: int = DEFAULT_LOG_RETENTION,
        config_defaults: Optional[Dict[str, Any]] = None
    ):
        self.data_dir = Path(data_dir)
        self.log_retention = log_retention
        self.config_defaults = config_defaults or {}

    def path(self, collection: str) -> Path:
        """Path of a collection's backing document."""
        return self.data_dir / COLLECTION_FILES[collection]

    def init(self):
        """Create the data directory and any missing collections with defaults."""
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot create data directory {self.data_dir}: {e}") from e

        defaults = {
            AUCTIONS: {},
            QUEUE: [],
            CONFIG: SchedulerConfig(**self.config_defaults).to_dict(),
            LOG: [],
        }
        for collection, default in defaults.items():
            if not self.path(collection).exists():
                self.write_collection(collection, default)

        logger.info(f"Settlement store initialized at {self.data_dir}")

    # ------------------------------------------------------------------
    # Whole-collection access
    # ------------------------------------------------------------------

    def read_collection(self, collection: str) -> Any:
        """Read an entire collection."""
        path = self.path(collection)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise StoreError(f"Corrupt {collection} document", {"path": str(path), "error": str(e)}) from e
        except OSError as e:
            raise StoreError(f"Cannot read {collection}", {"path": str(path), "error": str(e)}) from e

    def write_collection(self, collection: str, data: Any):
        """Atomically replace an entire collection."""
        path = self.path(collection)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            raise StoreError(f"Cannot write {collection}", {"path": str(path), "error": str(e)}) from e

    # ------------------------------------------------------------------
    # Auctions
    # ------------------------------------------------------------------

    def get_all_auctions(self) -> Dict[str, Auction]:
        """All mirrored auctions keyed by auction id."""
        return {
            auction_id: Auction.from_dict(doc)
            for auction_id, doc in self.read_collection(AUCTIONS).items()
        }

    def get_auction(self, auction_id: str) -> Optional[Auction]:
        doc = self.read_collection(AUCTIONS).get(str(auction_id))
        return Auction.from_dict(doc) if doc else None

    def add_auction(self, auction: Auction) -> Auction:
        """Insert or replace an auction, keeping its original createdAt."""
        auctions = self.read_collection(AUCTIONS)
        now = format_timestamp(utc_now())
        existing = auctions.get(auction.id)

        stored = replace(
            auction,
            created_at=existing.get("createdAt") if existing else (auction.created_at or now),
            updated_at=now,
        )
        stored = self._enforce_invariants(stored)

        auctions[stored.id] = stored.to_dict()
        self.write_collection(AUCTIONS, auctions)
        logger.debug(f"Stored auction {stored.id}")
        return stored

    def update_auction(self, auction_id: str, **changes) -> Optional[Auction]:
        """
        Apply field changes to a stored auction.

        Changes that leave the record as it is are not written, so replaying
        an event does not even touch updatedAt.

        Returns:
            The updated auction, or None if the auction is unknown (no-op)
        """
        auctions = self.read_collection(AUCTIONS)
        doc = auctions.get(str(auction_id))
        if doc is None:
            return None

        current = Auction.from_dict(doc)
        updated = self._enforce_invariants(replace(current, **changes))
        if updated == current:
            return current
        updated = replace(updated, updated_at=format_timestamp(utc_now()))

        auctions[updated.id] = updated.to_dict()
        self.write_collection(AUCTIONS, auctions)
        logger.debug(f"Updated auction {auction_id}: {sorted(changes)}")
        return updated

    def get_expired_auctions(self, now: int) -> List[Auction]:
        """Auctions past expiry that are still active and unsettled."""
        return [auction for auction in self.get_all_auctions().values() if auction.needs_settlement(now)]

    @staticmethod
    def _enforce_invariants(auction: Auction) -> Auction:
        # A settled auction is never active
        if auction.is_settled and auction.is_active:
            return replace(auction, is_active=False)
        return auction

    # ------------------------------------------------------------------
    # Settlement queue
    # ------------------------------------------------------------------

    def get_queue(self) -> List[SettlementQueueItem]:
        """The settlement queue in insertion order."""
        return [SettlementQueueItem.from_dict(doc) for doc in self.read_collection(QUEUE)]

    def get_queue_item(self, auction_id: str) -> Optional[SettlementQueueItem]:
        for item in self.get_queue():
            if item.auction_id == str(auction_id):
                return item
        return None

    def add_to_queue(self, auction_id: str, now: Optional[datetime] = None) -> bool:
        """
        Enqueue an auction for settlement.

        Returns:
            True if a new item was created, False if it was already queued
        """
        auction_id = str(auction_id)
        queue = self.read_collection(QUEUE)

        if any(doc.get("auctionId") == auction_id for doc in queue):
            self.log(LogLevel.INFO, f"Auction {auction_id} already in settlement queue", {"auctionId": auction_id})
            return False

        timestamp = format_timestamp(now or utc_now())
        item = SettlementQueueItem(
            auction_id=auction_id,
            status=QueueStatus.PENDING,
            attempt_count=0,
            next_attempt_at=timestamp,
            created_at=timestamp,
            updated_at=timestamp,
        )
        queue.append(item.to_dict())
        self.write_collection(QUEUE, queue)
        self.log(LogLevel.INFO, f"Added auction {auction_id} to settlement queue", {"auctionId": auction_id})
        return True

    def update_queue_item(self, auction_id: str, **changes) -> Optional[SettlementQueueItem]:
        """Apply field changes to a queue item; no-op (None) if absent."""
        queue = self.read_collection(QUEUE)
        for index, doc in enumerate(queue):
            if doc.get("auctionId") == str(auction_id):
                updated = replace(
                    SettlementQueueItem.from_dict(doc),
                    **changes,
                    updated_at=format_timestamp(utc_now())
                )
                queue[index] = updated.to_dict()
                self.write_collection(QUEUE, queue)
                return updated
        return None

    def get_pending_settlements(
        self,
        now: datetime,
        max_attempts: int,
        limit: Optional[int] = None
    ) -> List[SettlementQueueItem]:
        """Items eligible for a settlement attempt, in insertion order."""
        eligible = [item for item in self.get_queue() if item.is_eligible(now, max_attempts)]
        return eligible[:limit] if limit is not None else eligible

    def remove_from_queue(self, auction_id: str) -> bool:
        """Remove an item; returns False (no-op) when it was not queued."""
        queue = self.read_collection(QUEUE)
        remaining = [doc for doc in queue if doc.get("auctionId") != str(auction_id)]
        if len(remaining) == len(queue):
            return False
        self.write_collection(QUEUE, remaining)
        return True

    def prune_completed(self) -> int:
        """Drop items marked completed. Returns how many were removed."""
        queue = self.read_collection(QUEUE)
        remaining = [doc for doc in queue if doc.get("status") != QueueStatus.COMPLETED.value]
        removed = len(queue) - len(remaining)
        if removed:
            self.write_collection(QUEUE, remaining)
        return removed

    def requeue_interrupted(self) -> List[str]:
        """
        Return items stranded in `processing` (process died mid-attempt) to `pending`.

        The attempt that was interrupted stays counted.
        """
        queue = self.read_collection(QUEUE)
        recovered = []
        now = format_timestamp(utc_now())
        for doc in queue:
            if doc.get("status") == QueueStatus.PROCESSING.value:
                doc["status"] = QueueStatus.PENDING.value
                doc["updatedAt"] = now
                recovered.append(doc["auctionId"])
        if recovered:
            self.write_collection(QUEUE, queue)
        return recovered

    # ------------------------------------------------------------------
    # Scheduler config
    # ------------------------------------------------------------------

    def get_config(self) -> SchedulerConfig:
        return SchedulerConfig.from_dict(self.read_collection(CONFIG))

    def update_config(self, **changes) -> SchedulerConfig:
        """Apply field changes to the persisted scheduler config."""
        updated = replace(self.get_config(), **changes)
        self.write_collection(CONFIG, updated.to_dict())
        return updated

    def advance_checkpoint(self, block: int) -> int:
        """
        Move lastProcessedBlock forward to `block`.

        Never moves it backwards; returns the checkpoint in effect afterwards.
        """
        current = self.get_config()
        if block < current.last_processed_block:
            logger.warning(f"Refusing to move checkpoint back from {current.last_processed_block} to {block}")
            return current.last_processed_block
        if block != current.last_processed_block:
            self.update_config(last_processed_block=block)
        return block

    # ------------------------------------------------------------------
    # Settlement log
    # ------------------------------------------------------------------

    def log(self, level: Union[LogLevel, str], message: str, data: Optional[Dict[str, Any]] = None) -> LogEntry:
        """Append a structured entry to the capped settlement log."""
        level = LogLevel(level)
        entry = LogEntry(
            timestamp=format_timestamp(utc_now()),
            level=level,
            message=message,
            data=data or {},
        )

        logs = self.read_collection(LOG)
        logs.append(entry.to_dict())
        if len(logs) > self.log_retention:
            del logs[:len(logs) - self.log_retention]
        self.write_collection(LOG, logs)

        logger.log(_LOG_LEVELS[level], f"{message} {entry.data}" if entry.data else message)
        return entry

    def get_logs(self, count: Optional[int] = None) -> List[LogEntry]:
        """Most recent log entries, oldest first."""
        logs = self.read_collection(LOG)
        if count is not None:
            logs = logs[-count:] if count > 0 else []
        return [LogEntry.from_dict(doc) for doc in logs]

    def trim_logs(self, keep: int) -> int:
        """Keep only the newest `keep` entries. Returns how many were dropped."""
        logs = self.read_collection(LOG)
        dropped = max(0, len(logs) - keep)
        if dropped:
            self.write_collection(LOG, logs[dropped:])
        return dropped
