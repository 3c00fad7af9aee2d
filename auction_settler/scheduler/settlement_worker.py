"""
SettlementWorker - drives expired auctions to on-chain settlement.

Each cycle discovers auctions past expiry, enqueues them, then works through
a small batch of eligible queue items one at a time. Items run sequentially
so the single signing account never races itself on nonces.

Failed attempts back off exponentially (1, 2, 4, 8, 16... minutes, capped at
an hour) until the attempt budget is spent, after which the item is parked
as `failed` for an operator to retry with `settle_now`.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..exceptions import StoreError
from ..infrastructure.auction_data import (
    LogLevel,
    QueueStatus,
    SettlementQueueItem,
    format_timestamp,
    utc_now,
)
from ..infrastructure.settlement_store import SettlementStore

logger = logging.getLogger(__name__)

MAX_BACKOFF_MINUTES = 60


class SettlementWorker:
    """Discovers expired auctions and settles them with bounded retries."""

    def __init__(
        self,
        store: SettlementStore,
        ledger,
        batch_size: int = 5,
        verify_before_settle: bool = True,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Initialize the worker.

        Args:
            store: Settlement store holding auctions and the queue
            ledger: Ledger client used for fee estimates and settle transactions
            batch_size: Maximum queue items attempted per cycle
            verify_before_settle: Read the on-chain auction first and skip it if already settled
            clock: Source of the current UTC time
        """
        self.store = store
        self.ledger = ledger
        self.batch_size = batch_size
        self.verify_before_settle = verify_before_settle
        self.clock = clock

    @staticmethod
    def backoff_minutes(attempt_count: int) -> int:
        """Delay before the next attempt, given the attempts made before the failed one."""
        return min(MAX_BACKOFF_MINUTES, 2 ** attempt_count)

    @property
    def max_attempts(self) -> int:
        return self.store.get_config().max_settlement_attempts

    def discover_expired(self) -> List[str]:
        """
        Enqueue every expired, active, unsettled auction not already queued.

        Returns:
            Ids of the auctions added to the queue
        """
        now = self.clock()
        expired = self.store.get_expired_auctions(int(now.timestamp()))
        if not expired:
            return []

        queued = {item.auction_id for item in self.store.get_queue()}
        added = []
        for auction in expired:
            if auction.id in queued:
                continue
            if self.store.add_to_queue(auction.id, now=now):
                added.append(auction.id)

        if added:
            logger.info(f"Found {len(added)} newly expired auctions: {', '.join(added)}")
        return added

    def select_eligible(self) -> List[SettlementQueueItem]:
        """Pending items past their backoff gate, oldest first, capped to the batch size."""
        return self.store.get_pending_settlements(self.clock(), self.max_attempts, limit=self.batch_size)

    async def run_cycle(self, should_continue: Optional[Callable[[], bool]] = None) -> Dict[str, Any]:
        """
        Run one discovery + settlement cycle.

        Args:
            should_continue: Checked before each item; returning False leaves
                the rest of the batch for a later cycle

        Returns:
            Summary with discovered, attempted, settled and failed counts
        """
        summary: Dict[str, Any] = {"discovered": 0, "attempted": 0, "settled": 0, "failed": 0, "error": None}

        try:
            summary["discovered"] = len(self.discover_expired())
            batch = self.select_eligible()
            if not batch:
                return summary

            logger.info(f"Processing {len(batch)} pending settlements")
            for item in batch:
                if should_continue is not None and not should_continue():
                    logger.info("Stop requested, leaving remaining settlements for the next run")
                    break

                summary["attempted"] += 1
                if await self.attempt_settlement(item):
                    summary["settled"] += 1
                else:
                    summary["failed"] += 1

        except StoreError as e:
            logger.error(f"Settlement cycle aborted: {e}")
            summary["error"] = str(e)

        return summary

    async def attempt_settlement(self, item: SettlementQueueItem) -> bool:
        """
        Make one settlement attempt for a queue item.

        Returns:
            True if the auction ended up settled, False if the attempt failed

        Raises:
            StoreError: If the store cannot record the outcome. The item is
                put back to `pending` (attempt still counted) so the next
                cycle retries it.
        """
        try:
            return await self._attempt(item)
        except StoreError:
            self._release(item.auction_id)
            raise

    def _release(self, auction_id: str):
        try:
            self.store.update_queue_item(auction_id, status=QueueStatus.PENDING)
        except StoreError as e:
            # Still stranded; requeue_interrupted recovers it on the next start
            logger.error(f"Could not release auction {auction_id} back to pending: {e}")

    async def _attempt(self, item: SettlementQueueItem) -> bool:
        auction_id = item.auction_id
        previous_attempts = item.attempt_count

        self.store.update_queue_item(
            auction_id,
            status=QueueStatus.PROCESSING,
            attempt_count=previous_attempts + 1,
        )
        logger.info(f"Settling auction {auction_id} (attempt {previous_attempts + 1})")

        try:
            if self.verify_before_settle:
                snapshot = await self.ledger.get_auction(auction_id)
                if snapshot.is_settled:
                    self._mark_settled(auction_id, None)
                    self.store.remove_from_queue(auction_id)
                    self.store.log(LogLevel.INFO, "Auction already settled on-chain", {"auctionId": auction_id})
                    return True

            fee = await self.ledger.get_fee_estimate()
            pending = await self.ledger.settle(auction_id, fee=fee)
            self.store.log(LogLevel.INFO, "Settlement transaction sent", {
                "auctionId": auction_id,
                "txHash": pending.tx_hash,
                "attempt": previous_attempts + 1,
            })

            receipt = await pending.wait()

        except StoreError:
            raise
        except Exception as e:
            self._record_failure(auction_id, previous_attempts, e)
            return False

        self._mark_settled(auction_id, receipt["transactionHash"])
        self.store.remove_from_queue(auction_id)
        self.store.log(LogLevel.INFO, "Auction settled successfully", {
            "auctionId": auction_id,
            "txHash": receipt["transactionHash"],
            "blockNumber": receipt["blockNumber"],
            "gasUsed": receipt["gasUsed"],
        })
        return True

    def _mark_settled(self, auction_id: str, tx_hash: Optional[str]):
        existing = self.store.get_auction(auction_id)
        if existing is None:
            return
        self.store.update_auction(
            auction_id,
            is_settled=True,
            is_active=False,
            settlement_tx_hash=existing.settlement_tx_hash or tx_hash,
            settled_at=existing.settled_at or format_timestamp(self.clock()),
        )

    def _record_failure(self, auction_id: str, previous_attempts: int, error: Exception):
        backoff = self.backoff_minutes(previous_attempts)
        next_attempt_at = format_timestamp(self.clock() + timedelta(minutes=backoff))
        terminal = previous_attempts >= self.max_attempts - 1

        data = {
            "auctionId": auction_id,
            "attempt": previous_attempts + 1,
            "error": str(error),
        }
        if terminal:
            self.store.log(LogLevel.ERROR, "Settlement failed - max attempts reached", data)
        else:
            data.update({"backoffMinutes": backoff, "nextAttemptAt": next_attempt_at})
            self.store.log(LogLevel.WARN, "Settlement failed - will retry", data)

        self.store.update_queue_item(
            auction_id,
            status=QueueStatus.FAILED if terminal else QueueStatus.PENDING,
            next_attempt_at=next_attempt_at,
            error_message=str(error),
        )

    async def settle_now(self, auction_id: str) -> Dict[str, Any]:
        """
        Force one settlement attempt outside the normal cycle.

        A failed or partially retried item is reset to a fresh attempt budget.

        Returns:
            Dictionary with success, auction_id and tx_hash or error
        """
        auction_id = str(auction_id)
        auction = self.store.get_auction(auction_id)
        if auction is None:
            return {"success": False, "auction_id": auction_id, "error": f"Auction {auction_id} not found"}
        if auction.is_settled:
            return {"success": False, "auction_id": auction_id, "error": f"Auction {auction_id} is already settled"}

        self.store.add_to_queue(auction_id, now=self.clock())
        item = self.store.get_queue_item(auction_id)
        if item.status == QueueStatus.PROCESSING:
            return {"success": False, "auction_id": auction_id, "error": "Settlement already in progress"}

        item = self.store.update_queue_item(
            auction_id,
            status=QueueStatus.PENDING,
            attempt_count=0,
            next_attempt_at=format_timestamp(self.clock()),
            error_message=None,
        )
        self.store.log(LogLevel.INFO, "Manual settlement requested", {"auctionId": auction_id})

        if await self.attempt_settlement(item):
            settled = self.store.get_auction(auction_id)
            return {"success": True, "auction_id": auction_id, "tx_hash": settled.settlement_tx_hash}

        failed = self.store.get_queue_item(auction_id)
        return {"success": False, "auction_id": auction_id, "error": failed.error_message if failed else None}

    def requeue_interrupted(self) -> List[str]:
        """Return items left in `processing` by a crash to `pending`."""
        recovered = self.store.requeue_interrupted()
        if recovered:
            self.store.log(LogLevel.WARN, "Requeued interrupted settlements", {"auctionIds": recovered})
        return recovered
