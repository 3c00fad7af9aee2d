"""
EventReconciler - mirrors TicketAuction lifecycle events into the settlement store.

The ledger only answers "events of type X in blocks [from, to]" queries, so the
reconciler keeps a block checkpoint (lastProcessedBlock) in the store and on
every poll:

1. Reads the chain head.
2. Seeds the checkpoint to head-1 on first run (history is not replayed).
3. Queries every known event type for the unprocessed range, merges them
   into chain order (block number, log index) and applies them.
4. Advances the checkpoint only once the whole range applied cleanly.

Any failure leaves the checkpoint where it was, so the range is replayed on
the next poll. Every handler is therefore idempotent.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List

from ..exceptions import StoreError
from ..infrastructure.auction_data import Auction, LedgerEvent, LogLevel, format_timestamp, utc_now
from ..infrastructure.settlement_store import SettlementStore

logger = logging.getLogger(__name__)

# Also the tie-break order for events that carry no chain position
EVENT_TYPES = (
    "AuctionCreated",
    "BidPlaced",
    "BuyNowExecuted",
    "AuctionSettled",
    "AuctionRefunded",
    "CoordinatorUpdated",
)
EVENT_RANK = {name: rank for rank, name in enumerate(EVENT_TYPES)}


def order_events(events: Iterable[LedgerEvent]) -> List[LedgerEvent]:
    """Sort events into chain order: block number, then log index, then type."""
    return sorted(
        events,
        key=lambda event: (
            event.block_number or 0,
            event.log_index or 0,
            EVENT_RANK.get(event.name, len(EVENT_RANK)),
        )
    )


class EventReconciler:
    """Applies ledger events to the store, exactly once per checkpointed range."""

    def __init__(
        self,
        store: SettlementStore,
        ledger,
        max_block_range: int = 2000,
        error_delay: float = 5.0,
        event_types: Iterable[str] = EVENT_TYPES,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.store = store
        self.ledger = ledger
        self.max_block_range = max_block_range
        self.error_delay = error_delay
        self.event_types = tuple(event_types)
        self._sleep = sleep

        self._handlers: Dict[str, Callable[[LedgerEvent], None]] = {
            "AuctionCreated": self._on_auction_created,
            "BidPlaced": self._on_bid_placed,
            "BuyNowExecuted": self._on_buy_now_executed,
            "AuctionSettled": self._on_auction_settled,
            "AuctionRefunded": self._on_auction_refunded,
            "CoordinatorUpdated": self._on_coordinator_updated,
        }

    @property
    def last_processed_block(self) -> int:
        return self.store.get_config().last_processed_block

    async def poll(self) -> Dict[str, Any]:
        """
        Run one reconciliation tick.

        Returns:
            Dictionary with from_block, to_block, events_applied and any error
        """
        result: Dict[str, Any] = {"from_block": None, "to_block": None, "events_applied": 0, "error": None}

        try:
            head = await self.ledger.get_block_number()
            checkpoint = self.store.get_config().last_processed_block

            if checkpoint == 0:
                seeded = self.store.advance_checkpoint(max(head - 1, 0))
                self.store.log(LogLevel.INFO, f"Starting event polling from block {seeded}", {"block": seeded})
                result["to_block"] = seeded
                return result

            if head <= checkpoint:
                logger.debug(f"No new blocks. Current: {head}, last processed: {checkpoint}")
                return result

            from_block = checkpoint + 1
            result["from_block"] = from_block
            logger.info(f"Polling events from block {from_block} to {head}")

            while from_block <= head:
                to_block = min(head, from_block + self.max_block_range - 1)
                events = await self._fetch_range(from_block, to_block)

                applied = self.apply_events(events)

                self.store.advance_checkpoint(to_block)
                result["to_block"] = to_block
                result["events_applied"] += applied
                from_block = to_block + 1

            if result["events_applied"]:
                logger.info(f"Applied {result['events_applied']} events up to block {result['to_block']}")
            else:
                logger.info("No new events found in this block range")

        except Exception as e:
            result["error"] = str(e)
            logger.error(f"Error polling for events: {e}")
            if not isinstance(e, StoreError):
                try:
                    self.store.log(LogLevel.ERROR, "Error polling for events", {
                        "error": str(e),
                        "fromBlock": result["from_block"],
                    })
                except StoreError as log_error:
                    logger.error(f"Could not record polling error: {log_error}")
            # Checkpoint untouched: the same range is retried after a short pause
            await self._sleep(self.error_delay)

        return result

    async def _fetch_range(self, from_block: int, to_block: int) -> List[LedgerEvent]:
        events: List[LedgerEvent] = []
        for event_type in self.event_types:
            events.extend(await self.ledger.query_events(event_type, from_block, to_block))
        return events

    def apply_event(self, event: LedgerEvent) -> bool:
        """Apply a single decoded event. Returns False for unknown event types."""
        handler = self._handlers.get(event.name)
        if handler is None:
            logger.warning(f"Ignoring unsupported event {event.name}")
            return False
        handler(event)
        return True

    def apply_events(self, events: Iterable[LedgerEvent]) -> int:
        """Apply a batch of events in chain order. Returns how many were handled."""
        applied = 0
        for event in order_events(events):
            if self.apply_event(event):
                applied += 1
        return applied

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _on_auction_created(self, event: LedgerEvent):
        args = event.args
        auction_id = str(args["auctionId"])

        if self.store.get_auction(auction_id) is not None:
            # Replayed range; the record may already carry later bids or settlement
            logger.debug(f"AuctionCreated for {auction_id} already applied")
            return

        auction = Auction(
            id=auction_id,
            ticket_id=str(args["ticketId"]),
            ticket_count=int(args["ticketCount"]),
            start_price=int(args["startPrice"]),
            buy_now_price=int(args["buyNowPrice"]),
            min_increment=int(args["minIncrement"]),
            expiry_time=int(args["expiryTime"]),
            seller=args["seller"],
            highest_bid=0,
            highest_bidder=None,
            is_active=True,
            is_settled=False,
            transaction_hash=event.transaction_hash,
            block_number=event.block_number,
        )
        self.store.add_auction(auction)
        self.store.log(LogLevel.INFO, "New auction detected", {
            "auctionId": auction_id,
            "ticketId": auction.ticket_id,
            "expiryTime": auction.expiry_time,
            "seller": auction.seller,
        })

    def _on_bid_placed(self, event: LedgerEvent):
        args = event.args
        auction_id = str(args["auctionId"])

        updated = self.store.update_auction(
            auction_id,
            highest_bid=int(args["bidAmount"]),
            highest_bidder=args["bidder"],
        )
        if updated is None:
            logger.warning(f"BidPlaced for unknown auction {auction_id}")
            return

        self.store.log(LogLevel.INFO, "Bid placed", {
            "auctionId": auction_id,
            "bidder": args["bidder"],
            "bidAmount": str(args["bidAmount"]),
        })

    def _on_buy_now_executed(self, event: LedgerEvent):
        args = event.args
        auction_id = str(args["auctionId"])

        if self._close_auction(
            auction_id,
            event,
            highest_bid=int(args["buyNowPrice"]),
            highest_bidder=args["buyer"],
        ):
            self.store.log(LogLevel.INFO, "Auction bought at buy-now price", {
                "auctionId": auction_id,
                "buyer": args["buyer"],
                "buyNowPrice": str(args["buyNowPrice"]),
            })

    def _on_auction_settled(self, event: LedgerEvent):
        args = event.args
        auction_id = str(args["auctionId"])

        if self._close_auction(auction_id, event):
            self.store.log(LogLevel.INFO, "Auction settled", {
                "auctionId": auction_id,
                "winner": args["winner"],
                "winningBid": str(args["winningBid"]),
                "txHash": event.transaction_hash,
            })

    def _on_auction_refunded(self, event: LedgerEvent):
        args = event.args
        auction_id = str(args["auctionId"])

        if self._close_auction(auction_id, event):
            self.store.log(LogLevel.INFO, "Auction refunded", {
                "auctionId": auction_id,
                "seller": args["seller"],
                "txHash": event.transaction_hash,
            })

    def _on_coordinator_updated(self, event: LedgerEvent):
        new_coordinator = event.args["newCoordinator"]
        if self.store.get_config().coordinator_address == new_coordinator:
            return
        self.store.update_config(coordinator_address=new_coordinator)
        self.store.log(LogLevel.WARN, "Coordinator updated on-chain", {
            "oldCoordinator": event.args.get("oldCoordinator"),
            "newCoordinator": new_coordinator,
        })

    def _close_auction(self, auction_id: str, event: LedgerEvent, **changes) -> bool:
        """Mark an auction settled and inactive and drop it from the queue."""
        removed = self.store.remove_from_queue(auction_id)

        existing = self.store.get_auction(auction_id)
        if existing is None:
            logger.warning(f"{event.name} for unknown auction {auction_id}")
            return False

        self.store.update_auction(
            auction_id,
            is_active=False,
            is_settled=True,
            settlement_tx_hash=existing.settlement_tx_hash or event.transaction_hash,
            settled_at=existing.settled_at or format_timestamp(utc_now()),
            **changes
        )
        if removed:
            logger.info(f"Removed auction {auction_id} from settlement queue ({event.name})")
        return True
