"""
Tests for EventReconciler.

Prerequisites:
- None (fake ledger, temporary data directory)

Run with: pytest auction_settler/tests/test_event_reconciler.py
"""

import asyncio
import logging
import unittest
from tempfile import TemporaryDirectory
from unittest.mock import AsyncMock, patch

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

from auction_settler.exceptions import LedgerError, StoreError
from auction_settler.infrastructure.auction_data import LedgerEvent, LogLevel
from auction_settler.infrastructure.settlement_store import SettlementStore
from auction_settler.scheduler.event_reconciler import EventReconciler, order_events

from fakes import (
    BIDDER,
    SELLER,
    FakeLedgerClient,
    bid_event,
    created_event,
    settled_event,
)


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class ReconcilerTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = TemporaryDirectory()
        self.store = SettlementStore(self.tmp.name)
        self.store.init()
        self.ledger = FakeLedgerClient(block_number=20)
        self.sleep = AsyncMock()
        self.reconciler = EventReconciler(self.store, self.ledger, error_delay=5.0, sleep=self.sleep)

    def tearDown(self):
        self.tmp.cleanup()


class TestPolling(ReconcilerTestCase):

    def test_first_poll_seeds_checkpoint(self):
        """With no checkpoint, polling starts from head-1 without replaying history."""
        self.ledger.events = [created_event("1", block=5)]

        result = run_async(self.reconciler.poll())

        self.assertEqual(self.store.get_config().last_processed_block, 19)
        self.assertEqual(result["to_block"], 19)
        self.assertEqual(self.ledger.query_calls, [])
        self.assertIsNone(self.store.get_auction("1"))
        print("\n✓ Checkpoint seeded to head-1")

    def test_seed_on_genesis_head(self):
        self.ledger.block_number = 0
        run_async(self.reconciler.poll())
        self.assertEqual(self.store.get_config().last_processed_block, 0)

    def test_poll_applies_new_events(self):
        self.store.advance_checkpoint(9)
        self.ledger.events = [
            created_event("1", block=10),
            bid_event("1", 2_000_000, block=15),
        ]

        result = run_async(self.reconciler.poll())

        auction = self.store.get_auction("1")
        self.assertEqual(auction.highest_bid, 2_000_000)
        self.assertEqual(auction.highest_bidder, BIDDER)
        self.assertEqual(auction.seller, SELLER)
        self.assertEqual(auction.block_number, 10)
        self.assertEqual(result["events_applied"], 2)
        self.assertEqual(self.store.get_config().last_processed_block, 20)

        queried = {(start, end) for _, start, end in self.ledger.query_calls}
        self.assertEqual(queried, {(10, 20)})
        print("\n✓ Events applied and checkpoint advanced to head")

    def test_no_new_blocks(self):
        self.store.advance_checkpoint(20)

        run_async(self.reconciler.poll())

        self.assertEqual(self.ledger.query_calls, [])
        self.assertEqual(self.store.get_config().last_processed_block, 20)

    def test_query_error_keeps_checkpoint(self):
        """A failed tick leaves the checkpoint alone and pauses before the next one."""
        self.store.advance_checkpoint(9)
        self.ledger.query_error = LedgerError("rpc timeout")

        result = run_async(self.reconciler.poll())

        self.assertIn("rpc timeout", result["error"])
        self.assertEqual(self.store.get_config().last_processed_block, 9)
        self.sleep.assert_awaited_once_with(5.0)

        errors = [entry for entry in self.store.get_logs() if entry.level == LogLevel.ERROR]
        self.assertEqual(errors[-1].message, "Error polling for events")
        print("\n✓ Failed poll does not advance checkpoint")

    def test_unwritable_log_still_pauses(self):
        """If the error log entry cannot be written, the poll still returns and pauses."""
        self.store.advance_checkpoint(9)
        self.ledger.query_error = LedgerError("rpc timeout")

        with patch.object(self.store, "log", side_effect=StoreError("read-only filesystem")):
            result = run_async(self.reconciler.poll())

        self.assertIn("rpc timeout", result["error"])
        self.assertEqual(self.store.get_config().last_processed_block, 9)
        self.sleep.assert_awaited_once_with(5.0)

    def test_unsupported_events_are_not_counted(self):
        reconciler = EventReconciler(
            self.store,
            self.ledger,
            event_types=("AuctionCreated", "Transfer"),
            sleep=self.sleep
        )
        self.store.advance_checkpoint(9)
        self.ledger.events = [
            created_event("1", block=10),
            LedgerEvent(name="Transfer", args={}, block_number=12),
        ]

        result = run_async(reconciler.poll())

        self.assertEqual(result["events_applied"], 1)
        self.assertIsNotNone(self.store.get_auction("1"))
        self.assertEqual(self.store.get_config().last_processed_block, 20)

    def test_block_height_error_keeps_checkpoint(self):
        self.store.advance_checkpoint(9)
        self.ledger.block_error = LedgerError("connection refused")

        result = run_async(self.reconciler.poll())

        self.assertIsNotNone(result["error"])
        self.assertEqual(self.store.get_config().last_processed_block, 9)

    def test_failed_range_is_replayed(self):
        """Events from a failed tick are applied on the next one."""
        self.store.advance_checkpoint(9)
        self.ledger.events = [created_event("1", block=10)]
        self.ledger.query_error = LedgerError("flaky")
        run_async(self.reconciler.poll())
        self.assertIsNone(self.store.get_auction("1"))

        self.ledger.query_error = None
        run_async(self.reconciler.poll())

        self.assertIsNotNone(self.store.get_auction("1"))
        self.assertEqual(self.store.get_config().last_processed_block, 20)

    def test_large_range_is_chunked(self):
        self.reconciler.max_block_range = 10
        self.store.advance_checkpoint(100)
        self.ledger.block_number = 125
        self.ledger.events = [created_event("1", block=112), bid_event("1", 3_000_000, block=124)]

        run_async(self.reconciler.poll())

        ranges = sorted({(start, end) for _, start, end in self.ledger.query_calls})
        self.assertEqual(ranges, [(101, 110), (111, 120), (121, 125)])
        self.assertEqual(self.store.get_config().last_processed_block, 125)
        self.assertEqual(self.store.get_auction("1").highest_bid, 3_000_000)

    def test_chunk_failure_keeps_completed_chunks(self):
        self.reconciler.max_block_range = 10
        self.store.advance_checkpoint(100)
        self.ledger.block_number = 125
        self.ledger.query_error = LedgerError("range too large")
        self.ledger.query_error_from_block = 111

        run_async(self.reconciler.poll())

        self.assertEqual(self.store.get_config().last_processed_block, 110)


class TestOrdering(unittest.TestCase):

    def test_events_sorted_by_chain_position(self):
        events = [
            settled_event("9", block=12, log_index=0),
            bid_event("9", 5, block=11, log_index=3),
            created_event("9", block=11, log_index=1),
        ]
        ordered = [event.name for event in order_events(events)]
        self.assertEqual(ordered, ["AuctionCreated", "BidPlaced", "AuctionSettled"])

    def test_type_rank_breaks_ties_without_positions(self):
        events = [
            settled_event("9", block=None, log_index=None),
            created_event("9", block=None, log_index=None),
        ]
        ordered = [event.name for event in order_events(events)]
        self.assertEqual(ordered, ["AuctionCreated", "AuctionSettled"])


class TestHandlers(ReconcilerTestCase):

    def test_created_then_settled_in_same_range(self):
        """Auction 9 created and settled in one range ends inactive and settled."""
        self.store.advance_checkpoint(9)
        self.ledger.events = [
            created_event("9", block=10, log_index=0),
            settled_event("9", block=10, log_index=4),
        ]

        run_async(self.reconciler.poll())

        auction = self.store.get_auction("9")
        self.assertFalse(auction.is_active)
        self.assertTrue(auction.is_settled)
        self.assertEqual(auction.settlement_tx_hash, "0xsettle9")
        self.assertIsNotNone(auction.settled_at)
        print("\n✓ Created + settled in one range converges to settled")

    def test_replay_is_idempotent(self):
        """Applying the same events twice leaves state identical to applying them once."""
        events = [
            created_event("1", block=10),
            bid_event("1", 2_000_000, block=11),
            settled_event("1", block=12, winning_bid=2_000_000),
        ]
        self.reconciler.apply_events(events)
        once = self.store.read_collection("auctions")

        self.reconciler.apply_events(events)
        twice = self.store.read_collection("auctions")

        self.assertEqual(once, twice)
        print("\n✓ Event replay is idempotent")

    def test_created_replay_keeps_lifecycle_state(self):
        self.reconciler.apply_events([created_event("1", block=10), bid_event("1", 4_000_000, block=11)])

        self.reconciler.apply_event(created_event("1", block=10))

        auction = self.store.get_auction("1")
        self.assertEqual(auction.highest_bid, 4_000_000)
        self.assertEqual(auction.highest_bidder, BIDDER)

    def test_bid_last_observed_wins(self):
        other = "0x4444444444444444444444444444444444444444"
        self.reconciler.apply_events([
            created_event("1", block=10),
            bid_event("1", 2_000_000, block=11),
            bid_event("1", 2_500_000, bidder=other, block=12),
        ])

        auction = self.store.get_auction("1")
        self.assertEqual(auction.highest_bid, 2_500_000)
        self.assertEqual(auction.highest_bidder, other)

    def test_event_for_unknown_auction_is_skipped(self):
        self.reconciler.apply_event(bid_event("404", 1))
        self.reconciler.apply_event(settled_event("404"))

        self.assertEqual(self.store.get_all_auctions(), {})

    def test_settled_removes_queue_item(self):
        self.reconciler.apply_event(created_event("1", block=10))
        self.store.add_to_queue("1")

        self.reconciler.apply_event(settled_event("1"))
        self.reconciler.apply_event(settled_event("1"))

        self.assertIsNone(self.store.get_queue_item("1"))

    def test_settled_keeps_optimistic_tx_hash(self):
        self.reconciler.apply_event(created_event("1", block=10))
        self.store.update_auction("1", is_settled=True, settlement_tx_hash="0xworker", settled_at="2024-01-01T00:00:00.000Z")

        self.reconciler.apply_event(settled_event("1"))

        auction = self.store.get_auction("1")
        self.assertEqual(auction.settlement_tx_hash, "0xworker")
        self.assertEqual(auction.settled_at, "2024-01-01T00:00:00.000Z")

    def test_buy_now_closes_auction(self):
        buyer = "0x5555555555555555555555555555555555555555"
        self.reconciler.apply_event(created_event("1", block=10))
        self.store.add_to_queue("1")

        self.reconciler.apply_event(LedgerEvent(
            name="BuyNowExecuted",
            args={"auctionId": 1, "buyer": buyer, "buyNowPrice": 5_000_000},
            block_number=11,
            log_index=0,
            transaction_hash="0xbuy",
        ))

        auction = self.store.get_auction("1")
        self.assertEqual(auction.highest_bid, 5_000_000)
        self.assertEqual(auction.highest_bidder, buyer)
        self.assertTrue(auction.is_settled)
        self.assertFalse(auction.is_active)
        self.assertIsNone(self.store.get_queue_item("1"))

    def test_refund_closes_auction(self):
        self.reconciler.apply_event(created_event("1", block=10))
        self.store.add_to_queue("1")

        self.reconciler.apply_event(LedgerEvent(
            name="AuctionRefunded",
            args={"auctionId": 1, "seller": SELLER},
            block_number=11,
            log_index=0,
            transaction_hash="0xrefund",
        ))

        auction = self.store.get_auction("1")
        self.assertTrue(auction.is_settled)
        self.assertFalse(auction.is_active)
        self.assertEqual(auction.highest_bid, 0)
        self.assertIsNone(self.store.get_queue_item("1"))

    def test_coordinator_updated(self):
        new_coordinator = "0x6666666666666666666666666666666666666666"
        self.reconciler.apply_event(LedgerEvent(
            name="CoordinatorUpdated",
            args={"oldCoordinator": BIDDER, "newCoordinator": new_coordinator},
            block_number=11,
        ))

        self.assertEqual(self.store.get_config().coordinator_address, new_coordinator)

    def test_unknown_event_type_ignored(self):
        self.assertFalse(self.reconciler.apply_event(LedgerEvent(name="Transfer", args={})))


if __name__ == "__main__":
    unittest.main(verbosity=2)
