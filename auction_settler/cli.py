#!/usr/bin/env python3
"""
Settlement Scheduler CLI

Operator commands for inspecting and driving the auction settlement scheduler.

Usage:
    auction-settler status
    auction-settler list
    auction-settler logs 50
    auction-settler settle 7
    auction-settler cleanup
    auction-settler run
    auction-settler config
"""

import argparse
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .config import SettlerConfig, load_config
from .exceptions import ConfigurationError, SettlerError
from .infrastructure.auction_data import LogLevel, QueueStatus
from .infrastructure.ledger_client import LedgerClient
from .infrastructure.settlement_store import SettlementStore
from .scheduler.settlement_worker import SettlementWorker
from .scheduler.supervisor import build_scheduler

logger = logging.getLogger(__name__)

_LEVEL_ICONS = {
    LogLevel.INFO: "ℹ️ ",
    LogLevel.WARN: "⚠️ ",
    LogLevel.ERROR: "❌",
}


def _format_expiry(expiry_time: int) -> str:
    return datetime.fromtimestamp(expiry_time, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


class SettlementCLI:
    """CLI tool for inspecting the settlement store and forcing settlements."""

    def __init__(self, settings: Optional[SettlerConfig] = None, store: Optional[SettlementStore] = None):
        self.settings = settings or load_config()
        if store is None:
            store = SettlementStore(
                self.settings.data_dir,
                self.settings.log_retention,
                self.settings.scheduler_defaults()
            )
            store.init()
        self.store = store

    def status(self) -> Dict[str, Any]:
        """Print and return aggregate auction and queue counts."""
        now = int(datetime.now(timezone.utc).timestamp())
        auctions = list(self.store.get_all_auctions().values())
        queue = self.store.get_queue()
        config = self.store.get_config()

        summary = {
            "auctions": {
                "total": len(auctions),
                "active": sum(1 for a in auctions if a.is_active and not a.is_expired(now)),
                "expired": sum(1 for a in auctions if a.needs_settlement(now)),
                "settled": sum(1 for a in auctions if a.is_settled),
            },
            "queue": {status.value: sum(1 for item in queue if item.status == status) for status in QueueStatus},
            "config": config.to_dict(),
        }

        print("📊 Settlement Scheduler Status")
        print("-" * 60)
        print("Auctions:")
        for key, value in summary["auctions"].items():
            print(f"  {key.capitalize()}: {value}")
        print("Settlement queue:")
        for key, value in summary["queue"].items():
            print(f"  {key.capitalize()}: {value}")
        print("Scheduler:")
        print(f"  Enabled: {config.settlement_enabled}")
        print(f"  Last processed block: {config.last_processed_block}")
        print(f"  Settlement interval: {config.settlement_interval_ms / 1000}s")
        print(f"  Max attempts: {config.max_settlement_attempts}")
        print(f"  Coordinator: {config.coordinator_address or '✗ Not set'}")

        failed = [item for item in queue if item.status == QueueStatus.FAILED]
        if failed:
            print("\n❌ Failed settlements (use 'settle <auctionId>' to retry):")
            for item in failed:
                print(f"  Auction {item.auction_id}: {item.error_message}")

        return summary

    def list_auctions(self) -> List[Dict[str, Any]]:
        """Print every mirrored auction with its queue state."""
        auctions = sorted(self.store.get_all_auctions().values(), key=lambda a: int(a.id) if a.id.isdigit() else 0)
        queue = {item.auction_id: item for item in self.store.get_queue()}

        if not auctions:
            print("📋 No auctions mirrored yet")
            return []

        print(f"📋 {len(auctions)} auctions:")
        print("-" * 80)
        for auction in auctions:
            if auction.is_settled:
                state = "settled"
            elif auction.is_active:
                state = "active"
            else:
                state = "inactive"
            print(f"Auction {auction.id} (ticket {auction.ticket_id} x{auction.ticket_count}) - {state}")
            print(f"   Expires: {_format_expiry(auction.expiry_time)}")
            print(f"   Highest bid: {auction.highest_bid} by {auction.highest_bidder or '-'}")
            item = queue.get(auction.id)
            if item:
                print(f"   Queue: {item.status.value}, attempts {item.attempt_count}")
            if auction.settlement_tx_hash:
                print(f"   Settlement tx: {auction.settlement_tx_hash}")
        return [auction.to_dict() for auction in auctions]

    def show_logs(self, count: int = 20) -> List[Dict[str, Any]]:
        """Print the most recent settlement log entries."""
        entries = self.store.get_logs(count)
        print(f"📜 Last {len(entries)} log entries:")
        for entry in entries:
            line = f"{entry.timestamp} {_LEVEL_ICONS[entry.level]} {entry.message}"
            if entry.data:
                line += f" {entry.data}"
            print(line)
        return [entry.to_dict() for entry in entries]

    def cleanup(self) -> Dict[str, int]:
        """Prune completed queue items and trim the log."""
        pruned = self.store.prune_completed()
        trimmed = self.store.trim_logs(self.settings.cleanup_log_keep)
        self.store.log(LogLevel.INFO, "Cleanup completed", {"queueItemsRemoved": pruned, "logEntriesRemoved": trimmed})
        print(f"🧹 Removed {pruned} completed queue items and {trimmed} old log entries")
        return {"queue_items_removed": pruned, "log_entries_removed": trimmed}

    async def settle(self, auction_id: str, ledger=None) -> Dict[str, Any]:
        """Force one settlement attempt for an auction."""
        owns_ledger = ledger is None
        if owns_ledger:
            self.settings.check()
            ledger = LedgerClient(self.settings.blockchain)
            await ledger.initialize()

        try:
            worker = SettlementWorker(
                self.store,
                ledger,
                batch_size=self.settings.batch_size,
                verify_before_settle=self.settings.verify_before_settle,
            )
            print(f"⚙️  Settling auction {auction_id}...")
            result = await worker.settle_now(auction_id)
        finally:
            if owns_ledger:
                await ledger.close()

        if result["success"]:
            print(f"✅ Auction {auction_id} settled")
            if result.get("tx_hash"):
                print(f"🔗 Transaction: {result['tx_hash']}")
        else:
            print(f"❌ Settlement failed: {result['error']}")
        return result

    async def run(self, ledger=None):
        """Run the scheduler until interrupted."""
        owns_ledger = ledger is None
        if owns_ledger:
            self.settings.check()
            ledger = LedgerClient(self.settings.blockchain)
            await ledger.initialize()

        try:
            supervisor = build_scheduler(self.settings, ledger, store=self.store)
            await supervisor.run_forever()
        finally:
            if owns_ledger:
                await ledger.close()

    def show_config(self):
        """Print environment settings and the persisted scheduler config."""
        self.settings.display()
        print("Persisted scheduler config:")
        for key, value in self.store.get_config().to_dict().items():
            print(f"  {key}: {value}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="auction-settler",
        description="Auction settlement scheduler"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: DEBUG when DEBUG=true, otherwise INFO)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("status", help="Show auction and queue counts")
    subparsers.add_parser("list", help="List mirrored auctions")

    logs_parser = subparsers.add_parser("logs", help="Show recent settlement log entries")
    logs_parser.add_argument("count", type=int, nargs="?", default=20, help="Number of entries to show")

    settle_parser = subparsers.add_parser("settle", help="Force a settlement attempt for an auction")
    settle_parser.add_argument("auction_id", help="Auction ID")

    subparsers.add_parser("cleanup", help="Prune completed queue items and trim the log")
    subparsers.add_parser("run", help="Run the settlement scheduler")
    subparsers.add_parser("config", help="Show the effective configuration")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI function. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    try:
        settings = load_config()
    except ConfigurationError as e:
        print(f"❌ Configuration error: {e}")
        return 1

    log_level = args.log_level or ("DEBUG" if settings.debug else "INFO")
    logging.basicConfig(
        level=getattr(logging, log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        cli = SettlementCLI(settings)

        if args.command == "status":
            cli.status()
        elif args.command == "list":
            cli.list_auctions()
        elif args.command == "logs":
            cli.show_logs(args.count)
        elif args.command == "settle":
            result = asyncio.run(cli.settle(args.auction_id))
            return 0 if result["success"] else 1
        elif args.command == "cleanup":
            cli.cleanup()
        elif args.command == "run":
            asyncio.run(cli.run())
        elif args.command == "config":
            cli.show_config()

    except ConfigurationError as e:
        print(f"❌ Configuration error: {e}")
        return 1
    except SettlerError as e:
        print(f"❌ Operation failed: {e}")
        logger.debug("Detailed error information:", exc_info=True)
        return 1
    except KeyboardInterrupt:
        print("\n⏹️  Operation interrupted by user")
        return 130

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
