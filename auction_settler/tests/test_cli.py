"""
Tests for the settlement CLI.

Prerequisites:
- None (temporary data directory, fake ledger)

Run with: pytest auction_settler/tests/test_cli.py
"""

import asyncio
import io
import logging
import time
import unittest
from tempfile import TemporaryDirectory
from unittest.mock import patch

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

from auction_settler.cli import SettlementCLI, build_parser, main
from auction_settler.config import BlockchainConfig, SettlerConfig
from auction_settler.exceptions import ConfigurationError
from auction_settler.infrastructure.auction_data import LogLevel, QueueStatus

from fakes import FakeLedgerClient, make_auction


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class CLITestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = TemporaryDirectory()
        self.settings = SettlerConfig(
            data_dir=self.tmp.name,
            cleanup_log_keep=2,
            verify_before_settle=False,
            blockchain=BlockchainConfig(private_key=None, contract_address=None),
        )
        self.cli = SettlementCLI(self.settings)
        self.store = self.cli.store
        self.now = int(time.time())

        patcher = patch("sys.stdout", new_callable=io.StringIO)
        self.stdout = patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        self.tmp.cleanup()


class TestInspectionCommands(CLITestCase):

    def test_status_counts(self):
        self.store.add_auction(make_auction("1", self.now + 3600))
        self.store.add_auction(make_auction("2", self.now - 60))
        self.store.add_auction(make_auction("3", self.now - 60, is_settled=True))
        self.store.add_to_queue("2")
        self.store.add_to_queue("4")
        self.store.update_queue_item("4", status=QueueStatus.FAILED, error_message="rpc timeout")

        summary = self.cli.status()

        self.assertEqual(summary["auctions"], {"total": 3, "active": 1, "expired": 1, "settled": 1})
        self.assertEqual(summary["queue"]["pending"], 1)
        self.assertEqual(summary["queue"]["failed"], 1)
        self.assertIn("rpc timeout", self.stdout.getvalue())

    def test_list_auctions(self):
        self.store.add_auction(make_auction("10", self.now))
        self.store.add_auction(make_auction("2", self.now, highest_bid=3_000_000))

        listed = self.cli.list_auctions()

        self.assertEqual([auction["id"] for auction in listed], ["2", "10"])
        self.assertIn("Highest bid: 3000000", self.stdout.getvalue())

    def test_list_empty(self):
        self.assertEqual(self.cli.list_auctions(), [])
        self.assertIn("No auctions", self.stdout.getvalue())

    def test_logs(self):
        for i in range(5):
            self.store.log(LogLevel.INFO, f"entry {i}")

        entries = self.cli.show_logs(3)

        self.assertEqual([entry["message"] for entry in entries], ["entry 2", "entry 3", "entry 4"])

    def test_cleanup(self):
        self.store.add_to_queue("1")
        self.store.add_to_queue("2")
        self.store.update_queue_item("1", status=QueueStatus.COMPLETED)
        for i in range(4):
            self.store.log(LogLevel.INFO, f"entry {i}")

        result = self.cli.cleanup()

        self.assertEqual(result["queue_items_removed"], 1)
        self.assertEqual(result["log_entries_removed"], 4)
        self.assertEqual([item.auction_id for item in self.store.get_queue()], ["2"])
        # Trimmed to the retention window, then the cleanup entry itself is appended
        messages = [entry.message for entry in self.store.get_logs()]
        self.assertEqual(messages, ["entry 2", "entry 3", "Cleanup completed"])


class TestSettleCommand(CLITestCase):

    def test_settle_with_ledger(self):
        self.store.add_auction(make_auction("7", self.now - 100))
        ledger = FakeLedgerClient()

        result = run_async(self.cli.settle("7", ledger=ledger))

        self.assertTrue(result["success"])
        self.assertEqual(ledger.settle_calls, ["7"])
        self.assertTrue(self.store.get_auction("7").is_settled)
        self.assertIn("settled", self.stdout.getvalue())

    def test_settle_unknown_auction(self):
        result = run_async(self.cli.settle("404", ledger=FakeLedgerClient()))
        self.assertFalse(result["success"])


class TestMain(CLITestCase):

    def test_parser_defaults(self):
        args = build_parser().parse_args(["logs"])
        self.assertEqual(args.count, 20)
        args = build_parser().parse_args(["settle", "7"])
        self.assertEqual(args.auction_id, "7")

    def test_no_command_prints_help(self):
        self.assertEqual(main([]), 0)
        self.assertIn("usage", self.stdout.getvalue())

    def test_status_command(self):
        with patch("auction_settler.cli.load_config", return_value=self.settings):
            self.assertEqual(main(["status"]), 0)
        self.assertIn("Settlement Scheduler Status", self.stdout.getvalue())

    def test_run_without_signer_exits_with_error(self):
        """A missing signing key is fatal: the scheduler never starts."""
        with patch("auction_settler.cli.load_config", return_value=self.settings), \
             patch("auction_settler.cli.LedgerClient") as ledger_cls:
            code = main(["run"])

        self.assertEqual(code, 1)
        ledger_cls.assert_not_called()
        self.assertIn("BLOCKCHAIN_PRIVATE_KEY", self.stdout.getvalue())

    def test_settle_without_signer_exits_with_error(self):
        with patch("auction_settler.cli.load_config", return_value=self.settings):
            self.assertEqual(main(["settle", "7"]), 1)

    def test_debug_setting_lowers_log_level(self):
        settings = self.settings.model_copy(update={"debug": True})

        with patch("auction_settler.cli.load_config", return_value=settings), \
             patch("auction_settler.cli.logging.basicConfig") as basic_config:
            self.assertEqual(main(["config"]), 0)

        self.assertEqual(basic_config.call_args.kwargs["level"], logging.DEBUG)
        print("\n✓ DEBUG=true switches the CLI to debug logging")

    def test_explicit_log_level_wins_over_debug(self):
        settings = self.settings.model_copy(update={"debug": True})

        with patch("auction_settler.cli.load_config", return_value=settings), \
             patch("auction_settler.cli.logging.basicConfig") as basic_config:
            main(["--log-level", "WARNING", "config"])

        self.assertEqual(basic_config.call_args.kwargs["level"], logging.WARNING)

    def test_default_log_level_is_info(self):
        with patch("auction_settler.cli.load_config", return_value=self.settings), \
             patch("auction_settler.cli.logging.basicConfig") as basic_config:
            main(["config"])

        self.assertEqual(basic_config.call_args.kwargs["level"], logging.INFO)

    def test_invalid_environment_exits_with_error(self):
        error = ConfigurationError("Invalid configuration", {"errors": "max_settlement_attempts"})

        with patch("auction_settler.cli.load_config", side_effect=error):
            self.assertEqual(main(["status"]), 1)

        self.assertIn("Configuration error", self.stdout.getvalue())


if __name__ == "__main__":
    unittest.main(verbosity=2)
