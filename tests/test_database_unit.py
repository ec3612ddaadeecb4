import os
import sqlite3
import tempfile
import unittest
from datetime import datetime, timedelta, timezone

from arena_trader.database import STATUS_FILLED, STATUS_OPEN, TradingDatabase


class TestTradingDatabase(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "test.db")
        self.db = TradingDatabase(self.db_path)

    def tearDown(self):
        self.db.close()
        self.tmpdir.cleanup()

    def _log(self, trade_id, champion="jim", dry_run=False, **kwargs):
        return self.db.log_trade(
            trade_id,
            kwargs.pop("symbol", "cmt_btcusdt"),
            kwargs.pop("side", "LONG"),
            kwargs.pop("size", 0.5),
            kwargs.pop("entry_price", 100.0),
            order_id=f"o-{trade_id}",
            champion_id=champion,
            dry_run=dry_run,
            **kwargs,
        )

    def test_log_trade_round_trips_json_context(self):
        self._log(
            "t1",
            leverage=3.0,
            entry_context={"regime": "trending", "signals": {"rsi": 61}},
            attribution={"winning_agent": "jim"},
        )
        trade = self.db.get_trade_by_order_id("o-t1")
        self.assertEqual(trade["status"], STATUS_OPEN)
        self.assertEqual(trade["entry_context"]["signals"]["rsi"], 61)
        self.assertEqual(trade["attribution"]["winning_agent"], "jim")
        self.assertEqual(trade["leverage"], 3.0)

    def test_open_trades_exclude_dry_run_by_default(self):
        self._log("live")
        self._log("paper", dry_run=True)
        self.assertEqual([t["trade_id"] for t in self.db.get_open_trades()], ["live"])
        self.assertEqual(len(self.db.get_open_trades(include_dry_run=True)), 2)

    def test_settle_trade_only_once(self):
        self._log("t1")
        first = self.db.settle_trade("o-t1", realized_pnl=5.0, realized_pnl_percent=10.0, exit_price=110.0)
        second = self.db.settle_trade("o-t1", realized_pnl=99.0, realized_pnl_percent=99.0, exit_price=1.0)
        self.assertEqual((first, second), (1, 0))
        trade = self.db.get_trade_by_order_id("o-t1")
        self.assertEqual(trade["status"], STATUS_FILLED)
        self.assertEqual(trade["realized_pnl"], 5.0)
        self.assertEqual(self.db.get_open_trades(), [])
        self.assertEqual(self.db.get_recent_realized_pnl(5), [5.0])

    def test_duplicate_trade_id_rejected(self):
        self._log("t1")
        with self.assertRaises(sqlite3.IntegrityError):
            self._log("t1")

    def test_balance_snapshot_window_returns_earliest(self):
        now = datetime(2024, 1, 2, 12, 0, tzinfo=timezone.utc)
        self.db.log_balance_snapshot(900.0, now - timedelta(hours=25))
        self.db.log_balance_snapshot(1000.0, now - timedelta(hours=23, minutes=50))
        self.db.log_balance_snapshot(1100.0, now - timedelta(hours=23, minutes=10))
        snapshot = self.db.get_balance_snapshot_between(now - timedelta(hours=24), now - timedelta(hours=23))
        self.assertEqual(snapshot["balance"], 1000.0)
        self.assertIsNone(self.db.get_balance_snapshot_between(now - timedelta(hours=2), now))

    def test_lock_primitives(self):
        self.db.create_lock("k", 10.0)
        self.assertEqual(self.db.compare_and_swap_lock("k", 1, 20.0), 1)
        self.assertEqual(self.db.compare_and_swap_lock("k", 1, 30.0), 0)
        lock = self.db.get_lock("k")
        self.assertEqual((lock["version"], lock["updated_at"]), (2, 20.0))
        self.assertEqual(self.db.delete_lock("k", version=1), 0)
        self.assertEqual(self.db.delete_lock("k", version=2), 1)
        self.assertEqual(self.db.delete_lock("k"), 0)

        self.db.create_lock("k", 40.0, "holder-a")
        self.assertEqual(self.db.delete_lock("k", version=1, holder="holder-b"), 0)
        self.assertEqual(self.db.compare_and_swap_lock("k", 1, 50.0, "holder-b"), 1)
        self.assertEqual(self.db.get_lock("k")["holder"], "holder-b")
        self.assertEqual(self.db.delete_lock("k", version=2, holder="holder-b"), 1)

    def test_agent_stats_grouped_and_filtered(self):
        for idx, pnl in enumerate([4.0, -2.0, 0.0]):
            self._log(f"j{idx}")
            self.db.settle_trade(f"o-j{idx}", realized_pnl=pnl, realized_pnl_percent=pnl)
        self._log("open-one")
        self._log("r0", champion="ray")
        self.db.settle_trade("o-r0", realized_pnl=1.0, realized_pnl_percent=1.0)

        stats = self.db.get_agent_trade_stats(["jim", "ray", "karen"])
        self.assertEqual(set(stats), {"jim", "ray"})
        jim = stats["jim"]
        self.assertEqual(jim["total_trades"], 3)
        self.assertEqual((jim["winning_trades"], jim["losing_trades"], jim["breakeven_trades"]), (1, 1, 1))
        self.assertAlmostEqual(jim["total_pnl"], 2.0)

        variance = self.db.get_agent_pnl_variance(["jim", "ray"], min_trades=2)
        self.assertEqual(set(variance), {"jim"})
        # mean 2/3
        expected = sum((x - 2 / 3) ** 2 for x in (4.0, -2.0, 0.0)) / 3
        self.assertAlmostEqual(variance["jim"], expected)

    def test_trade_journal_and_health_state(self):
        self.db.log_trade_journal({
            "trade_id": "t1",
            "symbol": "cmt_btcusdt",
            "side": "SHORT",
            "outcome": "win",
            "entry_context": {"regime": "ranging"},
            "exit_reason": "tp_hit",
        })
        journal = self.db.get_trade_journal()
        self.assertEqual(journal[0]["entry_context"], {"regime": "ranging"})
        self.assertEqual(journal[0]["attribution"], {})

        self.db.set_health_state("engine", "running", None)
        self.db.set_health_state("engine", "stopped", '{"reason": "cleanup"}')
        states = {row["key"]: row["value"] for row in self.db.get_health_state()}
        self.assertEqual(states, {"engine": "stopped"})


if __name__ == "__main__":
    unittest.main()
