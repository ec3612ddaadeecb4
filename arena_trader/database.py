import json
import logging
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

STATUS_OPEN = 'OPEN'
STATUS_FILLED = 'FILLED'


class TradingDatabase:
    """Manages SQLite database for the trade ledger, agent attribution and lock rows."""

    def __init__(self, db_path: Optional[str] = None):
        # Allow tests or env overrides to point at an isolated database
        self.db_path = db_path or os.getenv("TRADING_DB_PATH", "trading.db")
        self.conn = None
        self.initialize_database()

    @staticmethod
    def _column_exists(cursor: sqlite3.Cursor, table: str, column: str) -> bool:
        cursor.execute(f"PRAGMA table_info({table})")
        return any(row["name"] == column for row in cursor.fetchall())

    def _ensure_column(self, cursor: sqlite3.Cursor, table: str, column_def: str):
        """Add a column if it is missing (idempotent for schema upgrades)."""
        column_name = column_def.split()[0]
        if not self._column_exists(cursor, table, column_name):
            cursor.execute(f"ALTER TABLE {table} ADD COLUMN {column_def}")

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _normalize_timestamp(ts: datetime | str | None) -> str:
        if ts is None:
            return datetime.now(timezone.utc).isoformat()
        if isinstance(ts, str):
            ts = datetime.fromisoformat(ts.replace("Z", "+00:00"))
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ts.astimezone(timezone.utc).isoformat()

    def initialize_database(self):
        """Create database and tables if they don't exist."""
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row  # Return rows as dictionaries

        cursor = self.conn.cursor()

        # Trade ledger
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS trades (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                trade_id TEXT NOT NULL,
                order_id TEXT,
                symbol TEXT NOT NULL,
                side TEXT NOT NULL,
                size REAL NOT NULL,
                entry_price REAL NOT NULL,
                leverage REAL DEFAULT 1.0,
                take_profit REAL,
                stop_loss REAL,
                status TEXT NOT NULL DEFAULT 'OPEN',
                champion_id TEXT,
                confidence REAL,
                reason TEXT,
                entry_context TEXT,
                attribution TEXT,
                realized_pnl REAL,
                realized_pnl_percent REAL,
                exit_price REAL,
                exit_reason TEXT,
                executed_at TEXT DEFAULT CURRENT_TIMESTAMP,
                closed_at TEXT,
                UNIQUE(trade_id)
            )
        """)
        self._ensure_column(cursor, "trades", "dry_run INTEGER DEFAULT 0")
        try:
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_trades_order_id ON trades (order_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_trades_champion_status ON trades (champion_id, status)")
        except Exception as exc:
            logger.debug(f"Could not create trades indexes: {exc}")

        # Per-agent attribution
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS agent_portfolios (
                agent_id TEXT PRIMARY KEY,
                agent_name TEXT,
                total_trades INTEGER DEFAULT 0,
                winning_trades INTEGER DEFAULT 0,
                losing_trades INTEGER DEFAULT 0,
                breakeven_trades INTEGER DEFAULT 0,
                win_rate REAL DEFAULT 0.0,
                total_return_dollar REAL DEFAULT 0.0,
                sharpe_ratio REAL,
                weight_multiplier REAL DEFAULT 1.0,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # Cross-process mutex rows (updated_at is epoch seconds)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS update_locks (
                lock_key TEXT PRIMARY KEY,
                version INTEGER NOT NULL DEFAULT 1,
                updated_at REAL NOT NULL
            )
        """)
        self._ensure_column(cursor, "update_locks", "holder TEXT")

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS balance_snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                balance REAL NOT NULL,
                recorded_at TEXT NOT NULL
            )
        """)
        try:
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_balance_snapshots_recorded ON balance_snapshots (recorded_at)"
            )
        except Exception as exc:
            logger.debug(f"Could not create balance_snapshots index: {exc}")

        # Learning-loop journal written on every confirmed close
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS trade_journal (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                trade_id TEXT NOT NULL,
                symbol TEXT NOT NULL,
                side TEXT NOT NULL,
                entry_price REAL,
                exit_price REAL,
                entry_context TEXT,
                attribution TEXT,
                outcome TEXT NOT NULL,
                pnl_percent REAL,
                realized_pnl REAL,
                hold_time_hours REAL,
                exit_reason TEXT,
                lessons TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS health_state (
                key TEXT PRIMARY KEY,
                value TEXT,
                detail TEXT,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """)

        self.conn.commit()

    # Trade ledger
    def log_trade(
        self,
        trade_id: str,
        symbol: str,
        side: str,
        size: float,
        entry_price: float,
        leverage: float = 1.0,
        order_id: str | None = None,
        take_profit: float | None = None,
        stop_loss: float | None = None,
        champion_id: str | None = None,
        confidence: float | None = None,
        reason: str | None = None,
        entry_context: Dict[str, Any] | None = None,
        attribution: Dict[str, Any] | None = None,
        executed_at: datetime | str | None = None,
        dry_run: bool = False,
    ) -> int:
        """Record a newly executed trade as OPEN and return its row id."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO trades (
                trade_id, order_id, symbol, side, size, entry_price, leverage, take_profit, stop_loss,
                status, champion_id, confidence, reason, entry_context, attribution, executed_at, dry_run
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                trade_id,
                order_id,
                symbol,
                side,
                size,
                entry_price,
                leverage,
                take_profit,
                stop_loss,
                STATUS_OPEN,
                champion_id,
                confidence,
                reason,
                json.dumps(entry_context, default=str) if entry_context is not None else None,
                json.dumps(attribution, default=str) if attribution is not None else None,
                self._normalize_timestamp(executed_at),
                1 if dry_run else 0,
            ),
        )
        self.conn.commit()
        return cursor.lastrowid

    @staticmethod
    def _decode_trade(row: sqlite3.Row | None) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        trade = dict(row)
        for field in ("entry_context", "attribution"):
            raw = trade.get(field)
            if raw:
                try:
                    trade[field] = json.loads(raw)
                except (TypeError, ValueError):
                    trade[field] = None
        return trade

    def get_trade_by_order_id(self, order_id: str) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM trades WHERE order_id = ? ORDER BY id DESC LIMIT 1", (order_id,))
        return self._decode_trade(cursor.fetchone())

    def get_open_trades(self, include_dry_run: bool = False) -> List[Dict[str, Any]]:
        """Return trades still marked OPEN, oldest first."""
        cursor = self.conn.cursor()
        query = "SELECT * FROM trades WHERE status = ?"
        if not include_dry_run:
            query += " AND COALESCE(dry_run, 0) = 0"
        cursor.execute(query + " ORDER BY executed_at ASC, id ASC", (STATUS_OPEN,))
        return [self._decode_trade(row) for row in cursor.fetchall()]

    def settle_trade(
        self,
        order_id: str,
        realized_pnl: float,
        realized_pnl_percent: float,
        exit_price: float | None = None,
        exit_reason: str | None = None,
        closed_at: datetime | str | None = None,
    ) -> int:
        """
        Mark the trade for an order FILLED with its realized outcome.

        Only rows not already FILLED are touched, so replaying the same close is a
        no-op. Returns the number of rows updated.
        """
        cursor = self.conn.cursor()
        cursor.execute(
            """
            UPDATE trades
            SET status = ?,
                realized_pnl = ?,
                realized_pnl_percent = ?,
                exit_price = ?,
                exit_reason = ?,
                closed_at = ?
            WHERE order_id = ? AND status != ?
            """,
            (
                STATUS_FILLED,
                realized_pnl,
                realized_pnl_percent,
                exit_price,
                exit_reason,
                self._normalize_timestamp(closed_at),
                order_id,
                STATUS_FILLED,
            ),
        )
        self.conn.commit()
        return cursor.rowcount

    def get_recent_realized_pnl(self, limit: int = 10) -> List[float]:
        """Realized P&L of the most recently settled trades, newest first."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT realized_pnl FROM trades
            WHERE status = ? AND realized_pnl IS NOT NULL
            ORDER BY closed_at DESC, id DESC
            LIMIT ?
            """,
            (STATUS_FILLED, limit),
        )
        return [row["realized_pnl"] for row in cursor.fetchall()]

    def log_trade_journal(self, entry: Dict[str, Any]) -> int:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO trade_journal (
                trade_id, symbol, side, entry_price, exit_price, entry_context, attribution,
                outcome, pnl_percent, realized_pnl, hold_time_hours, exit_reason, lessons
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry["trade_id"],
                entry["symbol"],
                entry["side"],
                entry.get("entry_price"),
                entry.get("exit_price"),
                json.dumps(entry.get("entry_context") or {}, default=str),
                json.dumps(entry.get("attribution") or {}, default=str),
                entry["outcome"],
                entry.get("pnl_percent"),
                entry.get("realized_pnl"),
                entry.get("hold_time_hours"),
                entry.get("exit_reason"),
                entry.get("lessons"),
            ),
        )
        self.conn.commit()
        return cursor.lastrowid

    def get_trade_journal(self, limit: int = 50) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM trade_journal ORDER BY id DESC LIMIT ?", (limit,))
        entries = []
        for row in cursor.fetchall():
            entry = dict(row)
            for field in ("entry_context", "attribution"):
                try:
                    entry[field] = json.loads(entry[field]) if entry.get(field) else {}
                except (TypeError, ValueError):
                    entry[field] = {}
            entries.append(entry)
        return entries

    # Balance snapshots (drawdown reference)
    def log_balance_snapshot(self, balance: float, recorded_at: datetime | str | None = None):
        cursor = self.conn.cursor()
        cursor.execute(
            "INSERT INTO balance_snapshots (balance, recorded_at) VALUES (?, ?)",
            (balance, self._normalize_timestamp(recorded_at)),
        )
        self.conn.commit()

    def get_balance_snapshot_between(
        self, start: datetime | str, end: datetime | str
    ) -> Optional[Dict[str, Any]]:
        """Return the earliest snapshot recorded inside [start, end]."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT balance, recorded_at FROM balance_snapshots
            WHERE recorded_at >= ? AND recorded_at <= ?
            ORDER BY recorded_at ASC
            LIMIT 1
            """,
            (self._normalize_timestamp(start), self._normalize_timestamp(end)),
        )
        row = cursor.fetchone()
        return dict(row) if row else None

    # Distributed update lock
    def get_lock(self, lock_key: str) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT lock_key, version, updated_at, holder FROM update_locks WHERE lock_key = ?",
            (lock_key,),
        )
        row = cursor.fetchone()
        return dict(row) if row else None

    def create_lock(self, lock_key: str, now: float, holder: str | None = None):
        """
        Insert the lock row at version 1.

        Raises sqlite3.IntegrityError when another holder created it first.
        """
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "INSERT INTO update_locks (lock_key, version, updated_at, holder) VALUES (?, 1, ?, ?)",
                (lock_key, now, holder),
            )
            self.conn.commit()
        except sqlite3.IntegrityError:
            self.conn.rollback()
            raise

    def compare_and_swap_lock(
        self, lock_key: str, expected_version: int, now: float, holder: str | None = None
    ) -> int:
        """Bump the lock version and claim it only if the version still equals expected_version."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            UPDATE update_locks
            SET version = version + 1, updated_at = ?, holder = ?
            WHERE lock_key = ? AND version = ?
            """,
            (now, holder, lock_key, expected_version),
        )
        self.conn.commit()
        return cursor.rowcount

    def delete_lock(self, lock_key: str, version: int | None = None, holder: str | None = None) -> int:
        """
        Delete the lock row, optionally only while it still carries the given
        version and holder token. A recreated row restarts at version 1, so the
        holder token is what distinguishes it from the one we acquired.
        """
        query = "DELETE FROM update_locks WHERE lock_key = ?"
        params: list = [lock_key]
        if version is not None:
            query += " AND version = ?"
            params.append(version)
        if holder is not None:
            query += " AND holder = ?"
            params.append(holder)
        cursor = self.conn.cursor()
        cursor.execute(query, params)
        self.conn.commit()
        return cursor.rowcount

    # Agent attribution
    @staticmethod
    def _placeholders(values: Iterable[Any]) -> str:
        return ",".join("?" for _ in values)

    def get_agent_trade_stats(self, agent_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        """
        Aggregate settled trades per champion in one grouped query.

        Returns {agent_id: {total_trades, total_pnl, mean_pnl, winning_trades,
        losing_trades, breakeven_trades}} for agents with at least one settled trade.
        """
        if not agent_ids:
            return {}
        cursor = self.conn.cursor()
        cursor.execute(
            f"""
            SELECT
                champion_id,
                COUNT(*) AS total_trades,
                COALESCE(SUM(realized_pnl), 0.0) AS total_pnl,
                AVG(realized_pnl) AS mean_pnl,
                COUNT(CASE WHEN realized_pnl > 0 THEN 1 END) AS winning_trades,
                COUNT(CASE WHEN realized_pnl < 0 THEN 1 END) AS losing_trades,
                COUNT(CASE WHEN realized_pnl = 0 THEN 1 END) AS breakeven_trades
            FROM trades
            WHERE status = ?
                AND realized_pnl IS NOT NULL
                AND champion_id IN ({self._placeholders(agent_ids)})
            GROUP BY champion_id
            """,
            (STATUS_FILLED, *agent_ids),
        )
        return {row["champion_id"]: dict(row) for row in cursor.fetchall()}

    def get_agent_pnl_variance(self, agent_ids: List[str], min_trades: int = 1) -> Dict[str, float]:
        """Population variance of realized P&L per champion, for agents with at least min_trades."""
        if not agent_ids:
            return {}
        cursor = self.conn.cursor()
        cursor.execute(
            f"""
            SELECT
                t.champion_id AS champion_id,
                AVG((t.realized_pnl - m.mean_pnl) * (t.realized_pnl - m.mean_pnl)) AS variance
            FROM trades t
            JOIN (
                SELECT champion_id, AVG(realized_pnl) AS mean_pnl, COUNT(*) AS n
                FROM trades
                WHERE status = ? AND realized_pnl IS NOT NULL
                GROUP BY champion_id
            ) m ON m.champion_id = t.champion_id
            WHERE t.status = ?
                AND t.realized_pnl IS NOT NULL
                AND m.n >= ?
                AND t.champion_id IN ({self._placeholders(agent_ids)})
            GROUP BY t.champion_id
            """,
            (STATUS_FILLED, STATUS_FILLED, min_trades, *agent_ids),
        )
        return {row["champion_id"]: row["variance"] or 0.0 for row in cursor.fetchall()}

    def ensure_agent_portfolio(self, agent_id: str, agent_name: str | None = None) -> bool:
        """Create an empty attribution row if missing. Returns True when created."""
        cursor = self.conn.cursor()
        cursor.execute(
            "INSERT OR IGNORE INTO agent_portfolios (agent_id, agent_name) VALUES (?, ?)",
            (agent_id, agent_name or agent_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def update_agent_portfolio(self, agent_id: str, stats: Dict[str, Any]):
        """Upsert the attribution row for one agent."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO agent_portfolios (
                agent_id, agent_name, total_trades, winning_trades, losing_trades, breakeven_trades,
                win_rate, total_return_dollar, sharpe_ratio, weight_multiplier, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(agent_id) DO UPDATE SET
                total_trades=excluded.total_trades,
                winning_trades=excluded.winning_trades,
                losing_trades=excluded.losing_trades,
                breakeven_trades=excluded.breakeven_trades,
                win_rate=excluded.win_rate,
                total_return_dollar=excluded.total_return_dollar,
                sharpe_ratio=excluded.sharpe_ratio,
                weight_multiplier=excluded.weight_multiplier,
                updated_at=excluded.updated_at
            """,
            (
                agent_id,
                stats.get("agent_name") or agent_id,
                stats.get("total_trades", 0) or 0,
                stats.get("winning_trades", 0) or 0,
                stats.get("losing_trades", 0) or 0,
                stats.get("breakeven_trades", 0) or 0,
                stats.get("win_rate", 0.0) or 0.0,
                stats.get("total_return_dollar", 0.0) or 0.0,
                stats.get("sharpe_ratio"),
                stats.get("weight_multiplier", 1.0),
                self._now_iso(),
            ),
        )
        self.conn.commit()

    def get_agent_portfolio(self, agent_id: str) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM agent_portfolios WHERE agent_id = ?", (agent_id,))
        row = cursor.fetchone()
        return dict(row) if row else None

    def get_agent_portfolios(self) -> List[Dict[str, Any]]:
        """All attribution rows ranked by total realized P&L."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM agent_portfolios ORDER BY total_return_dollar DESC, agent_id ASC"
        )
        return [dict(row) for row in cursor.fetchall()]

    def get_agent_recent_trades(self, agent_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT id, trade_id, symbol, side, size, entry_price, exit_price, realized_pnl,
                   realized_pnl_percent, executed_at, closed_at, status, confidence, reason
            FROM trades
            WHERE champion_id = ? AND status = ?
            ORDER BY executed_at DESC, id DESC
            LIMIT ?
            """,
            (agent_id, STATUS_FILLED, limit),
        )
        return [dict(row) for row in cursor.fetchall()]

    def get_agent_trade_aggregates(self, agent_id: str) -> Dict[str, Any]:
        """Min/max/avg realized P&L and the most traded symbol for one champion."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT COUNT(*) AS total_trades,
                   AVG(realized_pnl) AS avg_pnl,
                   MAX(realized_pnl) AS best_trade,
                   MIN(realized_pnl) AS worst_trade
            FROM trades
            WHERE champion_id = ? AND status = ?
            """,
            (agent_id, STATUS_FILLED),
        )
        aggregates = dict(cursor.fetchone())
        cursor.execute(
            """
            SELECT symbol, COUNT(*) AS n FROM trades
            WHERE champion_id = ? AND status = ?
            GROUP BY symbol
            ORDER BY n DESC, symbol ASC
            LIMIT 1
            """,
            (agent_id, STATUS_FILLED),
        )
        favourite = cursor.fetchone()
        aggregates["favorite_symbol"] = favourite["symbol"] if favourite else None
        return aggregates

    # Health
    def set_health_state(self, key: str, value: str, detail: str = None):
        """Upsert health state key/value with optional detail JSON/text."""
        cursor = self.conn.cursor()
        cursor.execute("""
            INSERT INTO health_state (key, value, detail, updated_at)
            VALUES (?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(key) DO UPDATE SET
                value=excluded.value,
                detail=excluded.detail,
                updated_at=CURRENT_TIMESTAMP
        """, (key, value, detail))
        self.conn.commit()

    def get_health_state(self) -> List[Dict[str, Any]]:
        """Return all health state entries."""
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT key, value, detail, updated_at
            FROM health_state
            ORDER BY key
        """)
        return [dict(row) for row in cursor.fetchall()]

    def close(self):
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Database connection closed")
