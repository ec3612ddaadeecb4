import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from arena_trader.config import (
    ANALYST_IDS,
    ANALYST_NAMES,
    PORTFOLIO_LOCK_MAX_RETRIES,
    PORTFOLIO_LOCK_RETRY_BASE_SECONDS,
    RECENT_TRADES_LIMIT,
    SHARPE_MIN_TRADES,
)
from arena_trader.services.update_lock import DistributedUpdateLock
from arena_trader.utils import safe_float

HIGH_FAILURE_RATE_PCT = 50.0


@dataclass
class AggregationResult:
    acquired: bool
    attempted: int = 0
    updated: int = 0
    failed: int = 0


def sharpe_like(mean_pnl: float, variance: float) -> float:
    """Mean realized P&L over its standard deviation; zero when there is no dispersion."""
    std_dev = math.sqrt(max(variance, 0.0))
    if std_dev <= 0:
        return 0.0
    return mean_pnl / std_dev


def weight_multiplier(sharpe: Optional[float]) -> float:
    """Suggested debate weight for an agent: 1.0 until the statistic exists, then 0.5-2.0."""
    if sharpe is None or not math.isfinite(sharpe):
        return 1.0
    return max(0.5, min(2.0, 1.0 + 0.5 * sharpe))


class PortfolioAggregator:
    """
    Recomputes per-agent attribution from the trade ledger.

    Only the process holding the distributed update lock writes attribution rows.
    """

    def __init__(
        self,
        db: Any,
        lock: Optional[DistributedUpdateLock] = None,
        agent_ids: Optional[List[str]] = None,
        agent_names: Optional[Dict[str, str]] = None,
        sharpe_min_trades: int = SHARPE_MIN_TRADES,
        max_retries: int = PORTFOLIO_LOCK_MAX_RETRIES,
        retry_base_seconds: float = PORTFOLIO_LOCK_RETRY_BASE_SECONDS,
        sleep: Optional[Callable] = None,
        record_health_state: Optional[Callable[[str, str, Optional[dict]], None]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.db = db
        self.logger = logger or logging.getLogger(__name__)
        self.lock = lock or DistributedUpdateLock(db, logger=self.logger)
        self.agent_ids = list(agent_ids or ANALYST_IDS)
        self.agent_names = dict(agent_names or ANALYST_NAMES)
        self.sharpe_min_trades = sharpe_min_trades
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self.sleep = sleep
        self.record_health_state = record_health_state or (lambda *_: None)

    def initialize_agent_portfolios(self) -> int:
        """Create empty attribution rows for agents that have none yet."""
        created = 0
        for agent_id in self.agent_ids:
            if self.db.ensure_agent_portfolio(agent_id, self.agent_names.get(agent_id, agent_id)):
                created += 1
        if created:
            self.logger.info(f"Initialized {created} agent portfolios")
        return created

    async def update_portfolios(self) -> AggregationResult:
        """
        Recompute attribution under the distributed lock.

        Returns acquired=False when another process holds the lock after all
        retries; that is a deferral, not an error.
        """
        acquired = await self.lock.acquire(
            max_retries=self.max_retries,
            base_delay_seconds=self.retry_base_seconds,
            sleep=self.sleep,
        )
        if not acquired:
            self.logger.info("Portfolio update already in progress elsewhere; skipping")
            self.record_health_state("portfolio_lock", "deferred", {"lock_key": self.lock.lock_key})
            return AggregationResult(acquired=False)

        try:
            return self._recompute()
        finally:
            self.lock.release()

    def _recompute(self) -> AggregationResult:
        stats_by_agent = self.db.get_agent_trade_stats(self.agent_ids)
        variances = self.db.get_agent_pnl_variance(self.agent_ids, min_trades=self.sharpe_min_trades)

        result = AggregationResult(acquired=True)
        for agent_id in self.agent_ids:
            stats = stats_by_agent.get(agent_id)
            if not stats or not stats.get("total_trades"):
                continue
            result.attempted += 1
            row = self._build_row(agent_id, stats, variances.get(agent_id))
            try:
                self.db.update_agent_portfolio(agent_id, row)
                result.updated += 1
                sharpe_str = f", Sharpe: {row['sharpe_ratio']:.2f}" if row["sharpe_ratio"] is not None else ""
                self.logger.info(
                    f"📊 {agent_id}: {row['total_trades']} trades, {row['total_return_dollar']:.2f} USDT P&L, "
                    f"{row['win_rate']:.1f}% win rate "
                    f"({row['winning_trades']}W/{row['losing_trades']}L/{row['breakeven_trades']}BE){sharpe_str}"
                )
            except Exception as exc:
                result.failed += 1
                self.logger.error(f"Failed to update portfolio for {agent_id}: {exc}")

        if result.failed:
            failure_rate = result.failed / result.attempted * 100
            if failure_rate > HIGH_FAILURE_RATE_PCT:
                self.logger.error(
                    f"⚠️ HIGH FAILURE RATE: {result.failed}/{result.attempted} portfolio updates failed "
                    f"({failure_rate:.1f}%)"
                )
                self.record_health_state(
                    "portfolio_lock",
                    "failing",
                    {"failed": result.failed, "attempted": result.attempted},
                )
            else:
                self.logger.warning(
                    f"{result.failed}/{result.attempted} portfolio updates failed ({failure_rate:.1f}%)"
                )
                self.record_health_state("portfolio_lock", "ok", {"failed": result.failed})
        else:
            self.record_health_state("portfolio_lock", "ok", None)
        if result.attempted:
            self.logger.info(f"✅ Updated {result.updated}/{result.attempted} agent portfolios")
        return result

    def _build_row(self, agent_id: str, stats: Dict[str, Any], variance: Optional[float]) -> Dict[str, Any]:
        total = int(stats.get("total_trades") or 0)
        wins = int(stats.get("winning_trades") or 0)
        sharpe = None
        if variance is not None and total >= self.sharpe_min_trades:
            value = sharpe_like(safe_float(stats.get("mean_pnl")), safe_float(variance))
            sharpe = value if math.isfinite(value) else None
        return {
            "agent_name": self.agent_names.get(agent_id, agent_id),
            "total_trades": total,
            "winning_trades": wins,
            "losing_trades": int(stats.get("losing_trades") or 0),
            "breakeven_trades": int(stats.get("breakeven_trades") or 0),
            "win_rate": wins / total * 100 if total else 0.0,
            "total_return_dollar": safe_float(stats.get("total_pnl")),
            "sharpe_ratio": sharpe,
            "weight_multiplier": weight_multiplier(sharpe),
        }

    def get_leaderboard(self) -> List[Dict[str, Any]]:
        """Attribution rows ranked by total realized P&L."""
        return [{"rank": idx + 1, **portfolio} for idx, portfolio in enumerate(self.db.get_agent_portfolios())]

    def get_agent_stats(self, agent_id: str) -> Optional[Dict[str, Any]]:
        if agent_id not in self.agent_ids:
            self.logger.warning(f"Invalid agent id requested: {agent_id}")
            return None
        portfolio = self.db.get_agent_portfolio(agent_id)
        if not portfolio:
            return None
        aggregates = self.db.get_agent_trade_aggregates(agent_id)
        return {
            "portfolio": portfolio,
            "recent_trades": self.db.get_agent_recent_trades(agent_id, RECENT_TRADES_LIMIT),
            "metrics": {
                "avg_pnl_per_trade": aggregates.get("avg_pnl") or 0.0,
                "best_trade": aggregates.get("best_trade") or 0.0,
                "worst_trade": aggregates.get("worst_trade") or 0.0,
                "favorite_symbol": aggregates.get("favorite_symbol"),
                "total_trades": aggregates.get("total_trades") or 0,
            },
        }

    def get_comparative_stats(self) -> Dict[str, Any]:
        leaderboard = self.get_leaderboard()
        total_trades = sum(p.get("total_trades") or 0 for p in leaderboard)
        total_pnl = sum(p.get("total_return_dollar") or 0.0 for p in leaderboard)
        avg_win_rate = (
            sum(p.get("win_rate") or 0.0 for p in leaderboard) / len(leaderboard) if leaderboard else 0.0
        )
        return {
            "leaderboard": leaderboard,
            "summary": {
                "total_agents": len(leaderboard),
                "total_trades": total_trades,
                "total_pnl": total_pnl,
                "avg_win_rate": avg_win_rate,
                "best_performer": leaderboard[0] if leaderboard else None,
                "worst_performer": leaderboard[-1] if leaderboard else None,
            },
        }
