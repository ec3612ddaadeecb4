import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from arena_trader.services.portfolio_aggregator import PortfolioAggregator, sharpe_like, weight_multiplier
from arena_trader.services.update_lock import DistributedUpdateLock

AGENTS = ["jim", "ray", "karen"]
NAMES = {"jim": "Jim", "ray": "Ray", "karen": "Karen"}


def _seed(db, agent, pnls, symbol="cmt_btcusdt"):
    for idx, pnl in enumerate(pnls):
        order_id = f"{agent}-{symbol}-{idx}"
        db.log_trade(order_id, symbol, "LONG", 1.0, 100.0, order_id=order_id, champion_id=agent)
        db.settle_trade(order_id, realized_pnl=pnl, realized_pnl_percent=pnl, exit_price=100.0 + pnl)


def _aggregator(db, **kwargs):
    kwargs.setdefault("sleep", AsyncMock())
    return PortfolioAggregator(db, agent_ids=AGENTS, agent_names=NAMES, sharpe_min_trades=3, **kwargs)


def test_sharpe_and_weight_helpers():
    assert sharpe_like(2.0, 4.0) == pytest.approx(1.0)
    assert sharpe_like(5.0, 0.0) == 0.0
    assert weight_multiplier(None) == 1.0
    assert weight_multiplier(1.0) == pytest.approx(1.5)
    assert weight_multiplier(10.0) == 2.0
    assert weight_multiplier(-5.0) == 0.5


@pytest.mark.asyncio
async def test_update_portfolios_recomputes_attribution(db):
    _seed(db, "jim", [10.0, -5.0, 0.0, 15.0])
    _seed(db, "ray", [-3.0])
    aggregator = _aggregator(db)

    result = await aggregator.update_portfolios()

    assert result.acquired is True
    assert (result.attempted, result.updated, result.failed) == (2, 2, 0)
    jim = db.get_agent_portfolio("jim")
    assert jim["total_trades"] == 4
    assert (jim["winning_trades"], jim["losing_trades"], jim["breakeven_trades"]) == (2, 1, 1)
    assert jim["win_rate"] == pytest.approx(50.0)
    assert jim["total_return_dollar"] == pytest.approx(20.0)
    # mean 5, population variance 62.5
    assert jim["sharpe_ratio"] == pytest.approx(5.0 / 62.5 ** 0.5)

    ray = db.get_agent_portfolio("ray")
    assert ray["sharpe_ratio"] is None
    assert ray["weight_multiplier"] == 1.0
    # Lock is released afterwards
    assert db.get_lock(aggregator.lock.lock_key) is None


@pytest.mark.asyncio
async def test_lock_held_elsewhere_defers(db):
    other = DistributedUpdateLock(db, timeout_seconds=300)
    assert other.try_acquire() is True
    recorder = MagicMock()
    aggregator = _aggregator(db, max_retries=1, record_health_state=recorder)

    result = await aggregator.update_portfolios()

    assert result.acquired is False
    assert result.updated == 0
    recorder.assert_called_once()
    assert recorder.call_args.args[:2] == ("portfolio_lock", "deferred")
    assert db.get_lock(other.lock_key)["version"] == 1


@pytest.mark.asyncio
async def test_majority_write_failures_escalate(db, fake_logger):
    _seed(db, "jim", [1.0])
    _seed(db, "ray", [2.0])
    _seed(db, "karen", [3.0])
    real_update = db.update_agent_portfolio

    def flaky_update(agent_id, stats):
        if agent_id in ("jim", "ray"):
            raise RuntimeError("write failed")
        return real_update(agent_id, stats)

    db.update_agent_portfolio = flaky_update
    aggregator = _aggregator(db, logger=fake_logger)

    result = await aggregator.update_portfolios()

    assert (result.attempted, result.updated, result.failed) == (3, 1, 2)
    messages = [call.args[0] for call in fake_logger.error.call_args_list]
    assert any("HIGH FAILURE RATE" in msg for msg in messages)
    assert db.get_agent_portfolio("karen")["total_trades"] == 1
    assert db.get_lock(aggregator.lock.lock_key) is None


@pytest.mark.asyncio
async def test_recompute_error_still_releases_lock(db):
    aggregator = _aggregator(db)
    db.get_agent_trade_stats = MagicMock(side_effect=RuntimeError("query failed"))

    with pytest.raises(RuntimeError):
        await aggregator.update_portfolios()

    assert db.get_lock(aggregator.lock.lock_key) is None


@pytest.mark.asyncio
async def test_leaderboard_and_agent_stats(db):
    _seed(db, "jim", [10.0, 5.0], symbol="cmt_ethusdt")
    _seed(db, "jim", [1.0])
    _seed(db, "ray", [-4.0])
    aggregator = _aggregator(db, logger=logging.getLogger("test"))
    assert aggregator.initialize_agent_portfolios() == 3
    assert aggregator.initialize_agent_portfolios() == 0
    await aggregator.update_portfolios()

    leaderboard = aggregator.get_leaderboard()
    assert [row["agent_id"] for row in leaderboard] == ["jim", "karen", "ray"]
    assert [row["rank"] for row in leaderboard] == [1, 2, 3]

    stats = aggregator.get_agent_stats("jim")
    assert stats["metrics"]["best_trade"] == pytest.approx(10.0)
    assert stats["metrics"]["worst_trade"] == pytest.approx(1.0)
    assert stats["metrics"]["favorite_symbol"] == "cmt_ethusdt"
    assert len(stats["recent_trades"]) == 3
    assert aggregator.get_agent_stats("nobody") is None

    summary = aggregator.get_comparative_stats()["summary"]
    assert summary["total_agents"] == 3
    assert summary["total_trades"] == 4
    assert summary["total_pnl"] == pytest.approx(12.0)
    assert summary["best_performer"]["agent_id"] == "jim"
    assert summary["worst_performer"]["agent_id"] == "ray"
