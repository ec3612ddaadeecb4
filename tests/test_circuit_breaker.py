import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from arena_trader.services.circuit_breaker import (
    AlertLevel,
    CircuitBreaker,
    get_max_leverage,
    get_recommended_action,
)
from tests.fakes import FakeExchange

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:  # pragma: no cover - trivial
        return self.now


def _candles(open_price, close_price):
    base = 1_700_000_000_000
    candles = [{"timestamp": base + i * 3_600_000, "open": close_price, "close": close_price} for i in range(5)]
    candles[0]["open"] = open_price
    # Venue returns newest first; the breaker must sort by time
    return list(reversed(candles))


def _breaker(exchange, db=None, clock=None, **kwargs):
    return CircuitBreaker(
        exchange,
        db=db,
        monotonic=clock or _Clock(100.0),
        now=lambda: NOW,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_btc_crash_returns_red_without_other_checks():
    exchange = FakeExchange(candles=_candles(100.0, 78.0))
    breaker = _breaker(exchange)

    status = await breaker.check()

    assert status.level == AlertLevel.RED
    assert status.btc_drop_4h == pytest.approx(-22.0)
    assert "22.0%" in status.reason
    called = {name for name, _ in exchange.calls}
    assert "get_server_time" not in called
    assert "get_account_assets" not in called


@pytest.mark.asyncio
async def test_concurrent_checks_share_one_evaluation():
    exchange = FakeExchange(server_delay=0.01)
    breaker = _breaker(exchange)

    results = await asyncio.gather(*(breaker.check("concurrent") for _ in range(5)))

    assert breaker.evaluations == 1
    assert all(result is results[0] for result in results)
    assert sum(1 for name, _ in exchange.calls if name == "get_candles") == 1


@pytest.mark.asyncio
async def test_cached_status_reused_until_ttl_expires():
    clock = _Clock(100.0)
    breaker = _breaker(FakeExchange(), clock=clock, cache_seconds=30)

    first = await breaker.check()
    clock.now = 120.0
    second = await breaker.check()
    assert second is first
    assert breaker.evaluations == 1

    clock.now = 131.0
    third = await breaker.check()
    assert breaker.evaluations == 2
    assert third is not first

    breaker.invalidate()
    await breaker.check()
    assert breaker.evaluations == 3


@pytest.mark.asyncio
async def test_balance_failure_fails_closed_to_yellow(db):
    exchange = FakeExchange(fail={"get_account_assets": RuntimeError("timeout")})
    breaker = _breaker(exchange, db=db)

    status = await breaker.check()

    assert status.level == AlertLevel.YELLOW
    assert "balance unavailable" in status.reason.lower()


@pytest.mark.asyncio
async def test_missing_snapshot_is_normal_for_new_account(db):
    breaker = _breaker(FakeExchange(), db=db)

    status = await breaker.check()

    assert status.level == AlertLevel.NONE
    assert status.account_drawdown_24h is None
    assert status.exchange_degraded is False


@pytest.mark.asyncio
async def test_drawdown_against_day_old_snapshot(db):
    db.log_balance_snapshot(1000.0, NOW - timedelta(hours=23, minutes=30))
    breaker = _breaker(FakeExchange(balance=820.0), db=db)

    status = await breaker.check()

    assert status.level == AlertLevel.ORANGE
    assert status.account_drawdown_24h == pytest.approx(18.0)


@pytest.mark.asyncio
async def test_extreme_funding_is_orange():
    exchange = FakeExchange(funding_rate={"cmt_btcusdt": 0.001, "cmt_ethusdt": -0.005})
    breaker = _breaker(exchange)

    status = await breaker.check()

    assert status.level == AlertLevel.ORANGE
    assert status.funding_rate_extreme == pytest.approx(0.005)


@pytest.mark.asyncio
async def test_exchange_error_is_orange_and_highest_wins():
    exchange = FakeExchange(
        candles=_candles(100.0, 88.0),
        fail={"get_server_time": ConnectionError("down")},
    )
    breaker = _breaker(exchange)

    status = await breaker.check()

    assert status.level == AlertLevel.ORANGE
    assert status.reason.startswith("Exchange API error")
    # The lower-severity BTC reading is still surfaced
    assert status.btc_drop_4h == pytest.approx(-12.0)
    assert status.exchange_degraded is True


@pytest.mark.asyncio
async def test_level_changes_recorded_once():
    recorder = MagicMock()
    clock = _Clock(0.0)
    breaker = _breaker(FakeExchange(), clock=clock, record_health_state=recorder, cache_seconds=1)

    await breaker.check()
    clock.now = 5.0
    await breaker.check()

    recorder.assert_called_once()
    key, value, _detail = recorder.call_args.args
    assert (key, value) == ("circuit_breaker", "NONE")


def test_leverage_and_action_lookups():
    assert get_max_leverage(AlertLevel.RED) == 1.0
    assert get_max_leverage("ORANGE") == 2.0
    assert get_max_leverage(AlertLevel.YELLOW) == 3.0
    assert get_max_leverage(AlertLevel.NONE, safe_maximum=7.0) == 7.0
    assert get_recommended_action(AlertLevel.RED).startswith("Close ALL leveraged positions")
    assert get_recommended_action("NONE") == "Normal trading operations"
