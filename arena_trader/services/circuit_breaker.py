import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, List, Optional

from arena_trader.config import (
    BTC_DROP_ORANGE_PCT,
    BTC_DROP_RED_PCT,
    BTC_DROP_YELLOW_PCT,
    CIRCUIT_BREAKER_CACHE_SECONDS,
    CIRCUIT_BREAKER_FUNDING_SYMBOLS,
    CIRCUIT_BREAKER_REFERENCE_SYMBOL,
    DRAWDOWN_ORANGE_PCT,
    DRAWDOWN_RED_PCT,
    DRAWDOWN_YELLOW_PCT,
    EXCHANGE_SLOW_MS,
    FUNDING_ORANGE_PCT,
    FUNDING_YELLOW_PCT,
    MAX_SAFE_LEVERAGE,
)
from arena_trader.exchange_client import extract_available_balance
from arena_trader.utils import safe_float, to_epoch_ms


class AlertLevel(str, Enum):
    NONE = "NONE"
    YELLOW = "YELLOW"
    ORANGE = "ORANGE"
    RED = "RED"


SEVERITY = {
    AlertLevel.NONE: 0,
    AlertLevel.YELLOW: 1,
    AlertLevel.ORANGE: 2,
    AlertLevel.RED: 3,
}

RECOMMENDED_ACTIONS = {
    AlertLevel.RED: "Close ALL leveraged positions immediately, convert to stablecoins",
    AlertLevel.ORANGE: "Reduce all leverage to 2x max, close all positions with size <5",
    AlertLevel.YELLOW: "Reduce all leverage to 3x max, close speculative positions",
    AlertLevel.NONE: "Normal trading operations",
}

MAX_LEVERAGE_BY_LEVEL = {
    AlertLevel.RED: 1.0,
    AlertLevel.ORANGE: 2.0,
    AlertLevel.YELLOW: 3.0,
}


@dataclass
class SignalReading:
    level: AlertLevel = AlertLevel.NONE
    reason: str = ""
    btc_drop_4h: Optional[float] = None
    account_drawdown_24h: Optional[float] = None
    funding_rate_extreme: Optional[float] = None
    exchange_degraded: Optional[bool] = None


@dataclass
class CircuitBreakerStatus:
    level: AlertLevel
    reason: str
    btc_drop_4h: Optional[float] = None
    account_drawdown_24h: Optional[float] = None
    funding_rate_extreme: Optional[float] = None
    exchange_degraded: Optional[bool] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["level"] = self.level.value
        return data


def get_recommended_action(level: AlertLevel | str) -> str:
    return RECOMMENDED_ACTIONS.get(AlertLevel(level), RECOMMENDED_ACTIONS[AlertLevel.NONE])


def get_max_leverage(level: AlertLevel | str, safe_maximum: float = MAX_SAFE_LEVERAGE) -> float:
    return MAX_LEVERAGE_BY_LEVEL.get(AlertLevel(level), safe_maximum)


def resolve_highest(readings: List[SignalReading]) -> SignalReading:
    """Pick the most severe reading; earlier readings win ties."""
    winner = SignalReading()
    for reading in readings:
        if SEVERITY[reading.level] > SEVERITY[winner.level]:
            winner = reading
    return winner


def _candle_value(candle: Any, key: str, index: int) -> Any:
    if isinstance(candle, dict):
        return candle.get(key)
    if isinstance(candle, (list, tuple)) and len(candle) > index:
        return candle[index]
    return None


class CircuitBreaker:
    """
    Tiered market/account risk check (NONE < YELLOW < ORANGE < RED).

    A completed evaluation is cached for cache_seconds; callers that arrive while
    an evaluation is running await that same evaluation instead of starting another.
    """

    def __init__(
        self,
        exchange: Any,
        db: Any = None,
        cache_seconds: float = CIRCUIT_BREAKER_CACHE_SECONDS,
        reference_symbol: str = CIRCUIT_BREAKER_REFERENCE_SYMBOL,
        funding_symbols: Optional[List[str]] = None,
        max_safe_leverage: float = MAX_SAFE_LEVERAGE,
        record_health_state: Optional[Callable[[str, str, Optional[dict]], None]] = None,
        monotonic: Optional[Callable[[], float]] = None,
        now: Optional[Callable[[], datetime]] = None,
        actions_logger: Optional[logging.Logger] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.exchange = exchange
        self.db = db
        self.cache_seconds = cache_seconds
        self.reference_symbol = reference_symbol
        self.funding_symbols = list(funding_symbols or CIRCUIT_BREAKER_FUNDING_SYMBOLS)
        self.max_safe_leverage = max_safe_leverage
        self.record_health_state = record_health_state or (lambda *_: None)
        self.monotonic = monotonic or time.monotonic
        self.now = now or (lambda: datetime.now(timezone.utc))
        self.actions_logger = actions_logger or logging.getLogger(__name__)
        self.logger = logger or logging.getLogger(__name__)

        self._cached_status: Optional[CircuitBreakerStatus] = None
        self._cached_at: Optional[float] = None
        self._in_flight: Optional[asyncio.Future] = None
        self._last_level: Optional[AlertLevel] = None
        self.evaluations = 0

    @property
    def last_status(self) -> Optional[CircuitBreakerStatus]:
        return self._cached_status

    def invalidate(self) -> None:
        """Drop the cached status so the next check evaluates fresh."""
        self._cached_status = None
        self._cached_at = None

    def _cache_fresh(self) -> bool:
        if self._cached_status is None or self._cached_at is None:
            return False
        return (self.monotonic() - self._cached_at) < self.cache_seconds

    async def check(self, context: str = "cycle") -> CircuitBreakerStatus:
        """Return the current status, evaluating at most once per cache window."""
        if self._cache_fresh():
            return self._cached_status

        if self._in_flight is not None:
            self.logger.debug(f"Circuit breaker check ({context}) joining in-flight evaluation")
            return await asyncio.shield(self._in_flight)

        task = asyncio.ensure_future(self._evaluate())
        self._in_flight = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._in_flight is task and task.done():
                self._in_flight = None

    def get_recommended_action(self, level: AlertLevel | str) -> str:
        return get_recommended_action(level)

    def get_max_leverage(self, level: AlertLevel | str) -> float:
        return get_max_leverage(level, self.max_safe_leverage)

    async def _evaluate(self) -> CircuitBreakerStatus:
        self.evaluations += 1
        try:
            btc = await self._check_btc_drop()
            if btc.level == AlertLevel.RED:
                status = self._build_status(btc, [btc])
            else:
                funding, drawdown, exchange = await asyncio.gather(
                    self._check_funding_extremes(),
                    self._check_account_drawdown(),
                    self._check_exchange_health(),
                )
                readings = [btc, funding, drawdown, exchange]
                status = self._build_status(resolve_highest(readings), readings)
        except Exception as exc:
            self.logger.error(f"Circuit breaker check failed: {exc}")
            status = CircuitBreakerStatus(
                level=AlertLevel.YELLOW,
                reason=f"Circuit breaker check error: {exc}",
            )
        finally:
            self._in_flight = None

        self._cached_status = status
        self._cached_at = self.monotonic()
        self._record_level(status)
        return status

    @staticmethod
    def _build_status(winner: SignalReading, readings: List[SignalReading]) -> CircuitBreakerStatus:
        status = CircuitBreakerStatus(
            level=winner.level,
            reason=winner.reason if winner.level != AlertLevel.NONE else "All systems normal",
        )
        # Surface every numeric reading gathered, not just the winner's
        for reading in readings:
            for name in ("btc_drop_4h", "account_drawdown_24h", "funding_rate_extreme", "exchange_degraded"):
                value = getattr(reading, name)
                if value is not None and getattr(status, name) is None:
                    setattr(status, name, value)
        return status

    def _record_level(self, status: CircuitBreakerStatus) -> None:
        if status.level == self._last_level:
            return
        previous = self._last_level
        self._last_level = status.level
        self.record_health_state(
            "circuit_breaker",
            status.level.value,
            {"reason": status.reason, "previous": previous.value if previous else None},
        )
        if status.level != AlertLevel.NONE:
            self.actions_logger.info(f"🚨 Circuit breaker {status.level.value}: {status.reason}")
        elif previous is not None:
            self.actions_logger.info("✅ Circuit breaker cleared")

    async def _check_btc_drop(self) -> SignalReading:
        try:
            candles = await self.exchange.get_candles(self.reference_symbol, '1h', 5)
        except Exception as exc:
            self.logger.warning(f"BTC drop check failed: {exc}")
            return SignalReading()

        candles = [c for c in (candles or []) if c is not None]
        if len(candles) < 4:
            self.logger.warning("Insufficient BTC candle data for circuit breaker check")
            return SignalReading()

        candles.sort(key=lambda c: to_epoch_ms(_candle_value(c, "timestamp", 0)))
        price_ago = safe_float(_candle_value(candles[0], "open", 1), 0.0)
        price_now = safe_float(_candle_value(candles[-1], "close", 4), 0.0)
        if price_ago <= 0 or price_now <= 0:
            self.logger.warning("Invalid BTC price data")
            return SignalReading()

        drop_pct = (price_now - price_ago) / price_ago * 100
        if drop_pct <= BTC_DROP_RED_PCT:
            return SignalReading(
                AlertLevel.RED,
                f"BTC dropped {abs(drop_pct):.1f}% in 4 hours (RED ALERT: liquidation cascade risk)",
                btc_drop_4h=drop_pct,
            )
        if drop_pct <= BTC_DROP_ORANGE_PCT:
            return SignalReading(
                AlertLevel.ORANGE,
                f"BTC dropped {abs(drop_pct):.1f}% in 4 hours (ORANGE ALERT: major risk reduction)",
                btc_drop_4h=drop_pct,
            )
        if drop_pct <= BTC_DROP_YELLOW_PCT:
            return SignalReading(
                AlertLevel.YELLOW,
                f"BTC dropped {abs(drop_pct):.1f}% in 4 hours (YELLOW ALERT: reduce risk)",
                btc_drop_4h=drop_pct,
            )
        return SignalReading(btc_drop_4h=drop_pct)

    async def _fetch_abs_funding_rate(self, symbol: str) -> float:
        try:
            payload = await self.exchange.get_funding_rate(symbol)
        except Exception as exc:
            self.logger.debug(f"Funding rate fetch failed for {symbol}: {exc}")
            return 0.0
        if isinstance(payload, list):
            payload = payload[0] if payload else {}
        if isinstance(payload, dict):
            payload = payload.get("fundingRate", payload.get("funding_rate"))
        return abs(safe_float(payload, 0.0))

    async def _check_funding_extremes(self) -> SignalReading:
        if not self.funding_symbols:
            return SignalReading()
        rates = await asyncio.gather(*(self._fetch_abs_funding_rate(s) for s in self.funding_symbols))
        max_rate = max(rates) if rates else 0.0
        rate_pct = max_rate * 100
        if rate_pct >= FUNDING_ORANGE_PCT:
            return SignalReading(
                AlertLevel.ORANGE,
                f"Extreme funding rate: {rate_pct:.3f}% (ORANGE ALERT: crowd positioning extreme)",
                funding_rate_extreme=max_rate,
            )
        if rate_pct >= FUNDING_YELLOW_PCT:
            return SignalReading(
                AlertLevel.YELLOW,
                f"High funding rate: {rate_pct:.3f}% (YELLOW ALERT: crowded positioning)",
                funding_rate_extreme=max_rate,
            )
        return SignalReading()

    async def _check_account_drawdown(self) -> SignalReading:
        # Fail closed: without a current balance the account risk is unknown
        try:
            assets = await self.exchange.get_account_assets()
        except Exception as exc:
            self.logger.warning(f"Drawdown check could not fetch balance: {exc}")
            return SignalReading(AlertLevel.YELLOW, f"Account balance unavailable for drawdown check: {exc}")
        current = extract_available_balance(assets)
        if current is None:
            return SignalReading(AlertLevel.YELLOW, "Account balance unavailable for drawdown check: invalid payload")

        if self.db is None:
            return SignalReading()
        now = self.now()
        try:
            snapshot = self.db.get_balance_snapshot_between(now - timedelta(hours=24), now - timedelta(hours=23))
        except Exception as exc:
            self.logger.warning(f"Could not load 24h balance snapshot: {exc}")
            return SignalReading()
        if not snapshot:
            # New account: nothing to compare against yet
            return SignalReading()

        reference = safe_float(snapshot.get("balance"), 0.0)
        if reference <= 0:
            return SignalReading()
        drawdown_pct = max(0.0, (reference - current) / reference * 100)
        if drawdown_pct >= DRAWDOWN_RED_PCT:
            return SignalReading(
                AlertLevel.RED,
                f"Account down {drawdown_pct:.1f}% in 24h (RED ALERT: emergency exit)",
                account_drawdown_24h=drawdown_pct,
            )
        if drawdown_pct >= DRAWDOWN_ORANGE_PCT:
            return SignalReading(
                AlertLevel.ORANGE,
                f"Account down {drawdown_pct:.1f}% in 24h (ORANGE ALERT: major risk reduction)",
                account_drawdown_24h=drawdown_pct,
            )
        if drawdown_pct >= DRAWDOWN_YELLOW_PCT:
            return SignalReading(
                AlertLevel.YELLOW,
                f"Account down {drawdown_pct:.1f}% in 24h (YELLOW ALERT: reduce risk)",
                account_drawdown_24h=drawdown_pct,
            )
        return SignalReading(account_drawdown_24h=drawdown_pct)

    async def _check_exchange_health(self) -> SignalReading:
        started = self.monotonic()
        try:
            await self.exchange.get_server_time()
        except Exception as exc:
            return SignalReading(AlertLevel.ORANGE, f"Exchange API error: {exc}", exchange_degraded=True)
        elapsed_ms = (self.monotonic() - started) * 1000
        if elapsed_ms > EXCHANGE_SLOW_MS:
            return SignalReading(
                AlertLevel.YELLOW,
                f"Exchange API slow ({elapsed_ms:.0f}ms response time)",
                exchange_degraded=True,
            )
        return SignalReading(exchange_degraded=False)
