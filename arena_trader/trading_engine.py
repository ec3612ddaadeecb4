import asyncio
import json
import logging
import signal
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import jsonschema

from arena_trader.config import (
    APPROVED_SYMBOLS,
    CLEANUP_TIMEOUT_SECONDS,
    DEFAULT_LEVERAGE,
    DRY_RUN,
    ENGINE_ID,
    EXCHANGE_READ_MAX_RETRIES,
    EXCHANGE_READ_RETRY_BASE_SECONDS,
    MAX_CONCURRENT_POSITIONS,
    MAX_CONSECUTIVE_FAILURES,
    MAX_MARKET_DATA_AGE_SECONDS,
    MAX_POSITION_SIZE_PERCENT,
    MIN_BALANCE_TO_TRADE,
    MIN_CONFIDENCE_TO_TRADE,
    MIN_TRADE_INTERVAL_SECONDS,
    RECENT_PNL_LOOKBACK,
)
from arena_trader.database import TradingDatabase
from arena_trader.decision_pipeline import (
    ChampionDecision,
    DecisionPipeline,
    RiskReview,
    SpecialistAnalysis,
    SymbolSelection,
    coerce_result,
)
from arena_trader.events import (
    COIN_SELECTED,
    CYCLE_COMPLETE,
    CYCLE_START,
    EMERGENCY_CLOSE,
    RISK_COUNCIL_DECISION,
    SPECIALIST_ANALYSIS,
    STARTED,
    STOPPED,
    TOURNAMENT_COMPLETE,
    TRADE_EXECUTED,
    EventChannel,
)
from arena_trader.exchange_client import BaseExchangeClient, extract_available_balance
from arena_trader.logger_config import emit_telemetry, set_logging_context, setup_logging
from arena_trader.services.circuit_breaker import AlertLevel, CircuitBreaker
from arena_trader.services.portfolio_aggregator import PortfolioAggregator
from arena_trader.services.position_sync import EntryContext, PositionSyncService, TrackedTrade
from arena_trader.services.trading_scheduler import TradingScheduler
from arena_trader.symbols import LONG, SHORT
from arena_trader.utils import get_order_id, is_positive_finite, retry_async, safe_float

logger = logging.getLogger(__name__)
bot_actions_logger = logging.getLogger('bot_actions')

ORDER_SIDES = {LONG: "open_long", SHORT: "open_short"}

ORDER_SCHEMA = {
    "type": "object",
    "properties": {
        "client_order_id": {"type": "string", "minLength": 1},
        "symbol": {"type": "string", "pattern": "^[a-z0-9]+_[a-z0-9]+$"},
        "side": {"type": "string", "enum": ["open_long", "open_short"]},
        "order_type": {"type": "string", "enum": ["market"]},
        "size": {"type": "number", "exclusiveMinimum": 0},
        "price": {"type": "number", "exclusiveMinimum": 0},
        "leverage": {"type": "number", "exclusiveMinimum": 0},
        "take_profit": {"type": ["number", "null"], "exclusiveMinimum": 0},
        "stop_loss": {"type": ["number", "null"], "exclusiveMinimum": 0},
    },
    "required": ["client_order_id", "symbol", "side", "order_type", "size", "price", "leverage"],
    "additionalProperties": False,
}


@dataclass
class Cycle:
    number: int
    start_time: float
    end_time: Optional[float] = None
    symbols_analyzed: List[str] = field(default_factory=list)
    trades_executed: int = 0
    debates_run: int = 0
    errors: List[str] = field(default_factory=list)
    failed: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PositionPlan:
    leverage: float
    position_percent: float
    notional: float
    margin: float
    size: float


def compute_position_plan(
    balance: float,
    price: float,
    position_size: float,
    leverage: float,
    max_position_pct: float = MAX_POSITION_SIZE_PERCENT,
) -> PositionPlan:
    """
    Turn a 1-10 conviction size into contract size and margin.

    position_size=10 commits max_position_pct of the balance as notional.
    Raises ValueError when any derived number is not finite and positive.
    """
    if not is_positive_finite(balance):
        raise ValueError(f"Invalid balance for sizing: {balance}")
    if not is_positive_finite(price):
        raise ValueError(f"Invalid price for sizing: {price}")
    if not is_positive_finite(leverage):
        raise ValueError(f"Invalid leverage for sizing: {leverage}")
    position_percent = min(max_position_pct, safe_float(position_size) / 10 * max_position_pct)
    notional = balance * position_percent / 100
    margin = notional / leverage
    size = notional / price
    for name, value in (("notional", notional), ("margin", margin), ("size", size)):
        if not is_positive_finite(value):
            raise ValueError(f"Computed {name} is invalid: {value}")
    return PositionPlan(leverage, position_percent, notional, margin, size)


def validate_exit_levels(direction: str, entry: float, take_profit: Optional[float], stop_loss: Optional[float]):
    """Raise ValueError when TP/SL sit on the wrong side of the entry for the direction."""
    if direction == LONG:
        if take_profit is not None and take_profit <= entry:
            raise ValueError(f"Take profit {take_profit} must be above entry {entry} for LONG")
        if stop_loss is not None and stop_loss >= entry:
            raise ValueError(f"Stop loss {stop_loss} must be below entry {entry} for LONG")
    else:
        if take_profit is not None and take_profit >= entry:
            raise ValueError(f"Take profit {take_profit} must be below entry {entry} for SHORT")
        if stop_loss is not None and stop_loss <= entry:
            raise ValueError(f"Stop loss {stop_loss} must be above entry {entry} for SHORT")


def failure_backoff(consecutive_failures: int) -> float:
    if consecutive_failures <= 0:
        return 1.0
    return min(4.0, 1.5 ** consecutive_failures)


class TradingEngine:
    """
    Cycle controller: market scan, breaker, decision pipeline, execution,
    reconciliation and attribution, then an activity-aware sleep.

    Lifecycle is new -> start -> stop -> cleanup; cleanup is required before a
    restart reuses the same instance.
    """

    def __init__(
        self,
        exchange: BaseExchangeClient,
        pipeline: DecisionPipeline,
        db: Optional[TradingDatabase] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        position_sync: Optional[PositionSyncService] = None,
        aggregator: Optional[PortfolioAggregator] = None,
        scheduler: Optional[TradingScheduler] = None,
        events: Optional[EventChannel] = None,
        symbols: Optional[List[str]] = None,
        dry_run: bool = DRY_RUN,
        min_confidence: float = MIN_CONFIDENCE_TO_TRADE,
        max_position_pct: float = MAX_POSITION_SIZE_PERCENT,
        default_leverage: float = DEFAULT_LEVERAGE,
        min_balance: float = MIN_BALANCE_TO_TRADE,
        max_concurrent_positions: int = MAX_CONCURRENT_POSITIONS,
        min_trade_interval_seconds: float = MIN_TRADE_INTERVAL_SECONDS,
        max_market_data_age_seconds: float = MAX_MARKET_DATA_AGE_SECONDS,
        max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES,
        cleanup_timeout_seconds: float = CLEANUP_TIMEOUT_SECONDS,
        read_max_retries: int = EXCHANGE_READ_MAX_RETRIES,
        read_retry_base_seconds: float = EXCHANGE_READ_RETRY_BASE_SECONDS,
        engine_id: str = ENGINE_ID,
        clock: Optional[Callable[[], float]] = None,
        actions_logger: Optional[logging.Logger] = None,
        telemetry_logger: Optional[logging.Logger] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.exchange = exchange
        self.pipeline = pipeline
        self.db = db or TradingDatabase()
        self.clock = clock or time.time
        self.logger = logger or logging.getLogger(__name__)
        self.actions_logger = actions_logger or bot_actions_logger
        self.telemetry_logger = telemetry_logger or logging.getLogger('telemetry')

        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            exchange,
            db=self.db,
            record_health_state=self._record_health_state,
            actions_logger=self.actions_logger,
        )
        self.position_sync = position_sync or PositionSyncService(
            exchange,
            self.db,
            record_health_state=self._record_health_state,
            actions_logger=self.actions_logger,
        )
        self.aggregator = aggregator or PortfolioAggregator(
            self.db,
            record_health_state=self._record_health_state,
        )
        self.scheduler = scheduler or TradingScheduler()
        self.events = events or EventChannel()

        self.symbols = list(symbols or APPROVED_SYMBOLS)
        self.dry_run = dry_run
        self.min_confidence = min_confidence
        self.max_position_pct = max_position_pct
        self.default_leverage = default_leverage
        self.min_balance = min_balance
        self.max_concurrent_positions = max_concurrent_positions
        self.min_trade_interval_seconds = min_trade_interval_seconds
        self.max_market_data_age_seconds = max_market_data_age_seconds
        self.max_consecutive_failures = max_consecutive_failures
        self.cleanup_timeout_seconds = cleanup_timeout_seconds
        self.read_max_retries = read_max_retries
        self.read_retry_base_seconds = read_retry_base_seconds
        self.engine_id = engine_id

        self.running = False
        self._starting = False
        self._stop_requested = False
        self._loop_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.operator_id: Optional[str] = None
        self.run_id: Optional[str] = None
        self.started_at: Optional[float] = None
        self.shutdown_reason: Optional[str] = None

        self.balance = 0.0
        self.positions: List[dict] = []
        self.cycle_count = 0
        self.current_cycle: Optional[Cycle] = None
        self.last_cycle: Optional[Cycle] = None
        self.total_trades = 0
        self.last_trade_at: Optional[float] = None
        self.consecutive_failures = 0
        self.next_cycle_at: Optional[float] = None

    # Lifecycle
    async def start(self, operator_id: str = "operator") -> bool:
        """
        Initialize account state and launch the loop in the background.

        Returns False when already running or starting, or when stop() was
        called while initialization was in progress. Initialization errors
        propagate and leave the engine stopped.
        """
        if self.running or self._starting:
            self.logger.warning("Engine already running or starting; ignoring start()")
            return False
        self._starting = True
        self._stop_requested = False
        self.shutdown_reason = None
        try:
            self.run_id = uuid.uuid4().hex[:12]
            set_logging_context(engine_id=self.engine_id, run_id=self.run_id)
            await self._initialize()
            if self._stop_requested:
                self.logger.info(f"Stop requested during start ({self.shutdown_reason}); not launching the loop")
                return False
            self.operator_id = operator_id
            self.started_at = self.clock()
            stop_event = asyncio.Event()
            self._stop_event = stop_event
            self.running = True
            self._loop_task = asyncio.create_task(self.run_loop(stop_event))
        except Exception as e:
            self.running = False
            self.logger.error(f"Engine start failed: {e}")
            self._record_health_state("engine", "start_failed", {"error": str(e)})
            raise
        finally:
            self._starting = False
            self._stop_requested = False

        mode = "DRY RUN" if self.dry_run else "LIVE"
        self.actions_logger.info(f"🚀 Engine started by {operator_id} ({mode}, {len(self.symbols)} symbols)")
        self._record_health_state("engine", "running", {"operator_id": operator_id, "dry_run": self.dry_run})
        await self.events.emit(STARTED, {"operator_id": operator_id, "run_id": self.run_id, "dry_run": self.dry_run})
        return True

    async def _initialize(self):
        assets = await self._read("get_account_assets", self.exchange.get_account_assets)
        balance = extract_available_balance(assets)
        if balance is None:
            raise RuntimeError("Could not read available balance from account assets")
        self.balance = balance
        self.positions = list(await self._read("get_positions", self.exchange.get_positions) or [])
        self.logger.info(f"Account initialized: balance {self.balance:.2f} USDT, {len(self.positions)} open positions")

        restored = 0
        for row in self.db.get_open_trades():
            try:
                if self.position_sync.track_open_trade(TrackedTrade.from_ledger_row(row)):
                    restored += 1
            except (KeyError, ValueError) as e:
                self.logger.warning(f"Skipping unrestorable open trade {row.get('trade_id')}: {e}")
        if restored:
            self.logger.info(f"Restored {restored} tracked trades from the ledger")

        try:
            self.aggregator.initialize_agent_portfolios()
        except Exception as e:
            self.logger.warning(f"Could not initialize agent portfolios: {e}")

    def request_stop(self, reason: Optional[str] = None) -> bool:
        """Flip the running flag and wake the pending sleep. Safe to call from a signal handler."""
        if self._starting and not self.running:
            # start() checks this once initialization finishes
            self._stop_requested = True
            self.shutdown_reason = reason or self.shutdown_reason
            return True
        if not self.running:
            return False
        self.running = False
        self.shutdown_reason = reason or self.shutdown_reason
        if self._stop_event is not None:
            self._stop_event.set()
        return True

    async def stop(self, reason: Optional[str] = None) -> bool:
        """Cooperative stop; the in-flight iteration finishes on its own."""
        if not self.request_stop(reason):
            return False
        self.actions_logger.info(f"🛑 Engine stopping{f': {reason}' if reason else ''}")
        self._record_health_state("engine", "stopped", {"reason": self.shutdown_reason})
        await self.events.emit(STOPPED, {"reason": self.shutdown_reason, "cycles": self.cycle_count})
        return True

    async def cleanup(self):
        """Stop, wait a bounded time for the loop, then reset in-memory state."""
        await self.stop("cleanup")
        task = self._loop_task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=self.cleanup_timeout_seconds)
            except asyncio.TimeoutError:
                self.logger.warning(
                    f"Cleanup timed out after {self.cleanup_timeout_seconds:.0f}s waiting for the in-flight cycle"
                )
            except Exception as e:
                self.logger.warning(f"Loop task ended with error during cleanup: {e}")
        self._loop_task = None
        self._stop_event = None
        self.position_sync.clear()
        self.circuit_breaker.invalidate()
        self.positions = []
        self.current_cycle = None
        self.next_cycle_at = None
        self.consecutive_failures = 0
        self.logger.info("Engine cleanup complete")

    # Loop
    def _owns_run(self, stop_event: Optional[asyncio.Event]) -> bool:
        """True while the loop started with stop_event is the live run."""
        return self.running and stop_event is not None and self._stop_event is stop_event

    async def run_loop(self, stop_event: Optional[asyncio.Event] = None):
        """
        Cycle until stopped. A loop abandoned by a timed-out cleanup exits after
        its in-flight cycle even if the engine has been restarted since.
        """
        stop_event = stop_event or self._stop_event
        try:
            while self._owns_run(stop_event):
                try:
                    await self.run_cycle()
                except Exception as e:
                    self.logger.exception(f"Fatal loop error: {e}")
                    if self._owns_run(stop_event):
                        self._record_health_state("engine", "fatal", {"error": str(e)})
                        await self.stop(f"fatal error: {e}")
                    break
                if not self._owns_run(stop_event):
                    break
                await self._sleep_until_next_cycle(stop_event)
        finally:
            self.logger.info("Trading loop exited")

    async def _sleep_until_next_cycle(self, stop_event: Optional[asyncio.Event] = None):
        seconds = self.scheduler.next_interval(failure_backoff(self.consecutive_failures))
        self.next_cycle_at = self.clock() + seconds
        if stop_event is None:
            return
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _read(self, description: str, operation):
        """Idempotent exchange read with bounded exponential-backoff retry."""
        return await retry_async(
            operation,
            self.read_max_retries,
            self.read_retry_base_seconds,
            description=description,
            logger=self.logger,
        )

    async def run_cycle(self) -> Cycle:
        """One pass from market scan to attribution. Stage errors land in cycle.errors."""
        self.cycle_count += 1
        cycle = Cycle(number=self.cycle_count, start_time=self.clock())
        self.current_cycle = cycle
        self.logger.info(f"=== Cycle {cycle.number} ===")
        await self.events.emit(CYCLE_START, {"cycle": cycle.number})

        try:
            await self._run_decision_stages(cycle)
        except Exception as e:
            self.logger.exception(f"Cycle {cycle.number} error: {e}")
            cycle.errors.append(f"Cycle error: {e}")
            cycle.failed = True

        await self._reconcile_and_aggregate(cycle)
        await self._finalize_cycle(cycle)
        return cycle

    async def _finalize_cycle(self, cycle: Cycle):
        cycle.end_time = max(self.clock(), cycle.start_time)
        self.last_cycle = cycle
        self.current_cycle = None

        if cycle.failed:
            self.consecutive_failures += 1
        else:
            self.consecutive_failures = 0

        emit_telemetry({"type": "cycle", **cycle.to_dict(), "balance": self.balance}, self.telemetry_logger)
        await self.events.emit(CYCLE_COMPLETE, cycle.to_dict())
        self.logger.info(
            f"Cycle {cycle.number} complete in {cycle.end_time - cycle.start_time:.1f}s: "
            f"{cycle.trades_executed} trades, {len(cycle.errors)} errors"
        )

        if self.consecutive_failures >= self.max_consecutive_failures:
            self.logger.error(f"{self.consecutive_failures} consecutive failed cycles; stopping engine")
            await self.stop(f"{self.consecutive_failures} consecutive failed cycles")

    async def _run_decision_stages(self, cycle: Cycle):
        await self._refresh_balance(cycle)

        market_data = await self.fetch_market_data()
        if not market_data:
            cycle.errors.append("No market data available for any symbol")
            cycle.failed = True
            return
        cycle.symbols_analyzed = list(market_data)

        status = await self.circuit_breaker.check("cycle")
        if status.level == AlertLevel.RED:
            cycle.errors.append(f"Circuit breaker RED: {status.reason}")
            await self.emergency_close_all(status.reason)
            return
        if status.level != AlertLevel.NONE:
            self.logger.warning(f"Circuit breaker {status.level.value}: {status.reason}")

        selection = coerce_result(SymbolSelection, await self.pipeline.select_symbol(market_data), "select_symbol")
        if selection is None:
            self.logger.info("No symbol selected this cycle")
            return
        symbol_data = market_data.get(selection.symbol)
        if symbol_data is None:
            cycle.errors.append(f"Selected symbol {selection.symbol} has no market data")
            return
        await self.events.emit(COIN_SELECTED, selection.model_dump())
        self.actions_logger.info(f"🎯 Selected {selection.symbol} {selection.direction}")

        raw_analyses = await self.pipeline.analyze_specialists(selection.symbol, symbol_data, selection.direction)
        analyses = [
            a for a in (coerce_result(SpecialistAnalysis, raw, "analyze_specialists") for raw in raw_analyses or [])
            if a is not None
        ]
        await self.events.emit(
            SPECIALIST_ANALYSIS,
            {"symbol": selection.symbol, "analyses": [a.model_dump() for a in analyses]},
        )
        if not analyses:
            self.logger.info(f"No specialist analyses for {selection.symbol}")
            return

        cycle.debates_run += 1
        champion = coerce_result(ChampionDecision, await self.pipeline.adjudicate(analyses, symbol_data), "adjudicate")
        await self.events.emit(
            TOURNAMENT_COMPLETE,
            {"symbol": selection.symbol, "champion": champion.model_dump() if champion else None},
        )
        if champion is None:
            self.logger.info("Debate produced no champion")
            return
        try:
            direction = champion.direction
        except ValueError:
            self.logger.info(f"Champion {champion.analyst_id} recommends {champion.recommendation}; no trade")
            return
        if champion.confidence < self.min_confidence:
            self.logger.info(
                f"Champion confidence {champion.confidence:.0f} below threshold {self.min_confidence:.0f}; no trade"
            )
            return

        try:
            recent_pnl = self.db.get_recent_realized_pnl(RECENT_PNL_LOOKBACK)
        except Exception as e:
            self.logger.warning(f"Could not load recent P&L for risk review: {e}")
            recent_pnl = []
        review = coerce_result(
            RiskReview,
            await self.pipeline.review_risk(champion, symbol_data, self.balance, self.positions, recent_pnl),
            "review_risk",
        )
        await self.events.emit(
            RISK_COUNCIL_DECISION,
            {"symbol": selection.symbol, "review": review.model_dump() if review else None},
        )
        if review is None or not review.approved:
            veto = review.veto_reason if review else "no risk review"
            self.actions_logger.info(f"⛔ Risk council veto on {selection.symbol}: {veto}")
            return

        await self._execute_trade(cycle, selection.symbol, direction, champion, review, symbol_data, status.level)

    async def _refresh_balance(self, cycle: Cycle):
        try:
            balance = extract_available_balance(
                await self._read("get_account_assets", self.exchange.get_account_assets)
            )
        except Exception as e:
            self.logger.warning(f"Balance refresh failed: {e}")
            cycle.errors.append(f"Balance refresh failed: {e}")
            return
        if balance is None:
            cycle.errors.append("Balance refresh returned no usable balance")
            return
        self.balance = balance
        try:
            self.db.log_balance_snapshot(balance)
        except Exception as e:
            self.logger.warning(f"Could not record balance snapshot: {e}")

    async def _fetch_symbol_data(self, symbol: str) -> dict:
        ticker = await self._read(f"get_ticker {symbol}", lambda: self.exchange.get_ticker(symbol))
        if isinstance(ticker, list):
            ticker = ticker[0] if ticker else {}
        ticker = ticker or {}
        price = safe_float(ticker.get("last") or ticker.get("price") or ticker.get("close"))
        if price <= 0:
            raise ValueError(f"No valid price in ticker for {symbol}")
        try:
            funding = await self.exchange.get_funding_rate(symbol)
            if isinstance(funding, dict):
                funding = funding.get("fundingRate", funding.get("funding_rate"))
            funding_rate = safe_float(funding)
        except Exception as e:
            self.logger.debug(f"Funding rate unavailable for {symbol}: {e}")
            funding_rate = None
        return {
            "symbol": symbol,
            "price": price,
            "funding_rate": funding_rate,
            "ticker": ticker,
            "fetched_at": self.clock(),
        }

    async def fetch_market_data(self) -> Dict[str, dict]:
        """Concurrent per-symbol fetch; failed symbols are logged and omitted."""
        results = await asyncio.gather(*(self._fetch_symbol_data(s) for s in self.symbols), return_exceptions=True)
        market_data: Dict[str, dict] = {}
        for symbol, result in zip(self.symbols, results):
            if isinstance(result, Exception):
                self.logger.warning(f"Market data fetch failed for {symbol}: {result}")
                continue
            market_data[symbol] = result
        return market_data

    def _safety_gate(self, symbol_data: dict) -> Optional[str]:
        """Return a block reason, or None when a new trade is allowed."""
        now = self.clock()
        open_positions = max(len(self.positions), self.position_sync.tracked_count)
        if open_positions >= self.max_concurrent_positions:
            return f"Max concurrent positions reached ({open_positions}/{self.max_concurrent_positions})"
        if self.last_trade_at is not None and now - self.last_trade_at < self.min_trade_interval_seconds:
            remaining = self.min_trade_interval_seconds - (now - self.last_trade_at)
            return f"Trade cooldown active ({remaining:.0f}s remaining)"
        if self.balance < self.min_balance:
            return f"Balance {self.balance:.2f} below minimum {self.min_balance:.2f}"
        age = now - safe_float(symbol_data.get("fetched_at"), 0.0)
        if age > self.max_market_data_age_seconds:
            return f"Market data is stale ({age:.0f}s old)"
        return None

    async def _execute_trade(
        self,
        cycle: Cycle,
        symbol: str,
        direction: str,
        champion: ChampionDecision,
        review: RiskReview,
        symbol_data: dict,
        breaker_level: AlertLevel,
    ):
        block_reason = self._safety_gate(symbol_data)
        if block_reason:
            self.actions_logger.info(f"⛔ Trade blocked: {block_reason}")
            emit_telemetry({"type": "trade", "status": "blocked", "symbol": symbol, "reason": block_reason},
                           self.telemetry_logger)
            return

        adjustments = review.adjustments
        leverage_cap = self.circuit_breaker.get_max_leverage(breaker_level)
        requested_leverage = (adjustments.leverage if adjustments else None) or champion.leverage or self.default_leverage
        leverage = min(leverage_cap, requested_leverage)
        position_size = (adjustments.position_size if adjustments else None) or champion.position_size
        take_profit = (adjustments.take_profit if adjustments else None) or champion.take_profit
        stop_loss = (adjustments.stop_loss if adjustments else None) or champion.stop_loss
        price = symbol_data["price"]

        try:
            plan = compute_position_plan(self.balance, price, position_size, leverage, self.max_position_pct)
            validate_exit_levels(direction, price, take_profit, stop_loss)
        except ValueError as e:
            self.logger.error(f"Rejected trade on {symbol}: {e}")
            cycle.errors.append(f"Trade rejected: {e}")
            return

        order_spec = {
            "client_order_id": uuid.uuid4().hex,
            "symbol": symbol,
            "side": ORDER_SIDES[direction],
            "order_type": "market",
            "size": plan.size,
            "price": price,
            "leverage": plan.leverage,
            "take_profit": take_profit,
            "stop_loss": stop_loss,
        }
        try:
            jsonschema.validate(order_spec, ORDER_SCHEMA)
        except jsonschema.ValidationError as e:
            self.logger.error(f"Order spec failed schema validation: {e.message}")
            cycle.errors.append(f"Trade rejected: invalid order spec ({e.message})")
            return

        if self.dry_run:
            order_id = f"dry-{order_spec['client_order_id']}"
            self.actions_logger.info(
                f"🧪 DRY RUN {direction} {symbol}: size {plan.size:.6f} @ {price} ({plan.leverage:.0f}x)"
            )
        else:
            order_result = await self.exchange.place_order(order_spec)
            order_id = get_order_id(order_result)
            if not order_id:
                raise RuntimeError(f"Order for {symbol} returned no order id: {order_result}")

        trade_id = str(uuid.uuid4())
        entry_context = EntryContext(
            regime=symbol_data.get("regime"),
            z_score=symbol_data.get("z_score"),
            funding_rate=symbol_data.get("funding_rate"),
            sentiment=symbol_data.get("sentiment"),
            signals=dict(champion.scores),
        )
        attribution = {
            "winning_agent": champion.analyst_id,
            "agent_scores": dict(champion.scores),
            "reasoning": champion.reasoning,
        }
        try:
            self.db.log_trade(
                trade_id,
                symbol,
                direction,
                plan.size,
                price,
                leverage=plan.leverage,
                order_id=order_id,
                take_profit=take_profit,
                stop_loss=stop_loss,
                champion_id=champion.analyst_id,
                confidence=champion.confidence,
                reason=champion.reasoning,
                entry_context=asdict(entry_context),
                attribution=attribution,
                executed_at=datetime.fromtimestamp(self.clock(), tz=timezone.utc),
                dry_run=self.dry_run,
            )
        except Exception as e:
            # The order is live on the exchange; keep going so it stays tracked
            self.logger.error(f"Failed to persist trade {trade_id} ({order_id}): {e}")

        if not self.dry_run:
            tracked = TrackedTrade(
                trade_id=trade_id,
                order_id=order_id,
                symbol=symbol,
                side=direction,
                entry_price=price,
                size=plan.size,
                leverage=plan.leverage,
                take_profit=take_profit,
                stop_loss=stop_loss,
                entry_context=entry_context,
                winning_agent=champion.analyst_id,
                agent_scores=dict(champion.scores),
                adjudication_reasoning=champion.reasoning,
            )
            try:
                self.position_sync.track_open_trade(tracked)
            except ValueError as e:
                self.logger.error(f"Could not track trade {trade_id}: {e}")

        cycle.trades_executed = 1
        self.total_trades += 1
        self.last_trade_at = self.clock()

        trade_record = {
            "trade_id": trade_id,
            "order_id": order_id,
            "symbol": symbol,
            "side": direction,
            "size": plan.size,
            "price": price,
            "leverage": plan.leverage,
            "margin": plan.margin,
            "notional": plan.notional,
            "take_profit": take_profit,
            "stop_loss": stop_loss,
            "champion": champion.analyst_id,
            "confidence": champion.confidence,
            "dry_run": self.dry_run,
        }
        if not self.dry_run:
            self.actions_logger.info(
                f"✅ {direction} {symbol}: size {plan.size:.6f} @ {price} ({plan.leverage:.0f}x, "
                f"margin {plan.margin:.2f} USDT) by {champion.analyst_id}"
            )
        emit_telemetry({"type": "trade", "status": "executed", **trade_record}, self.telemetry_logger)
        await self.events.emit(TRADE_EXECUTED, trade_record)

    async def _reconcile_and_aggregate(self, cycle: Cycle):
        try:
            self.positions = list(await self._read("get_positions", self.exchange.get_positions) or [])
        except Exception as e:
            # Without a position list every tracked trade would look closed
            self.logger.warning(f"Position fetch failed; skipping reconciliation: {e}")
            cycle.errors.append(f"Position sync skipped: {e}")
        else:
            try:
                summary = await self.position_sync.sync(self.positions)
                if summary.closed or summary.evicted:
                    self.logger.info(
                        f"Reconciliation: {summary.closed} closed, {summary.evicted} evicted, "
                        f"{summary.still_open} still open"
                    )
            except Exception as e:
                self.logger.error(f"Position sync failed: {e}")
                cycle.errors.append(f"Position sync failed: {e}")

        try:
            await self.aggregator.update_portfolios()
        except Exception as e:
            self.logger.error(f"Portfolio aggregation failed: {e}")
            cycle.errors.append(f"Portfolio aggregation failed: {e}")

    # Safety
    async def emergency_close_all(self, reason: str = "manual") -> Dict[str, List[str]]:
        """Close every tracked symbol sequentially; local tracking is cleared regardless."""
        symbols = self.position_sync.tracked_symbols()
        self.actions_logger.info(f"🚨 EMERGENCY CLOSE ({reason}): {len(symbols)} symbols")
        closed: List[str] = []
        failed: List[str] = []
        for symbol in symbols:
            try:
                await self.exchange.close_all_positions(symbol)
                closed.append(symbol)
            except Exception as e:
                self.logger.error(f"Emergency close failed for {symbol}: {e}")
                failed.append(symbol)
        for symbol in symbols:
            self.position_sync.untrack_symbol(symbol)

        result = {"closed": closed, "failed": failed}
        emit_telemetry({"type": "emergency_close", "reason": reason, **result}, self.telemetry_logger)
        await self.events.emit(EMERGENCY_CLOSE, {"reason": reason, **result})
        return result

    async def trigger_circuit_check(self):
        """Manually requested breaker evaluation; shares any in-flight cycle evaluation."""
        return await self.circuit_breaker.check("manual")

    def get_status(self) -> Dict[str, Any]:
        breaker = self.circuit_breaker.last_status
        return {
            "running": self.running,
            "starting": self._starting,
            "operator_id": self.operator_id,
            "run_id": self.run_id,
            "dry_run": self.dry_run,
            "started_at": self.started_at,
            "cycle_count": self.cycle_count,
            "total_trades": self.total_trades,
            "balance": self.balance,
            "open_positions": len(self.positions),
            "tracked_trades": self.position_sync.tracked_count,
            "consecutive_failures": self.consecutive_failures,
            "next_cycle_at": self.next_cycle_at,
            "current_cycle": self.current_cycle.to_dict() if self.current_cycle else None,
            "last_cycle": self.last_cycle.to_dict() if self.last_cycle else None,
            "circuit_breaker": breaker.to_dict() if breaker else None,
            "shutdown_reason": self.shutdown_reason,
        }

    def _record_health_state(self, key: str, value: str, detail: dict = None):
        """Persist health state and emit telemetry."""
        detail_str = None
        if detail is not None:
            try:
                detail_str = json.dumps(detail, default=str)
            except (TypeError, ValueError):
                detail_str = str(detail)
        try:
            self.db.set_health_state(key, value, detail_str)
        except Exception as exc:
            self.logger.debug(f"Could not persist health state {key}: {exc}")
        emit_telemetry(
            {
                "type": "health",
                "source": key,
                "status": value,
                "detail": detail,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            self.telemetry_logger,
        )


async def main(
    exchange: BaseExchangeClient,
    pipeline: DecisionPipeline,
    db: Optional[TradingDatabase] = None,
    operator_id: str = "cli",
):
    """Run an engine with the given venue and decision pipeline until signalled."""
    setup_logging()
    engine = TradingEngine(exchange, pipeline, db=db)

    def signal_handler(sig, frame):
        """Handle Ctrl+C gracefully"""
        logger.info("Received shutdown signal, stopping engine...")
        bot_actions_logger.info("🛑 Engine shutting down...")
        engine.request_stop(f"signal {sig.name if hasattr(sig, 'name') else sig}")

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await engine.start(operator_id)
        if engine._loop_task is not None:
            await engine._loop_task
    finally:
        await engine.cleanup()
        await exchange.close()
        engine.db.close()
        logger.info("Engine stopped")
