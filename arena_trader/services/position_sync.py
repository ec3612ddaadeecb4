import logging
import math
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from arena_trader.config import (
    CLOSE_PRICE_TOLERANCE_PCT,
    HISTORY_ORDERS_LIMIT,
    MAX_TRACKED_TRADES,
    MISSING_CYCLE_THRESHOLD,
    POSITION_OUTCOME_THRESHOLD_PERCENT,
    STALE_TRADE_HOURS,
)
from arena_trader.symbols import normalize_side, position_key
from arena_trader.utils import is_positive_finite, safe_float, to_epoch_ms

MIN_ABS_PRICE_DIFF = 1e-6

EXIT_LIQUIDATION = "liquidation"
EXIT_TP = "tp_hit"
EXIT_SL = "sl_hit"
EXIT_MANUAL = "manual"
EXIT_UNKNOWN = "unknown"

# Journal vocabulary: a liquidation is a forced stop-out
JOURNAL_EXIT_REASONS = {
    EXIT_LIQUIDATION: EXIT_SL,
    EXIT_TP: EXIT_TP,
    EXIT_SL: EXIT_SL,
    EXIT_MANUAL: EXIT_MANUAL,
    EXIT_UNKNOWN: EXIT_UNKNOWN,
}


@dataclass
class EntryContext:
    """Market state captured when the trade was opened."""

    regime: Optional[str] = None
    z_score: Optional[float] = None
    funding_rate: Optional[float] = None
    sentiment: Optional[float] = None
    signals: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TrackedTrade:
    trade_id: str
    order_id: str
    symbol: str
    side: str
    entry_price: float
    size: float
    leverage: float = 1.0
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None
    entry_fee: float = 0.0
    exit_fee: float = 0.0
    funding_paid: float = 0.0
    entry_context: EntryContext = field(default_factory=EntryContext)
    winning_agent: Optional[str] = None
    agent_scores: Dict[str, float] = field(default_factory=dict)
    adjudication_reasoning: Optional[str] = None
    opened_at: float = 0.0  # epoch seconds
    last_sync_at: float = 0.0
    missing_cycles: int = 0

    @property
    def key(self) -> Tuple[str, str]:
        return position_key(self.symbol, self.side)

    @classmethod
    def from_ledger_row(cls, row: Dict[str, Any]) -> "TrackedTrade":
        """Rebuild a tracked trade from an OPEN trades row."""
        context = row.get("entry_context") or {}
        attribution = row.get("attribution") or {}
        opened_at = to_epoch_ms(row.get("executed_at")) / 1000
        return cls(
            trade_id=str(row["trade_id"]),
            order_id=str(row.get("order_id") or ""),
            symbol=row["symbol"],
            side=normalize_side(row.get("side")) or str(row.get("side")),
            entry_price=safe_float(row.get("entry_price")),
            size=safe_float(row.get("size")),
            leverage=safe_float(row.get("leverage"), 1.0) or 1.0,
            take_profit=row.get("take_profit"),
            stop_loss=row.get("stop_loss"),
            entry_context=EntryContext(
                regime=context.get("regime"),
                z_score=context.get("z_score"),
                funding_rate=context.get("funding_rate"),
                sentiment=context.get("sentiment"),
                signals=context.get("signals") or {},
            ),
            winning_agent=attribution.get("winning_agent") or row.get("champion_id"),
            agent_scores=attribution.get("agent_scores") or {},
            adjudication_reasoning=attribution.get("reasoning"),
            opened_at=opened_at,
        )


@dataclass
class CloseResult:
    close_price: float
    realized_pnl: float
    realized_pnl_percent: float
    exit_reason: str
    hold_time_hours: float


@dataclass
class SyncSummary:
    closed: int = 0
    failed: int = 0
    evicted: int = 0
    still_open: int = 0
    dropped_positions: int = 0


def classify_outcome(pnl_percent: float, threshold: float = POSITION_OUTCOME_THRESHOLD_PERCENT) -> str:
    if pnl_percent > threshold:
        return "win"
    if pnl_percent < -threshold:
        return "loss"
    return "breakeven"


def compute_realized_pnl(trade: TrackedTrade, close_price: float) -> Tuple[float, float]:
    """Return (realized P&L net of fees and funding, percent of margin)."""
    if trade.side == "LONG":
        price_diff = close_price - trade.entry_price
    else:
        price_diff = trade.entry_price - close_price
    realized = price_diff * trade.size - (trade.entry_fee + trade.exit_fee + trade.funding_paid)
    leverage = trade.leverage if is_positive_finite(trade.leverage) else 1.0
    margin = trade.size * trade.entry_price / leverage
    percent = realized / margin * 100 if is_positive_finite(margin) else 0.0
    return safe_float(realized), safe_float(percent)


def _near(price: float, target: Optional[float], tolerance_pct: float) -> bool:
    if not target:
        return False
    threshold = max(target * tolerance_pct / 100, MIN_ABS_PRICE_DIFF)
    return abs(price - target) < threshold


class PositionSyncService:
    """
    Reconciles locally tracked trades against the exchange's open positions.

    A tracked trade whose (symbol, side) disappears from the exchange is settled
    from the venue's order history, written to the ledger and journaled.
    """

    def __init__(
        self,
        exchange: Any,
        db: Any,
        max_tracked: int = MAX_TRACKED_TRADES,
        stale_trade_hours: float = STALE_TRADE_HOURS,
        missing_cycle_threshold: int = MISSING_CYCLE_THRESHOLD,
        outcome_threshold_pct: float = POSITION_OUTCOME_THRESHOLD_PERCENT,
        price_tolerance_pct: float = CLOSE_PRICE_TOLERANCE_PCT,
        history_limit: int = HISTORY_ORDERS_LIMIT,
        record_health_state: Optional[Callable[[str, str, Optional[dict]], None]] = None,
        clock: Optional[Callable[[], float]] = None,
        actions_logger: Optional[logging.Logger] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.exchange = exchange
        self.db = db
        self.max_tracked = max_tracked
        self.stale_trade_hours = stale_trade_hours
        self.missing_cycle_threshold = missing_cycle_threshold
        self.outcome_threshold_pct = outcome_threshold_pct
        self.price_tolerance_pct = price_tolerance_pct
        self.history_limit = history_limit
        self.record_health_state = record_health_state or (lambda *_: None)
        self.clock = clock or time.time
        self.actions_logger = actions_logger or logging.getLogger(__name__)
        self.logger = logger or logging.getLogger(__name__)

        self.tracked: Dict[str, TrackedTrade] = {}
        self.in_flight: set[str] = set()

    @property
    def tracked_count(self) -> int:
        return len(self.tracked)

    def get_tracked(self, trade_id: str) -> Optional[TrackedTrade]:
        return self.tracked.get(trade_id)

    def tracked_symbols(self) -> List[str]:
        """Distinct symbols across tracked trades, in tracking order."""
        seen: List[str] = []
        for trade in self.tracked.values():
            if trade.symbol not in seen:
                seen.append(trade.symbol)
        return seen

    def track_open_trade(self, trade: TrackedTrade) -> bool:
        """
        Start tracking a freshly executed trade.

        Raises ValueError for malformed trades. Returns False when the registry is
        full and every entry is mid-processing.
        """
        if not trade.trade_id or not trade.order_id or not trade.symbol:
            raise ValueError("Cannot track trade: trade_id, order_id and symbol are required")
        side = normalize_side(trade.side)
        if side is None:
            raise ValueError(f"Cannot track trade: invalid side '{trade.side}'")
        if not is_positive_finite(trade.entry_price) or not is_positive_finite(trade.size):
            raise ValueError(
                f"Cannot track trade {trade.trade_id}: entry price and size must be positive "
                f"(entry={trade.entry_price}, size={trade.size})"
            )
        if not is_positive_finite(trade.leverage):
            raise ValueError(f"Cannot track trade {trade.trade_id}: leverage must be positive")

        trade.side = side
        trade.symbol = trade.symbol.strip().lower()
        trade.entry_fee = safe_float(trade.entry_fee)
        trade.exit_fee = safe_float(trade.exit_fee)
        trade.funding_paid = safe_float(trade.funding_paid)
        now = self.clock()
        if not trade.opened_at:
            trade.opened_at = now
        trade.last_sync_at = now
        trade.missing_cycles = 0

        if trade.trade_id not in self.tracked and len(self.tracked) >= self.max_tracked:
            if not self._evict_oldest():
                self.logger.warning(
                    f"Cannot track trade {trade.trade_id}: at capacity ({self.max_tracked}) and all are in-progress"
                )
                return False

        self.tracked[trade.trade_id] = trade
        self.logger.info(
            f"Tracking trade: {trade.symbol} {trade.side} @ {trade.entry_price} (trade_id: {trade.trade_id})"
        )
        return True

    def _evict_oldest(self) -> bool:
        candidates = [t for t in self.tracked.values() if t.trade_id not in self.in_flight]
        if not candidates:
            return False
        oldest = min(candidates, key=lambda t: t.opened_at)
        del self.tracked[oldest.trade_id]
        self.logger.debug(f"Evicted oldest tracked trade: {oldest.trade_id}")
        return True

    def untrack(self, trade_id: str) -> bool:
        return self.tracked.pop(trade_id, None) is not None

    def untrack_symbol(self, symbol: str) -> int:
        symbol = symbol.strip().lower()
        doomed = [tid for tid, t in self.tracked.items() if t.symbol == symbol]
        for trade_id in doomed:
            del self.tracked[trade_id]
        return len(doomed)

    def clear(self) -> None:
        self.tracked.clear()
        self.in_flight.clear()
        self.logger.info("Tracked trades cleared")

    def build_position_map(self, positions: List[dict]) -> Tuple[Dict[Tuple[str, str], dict], int]:
        """Key open exchange positions by (symbol, LONG/SHORT), dropping unusable entries."""
        position_map: Dict[Tuple[str, str], dict] = {}
        dropped = 0
        for pos in positions or []:
            if not isinstance(pos, dict) or not pos.get("symbol"):
                self.logger.warning(f"Skipping malformed exchange position: {pos}")
                dropped += 1
                continue
            size = pos.get("size")
            if not is_positive_finite(size):
                self.logger.warning(f"Skipping position with invalid size: {pos.get('symbol')} size={size}")
                dropped += 1
                continue
            side = normalize_side(pos.get("side"))
            if side is None:
                self.logger.warning(f"Skipping position with invalid side: {pos.get('symbol')} side={pos.get('side')}")
                dropped += 1
                continue
            key = position_key(str(pos["symbol"]), side)
            if key in position_map:
                self.logger.warning(f"Multiple positions detected for {key[0]}:{key[1]} - using latest")
            position_map[key] = pos
        return position_map, dropped

    async def sync(self, exchange_positions: List[dict]) -> SyncSummary:
        """Diff tracked trades against exchange positions and settle the ones that closed."""
        now = self.clock()
        summary = SyncSummary()
        position_map, summary.dropped_positions = self.build_position_map(exchange_positions)

        candidates: List[TrackedTrade] = []
        for trade_id, tracked in list(self.tracked.items()):
            if tracked.key in position_map:
                tracked.last_sync_at = now
                tracked.missing_cycles = 0
                continue
            if trade_id in self.in_flight:
                self.logger.debug(f"Trade {trade_id} already being processed, skipping")
                continue
            self.in_flight.add(trade_id)
            candidates.append(tracked)

        for tracked in candidates:
            self.logger.info(f"Position closed detected: {tracked.symbol} {tracked.side} (trade_id: {tracked.trade_id})")
            try:
                result = await self.determine_close_result(tracked)
                await self.handle_closure(tracked, result)
                self.tracked.pop(tracked.trade_id, None)
                summary.closed += 1
            except Exception as exc:
                summary.failed += 1
                self.logger.error(f"Failed to process closed position {tracked.symbol}: {exc}")
            finally:
                self.in_flight.discard(tracked.trade_id)

        stale_cutoff = now - self.stale_trade_hours * 3600
        for trade_id, tracked in list(self.tracked.items()):
            if tracked.key in position_map:
                continue
            tracked.missing_cycles += 1
            if tracked.opened_at < stale_cutoff and tracked.missing_cycles >= self.missing_cycle_threshold:
                self.logger.warning(
                    f"Removing stale tracked trade: {tracked.symbol} {tracked.side} (trade_id: {trade_id}, "
                    f"opened {self.stale_trade_hours:.0f}+ hours ago, missing for {tracked.missing_cycles} cycles)"
                )
                del self.tracked[trade_id]
                summary.evicted += 1

        summary.still_open = len(self.tracked)
        if summary.failed:
            self.record_health_state("reconciliation", "degraded", asdict(summary))
        return summary

    async def determine_close_result(self, tracked: TrackedTrade) -> CloseResult:
        """
        Settle a vanished position from the venue's order history.

        When no filled close order can be found the result is a zero P&L
        "unknown" close at the entry price.
        """
        hold_time_hours = max(0.0, (self.clock() - tracked.opened_at) / 3600)
        try:
            orders = await self.exchange.get_history_orders(tracked.symbol, self.history_limit)
        except Exception as exc:
            self.logger.warning(f"Failed to query order history for {tracked.symbol}: {exc}")
            return self._unknown_result(tracked, hold_time_hours)

        close_order = self._find_close_order(orders or [])
        if close_order is None:
            return self._unknown_result(tracked, hold_time_hours)

        close_price = safe_float(close_order.get("priceAvg"), 0.0) or safe_float(close_order.get("price"), 0.0)
        if close_price <= 0:
            return self._unknown_result(tracked, hold_time_hours)

        realized_pnl, realized_pct = compute_realized_pnl(tracked, close_price)
        order_type = str(close_order.get("type") or "").lower()
        if "liquidate" in order_type or "burst" in order_type:
            exit_reason = EXIT_LIQUIDATION
        elif _near(close_price, tracked.take_profit, self.price_tolerance_pct):
            exit_reason = EXIT_TP
        elif _near(close_price, tracked.stop_loss, self.price_tolerance_pct):
            exit_reason = EXIT_SL
        else:
            exit_reason = EXIT_MANUAL

        return CloseResult(
            close_price=close_price,
            realized_pnl=realized_pnl,
            realized_pnl_percent=realized_pct,
            exit_reason=exit_reason,
            hold_time_hours=hold_time_hours,
        )

    @staticmethod
    def _find_close_order(orders: List[dict]) -> Optional[dict]:
        def order_time(order: dict) -> float:
            return to_epoch_ms(order.get("createTime") or order.get("time"))

        for order in sorted((o for o in orders if isinstance(o, dict)), key=order_time, reverse=True):
            order_type = str(order.get("type") or "").lower()
            is_close = any(token in order_type for token in ("close", "liquidate", "burst"))
            if is_close and str(order.get("status") or "").lower() == "filled":
                return order
        return None

    @staticmethod
    def _unknown_result(tracked: TrackedTrade, hold_time_hours: float) -> CloseResult:
        return CloseResult(
            close_price=tracked.entry_price,
            realized_pnl=0.0,
            realized_pnl_percent=0.0,
            exit_reason=EXIT_UNKNOWN,
            hold_time_hours=hold_time_hours,
        )

    async def handle_closure(self, tracked: TrackedTrade, result: CloseResult) -> str:
        """Write the settled outcome to the ledger and the journal. Returns the outcome."""
        outcome = classify_outcome(result.realized_pnl_percent, self.outcome_threshold_pct)
        try:
            updated = self.db.settle_trade(
                tracked.order_id,
                realized_pnl=result.realized_pnl,
                realized_pnl_percent=result.realized_pnl_percent,
                exit_price=result.close_price,
                exit_reason=result.exit_reason,
                closed_at=datetime.fromtimestamp(self.clock(), tz=timezone.utc),
            )
        except Exception as exc:
            self.logger.error(f"Failed to update trade {tracked.order_id} in database: {exc}")
            raise
        if updated == 0:
            self.logger.warning(f"No trade found to update for order {tracked.order_id} (may already be FILLED)")
        elif updated > 1:
            self.logger.error(f"Multiple trades ({updated}) updated for order {tracked.order_id} - data integrity issue")
        else:
            self.logger.info(
                f"Updated trade {tracked.order_id} in database: {outcome} ({result.realized_pnl_percent:.2f}%)"
            )

        journal_exit = JOURNAL_EXIT_REASONS.get(result.exit_reason, EXIT_UNKNOWN)
        try:
            self.db.log_trade_journal(
                {
                    "trade_id": tracked.trade_id,
                    "symbol": tracked.symbol,
                    "side": tracked.side,
                    "entry_price": tracked.entry_price,
                    "exit_price": result.close_price,
                    "entry_context": asdict(tracked.entry_context),
                    "attribution": {
                        "winning_agent": tracked.winning_agent,
                        "agent_scores": tracked.agent_scores,
                        "reasoning": tracked.adjudication_reasoning,
                    },
                    "outcome": outcome,
                    "pnl_percent": result.realized_pnl_percent,
                    "realized_pnl": result.realized_pnl,
                    "hold_time_hours": result.hold_time_hours,
                    "exit_reason": journal_exit,
                }
            )
        except Exception as exc:
            self.logger.error(f"Failed to create journal entry for {tracked.trade_id}: {exc}")
            raise

        emoji = {"win": "✅", "loss": "❌"}.get(outcome, "➖")
        pnl = result.realized_pnl if math.isfinite(result.realized_pnl) else 0.0
        self.actions_logger.info(
            f"{emoji} Closed {tracked.symbol} {tracked.side}: {outcome} {pnl:+.2f} USDT "
            f"({result.realized_pnl_percent:+.2f}%) via {result.exit_reason}"
        )
        return outcome
