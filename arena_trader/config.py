import os
from dotenv import load_dotenv

from arena_trader.symbols import normalize_symbols

load_dotenv()

# Trading Mode
DRY_RUN = os.getenv('DRY_RUN', 'false').lower() == 'true'  # log trades instead of placing orders
ENGINE_ID = os.getenv('ENGINE_ID', 'arena-engine')

# Cadence
CYCLE_INTERVAL_SECONDS = int(os.getenv('CYCLE_INTERVAL_SECONDS', '600'))  # base sleep between cycles (10 min)
MIN_SLEEP_SECONDS = float(os.getenv('MIN_SLEEP_SECONDS', '1'))  # scheduler lower bound
MAX_SLEEP_SECONDS = float(os.getenv('MAX_SLEEP_SECONDS', '3600'))  # scheduler upper bound
MIN_TRADE_INTERVAL_SECONDS = int(os.getenv('MIN_TRADE_INTERVAL_SECONDS', '900'))  # cooldown between executed trades
CLEANUP_TIMEOUT_SECONDS = float(os.getenv('CLEANUP_TIMEOUT_SECONDS', '5'))  # max wait for the in-flight cycle on cleanup
MAX_CONSECUTIVE_FAILURES = int(os.getenv('MAX_CONSECUTIVE_FAILURES', '10'))  # failed cycles in a row before the engine stops
EXCHANGE_READ_MAX_RETRIES = int(os.getenv('EXCHANGE_READ_MAX_RETRIES', '2'))  # extra attempts for idempotent exchange reads
EXCHANGE_READ_RETRY_BASE_SECONDS = float(os.getenv('EXCHANGE_READ_RETRY_BASE_SECONDS', '0.5'))  # doubled per attempt

# Trade sizing & safety gates
MIN_CONFIDENCE_TO_TRADE = float(os.getenv('MIN_CONFIDENCE_TO_TRADE', '60'))  # champion confidence (0-100) required to proceed
MAX_POSITION_SIZE_PERCENT = float(os.getenv('MAX_POSITION_SIZE_PERCENT', '30'))  # % of balance at position_size=10
DEFAULT_LEVERAGE = float(os.getenv('DEFAULT_LEVERAGE', '3'))
MAX_SAFE_LEVERAGE = float(os.getenv('MAX_SAFE_LEVERAGE', '5'))  # leverage cap when the breaker is quiet
MIN_BALANCE_TO_TRADE = float(os.getenv('MIN_BALANCE_TO_TRADE', '10'))  # USDT
MAX_CONCURRENT_POSITIONS = int(os.getenv('MAX_CONCURRENT_POSITIONS', '3'))
MAX_MARKET_DATA_AGE_SECONDS = int(os.getenv('MAX_MARKET_DATA_AGE_SECONDS', '60'))  # refuse to trade on older snapshots
RECENT_PNL_LOOKBACK = int(os.getenv('RECENT_PNL_LOOKBACK', '10'))  # settled trades passed to the risk review

# Symbol universe
_APPROVED_SYMBOLS_RAW = os.getenv(
    'APPROVED_SYMBOLS',
    'cmt_btcusdt,cmt_ethusdt,cmt_solusdt,cmt_dogeusdt,cmt_xrpusdt,cmt_adausdt,cmt_bnbusdt,cmt_ltcusdt',
)
APPROVED_SYMBOLS = normalize_symbols(_APPROVED_SYMBOLS_RAW)

# Circuit breaker
CIRCUIT_BREAKER_CACHE_SECONDS = float(os.getenv('CIRCUIT_BREAKER_CACHE_SECONDS', '30'))  # reuse a completed evaluation this long
CIRCUIT_BREAKER_REFERENCE_SYMBOL = os.getenv('CIRCUIT_BREAKER_REFERENCE_SYMBOL', 'cmt_btcusdt')
CIRCUIT_BREAKER_FUNDING_SYMBOLS = normalize_symbols(os.getenv('CIRCUIT_BREAKER_FUNDING_SYMBOLS', 'cmt_btcusdt,cmt_ethusdt'))
BTC_DROP_YELLOW_PCT = float(os.getenv('BTC_DROP_YELLOW_PCT', '-10'))  # 4h change at or below this
BTC_DROP_ORANGE_PCT = float(os.getenv('BTC_DROP_ORANGE_PCT', '-15'))
BTC_DROP_RED_PCT = float(os.getenv('BTC_DROP_RED_PCT', '-20'))
FUNDING_YELLOW_PCT = float(os.getenv('FUNDING_YELLOW_PCT', '0.25'))  # abs funding rate, percent
FUNDING_ORANGE_PCT = float(os.getenv('FUNDING_ORANGE_PCT', '0.40'))
DRAWDOWN_YELLOW_PCT = float(os.getenv('DRAWDOWN_YELLOW_PCT', '10'))  # 24h account drawdown, percent
DRAWDOWN_ORANGE_PCT = float(os.getenv('DRAWDOWN_ORANGE_PCT', '15'))
DRAWDOWN_RED_PCT = float(os.getenv('DRAWDOWN_RED_PCT', '25'))
EXCHANGE_SLOW_MS = float(os.getenv('EXCHANGE_SLOW_MS', '5000'))  # server time round trip considered degraded

# Position reconciliation
MAX_TRACKED_TRADES = int(os.getenv('MAX_TRACKED_TRADES', '100'))
STALE_TRADE_HOURS = float(os.getenv('STALE_TRADE_HOURS', '72'))  # age before a missing trade may be evicted
MISSING_CYCLE_THRESHOLD = int(os.getenv('MISSING_CYCLE_THRESHOLD', '3'))  # consecutive absent syncs before eviction
POSITION_OUTCOME_THRESHOLD_PERCENT = float(os.getenv('POSITION_OUTCOME_THRESHOLD_PERCENT', '1.0'))  # +/- band counted as breakeven
CLOSE_PRICE_TOLERANCE_PCT = float(os.getenv('CLOSE_PRICE_TOLERANCE_PCT', '0.5'))  # TP/SL hit tolerance, percent of price
HISTORY_ORDERS_LIMIT = int(os.getenv('HISTORY_ORDERS_LIMIT', '20'))

# Portfolio attribution lock
PORTFOLIO_LOCK_KEY = os.getenv('PORTFOLIO_LOCK_KEY', 'analyst_portfolio_update')
PORTFOLIO_LOCK_TIMEOUT_SECONDS = float(os.getenv('PORTFOLIO_LOCK_TIMEOUT_SECONDS', '30'))  # lock row age before takeover
PORTFOLIO_LOCK_MAX_RETRIES = int(os.getenv('PORTFOLIO_LOCK_MAX_RETRIES', '2'))
PORTFOLIO_LOCK_RETRY_BASE_SECONDS = float(os.getenv('PORTFOLIO_LOCK_RETRY_BASE_SECONDS', '1.0'))  # doubled per attempt
SHARPE_MIN_TRADES = int(os.getenv('SHARPE_MIN_TRADES', '5'))
RECENT_TRADES_LIMIT = int(os.getenv('RECENT_TRADES_LIMIT', '10'))


def _parse_agent_ids(raw: str):
    return [token.strip().lower() for token in raw.split(',') if token.strip()]


ANALYST_IDS = _parse_agent_ids(os.getenv('ANALYST_IDS', 'jim,ray,karen,quant'))
ANALYST_NAMES = {
    'jim': 'Jim (Technical)',
    'ray': 'Ray (Macro)',
    'karen': 'Karen (Risk)',
    'quant': 'Quant (Statistical)',
}
