import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from arena_trader.config import CYCLE_INTERVAL_SECONDS, MAX_SLEEP_SECONDS, MIN_SLEEP_SECONDS

# Applied to the base cycle interval: busier markets are scanned more often
INTERVAL_MULTIPLIERS = {
    "peak": 0.5,
    "high": 0.75,
    "medium": 1.0,
    "low": 2.0,
}


@dataclass(frozen=True)
class MarketActivity:
    region: str
    activity_level: str
    interval_multiplier: float


def classify_market_activity(now: datetime) -> MarketActivity:
    """Map a UTC wall-clock time onto the busiest trading region and its tier."""
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    minutes = now.hour * 60 + now.minute

    # US/Europe overlap 14:30-16:30 takes precedence over both sessions
    if 14 * 60 + 30 <= minutes < 16 * 60 + 30:
        level, region = "peak", "US"
    elif minutes < 6 * 60:
        level = "high" if 60 <= minutes < 5 * 60 else "medium"
        region = "ASIA"
    elif 8 * 60 <= minutes < 16 * 60 + 30:
        level = "high" if 9 * 60 <= minutes < 15 * 60 else "medium"
        region = "EUROPE"
    elif 14 * 60 + 30 <= minutes < 21 * 60:
        level, region = "high", "US"
    else:
        level, region = "low", "US"
    return MarketActivity(region, level, INTERVAL_MULTIPLIERS[level])


class TradingScheduler:
    """Computes the sleep between cycles from market activity."""

    def __init__(
        self,
        base_interval_seconds: float = CYCLE_INTERVAL_SECONDS,
        min_seconds: float = MIN_SLEEP_SECONDS,
        max_seconds: float = MAX_SLEEP_SECONDS,
        now: Optional[Callable[[], datetime]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.base_interval_seconds = base_interval_seconds
        self.min_seconds = min_seconds
        self.max_seconds = max_seconds
        self.now = now or (lambda: datetime.now(timezone.utc))
        self.logger = logger or logging.getLogger(__name__)

    def current_activity(self) -> MarketActivity:
        return classify_market_activity(self.now())

    def clamp(self, seconds: float) -> float:
        return max(self.min_seconds, min(self.max_seconds, seconds))

    def next_interval(self, backoff_multiplier: float = 1.0) -> float:
        """Seconds until the next cycle, clamped to the configured bounds."""
        activity = self.current_activity()
        seconds = self.clamp(self.base_interval_seconds * activity.interval_multiplier * backoff_multiplier)
        self.logger.debug(
            f"Next cycle in {seconds:.0f}s ({activity.region} {activity.activity_level}, "
            f"x{activity.interval_multiplier}, backoff x{backoff_multiplier:.2f})"
        )
        return seconds
