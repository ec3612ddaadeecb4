import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

STARTED = "started"
STOPPED = "stopped"
CYCLE_START = "cycleStart"
CYCLE_COMPLETE = "cycleComplete"
COIN_SELECTED = "coinSelected"
SPECIALIST_ANALYSIS = "specialistAnalysis"
TOURNAMENT_COMPLETE = "tournamentComplete"
RISK_COUNCIL_DECISION = "riskCouncilDecision"
TRADE_EXECUTED = "tradeExecuted"
EMERGENCY_CLOSE = "emergencyClose"

EVENT_NAMES = (
    STARTED,
    STOPPED,
    CYCLE_START,
    CYCLE_COMPLETE,
    COIN_SELECTED,
    SPECIALIST_ANALYSIS,
    TOURNAMENT_COMPLETE,
    RISK_COUNCIL_DECISION,
    TRADE_EXECUTED,
    EMERGENCY_CLOSE,
)


class EventChannel:
    """
    Observer list for engine notifications.

    Subscribers may be plain callables or coroutine functions. A subscriber that
    raises is logged and skipped; delivery to the others continues.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._subscribers: Dict[str, List[Callable[[Any], Any]]] = {}

    def subscribe(self, event: str, callback: Callable[[Any], Any]) -> Callable[[], None]:
        """Register a callback and return an unsubscribe handle."""
        if event not in EVENT_NAMES:
            raise ValueError(f"Unknown event '{event}'")
        self._subscribers.setdefault(event, []).append(callback)
        return lambda: self.unsubscribe(event, callback)

    def unsubscribe(self, event: str, callback: Callable[[Any], Any]) -> None:
        callbacks = self._subscribers.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def subscriber_count(self, event: str) -> int:
        return len(self._subscribers.get(event, []))

    def clear(self) -> None:
        self._subscribers.clear()

    async def emit(self, event: str, payload: Any = None) -> int:
        """Deliver payload to every subscriber of event. Returns successful deliveries."""
        delivered = 0
        for callback in list(self._subscribers.get(event, [])):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as exc:
                self.logger.warning(f"Event subscriber for {event} failed: {exc}")
        return delivered
