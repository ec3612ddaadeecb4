import logging
import math
from abc import ABC, abstractmethod
from typing import Any, Optional

logger = logging.getLogger(__name__)


def extract_available_balance(assets: Any, coin: str = "USDT") -> Optional[float]:
    """
    Pull the available balance out of an account-assets payload.

    Accepts either a flat {available: ...} dict or a list of per-coin entries.
    Returns None when the payload carries no usable number.
    """
    if isinstance(assets, list):
        match = None
        for entry in assets:
            if not isinstance(entry, dict):
                continue
            name = str(entry.get("coinName") or entry.get("coin") or "").upper()
            if name == coin.upper():
                match = entry
                break
        assets = match
    if not isinstance(assets, dict):
        return None
    raw = assets.get("available")
    if raw is None:
        raw = assets.get("equity")
    try:
        balance = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(balance) or balance < 0:
        return None
    return balance


class BaseExchangeClient(ABC):
    """
    Leveraged perpetuals venue as consumed by the engine.

    Payloads are plain dicts in the venue's shape; the engine sanitizes numbers
    itself rather than trusting the client.
    """

    @abstractmethod
    async def get_account_assets(self):
        """Return account assets including the available USDT balance."""
        raise NotImplementedError

    @abstractmethod
    async def get_positions(self):
        """Return open positions as [{symbol, side, size, price, leverage}]."""
        raise NotImplementedError

    @abstractmethod
    async def get_ticker(self, symbol: str):
        raise NotImplementedError

    @abstractmethod
    async def get_funding_rate(self, symbol: str):
        raise NotImplementedError

    @abstractmethod
    async def get_candles(self, symbol: str, interval: str = '1h', limit: int = 5) -> list:
        """Fetch historical candles."""
        raise NotImplementedError

    @abstractmethod
    async def get_history_orders(self, symbol: str, limit: int = 20) -> list:
        """Fetch recent historical orders as [{type, status, price, time}]."""
        raise NotImplementedError

    @abstractmethod
    async def place_order(self, spec: dict):
        """Place an order and return {orderId}."""
        raise NotImplementedError

    @abstractmethod
    async def close_all_positions(self, symbol: str):
        """Market-close every position on a symbol."""
        raise NotImplementedError

    @abstractmethod
    async def get_server_time(self):
        raise NotImplementedError

    async def close(self):
        """Close connection and clean up resources."""
        return None
