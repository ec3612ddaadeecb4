"""Utility helpers for cross-module reuse."""

import asyncio
import logging
import math
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional


def safe_float(value: Any, default: float = 0.0) -> float:
    """
    Coerce exchange/pipeline numbers to a finite float.

    Strings, None, NaN and infinities fall back to the default so a single bad
    reading never propagates into sizing or P&L math.
    """
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return number


def is_positive_finite(value: Any) -> bool:
    if value is None or isinstance(value, bool):
        return False
    try:
        number = float(value)
    except (TypeError, ValueError):
        return False
    return math.isfinite(number) and number > 0


def get_order_id(order: Dict[str, Any] | None) -> str:
    """
    Extract an order id from common exchange response shapes.

    Handles camelCase, snake_case, and nested data fields.
    """
    if not order:
        return ""
    return str(
        order.get("orderId")
        or order.get("order_id")
        or order.get("id")
        or (order.get("data") or {}).get("orderId")
        or (order.get("data") or {}).get("order_id")
        or ""
    )


def to_epoch_ms(value: Any) -> float:
    """Normalize ms/seconds/ISO timestamps to epoch milliseconds (0.0 when unknown)."""
    if value is None:
        return 0.0
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp() * 1000
    if isinstance(value, str) and not value.strip().lstrip("-").replace(".", "", 1).isdigit():
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return 0.0
        return to_epoch_ms(parsed)
    number = safe_float(value, 0.0)
    # Values below ~2001 in ms are treated as seconds
    if 0 < number < 1e12:
        return number * 1000
    return number


async def retry_async(
    operation: Callable[[], Awaitable[Any]],
    max_retries: int,
    base_delay_seconds: float,
    description: str = "operation",
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    logger: Optional[logging.Logger] = None,
) -> Any:
    """
    Await operation() up to max_retries + 1 times, doubling the delay between attempts.

    Only for idempotent reads. The last error propagates to the caller.
    """
    sleep = sleep or asyncio.sleep
    logger = logger or logging.getLogger(__name__)
    for attempt in range(max_retries + 1):
        try:
            return await operation()
        except Exception as e:
            if attempt >= max_retries:
                raise
            delay = base_delay_seconds * (2 ** attempt)
            logger.warning(f"{description} failed: {e}; retry {attempt + 1}/{max_retries} in {delay:.2f}s")
            await sleep(delay)
