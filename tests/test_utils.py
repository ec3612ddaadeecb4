import json
import logging
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from arena_trader.exchange_client import extract_available_balance
from arena_trader.logger_config import emit_telemetry, set_logging_context
from arena_trader.utils import get_order_id, is_positive_finite, retry_async, safe_float, to_epoch_ms


@pytest.mark.parametrize(
    "raw, expected",
    [("1.5", 1.5), (2, 2.0), (None, 0.0), ("abc", 0.0), (float("nan"), 0.0), (float("inf"), 0.0), (True, 0.0)],
)
def test_safe_float(raw, expected):
    assert safe_float(raw) == expected


def test_is_positive_finite():
    assert is_positive_finite("0.1")
    for bad in (0, -1, None, "x", float("nan"), float("inf"), False):
        assert not is_positive_finite(bad)


def test_get_order_id_shapes():
    assert get_order_id({"orderId": 12}) == "12"
    assert get_order_id({"order_id": "a"}) == "a"
    assert get_order_id({"data": {"orderId": "nested"}}) == "nested"
    assert get_order_id({}) == ""
    assert get_order_id(None) == ""


def test_to_epoch_ms_normalizes_units():
    assert to_epoch_ms(1_700_000_000) == 1_700_000_000_000
    assert to_epoch_ms(1_700_000_000_000) == 1_700_000_000_000
    assert to_epoch_ms("2024-01-01T00:00:00Z") == datetime(2024, 1, 1, tzinfo=timezone.utc).timestamp() * 1000
    assert to_epoch_ms("not a time") == 0.0
    assert to_epoch_ms(None) == 0.0


def test_extract_available_balance():
    assert extract_available_balance({"available": "250.5"}) == 250.5
    assert extract_available_balance({"equity": 10}) == 10.0
    assert extract_available_balance([{"coinName": "BTC", "available": 1}, {"coinName": "usdt", "available": 42}]) == 42.0
    assert extract_available_balance([{"coinName": "BTC", "available": 1}]) is None
    assert extract_available_balance({"available": "nan"}) is None
    assert extract_available_balance({"available": -5}) is None
    assert extract_available_balance(None) is None


def test_emit_telemetry_writes_json_with_run_context(caplog):
    telemetry = logging.getLogger("test.telemetry")
    set_logging_context(engine_id="engine-a", run_id="run-1")
    with caplog.at_level(logging.INFO, logger="test.telemetry"):
        emit_telemetry({"type": "cycle", "number": 3}, telemetry)
    record = json.loads(caplog.records[-1].getMessage())
    assert record == {"type": "cycle", "number": 3, "engine_id": "engine-a", "run_id": "run-1"}


@pytest.mark.asyncio
async def test_retry_async_backs_off_then_succeeds(fake_logger):
    operation = AsyncMock(side_effect=[ConnectionError("a"), ConnectionError("b"), {"ok": True}])
    sleep = AsyncMock()

    result = await retry_async(operation, 2, 1.0, description="get_positions", sleep=sleep, logger=fake_logger)

    assert result == {"ok": True}
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]
    assert fake_logger.warning.call_count == 2


@pytest.mark.asyncio
async def test_retry_async_reraises_last_error():
    operation = AsyncMock(side_effect=[ConnectionError("first"), ConnectionError("last")])
    sleep = AsyncMock()

    with pytest.raises(ConnectionError, match="last"):
        await retry_async(operation, 1, 0.5, sleep=sleep)

    assert operation.await_count == 2
    assert sleep.await_count == 1
