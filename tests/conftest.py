"""Test session fixtures.

Ensures database writes during tests go to an isolated file instead of the
production `trading.db`, and keeps engine cadence short.
"""

import atexit
import logging
import os
import tempfile
from unittest.mock import MagicMock

import pytest

# Flag that we are under pytest so logger_config can direct logs to test files
os.environ.setdefault("PYTEST_RUNNING", "1")
# Test-safe defaults to avoid long sleeps during pytest
os.environ.setdefault("DRY_RUN", "false")
os.environ.setdefault("CYCLE_INTERVAL_SECONDS", "1")
os.environ.setdefault("MIN_SLEEP_SECONDS", "0.01")
os.environ.setdefault("MAX_SLEEP_SECONDS", "1")
os.environ.setdefault("PORTFOLIO_LOCK_RETRY_BASE_SECONDS", "0.01")
os.environ.setdefault("CLEANUP_TIMEOUT_SECONDS", "1")
os.environ.setdefault("EXCHANGE_READ_RETRY_BASE_SECONDS", "0.001")

_cleanup_target = None


def _ensure_test_db_path():
    global _cleanup_target

    if os.environ.get("TRADING_DB_PATH"):
        return os.environ["TRADING_DB_PATH"]

    fd, path = tempfile.mkstemp(prefix="arena-trader-test-", suffix=".db")
    os.close(fd)
    os.environ["TRADING_DB_PATH"] = path
    _cleanup_target = path
    return path


TEST_DB_PATH = _ensure_test_db_path()


@atexit.register
def _remove_temp_db():
    if _cleanup_target and os.path.exists(_cleanup_target):
        try:
            os.remove(_cleanup_target)
        except OSError:
            pass


@pytest.fixture
def test_db_path(tmp_path, monkeypatch):
    """Provide an isolated DB path and set TRADING_DB_PATH for the test."""
    path = tmp_path / "arena-trader-test.db"
    monkeypatch.setenv("TRADING_DB_PATH", str(path))
    return path


@pytest.fixture
def db(test_db_path):
    from arena_trader.database import TradingDatabase

    database = TradingDatabase(str(test_db_path))
    yield database
    database.close()


@pytest.fixture
def fake_logger():
    """Shared lightweight logger mock for tests."""
    logger = MagicMock(spec=logging.Logger)
    logger.info = MagicMock()
    logger.warning = MagicMock()
    logger.error = MagicMock()
    logger.debug = MagicMock()
    logger.exception = MagicMock()
    return logger
