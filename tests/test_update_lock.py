import sqlite3
from unittest.mock import AsyncMock, MagicMock

import pytest

from arena_trader.database import TradingDatabase
from arena_trader.services.update_lock import DistributedUpdateLock


class _Clock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_two_acquirers_on_missing_row_only_one_wins(test_db_path):
    # Two connections stand in for two engine processes
    db_a = TradingDatabase(str(test_db_path))
    db_b = TradingDatabase(str(test_db_path))
    clock = _Clock(1000.0)
    try:
        lock_a = DistributedUpdateLock(db_a, "portfolio", timeout_seconds=30, clock=clock)
        lock_b = DistributedUpdateLock(db_b, "portfolio", timeout_seconds=30, clock=clock)

        # Both read "absent" before either inserts
        db_b.get_lock = MagicMock(return_value=None)

        assert lock_a.try_acquire() is True
        assert lock_b.try_acquire() is False
        assert lock_a.held and not lock_b.held
    finally:
        db_a.close()
        db_b.close()


def test_fresh_lock_blocks_and_stale_lock_is_taken_over(db):
    clock = _Clock(1000.0)
    holder = DistributedUpdateLock(db, "portfolio", timeout_seconds=30, clock=clock)
    contender = DistributedUpdateLock(db, "portfolio", timeout_seconds=30, clock=clock)

    assert holder.try_acquire() is True
    clock.now = 1029.0
    assert contender.try_acquire() is False

    clock.now = 1030.0
    assert contender.try_acquire() is True
    row = db.get_lock("portfolio")
    assert row["version"] == 2
    assert row["updated_at"] == pytest.approx(1030.0)


def test_concurrent_takeover_only_one_cas_succeeds(db):
    clock = _Clock(0.0)
    DistributedUpdateLock(db, "portfolio", clock=clock).try_acquire()
    clock.now = 100.0

    stale_row = dict(db.get_lock("portfolio"))
    first = DistributedUpdateLock(db, "portfolio", timeout_seconds=30, clock=clock)
    second = DistributedUpdateLock(db, "portfolio", timeout_seconds=30, clock=clock)
    second.db = MagicMock(wraps=db)
    second.db.get_lock.return_value = stale_row

    assert first.try_acquire() is True
    assert second.try_acquire() is False
    assert db.get_lock("portfolio")["version"] == 2


def test_release_after_takeover_is_noop(db):
    clock = _Clock(0.0)
    old_holder = DistributedUpdateLock(db, "portfolio", timeout_seconds=30, clock=clock)
    assert old_holder.try_acquire() is True

    clock.now = 60.0
    new_holder = DistributedUpdateLock(db, "portfolio", timeout_seconds=30, clock=clock)
    assert new_holder.try_acquire() is True

    old_holder.release()
    assert db.get_lock("portfolio")["version"] == 2
    assert not old_holder.held

    new_holder.release()
    assert db.get_lock("portfolio") is None
    # Idempotent
    new_holder.release()


def test_create_lock_conflict_raises_integrity_error(db):
    db.create_lock("k", 1.0)
    with pytest.raises(sqlite3.IntegrityError):
        db.create_lock("k", 2.0)
    assert db.get_lock("k")["version"] == 1


@pytest.mark.asyncio
async def test_acquire_retries_with_exponential_backoff(db):
    clock = _Clock(0.0)
    DistributedUpdateLock(db, "portfolio", clock=clock).try_acquire()
    sleep = AsyncMock()
    contender = DistributedUpdateLock(db, "portfolio", timeout_seconds=30, clock=clock)

    acquired = await contender.acquire(max_retries=2, base_delay_seconds=1.0, sleep=sleep)

    assert acquired is False
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]


@pytest.mark.asyncio
async def test_acquire_succeeds_once_holder_releases(db):
    clock = _Clock(0.0)
    holder = DistributedUpdateLock(db, "portfolio", clock=clock)
    holder.try_acquire()
    contender = DistributedUpdateLock(db, "portfolio", clock=clock)

    async def release_then_wait(_delay):
        holder.release()

    acquired = await contender.acquire(max_retries=2, base_delay_seconds=0.5, sleep=release_then_wait)

    assert acquired is True
    assert contender.version == 1


def test_taken_over_holder_cannot_release_recreated_lock(db):
    clock = _Clock(0.0)
    old_holder = DistributedUpdateLock(db, "portfolio", timeout_seconds=30, clock=clock)
    assert old_holder.try_acquire() is True

    clock.now = 60.0
    takeover = DistributedUpdateLock(db, "portfolio", timeout_seconds=30, clock=clock)
    assert takeover.try_acquire() is True
    takeover.release()

    fresh = DistributedUpdateLock(db, "portfolio", timeout_seconds=30, clock=clock)
    assert fresh.try_acquire() is True
    assert fresh.version == old_holder.version == 1

    old_holder.release()

    row = db.get_lock("portfolio")
    assert row is not None
    assert row["holder"] == fresh.holder
    fresh.release()
    assert db.get_lock("portfolio") is None
