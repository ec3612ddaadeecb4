import asyncio
import logging
import sqlite3
import time
import uuid
from typing import Any, Awaitable, Callable, Optional

from arena_trader.config import (
    PORTFOLIO_LOCK_KEY,
    PORTFOLIO_LOCK_MAX_RETRIES,
    PORTFOLIO_LOCK_RETRY_BASE_SECONDS,
    PORTFOLIO_LOCK_TIMEOUT_SECONDS,
)


class DistributedUpdateLock:
    """
    Cross-process mutex backed by one versioned row.

    Acquisition creates the row, or takes over a stale one with a conditional
    version bump; the database guarantees only one writer wins either race.
    Each acquisition claims the row with a fresh holder token. Release deletes
    the row only while it still carries our version and token, so a holder
    that was taken over cannot delete a later holder's lock, even one whose
    recreated row is back at version 1.
    """

    def __init__(
        self,
        db: Any,
        lock_key: str = PORTFOLIO_LOCK_KEY,
        timeout_seconds: float = PORTFOLIO_LOCK_TIMEOUT_SECONDS,
        clock: Optional[Callable[[], float]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.db = db
        self.lock_key = lock_key
        self.timeout_seconds = timeout_seconds
        self.clock = clock or time.time
        self.logger = logger or logging.getLogger(__name__)
        self.version: Optional[int] = None
        self.holder: Optional[str] = None

    @property
    def held(self) -> bool:
        return self.version is not None

    def try_acquire(self) -> bool:
        """Single acquisition attempt; False means another holder owns a fresh lock or won the race."""
        now = self.clock()
        token = uuid.uuid4().hex
        row = self.db.get_lock(self.lock_key)

        if row is None:
            try:
                self.db.create_lock(self.lock_key, now, token)
            except sqlite3.IntegrityError:
                self.logger.debug(f"Lock {self.lock_key} created concurrently by another holder")
                return False
            self.version = 1
            self.holder = token
            return True

        age = now - float(row["updated_at"])
        if age < self.timeout_seconds:
            self.logger.debug(f"Lock {self.lock_key} held (age {age:.1f}s < {self.timeout_seconds:.0f}s)")
            return False

        expected = int(row["version"])
        if self.db.compare_and_swap_lock(self.lock_key, expected, now, token) != 1:
            self.logger.debug(f"Lost stale-lock takeover race for {self.lock_key} at version {expected}")
            return False
        self.logger.warning(f"Took over stale lock {self.lock_key} (age {age:.1f}s, version {expected})")
        self.version = expected + 1
        self.holder = token
        return True

    async def acquire(
        self,
        max_retries: int = PORTFOLIO_LOCK_MAX_RETRIES,
        base_delay_seconds: float = PORTFOLIO_LOCK_RETRY_BASE_SECONDS,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> bool:
        """Try once plus max_retries more times with exponential backoff."""
        sleep = sleep or asyncio.sleep
        for attempt in range(max_retries + 1):
            if self.try_acquire():
                return True
            if attempt < max_retries:
                delay = base_delay_seconds * (2 ** attempt)
                self.logger.debug(f"Lock {self.lock_key} busy, retrying in {delay:.1f}s")
                await sleep(delay)
        return False

    def release(self) -> None:
        if self.version is None:
            return
        try:
            deleted = self.db.delete_lock(self.lock_key, self.version, self.holder)
            if deleted == 0:
                self.logger.info(f"Lock {self.lock_key} was already reclaimed; nothing to release")
        finally:
            self.version = None
            self.holder = None
