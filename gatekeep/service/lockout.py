from __future__ import annotations

import math
from dataclasses import dataclass

from gatekeep.logging import get_logger
from gatekeep.service.credentials import AccountStore
from gatekeep.service.primitives import Clock
from gatekeep.storage.models import Account

logger = get_logger(__name__)

MAX_FAILED_ATTEMPTS = 5
LOCK_SECONDS = 15 * 60


@dataclass(frozen=True)
class LockState:
    locked: bool
    remaining_seconds: int = 0
    failed_attempts: int = 0


class LockoutGuard:
    """Per-account brute-force protection for password login."""

    def __init__(
        self,
        store: AccountStore,
        *,
        clock: Clock,
        max_failed_attempts: int = MAX_FAILED_ATTEMPTS,
        lock_seconds: int = LOCK_SECONDS,
    ) -> None:
        self.store = store
        self.clock = clock
        self.max_failed_attempts = max_failed_attempts
        self.lock_seconds = lock_seconds

    def evaluate(self, account: Account) -> LockState:
        locked_until = account.locked_until
        if locked_until is None:
            return LockState(False, 0, account.failed_attempts)
        remaining = (locked_until - self.clock.now()).total_seconds()
        if remaining <= 0:
            # Served locks read as unlocked; the counter restarts on the next failure
            return LockState(False, 0, 0)
        return LockState(True, math.ceil(remaining), account.failed_attempts)

    def record_failure(self, account_id: str) -> LockState:
        account = self.store.record_login_failure(
            account_id,
            max_attempts=self.max_failed_attempts,
            lock_seconds=self.lock_seconds,
            now=self.clock.now(),
        )
        state = self.evaluate(account)
        if state.locked:
            logger.warning(
                "account_locked",
                account_id=account_id,
                failed_attempts=account.failed_attempts,
                lock_seconds=self.lock_seconds,
            )
        return state

    def reset(self, account_id: str) -> None:
        self.store.reset_login_failures(account_id)
