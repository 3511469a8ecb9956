from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Optional

from brewbean.logging import get_logger
from brewbean.service.errors import LockedError, NotFoundError
from brewbean.storage.models import User

logger = get_logger(__name__)


def minutes_remaining(lock_until: datetime, now: datetime) -> int:
    return max(1, math.ceil((lock_until - now).total_seconds() / 60))


class LockoutTracker:
    """Counts consecutive failed password checks and locks the account."""

    def __init__(self, store, *, max_attempts: int = 5, lockout_minutes: int = 30):
        self.store = store
        self.max_attempts = max_attempts
        self.lockout = timedelta(minutes=lockout_minutes)

    def check(self, user: User, now: datetime) -> None:
        """Raise LockedError while ``user`` is locked; must run before any password check."""
        if user.is_locked(now):
            remaining = minutes_remaining(user.lock_until, now)
            logger.info("login_rejected_locked", user_id=user.id, minutes=remaining)
            raise LockedError(
                f"Account is locked. Try again in {remaining} minutes.",
                retry_after=int((user.lock_until - now).total_seconds()),
            )

    def record_failure(self, user: User, now: datetime) -> User:
        updated = self.store.record_failed_login(
            user.id, max_attempts=self.max_attempts, lockout=self.lockout, now=now
        )
        if updated is None:
            raise NotFoundError("user not found")
        if updated.is_locked(now):
            logger.warning(
                "account_locked",
                user_id=user.id,
                attempts=updated.login_attempts,
                lock_until=updated.lock_until.isoformat(),
            )
        else:
            logger.info(
                "login_failed", user_id=user.id, attempts=updated.login_attempts
            )
        return updated

    def record_success(self, user: User, now: datetime, ip: Optional[str]) -> User:
        updated = self.store.record_successful_login(user.id, ip=ip, now=now)
        if updated is None:
            raise NotFoundError("user not found")
        return updated
