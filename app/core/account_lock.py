"""
Failed-login counting and temporary account lockout.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.database import utcnow
from app.models.user import User

logger = logging.getLogger(__name__)

MAX_FAILED_LOGINS = 5
LOCKOUT_DURATION = timedelta(minutes=15)


class AccountLockPolicy:
    """
    Lock an account for LOCKOUT_DURATION after MAX_FAILED_LOGINS bad passwords.

    The counter is incremented in SQL so parallel failed logins are all
    counted.
    """

    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = utcnow,
        max_failed: int = MAX_FAILED_LOGINS,
        lockout: timedelta = LOCKOUT_DURATION,
    ):
        self.db = db
        self.clock = clock
        self.max_failed = max_failed
        self.lockout = lockout

    def is_locked(self, user: User) -> bool:
        return user.locked_until is not None and user.locked_until > self.clock()

    def lock_remaining(self, user: User) -> timedelta:
        if not self.is_locked(user):
            return timedelta(0)
        return user.locked_until - self.clock()

    def record_failed_login(self, user: User) -> None:
        self.db.execute(
            update(User)
            .where(User.id == user.id)
            .values(login_attempts=User.login_attempts + 1)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(user)

        if user.login_attempts >= self.max_failed:
            user.locked_until = self.clock() + self.lockout
            self.db.commit()
            logger.warning(f"User {user.id} locked after {user.login_attempts} failed logins")

    def record_successful_login(self, user: User) -> None:
        user.login_attempts = 0
        user.locked_until = None
        user.last_login_at = self.clock()
        self.db.commit()
