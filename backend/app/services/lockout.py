"""Failed-attempt tracking and temporary lockout.

Per account: UNLOCKED -> (max_login_attempts consecutive failures) -> LOCKED
-> (lockout_minutes elapse) -> UNLOCKED. The counter only goes back to zero
after a fully verified login. Counter and lock writes are single UPDATE
statements so concurrent requests cannot lose increments.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from app.core.errors import AccountLocked
from app.core.security_policy import SecurityPolicy
from app.db.models.user import User

logger = logging.getLogger(__name__)


@dataclass
class FailureOutcome:
    failed_attempts: int
    locked_now: bool
    locked_until: datetime | None


def lock_status(user: User, now: datetime) -> tuple[bool, int]:
    """Return (locked, seconds_remaining)."""
    if not user.locked_until or user.locked_until <= now:
        return False, 0
    seconds = int((user.locked_until - now).total_seconds())
    return True, max(seconds, 1)


def ensure_not_locked(user: User, now: datetime) -> None:
    locked, seconds = lock_status(user, now)
    if locked:
        raise AccountLocked(locked_until=user.locked_until, retry_after_seconds=seconds)


def register_failure(db: Session, user: User, now: datetime, policy: SecurityPolicy) -> FailureOutcome:
    db.execute(
        update(User)
        .where(User.id == user.id)
        .values(
            failed_login_attempts=User.failed_login_attempts + 1,
            last_failed_login_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    locked_until = now + timedelta(minutes=policy.lockout_minutes)
    lock_result = db.execute(
        update(User)
        .where(
            User.id == user.id,
            User.failed_login_attempts >= policy.max_login_attempts,
            or_(User.locked_until.is_(None), User.locked_until <= now),
        )
        .values(locked_until=locked_until)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(user)

    locked_now = lock_result.rowcount == 1
    if locked_now:
        logger.warning(
            "account_locked user_id=%s failed_attempts=%s locked_until=%s",
            user.id,
            user.failed_login_attempts,
            locked_until.isoformat(),
        )
    return FailureOutcome(
        failed_attempts=int(user.failed_login_attempts),
        locked_now=locked_now,
        locked_until=user.locked_until if locked_now else None,
    )


def reset_attempts(db: Session, user: User, now: datetime) -> None:
    db.execute(
        update(User)
        .where(User.id == user.id)
        .values(failed_login_attempts=0, locked_until=None, last_login_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(user)


def unlock_account(db: Session, user: User) -> None:
    db.execute(
        update(User)
        .where(User.id == user.id)
        .values(failed_login_attempts=0, locked_until=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(user)
    logger.info("account_unlocked user_id=%s", user.id)
