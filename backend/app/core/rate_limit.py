import os
from datetime import datetime, timedelta

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from app.core.clock import resolve_now
from app.db.models.auth_attempt import AuthAttempt

LOGIN_LIMIT = int(os.getenv("LOGIN_RATE_LIMIT", "20"))
LOGIN_WINDOW_MINUTES = int(os.getenv("LOGIN_RATE_WINDOW_MINUTES", "15"))
VERIFY_CODE_LIMIT = int(os.getenv("VERIFY_CODE_LIMIT", "10"))
VERIFY_CODE_WINDOW_MINUTES = int(os.getenv("VERIFY_CODE_WINDOW_MINUTES", "15"))
SEND_CODE_LIMIT = int(os.getenv("SEND_CODE_LIMIT", "5"))
SEND_CODE_WINDOW_MINUTES = int(os.getenv("SEND_CODE_WINDOW_MINUTES", "60"))


def count_attempts(db: Session, key: str, action: str, since: datetime) -> int:
    return (
        db.query(AuthAttempt)
        .filter(AuthAttempt.key == key, AuthAttempt.action == action, AuthAttempt.created_at >= since)
        .count()
    )


def check_rate_limit(
    db: Session,
    key: str,
    action: str,
    limit: int,
    window_minutes: int,
    now: datetime | None = None,
) -> None:
    since = resolve_now(now) - timedelta(minutes=window_minutes)
    if count_attempts(db, key, action, since) >= limit:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests. Try again later.",
        )


def record_attempt(db: Session, key: str, action: str, now: datetime | None = None) -> None:
    db.add(
        AuthAttempt(
            key=key,
            action=action,
            created_at=resolve_now(now),
        )
    )
    db.commit()


def consume_rate_limit(
    db: Session,
    key: str,
    action: str,
    limit: int,
    window_minutes: int,
    now: datetime | None = None,
) -> None:
    check_rate_limit(db, key, action, limit, window_minutes, now=now)
    record_attempt(db, key, action, now=now)
