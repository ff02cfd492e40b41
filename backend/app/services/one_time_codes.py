"""One-time codes gating session issuance, MFA changes and password resets.

Only a salted HMAC of each code is stored. At most one code per
(account, purpose) is active: issuing a new one invalidates the rest.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.errors import CodeExhausted, CodeExpired, CodeInvalid, NotificationDeliveryFailed
from app.core.notifications import send_one_time_code_email
from app.core.security import (
    generate_code_salt,
    generate_one_time_code,
    hash_one_time_code,
    verify_one_time_code_hash,
)
from app.core.security_policy import SecurityPolicy
from app.db.models.one_time_code import OneTimeCode
from app.db.models.user import User

logger = logging.getLogger(__name__)

CodePurpose = Literal["login", "password_reset", "enable_mfa", "disable_mfa"]

CodeSender = Callable[[str, str, str, int], bool]


@dataclass
class IssuedCode:
    record: OneTimeCode
    plaintext: str


def _unspent_filter(user_id: int, purpose: str):
    return (
        OneTimeCode.user_id == user_id,
        OneTimeCode.purpose == purpose,
        OneTimeCode.used_at.is_(None),
        OneTimeCode.invalidated_at.is_(None),
    )


def issue_code(db: Session, user: User, purpose: CodePurpose, now: datetime, policy: SecurityPolicy) -> IssuedCode:
    db.execute(
        update(OneTimeCode)
        .where(*_unspent_filter(user.id, purpose))
        .values(invalidated_at=now)
        .execution_options(synchronize_session=False)
    )

    code = generate_one_time_code(policy.otp_length)
    salt = generate_code_salt()
    record = OneTimeCode(
        user_id=user.id,
        purpose=purpose,
        code_salt=salt,
        code_hash=hash_one_time_code(code, salt),
        created_at=now,
        expires_at=now + timedelta(minutes=policy.otp_expire_minutes),
        used_at=None,
        invalidated_at=None,
        attempts=0,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info("one_time_code_issued user_id=%s purpose=%s code_id=%s", user.id, purpose, record.id)
    return IssuedCode(record=record, plaintext=code)


def get_code(db: Session, code_id: int) -> OneTimeCode | None:
    return db.get(OneTimeCode, code_id)


def get_latest_unspent_code(db: Session, user_id: int, purpose: CodePurpose) -> OneTimeCode | None:
    """Newest unused, non-invalidated code for the purpose. It may already be expired."""
    return (
        db.query(OneTimeCode)
        .filter(*_unspent_filter(user_id, purpose))
        .order_by(OneTimeCode.created_at.desc(), OneTimeCode.id.desc())
        .first()
    )


def _invalidate(db: Session, record: OneTimeCode, now: datetime) -> None:
    db.execute(
        update(OneTimeCode)
        .where(OneTimeCode.id == record.id, OneTimeCode.invalidated_at.is_(None))
        .values(invalidated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(record)


def verify_code(db: Session, record: OneTimeCode, code: str, now: datetime, policy: SecurityPolicy) -> OneTimeCode:
    """Consume ``record`` if ``code`` matches.

    Raises CodeExpired once the window has passed (whatever the code), or when
    the record was already used or superseded; CodeExhausted when the attempt
    budget is spent; CodeInvalid for a wrong guess with attempts left.
    """
    if record.expires_at <= now:
        raise CodeExpired()
    if record.attempts >= policy.otp_max_attempts:
        if record.invalidated_at is None:
            _invalidate(db, record, now)
        raise CodeExhausted()
    if record.used_at is not None or record.invalidated_at is not None:
        raise CodeExpired()

    claimed = db.execute(
        update(OneTimeCode)
        .where(OneTimeCode.id == record.id, OneTimeCode.attempts < policy.otp_max_attempts)
        .values(attempts=OneTimeCode.attempts + 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(record)
    if claimed.rowcount != 1:
        raise CodeExhausted()

    if verify_one_time_code_hash((code or "").strip(), record.code_salt, record.code_hash):
        consumed = db.execute(
            update(OneTimeCode)
            .where(
                OneTimeCode.id == record.id,
                OneTimeCode.used_at.is_(None),
                OneTimeCode.invalidated_at.is_(None),
            )
            .values(used_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(record)
        if consumed.rowcount != 1:
            raise CodeExpired()
        logger.info("one_time_code_verified user_id=%s purpose=%s", record.user_id, record.purpose)
        return record

    remaining = policy.otp_max_attempts - record.attempts
    if remaining <= 0:
        _invalidate(db, record, now)
        logger.warning("one_time_code_exhausted user_id=%s purpose=%s", record.user_id, record.purpose)
        raise CodeExhausted()
    raise CodeInvalid(attempts_remaining=remaining)


def verify_latest_code(
    db: Session,
    user: User,
    purpose: CodePurpose,
    code: str,
    now: datetime,
    policy: SecurityPolicy,
) -> OneTimeCode:
    record = get_latest_unspent_code(db, user.id, purpose)
    if record is None:
        raise CodeExpired()
    return verify_code(db, record, code, now, policy)


def deliver_code(
    user: User,
    code: str,
    purpose: CodePurpose,
    policy: SecurityPolicy,
    send: CodeSender | None = None,
) -> bool:
    sender = send or send_one_time_code_email
    try:
        return sender(user.email, code, purpose, policy.otp_expire_minutes)
    except NotificationDeliveryFailed as exc:
        logger.warning("one_time_code_delivery_failed user_id=%s purpose=%s error=%s", user.id, purpose, exc)
        return False
    except Exception:
        logger.exception("one_time_code_sender_crashed user_id=%s purpose=%s", user.id, purpose)
        return False
