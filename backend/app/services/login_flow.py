"""Login evaluation: credential check, lockout, risk scoring, OTP gate and alerts.

The three entry points return explicit result objects instead of raising, so a
caller always gets a verdict once the attempt has been recorded. Persistence
errors still propagate.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from functools import lru_cache

from sqlalchemy.orm import Session

from app.core.alerts import AlertType
from app.core.clock import resolve_now
from app.core.errors import AccountLocked, CodeExhausted, CodeExpired, CodeInvalid, InvalidCredentials
from app.core.security import hash_password, issue_session_token, verify_password
from app.core.security_policy import SecurityPolicy, get_security_policy
from app.db.models.user import User
from app.services.accounts import find_user_by_email, normalize_email
from app.services.alerts import AlertSender, check_suspicious_patterns, emit_alert, emit_pending, list_alerts, serialize_alert
from app.services.devices import list_devices, register_device
from app.services.lockout import FailureOutcome, ensure_not_locked, lock_status, register_failure, reset_attempts
from app.services.login_history import (
    RESULT_ACCOUNT_LOCKED,
    RESULT_CODE_EXHAUSTED,
    RESULT_CODE_EXPIRED,
    RESULT_INVALID_CODE,
    RESULT_INVALID_PASSWORD,
    RESULT_MFA_REQUIRED,
    RESULT_SUCCESS,
    RESULT_UNKNOWN_ACCOUNT,
    count_recent_failures,
    record_login_attempt,
)
from app.services.one_time_codes import CodeSender, deliver_code, get_code, issue_code, verify_code
from app.services.risk import assess_login_risk

logger = logging.getLogger(__name__)


class LoginOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    MFA_REQUIRED = "MFA_REQUIRED"
    LOCKED = "LOCKED"
    INVALID = "INVALID"


class VerifyOutcome(str, Enum):
    VERIFIED = "VERIFIED"
    INVALID = "INVALID"
    EXPIRED = "EXPIRED"
    EXHAUSTED = "EXHAUSTED"
    LOCKED = "LOCKED"


@dataclass(frozen=True)
class LoginContext:
    ip: str | None = None
    user_agent: str | None = None
    login_method: str = "email"


@dataclass
class LoginResult:
    outcome: LoginOutcome
    access_token: str | None = None
    challenge_id: int | None = None
    risk_score: int = 0
    retry_after_seconds: int | None = None
    code_sent: bool = False
    dev_code: str | None = None


@dataclass
class VerifyResult:
    outcome: VerifyOutcome
    access_token: str | None = None
    attempts_remaining: int | None = None
    retry_after_seconds: int | None = None


@dataclass
class RiskSnapshot:
    account_id: int
    failed_attempts: int
    locked_until: datetime | None
    is_locked: bool
    retry_after_seconds: int
    recent_failures: int
    known_devices: int
    mfa_enabled: bool
    recent_alerts: list[dict] = field(default_factory=list)

    def to_payload(self) -> dict:
        return {
            "account_id": self.account_id,
            "failed_attempts": self.failed_attempts,
            "locked_until": self.locked_until.isoformat() if self.locked_until else None,
            "is_locked": self.is_locked,
            "retry_after_seconds": self.retry_after_seconds,
            "recent_failures": self.recent_failures,
            "known_devices": self.known_devices,
            "mfa_enabled": self.mfa_enabled,
            "recent_alerts": self.recent_alerts,
        }


def dev_show_code_enabled() -> bool:
    return os.getenv("AUTH_DEV_SHOW_CODE", "false").lower() == "true"


@lru_cache(maxsize=1)
def _dummy_password_hash() -> str:
    return hash_password("rentverse-unknown-account")


def verify_credentials(user: User, credential: str) -> User:
    if not verify_password(credential, user.hashed_password):
        raise InvalidCredentials()
    return user


def _record(db: Session, user: User | None, email: str, result: str, context: LoginContext, now: datetime, risk_score: int = 0) -> None:
    record_login_attempt(
        db,
        email=email,
        result=result,
        now=now,
        user_id=user.id if user else None,
        ip=context.ip,
        user_agent=context.user_agent,
        risk_score=risk_score,
        login_method=context.login_method,
    )


def _alert_on_failure(
    db: Session,
    user: User,
    failure: FailureOutcome,
    context: LoginContext,
    now: datetime,
    policy: SecurityPolicy,
    send_alert: AlertSender | None,
) -> None:
    meta = {"ip": context.ip, "at": now.isoformat()}
    if failure.locked_now:
        emit_alert(
            db,
            user,
            AlertType.ACCOUNT_LOCKED,
            "Your account has been temporarily locked due to multiple failed login attempts. "
            f"It will unlock automatically after {policy.lockout_minutes} minutes.",
            now,
            meta={**meta, "failed_attempts": failure.failed_attempts},
            send=send_alert,
        )

    window_start = now - timedelta(minutes=policy.alert_failure_window_minutes)
    failures = count_recent_failures(db, user.id, window_start)
    if failures == policy.alert_failure_threshold:
        emit_alert(
            db,
            user,
            AlertType.MULTIPLE_FAILURES,
            f"There were {failures} failed login attempts on your account "
            f"in the last {policy.alert_failure_window_minutes} minutes.",
            now,
            meta={**meta, "fail_count": failures},
            send=send_alert,
        )


def _complete_login(
    db: Session,
    user: User,
    context: LoginContext,
    risk_score: int,
    now: datetime,
    send_alert: AlertSender | None,
) -> str:
    reset_attempts(db, user, now)
    device, is_new_device = register_device(db, user.id, context.user_agent, context.ip, now)
    _record(db, user, user.email, RESULT_SUCCESS, context, now, risk_score)
    db.commit()

    pending = check_suspicious_patterns(
        db,
        user,
        context.ip,
        now,
        is_new_device=is_new_device,
        device_name=device.device_name,
    )
    emit_pending(db, user, pending, now, send=send_alert)
    return issue_session_token(user)


def attempt_login(
    db: Session,
    identifier: str,
    credential: str,
    context: LoginContext,
    *,
    now: datetime | None = None,
    policy: SecurityPolicy | None = None,
    send_code: CodeSender | None = None,
    send_alert: AlertSender | None = None,
) -> LoginResult:
    now = resolve_now(now)
    policy = policy or get_security_policy()
    email = normalize_email(identifier)
    user = find_user_by_email(db, email)

    if user is None or not user.is_active:
        risk = assess_login_risk(db, None, context.ip, context.user_agent, now, policy)
        _record(db, user, email, RESULT_UNKNOWN_ACCOUNT, context, now, risk.score)
        db.commit()
        # same bcrypt cost whether or not the account exists
        verify_password(credential, _dummy_password_hash())
        return LoginResult(outcome=LoginOutcome.INVALID, risk_score=risk.score)

    try:
        ensure_not_locked(user, now)
    except AccountLocked as exc:
        _record(db, user, email, RESULT_ACCOUNT_LOCKED, context, now)
        db.commit()
        return LoginResult(outcome=LoginOutcome.LOCKED, retry_after_seconds=exc.retry_after_seconds)

    risk = assess_login_risk(db, user, context.ip, context.user_agent, now, policy)

    try:
        verify_credentials(user, credential)
    except InvalidCredentials:
        _record(db, user, email, RESULT_INVALID_PASSWORD, context, now, risk.score)
        failure = register_failure(db, user, now, policy)
        _alert_on_failure(db, user, failure, context, now, policy, send_alert)
        if failure.locked_now:
            locked, seconds = lock_status(user, now)
            return LoginResult(
                outcome=LoginOutcome.LOCKED,
                risk_score=risk.score,
                retry_after_seconds=seconds if locked else policy.lockout_minutes * 60,
            )
        return LoginResult(outcome=LoginOutcome.INVALID, risk_score=risk.score)

    if user.mfa_enabled:
        issued = issue_code(db, user, "login", now, policy)
        sent = deliver_code(user, issued.plaintext, "login", policy, send=send_code)
        _record(db, user, email, RESULT_MFA_REQUIRED, context, now, risk.score)
        db.commit()
        return LoginResult(
            outcome=LoginOutcome.MFA_REQUIRED,
            challenge_id=issued.record.id,
            risk_score=risk.score,
            code_sent=sent,
            dev_code=issued.plaintext if not sent and dev_show_code_enabled() else None,
        )

    token = _complete_login(db, user, context, risk.score, now, send_alert)
    return LoginResult(outcome=LoginOutcome.SUCCESS, access_token=token, risk_score=risk.score)


def verify_one_time_code(
    db: Session,
    challenge_id: int,
    code: str,
    context: LoginContext,
    *,
    now: datetime | None = None,
    policy: SecurityPolicy | None = None,
    send_alert: AlertSender | None = None,
) -> VerifyResult:
    now = resolve_now(now)
    policy = policy or get_security_policy()

    record = get_code(db, challenge_id)
    if record is None or record.purpose != "login":
        return VerifyResult(outcome=VerifyOutcome.EXPIRED)
    user = db.get(User, record.user_id)
    if user is None or not user.is_active:
        return VerifyResult(outcome=VerifyOutcome.EXPIRED)

    try:
        ensure_not_locked(user, now)
    except AccountLocked as exc:
        _record(db, user, user.email, RESULT_ACCOUNT_LOCKED, context, now)
        db.commit()
        return VerifyResult(outcome=VerifyOutcome.LOCKED, retry_after_seconds=exc.retry_after_seconds)

    risk = assess_login_risk(db, user, context.ip, context.user_agent, now, policy)
    try:
        verify_code(db, record, code, now, policy)
    except CodeExpired:
        _record(db, user, user.email, RESULT_CODE_EXPIRED, context, now, risk.score)
        db.commit()
        return VerifyResult(outcome=VerifyOutcome.EXPIRED)
    except CodeExhausted:
        _record(db, user, user.email, RESULT_CODE_EXHAUSTED, context, now, risk.score)
        db.commit()
        return VerifyResult(outcome=VerifyOutcome.EXHAUSTED, attempts_remaining=0)
    except CodeInvalid as exc:
        _record(db, user, user.email, RESULT_INVALID_CODE, context, now, risk.score)
        db.commit()
        return VerifyResult(outcome=VerifyOutcome.INVALID, attempts_remaining=exc.attempts_remaining)

    token = _complete_login(db, user, context, risk.score, now, send_alert)
    return VerifyResult(outcome=VerifyOutcome.VERIFIED, access_token=token)


def get_account_risk_snapshot(
    db: Session,
    account_id: int,
    *,
    now: datetime | None = None,
    policy: SecurityPolicy | None = None,
    alert_limit: int = 5,
) -> RiskSnapshot | None:
    now = resolve_now(now)
    policy = policy or get_security_policy()
    user = db.get(User, account_id)
    if user is None:
        return None

    locked, seconds = lock_status(user, now)
    recent_failures = count_recent_failures(db, user.id, now - timedelta(minutes=policy.failure_window_minutes))
    return RiskSnapshot(
        account_id=user.id,
        failed_attempts=int(user.failed_login_attempts),
        locked_until=user.locked_until if locked else None,
        is_locked=locked,
        retry_after_seconds=seconds,
        recent_failures=recent_failures,
        known_devices=len(list_devices(db, user.id)),
        mfa_enabled=bool(user.mfa_enabled),
        recent_alerts=[serialize_alert(a) for a in list_alerts(db, user.id, limit=alert_limit)],
    )
