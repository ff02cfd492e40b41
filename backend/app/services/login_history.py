from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.devices import generate_device_hash, parse_user_agent
from app.core.risk import risk_level
from app.db.models.login_history import LoginHistory

RESULT_SUCCESS = "success"
RESULT_INVALID_PASSWORD = "invalid_password"
RESULT_UNKNOWN_ACCOUNT = "unknown_account"
RESULT_ACCOUNT_LOCKED = "account_locked"
RESULT_MFA_REQUIRED = "mfa_required"
RESULT_INVALID_CODE = "invalid_code"
RESULT_CODE_EXPIRED = "code_expired"
RESULT_CODE_EXHAUSTED = "code_exhausted"

# rejected-while-locked and OTP failures never feed the failure windows
COUNTED_FAILURE_RESULTS = (RESULT_INVALID_PASSWORD, RESULT_UNKNOWN_ACCOUNT)


def record_login_attempt(
    db: Session,
    *,
    email: str,
    result: str,
    now: datetime,
    user_id: int | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
    risk_score: int = 0,
    login_method: str = "email",
) -> LoginHistory:
    device = parse_user_agent(user_agent)
    row = LoginHistory(
        user_id=user_id,
        email=email,
        ip=ip,
        user_agent=(user_agent or "")[:255] or None,
        device_hash=generate_device_hash(user_agent, ip),
        device_type=device.device_type,
        browser=device.browser,
        os=device.os,
        result=result,
        success=result == RESULT_SUCCESS,
        risk_score=risk_score,
        login_method=login_method,
        created_at=now,
    )
    db.add(row)
    db.flush()
    return row


def count_recent_failures(db: Session, user_id: int, since: datetime) -> int:
    return (
        db.query(LoginHistory)
        .filter(
            LoginHistory.user_id == user_id,
            LoginHistory.result.in_(COUNTED_FAILURE_RESULTS),
            LoginHistory.created_at >= since,
        )
        .count()
    )


def count_ip_failures(db: Session, ip: str | None, since: datetime) -> int:
    if not ip:
        return 0
    return (
        db.query(LoginHistory)
        .filter(
            LoginHistory.ip == ip,
            LoginHistory.result.in_(COUNTED_FAILURE_RESULTS),
            LoginHistory.created_at >= since,
        )
        .count()
    )


def count_distinct_success_ips(db: Session, user_id: int, since: datetime) -> int:
    return (
        db.query(func.count(func.distinct(LoginHistory.ip)))
        .filter(
            LoginHistory.user_id == user_id,
            LoginHistory.success.is_(True),
            LoginHistory.created_at >= since,
        )
        .scalar()
        or 0
    )


def get_login_history(db: Session, user_id: int, limit: int = 10) -> list[LoginHistory]:
    return (
        db.query(LoginHistory)
        .filter(LoginHistory.user_id == user_id)
        .order_by(LoginHistory.created_at.desc(), LoginHistory.id.desc())
        .limit(limit)
        .all()
    )


def serialize_login_history(row: LoginHistory) -> dict:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "email": row.email,
        "ip": row.ip,
        "device_type": row.device_type,
        "browser": row.browser,
        "os": row.os,
        "result": row.result,
        "success": bool(row.success),
        "risk_score": row.risk_score,
        "risk_level": risk_level(row.risk_score),
        "login_method": row.login_method,
        "created_at": row.created_at.isoformat(),
    }
