import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from app.core.alerts import AlertType
from app.core.errors import InvalidCredentials
from app.core.security import hash_password, verify_password
from app.core.security_policy import SecurityPolicy
from app.db.models.revoked_token import RevokedToken
from app.db.models.user import User
from app.services.accounts import validate_new_password
from app.services.alerts import AlertSender, emit_alert
from app.services.one_time_codes import CodePurpose, CodeSender, IssuedCode, deliver_code, issue_code, verify_latest_code

logger = logging.getLogger(__name__)


def start_code_challenge(
    db: Session,
    user: User,
    purpose: CodePurpose,
    now: datetime,
    policy: SecurityPolicy,
    send_code: CodeSender | None = None,
) -> tuple[IssuedCode, bool]:
    issued = issue_code(db, user, purpose, now, policy)
    sent = deliver_code(user, issued.plaintext, purpose, policy, send=send_code)
    return issued, sent


def confirm_enable_mfa(
    db: Session,
    user: User,
    code: str,
    now: datetime,
    policy: SecurityPolicy,
    send_alert: AlertSender | None = None,
) -> None:
    """Raises CodeInvalid / CodeExpired / CodeExhausted from the code check."""
    verify_latest_code(db, user, "enable_mfa", code, now, policy)
    user.mfa_enabled = True
    user.mfa_verified_at = now
    db.commit()
    logger.info("mfa_enabled user_id=%s", user.id)
    emit_alert(
        db,
        user,
        AlertType.MFA_ENABLED,
        "Two-factor authentication was enabled on your account.",
        now,
        send=send_alert,
    )


def confirm_disable_mfa(
    db: Session,
    user: User,
    code: str,
    now: datetime,
    policy: SecurityPolicy,
    send_alert: AlertSender | None = None,
) -> None:
    verify_latest_code(db, user, "disable_mfa", code, now, policy)
    user.mfa_enabled = False
    user.mfa_verified_at = None
    db.commit()
    logger.info("mfa_disabled user_id=%s", user.id)
    emit_alert(
        db,
        user,
        AlertType.MFA_DISABLED,
        "Two-factor authentication was disabled on your account.",
        now,
        send=send_alert,
    )


def _set_password(db: Session, user: User, new_password: str, now: datetime) -> None:
    validate_new_password(new_password)
    user.hashed_password = hash_password(new_password)
    user.password_changed_at = now
    # every issued token carries the old version and stops validating
    user.token_version = int(user.token_version) + 1
    db.commit()


def change_password(
    db: Session,
    user: User,
    current_password: str,
    new_password: str,
    now: datetime,
    ip: str | None = None,
    send_alert: AlertSender | None = None,
) -> None:
    if not verify_password(current_password, user.hashed_password):
        raise InvalidCredentials("Invalid current password")
    _set_password(db, user, new_password, now)
    emit_alert(
        db,
        user,
        AlertType.PASSWORD_CHANGED,
        "Your account password was changed. If you did not make this change, contact support immediately.",
        now,
        meta={"ip": ip, "at": now.isoformat()},
        send=send_alert,
    )


def reset_password(
    db: Session,
    user: User,
    code: str,
    new_password: str,
    now: datetime,
    policy: SecurityPolicy,
    ip: str | None = None,
    send_alert: AlertSender | None = None,
) -> None:
    validate_new_password(new_password)
    verify_latest_code(db, user, "password_reset", code, now, policy)
    _set_password(db, user, new_password, now)
    emit_alert(
        db,
        user,
        AlertType.PASSWORD_CHANGED,
        "Your account password was reset with an emailed code.",
        now,
        meta={"ip": ip, "at": now.isoformat()},
        send=send_alert,
    )


def revoke_token(db: Session, payload: dict, user: User | None, now: datetime) -> bool:
    jti = payload.get("jti")
    if not jti:
        return False
    if db.query(RevokedToken.id).filter(RevokedToken.jti == jti).first() is not None:
        return False
    exp = payload.get("exp")
    expires_at = datetime.fromtimestamp(int(exp), tz=timezone.utc).replace(tzinfo=None) if exp else now
    db.add(RevokedToken(jti=jti, user_id=user.id if user else None, expires_at=expires_at, revoked_at=now))
    db.commit()
    return True
