import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.core.api_response import success_response_payload
from app.core.clock import utc_now_naive
from app.core.errors import CodeExhausted, CodeExpired, CodeInvalid, InvalidCredentials, LoginSecurityError
from app.core.metrics import increment_counter
from app.core.observability import client_ip, log_business_event
from app.core.rate_limit import (
    LOGIN_LIMIT,
    LOGIN_WINDOW_MINUTES,
    SEND_CODE_LIMIT,
    SEND_CODE_WINDOW_MINUTES,
    VERIFY_CODE_LIMIT,
    VERIFY_CODE_WINDOW_MINUTES,
    consume_rate_limit,
)
from app.core.security import get_current_user, get_token_payload, get_user_role
from app.core.security_policy import get_security_policy
from app.db.models.user import User
from app.db.session import get_db
from app.schemas.auth import (
    ChangePasswordIn,
    CodeIn,
    LoginIn,
    PasswordResetConfirmIn,
    PasswordResetRequestIn,
    RegisterIn,
    VerifyOtpIn,
)
from app.services.account_security import (
    change_password,
    confirm_disable_mfa,
    confirm_enable_mfa,
    reset_password,
    revoke_token,
    start_code_challenge,
)
from app.services.accounts import RegistrationError, find_user_by_email, normalize_email, register_user
from app.services.alerts import acknowledge_alert, list_alerts, serialize_alert, unread_alert_count
from app.services.devices import list_devices, remove_device, serialize_device
from app.services.login_flow import (
    LoginContext,
    LoginOutcome,
    VerifyOutcome,
    attempt_login,
    dev_show_code_enabled,
    get_account_risk_snapshot,
    verify_one_time_code,
)
from app.services.login_history import get_login_history, serialize_login_history
from app.services.one_time_codes import CodePurpose

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)

LOCKED_MESSAGE = "Account temporarily locked. Try again later."
INVALID_CREDENTIALS_MESSAGE = "Invalid credentials"


def _login_context(request: Request) -> LoginContext:
    return LoginContext(ip=client_ip(request), user_agent=request.headers.get("user-agent"))


def _locked_exception(retry_after_seconds: int | None) -> HTTPException:
    seconds = int(retry_after_seconds or 1)
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={"message": LOCKED_MESSAGE, "retry_after_seconds": seconds},
        headers={"Retry-After": str(seconds)},
    )


def _code_exception(exc: LoginSecurityError) -> HTTPException:
    detail: dict = {"message": str(exc)}
    if isinstance(exc, CodeInvalid):
        detail["attempts_remaining"] = exc.attempts_remaining
        detail["reason"] = "invalid"
    elif isinstance(exc, CodeExhausted):
        detail["attempts_remaining"] = 0
        detail["reason"] = "exhausted"
    else:
        detail["reason"] = "expired"
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def _challenge_payload(purpose: CodePurpose, code_sent: bool, plaintext: str) -> dict:
    policy = get_security_policy()
    data = {
        "purpose": purpose,
        "code_sent": code_sent,
        "expires_in_minutes": policy.otp_expire_minutes,
    }
    if not code_sent and dev_show_code_enabled():
        data["dev_code"] = plaintext
    return data


def _user_payload(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "role": get_user_role(user),
        "mfa_enabled": bool(user.mfa_enabled),
        "last_login_at": user.last_login_at.isoformat() if user.last_login_at else None,
    }


@router.post("/register", status_code=status.HTTP_201_CREATED)
def register(payload: RegisterIn, request: Request, db: Session = Depends(get_db)):
    try:
        user = register_user(
            db,
            email=payload.email,
            password=payload.password,
            full_name=payload.full_name,
            now=utc_now_naive(),
        )
    except RegistrationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    log_business_event(logger, request, event="auth.register", result="created", user_id=user.id)
    return success_response_payload(request, data=_user_payload(user))


@router.post("/login")
def login(payload: LoginIn, request: Request, db: Session = Depends(get_db)):
    increment_counter("auth_login_total")
    context = _login_context(request)
    consume_rate_limit(db, context.ip or "unknown", "auth_login", LOGIN_LIMIT, LOGIN_WINDOW_MINUTES)

    result = attempt_login(db, payload.email, payload.password, context)
    increment_counter("auth_login_result_total", result=result.outcome.value.lower())
    log_business_event(
        logger,
        request,
        event="auth.login",
        result=result.outcome.value,
        email=normalize_email(payload.email),
        risk_score=result.risk_score,
    )

    if result.outcome == LoginOutcome.INVALID:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=INVALID_CREDENTIALS_MESSAGE)
    if result.outcome == LoginOutcome.LOCKED:
        raise _locked_exception(result.retry_after_seconds)
    if result.outcome == LoginOutcome.MFA_REQUIRED:
        data = {
            "status": "mfa_required",
            "challenge_id": result.challenge_id,
            "code_sent": result.code_sent,
            "message": "A verification code was sent to your email." if result.code_sent else "Email delivery is unavailable.",
        }
        if result.dev_code:
            data["dev_code"] = result.dev_code
        return success_response_payload(request, data=data)

    return success_response_payload(request, data={
        "status": "authenticated",
        "access_token": result.access_token,
        "token_type": "bearer",
        "risk_score": result.risk_score,
    })


@router.post("/verify-otp")
def verify_otp(payload: VerifyOtpIn, request: Request, db: Session = Depends(get_db)):
    increment_counter("auth_verify_total")
    context = _login_context(request)
    consume_rate_limit(db, context.ip or "unknown", "verify_code", VERIFY_CODE_LIMIT, VERIFY_CODE_WINDOW_MINUTES)

    result = verify_one_time_code(db, payload.challenge_id, payload.code, context)
    increment_counter("auth_verify_result_total", result=result.outcome.value.lower())
    log_business_event(
        logger,
        request,
        event="auth.verify_otp",
        result=result.outcome.value,
        challenge_id=payload.challenge_id,
    )

    if result.outcome == VerifyOutcome.LOCKED:
        raise _locked_exception(result.retry_after_seconds)
    if result.outcome == VerifyOutcome.INVALID:
        raise _code_exception(CodeInvalid(attempts_remaining=result.attempts_remaining or 0))
    if result.outcome == VerifyOutcome.EXHAUSTED:
        raise _code_exception(CodeExhausted())
    if result.outcome == VerifyOutcome.EXPIRED:
        raise _code_exception(CodeExpired())

    return success_response_payload(request, data={
        "status": "authenticated",
        "access_token": result.access_token,
        "token_type": "bearer",
    })


@router.post("/logout")
def logout(
    request: Request,
    token_payload: dict = Depends(get_token_payload),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    revoked = revoke_token(db, token_payload, current_user, utc_now_naive())
    log_business_event(logger, request, event="auth.logout", user_id=current_user.id, revoked=revoked)
    return success_response_payload(request, data={"status": "logged_out"})


@router.get("/me")
def me(request: Request, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    data = _user_payload(current_user)
    data["unread_alerts"] = unread_alert_count(db, current_user.id)
    return success_response_payload(request, data=data)


def _start_mfa_change(
    purpose: CodePurpose,
    request: Request,
    db: Session,
    current_user: User,
) -> dict:
    consume_rate_limit(db, f"user:{current_user.id}", "send_code", SEND_CODE_LIMIT, SEND_CODE_WINDOW_MINUTES)
    issued, sent = start_code_challenge(db, current_user, purpose, utc_now_naive(), get_security_policy())
    log_business_event(logger, request, event=f"auth.{purpose}", result="code_issued", user_id=current_user.id)
    return success_response_payload(request, data=_challenge_payload(purpose, sent, issued.plaintext))


@router.post("/mfa/enable")
def mfa_enable(request: Request, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    if current_user.mfa_enabled:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="MFA is already enabled")
    return _start_mfa_change("enable_mfa", request, db, current_user)


@router.post("/mfa/enable/verify")
def mfa_enable_verify(
    payload: CodeIn,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        confirm_enable_mfa(db, current_user, payload.code, utc_now_naive(), get_security_policy())
    except (CodeInvalid, CodeExpired, CodeExhausted) as exc:
        raise _code_exception(exc) from exc
    increment_counter("auth_mfa_change_total", action="enable")
    log_business_event(logger, request, event="auth.enable_mfa", result="enabled", user_id=current_user.id)
    return success_response_payload(request, data={"mfa_enabled": True})


@router.post("/mfa/disable")
def mfa_disable(request: Request, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    if not current_user.mfa_enabled:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="MFA is not enabled")
    return _start_mfa_change("disable_mfa", request, db, current_user)


@router.post("/mfa/disable/verify")
def mfa_disable_verify(
    payload: CodeIn,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        confirm_disable_mfa(db, current_user, payload.code, utc_now_naive(), get_security_policy())
    except (CodeInvalid, CodeExpired, CodeExhausted) as exc:
        raise _code_exception(exc) from exc
    increment_counter("auth_mfa_change_total", action="disable")
    log_business_event(logger, request, event="auth.disable_mfa", result="disabled", user_id=current_user.id)
    return success_response_payload(request, data={"mfa_enabled": False})


@router.post("/password/change")
def password_change(
    payload: ChangePasswordIn,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        change_password(
            db,
            current_user,
            payload.current_password,
            payload.new_password,
            utc_now_naive(),
            ip=client_ip(request),
        )
    except InvalidCredentials as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    except RegistrationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    increment_counter("auth_password_change_total", source="change")
    log_business_event(logger, request, event="auth.password_change", result="changed", user_id=current_user.id)
    return success_response_payload(request, data={"status": "password_changed", "sessions_revoked": True})


@router.post("/password/reset")
def password_reset_request(payload: PasswordResetRequestIn, request: Request, db: Session = Depends(get_db)):
    email = normalize_email(payload.email)
    consume_rate_limit(db, email, "password_reset", SEND_CODE_LIMIT, SEND_CODE_WINDOW_MINUTES)

    data = {"status": "code_sent_if_account_exists"}
    user = find_user_by_email(db, email)
    if user and user.is_active:
        issued, sent = start_code_challenge(db, user, "password_reset", utc_now_naive(), get_security_policy())
        if not sent and dev_show_code_enabled():
            data["dev_code"] = issued.plaintext
    log_business_event(logger, request, event="auth.password_reset", result="requested", email=email)
    return success_response_payload(request, data=data)


@router.post("/password/reset/confirm")
def password_reset_confirm(payload: PasswordResetConfirmIn, request: Request, db: Session = Depends(get_db)):
    user = find_user_by_email(db, payload.email)
    if not user or not user.is_active:
        raise _code_exception(CodeExpired())
    try:
        reset_password(
            db,
            user,
            payload.code,
            payload.new_password,
            utc_now_naive(),
            get_security_policy(),
            ip=client_ip(request),
        )
    except (CodeInvalid, CodeExpired, CodeExhausted) as exc:
        raise _code_exception(exc) from exc
    except RegistrationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    increment_counter("auth_password_change_total", source="reset")
    log_business_event(logger, request, event="auth.password_reset", result="completed", user_id=user.id)
    return success_response_payload(request, data={"status": "password_reset"})


@router.get("/devices")
def devices(request: Request, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    items = [serialize_device(d) for d in list_devices(db, current_user.id)]
    return success_response_payload(request, data={"items": items})


@router.delete("/devices/{device_id}")
def delete_device(
    device_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    if not remove_device(db, current_user.id, device_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")
    return success_response_payload(request, data={"removed": True})


@router.get("/login-history")
def login_history(
    request: Request,
    limit: int = 10,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    rows = get_login_history(db, current_user.id, limit=max(1, min(limit, 100)))
    return success_response_payload(request, data={"items": [serialize_login_history(r) for r in rows]})


@router.get("/alerts")
def alerts(
    request: Request,
    limit: int = 20,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    rows = list_alerts(db, current_user.id, limit=max(1, min(limit, 100)))
    return success_response_payload(
        request,
        data={"items": [serialize_alert(a) for a in rows]},
        meta={"unread": unread_alert_count(db, current_user.id)},
    )


@router.post("/alerts/{alert_id}/acknowledge")
def acknowledge(
    alert_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    alert = acknowledge_alert(db, current_user.id, alert_id, utc_now_naive())
    if not alert:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    return success_response_payload(request, data=serialize_alert(alert))


@router.get("/risk-snapshot")
def risk_snapshot(request: Request, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    snapshot = get_account_risk_snapshot(db, current_user.id)
    return success_response_payload(request, data=snapshot.to_payload())
