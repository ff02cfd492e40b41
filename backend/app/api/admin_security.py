import logging
from dataclasses import asdict
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.core.alerts import alert_catalog_payload
from app.core.api_response import paged_response_payload, success_response_payload
from app.core.clock import utc_now_naive
from app.core.metrics import increment_counter
from app.core.notifications import smtp_configured
from app.core.observability import log_business_event
from app.core.paging import paginate_query
from app.core.permissions import permissions_matrix_payload
from app.core.risk import HIGH_RISK_SCORE
from app.core.security import require_permission
from app.core.security_policy import get_security_policy
from app.db.models.login_history import LoginHistory
from app.db.models.security_alert import SecurityAlert
from app.db.models.user import User
from app.db.session import get_db
from app.services.alerts import serialize_alert
from app.services.lockout import lock_status, unlock_account
from app.services.login_flow import get_account_risk_snapshot
from app.services.login_history import RESULT_SUCCESS, serialize_login_history

router = APIRouter(prefix="/admin/security", tags=["admin-security"])
logger = logging.getLogger(__name__)

TREND_DAYS = 7
AT_RISK_LIMIT = 50


def _daily_trend(db: Session, now: datetime) -> list[dict]:
    start = (now - timedelta(days=TREND_DAYS - 1)).replace(hour=0, minute=0, second=0, microsecond=0)
    rows = db.query(LoginHistory.created_at, LoginHistory.success).filter(LoginHistory.created_at >= start).all()
    buckets: dict[str, dict[str, int]] = {}
    for offset in range(TREND_DAYS):
        day = (start + timedelta(days=offset)).date().isoformat()
        buckets[day] = {"success": 0, "failed": 0}
    for created_at, success in rows:
        bucket = buckets.get(created_at.date().isoformat())
        if bucket is None:
            continue
        bucket["success" if success else "failed"] += 1
    return [{"date": day, **counts} for day, counts in buckets.items()]


@router.get("/statistics")
def statistics(
    request: Request,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("security.view")),
):
    now = utc_now_naive()
    since_day = now - timedelta(hours=24)
    since_week = now - timedelta(days=TREND_DAYS)

    total = db.query(func.count(LoginHistory.id)).filter(LoginHistory.created_at >= since_day).scalar() or 0
    successful = (
        db.query(func.count(LoginHistory.id))
        .filter(LoginHistory.created_at >= since_day, LoginHistory.result == RESULT_SUCCESS)
        .scalar()
        or 0
    )
    failed = total - successful
    high_risk = (
        db.query(func.count(LoginHistory.id))
        .filter(LoginHistory.created_at >= since_day, LoginHistory.risk_score >= HIGH_RISK_SCORE)
        .scalar()
        or 0
    )
    locked_accounts = db.query(func.count(User.id)).filter(User.locked_until > now).scalar() or 0
    alerts_by_type = {
        alert_type: count
        for alert_type, count in db.query(SecurityAlert.alert_type, func.count(SecurityAlert.id))
        .filter(SecurityAlert.created_at >= since_week)
        .group_by(SecurityAlert.alert_type)
        .all()
    }

    return success_response_payload(request, data={
        "last_24h": {
            "total_logins": total,
            "successful_logins": successful,
            "failed_logins": failed,
            "failure_rate": round(failed / total * 100, 2) if total else 0.0,
            "high_risk_logins": high_risk,
        },
        "locked_accounts": locked_accounts,
        "alerts_by_type": alerts_by_type,
        "daily_trend": _daily_trend(db, now),
    })


@router.get("/login-history")
def login_history(
    request: Request,
    page: int = 1,
    page_size: int = 20,
    success: bool | None = None,
    search: str | None = None,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("security.view")),
):
    query = db.query(LoginHistory)
    if success is not None:
        query = query.filter(LoginHistory.success.is_(success))
    term = (search or "").strip().lower()
    if term:
        pattern = f"%{term}%"
        query = query.filter(or_(LoginHistory.email.ilike(pattern), LoginHistory.ip.ilike(pattern)))
    query = query.order_by(LoginHistory.created_at.desc(), LoginHistory.id.desc())

    items, total, page, page_size = paginate_query(
        query,
        page=page,
        page_size=page_size,
        serializer=serialize_login_history,
    )
    return paged_response_payload(request, items=items, total=total, page=page, page_size=page_size)


@router.get("/alerts")
def alerts(
    request: Request,
    page: int = 1,
    page_size: int = 20,
    alert_type: str | None = None,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("security.view")),
):
    query = db.query(SecurityAlert)
    if alert_type:
        query = query.filter(SecurityAlert.alert_type == alert_type)
    query = query.order_by(SecurityAlert.created_at.desc(), SecurityAlert.id.desc())

    items, total, page, page_size = paginate_query(
        query,
        page=page,
        page_size=page_size,
        serializer=serialize_alert,
    )
    return paged_response_payload(request, items=items, total=total, page=page, page_size=page_size)


@router.get("/users-at-risk")
def users_at_risk(
    request: Request,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("security.view")),
):
    now = utc_now_naive()
    users = (
        db.query(User)
        .filter(or_(User.failed_login_attempts > 0, User.locked_until > now))
        .order_by(User.failed_login_attempts.desc(), User.id.asc())
        .limit(AT_RISK_LIMIT)
        .all()
    )
    items = []
    for user in users:
        locked, seconds = lock_status(user, now)
        items.append({
            "id": user.id,
            "email": user.email,
            "failed_login_attempts": int(user.failed_login_attempts),
            "last_failed_login_at": user.last_failed_login_at.isoformat() if user.last_failed_login_at else None,
            "is_locked": locked,
            "locked_until": user.locked_until.isoformat() if locked else None,
            "retry_after_seconds": seconds,
        })
    return success_response_payload(request, data={"items": items})


@router.get("/users/{user_id}/risk-snapshot")
def user_risk_snapshot(
    user_id: int,
    request: Request,
    db: Session = Depends(get_db),
    _: User = Depends(require_permission("security.view")),
):
    snapshot = get_account_risk_snapshot(db, user_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="User not found")
    return success_response_payload(request, data=snapshot.to_payload())


@router.post("/users/{user_id}/unlock")
def unlock_user(
    user_id: int,
    request: Request,
    db: Session = Depends(get_db),
    actor: User = Depends(require_permission("security.manage")),
):
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    unlock_account(db, user)
    increment_counter("admin_unlock_total")
    log_business_event(
        logger,
        request,
        event="admin.unlock",
        actor_user_id=actor.id,
        target_user_id=user.id,
    )
    return success_response_payload(request, data={"id": user.id, "unlocked": True})


@router.get("/catalog")
def catalog(
    request: Request,
    _: User = Depends(require_permission("security.view")),
):
    return success_response_payload(request, data={
        **alert_catalog_payload(),
        **permissions_matrix_payload(),
        "policy": asdict(get_security_policy()),
        "email_delivery": smtp_configured(),
    })
