import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from app.core.alerts import ALERT_CATALOG, AlertType
from app.core.errors import NotificationDeliveryFailed
from app.core.notifications import send_security_alert_email
from app.core.risk import is_unusual_hour
from app.db.models.security_alert import SecurityAlert
from app.db.models.user import User
from app.services.login_history import count_distinct_success_ips

logger = logging.getLogger(__name__)

AlertSender = Callable[[str, str, str, dict | None], bool]

MULTIPLE_LOCATIONS_WINDOW_MINUTES = 60
MULTIPLE_LOCATIONS_THRESHOLD = 3


@dataclass
class PendingAlert:
    alert_type: AlertType
    message: str
    meta: dict = field(default_factory=dict)


def emit_alert(
    db: Session,
    user: User,
    alert_type: AlertType,
    message: str,
    now: datetime,
    meta: dict | None = None,
    send: AlertSender | None = None,
) -> SecurityAlert:
    """Persist an alert and notify the account owner when the catalog asks for it.

    Delivery is best effort: a failed send is logged and leaves
    ``email_sent`` False, it never propagates to the caller.
    """
    catalog = ALERT_CATALOG[alert_type]
    alert = SecurityAlert(
        user_id=user.id,
        alert_type=alert_type.value,
        severity=catalog["severity"],
        title=catalog["title"],
        message=message,
        meta_json=meta or None,
        email_sent=False,
        is_acknowledged=False,
        acknowledged_at=None,
        created_at=now,
    )
    db.add(alert)
    db.commit()
    db.refresh(alert)
    logger.info("security_alert user_id=%s type=%s alert_id=%s", user.id, alert_type.value, alert.id)

    if not catalog["send_email"]:
        return alert

    sender = send or send_security_alert_email
    try:
        sent = sender(user.email, catalog["title"], message, meta)
    except NotificationDeliveryFailed as exc:
        logger.warning("security_alert_delivery_failed alert_id=%s error=%s", alert.id, exc)
        sent = False
    except Exception:
        logger.exception("security_alert_sender_crashed alert_id=%s", alert.id)
        sent = False

    if sent:
        alert.email_sent = True
        db.commit()
    return alert


def emit_pending(
    db: Session,
    user: User,
    pending: list[PendingAlert],
    now: datetime,
    send: AlertSender | None = None,
) -> list[SecurityAlert]:
    return [emit_alert(db, user, p.alert_type, p.message, now, meta=p.meta, send=send) for p in pending]


def check_suspicious_patterns(
    db: Session,
    user: User,
    ip: str | None,
    now: datetime,
    *,
    is_new_device: bool,
    device_name: str | None = None,
) -> list[PendingAlert]:
    """Alerts owed for a completed login."""
    base_meta = {"ip": ip, "at": now.isoformat()}
    pending: list[PendingAlert] = []

    if is_new_device:
        pending.append(
            PendingAlert(
                AlertType.NEW_DEVICE,
                f"A new device was used to access your account: {device_name or 'unknown device'}.",
                {**base_meta, "device": device_name},
            )
        )

    if is_unusual_hour(now.hour):
        pending.append(
            PendingAlert(
                AlertType.SUSPICIOUS_TIMING,
                f"A login to your account was detected at an unusual hour ({now.hour:02d}:00 UTC).",
                {**base_meta, "hour": now.hour},
            )
        )

    since = now - timedelta(minutes=MULTIPLE_LOCATIONS_WINDOW_MINUTES)
    distinct_ips = count_distinct_success_ips(db, user.id, since)
    if distinct_ips > MULTIPLE_LOCATIONS_THRESHOLD and not has_recent_alert(
        db, user.id, AlertType.MULTIPLE_LOCATIONS, since
    ):
        pending.append(
            PendingAlert(
                AlertType.MULTIPLE_LOCATIONS,
                f"Logins from {distinct_ips} different IP addresses in the last hour.",
                {**base_meta, "distinct_ips": distinct_ips},
            )
        )
    return pending


def has_recent_alert(db: Session, user_id: int, alert_type: AlertType, since: datetime) -> bool:
    return (
        db.query(SecurityAlert.id)
        .filter(
            SecurityAlert.user_id == user_id,
            SecurityAlert.alert_type == alert_type.value,
            SecurityAlert.created_at >= since,
        )
        .first()
        is not None
    )


def list_alerts(db: Session, user_id: int, limit: int = 20) -> list[SecurityAlert]:
    return (
        db.query(SecurityAlert)
        .filter(SecurityAlert.user_id == user_id)
        .order_by(SecurityAlert.created_at.desc(), SecurityAlert.id.desc())
        .limit(limit)
        .all()
    )


def unread_alert_count(db: Session, user_id: int) -> int:
    return (
        db.query(SecurityAlert)
        .filter(SecurityAlert.user_id == user_id, SecurityAlert.is_acknowledged.is_(False))
        .count()
    )


def acknowledge_alert(db: Session, user_id: int, alert_id: int, now: datetime) -> SecurityAlert | None:
    alert = (
        db.query(SecurityAlert)
        .filter(SecurityAlert.id == alert_id, SecurityAlert.user_id == user_id)
        .first()
    )
    if not alert:
        return None
    if not alert.is_acknowledged:
        alert.is_acknowledged = True
        alert.acknowledged_at = now
        db.commit()
    return alert


def serialize_alert(alert: SecurityAlert) -> dict:
    return {
        "id": alert.id,
        "user_id": alert.user_id,
        "type": alert.alert_type,
        "severity": alert.severity,
        "title": alert.title,
        "message": alert.message,
        "meta": alert.meta_json,
        "email_sent": bool(alert.email_sent),
        "is_acknowledged": bool(alert.is_acknowledged),
        "acknowledged_at": alert.acknowledged_at.isoformat() if alert.acknowledged_at else None,
        "created_at": alert.created_at.isoformat(),
    }
