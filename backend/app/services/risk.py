from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from app.core.risk import calculate_risk_score
from app.core.security_policy import SecurityPolicy
from app.db.models.user import User
from app.services.devices import is_known_device
from app.services.login_history import count_ip_failures, count_recent_failures


@dataclass
class RiskAssessment:
    score: int
    is_new_device: bool
    recent_failures: int
    ip_failures: int
    hour: int


def assess_login_risk(
    db: Session,
    user: User | None,
    ip: str | None,
    user_agent: str | None,
    now: datetime,
    policy: SecurityPolicy,
) -> RiskAssessment:
    if user is not None:
        is_new_device = not is_known_device(db, user.id, user_agent, ip)
        recent_failures = count_recent_failures(db, user.id, now - timedelta(minutes=policy.failure_window_minutes))
    else:
        is_new_device = True
        recent_failures = 0
    ip_failures = count_ip_failures(db, ip, now - timedelta(minutes=policy.ip_failure_window_minutes))

    score = calculate_risk_score(
        is_new_device=is_new_device,
        recent_failures=recent_failures,
        hour=now.hour,
        ip_failures=ip_failures,
    )
    return RiskAssessment(
        score=score,
        is_new_device=is_new_device,
        recent_failures=recent_failures,
        ip_failures=ip_failures,
        hour=now.hour,
    )
