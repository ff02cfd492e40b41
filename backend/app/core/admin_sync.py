from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from app.core.clock import resolve_now
from app.core.security import hash_password
from app.db.models.user import User
from app.services.accounts import EMAIL_RE, normalize_email


def parse_admin_emails(raw: str) -> list[str]:
    emails = [normalize_email(x) for x in raw.split(",") if x.strip()]
    return sorted(set(emails))


def validate_admin_emails(emails: list[str]) -> None:
    invalid = [email for email in emails if not EMAIL_RE.match(email)]
    if invalid:
        raise ValueError(f"Invalid emails: {', '.join(invalid)}")


@dataclass
class AdminSyncResult:
    created: int = 0
    promoted: int = 0
    demoted: int = 0
    skipped_create_without_password: int = 0


def sync_admin_users(
    db: Session,
    admin_emails: list[str],
    admin_password: str | None,
    now: datetime | None = None,
) -> AdminSyncResult:
    """Make exactly the configured emails admins, creating missing accounts when a password is given."""
    validate_admin_emails(admin_emails)
    now = resolve_now(now)
    result = AdminSyncResult()
    target = set(admin_emails)

    all_users = db.query(User).all()
    by_email = {u.email.lower(): u for u in all_users}

    for user in all_users:
        if user.role == "admin" and user.email.lower() not in target:
            user.role = "user"
            user.token_version = int(user.token_version) + 1
            result.demoted += 1

    for email in admin_emails:
        existing = by_email.get(email)
        if existing:
            if existing.role != "admin" or not existing.is_active:
                existing.role = "admin"
                existing.is_active = True
                result.promoted += 1
            continue

        if not admin_password:
            result.skipped_create_without_password += 1
            continue

        db.add(
            User(
                email=email,
                hashed_password=hash_password(admin_password),
                role="admin",
                is_active=True,
                mfa_enabled=False,
                failed_login_attempts=0,
                token_version=0,
                password_changed_at=now,
                created_at=now,
            )
        )
        result.created += 1

    db.commit()
    return result
