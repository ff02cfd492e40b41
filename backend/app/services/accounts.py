import re
from datetime import datetime

from sqlalchemy.orm import Session

from app.core.security import hash_password
from app.db.models.user import User

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8


class RegistrationError(ValueError):
    pass


def normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


def find_user_by_email(db: Session, email: str) -> User | None:
    return db.query(User).filter(User.email == normalize_email(email)).first()


def validate_new_password(password: str) -> None:
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise RegistrationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


def register_user(
    db: Session,
    *,
    email: str,
    password: str,
    now: datetime,
    full_name: str | None = None,
    role: str = "user",
) -> User:
    email = normalize_email(email)
    if not EMAIL_RE.match(email):
        raise RegistrationError("Invalid email format")
    validate_new_password(password)
    if find_user_by_email(db, email):
        raise RegistrationError("Email already registered")

    user = User(
        email=email,
        hashed_password=hash_password(password),
        full_name=full_name,
        role=role,
        is_active=True,
        mfa_enabled=False,
        failed_login_attempts=0,
        token_version=0,
        password_changed_at=now,
        created_at=now,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user

