import os
from collections.abc import Callable, Generator
from datetime import datetime

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")
for _smtp_var in ("SMTP_HOST", "SMTP_USER", "SMTP_PASSWORD"):
    os.environ.pop(_smtp_var, None)

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.security import hash_password
from app.core.security_policy import SecurityPolicy
from app.db.base import Base
from app.db import models  # noqa: F401
from app.db.models.user import User

NOW = datetime(2026, 3, 10, 12, 0, 0)
PASSWORD = "correct-horse-1"


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def policy() -> SecurityPolicy:
    return SecurityPolicy()


@pytest.fixture(scope="session")
def password_hash() -> str:
    return hash_password(PASSWORD)


@pytest.fixture()
def make_user(db_session: Session, password_hash: str) -> Callable[..., User]:
    def _make_user(email: str = "tenant@rentverse.test", **fields) -> User:
        user = User(
            email=email,
            hashed_password=password_hash,
            role=fields.pop("role", "user"),
            is_active=fields.pop("is_active", True),
            mfa_enabled=fields.pop("mfa_enabled", False),
            failed_login_attempts=0,
            token_version=0,
            created_at=NOW,
            **fields,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user
