from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.rate_limit import LOGIN_LIMIT
from app.core.security import create_access_token, hash_password
from app.db import models  # noqa: F401
from app.db.base import Base
from app.db.models.login_history import LoginHistory
from app.db.models.user import User
from app.db.session import get_db
from app.main import app

PASSWORD = "tenant-pass-1"
PASSWORD_HASH = hash_password(PASSWORD)


def _make_user(
    *,
    email: str,
    role: str = "user",
    is_active: bool = True,
    mfa_enabled: bool = False,
    token_version: int = 0,
) -> User:
    return User(
        email=email,
        hashed_password=PASSWORD_HASH,
        role=role,
        is_active=is_active,
        mfa_enabled=mfa_enabled,
        failed_login_attempts=0,
        token_version=token_version,
    )


def _auth_header(email: str, role: str = "user", token_version: int = 0) -> dict[str, str]:
    token = create_access_token({"sub": email, "role": role, "tv": token_version})
    return {"Authorization": f"Bearer {token}"}


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _extract_error_payload(response):
    payload = response.json()
    assert payload["ok"] is False
    assert "error" in payload
    assert "request_id" in payload
    return payload


def _extract_success_data(response):
    payload = response.json()
    assert payload["ok"] is True
    assert "data" in payload
    assert "request_id" in payload
    return payload["data"]


def _get_session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine, sessionmaker(bind=engine, autocommit=False, autoflush=False)


def _override_get_db(session_factory):
    def _get_db() -> Generator[Session, None, None]:
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    return _get_db


@pytest.fixture()
def api():
    engine, SessionLocal = _get_session_factory()
    app.dependency_overrides[get_db] = _override_get_db(SessionLocal)
    try:
        yield TestClient(app), SessionLocal
    finally:
        app.dependency_overrides.clear()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


def test_register_login_and_me(api):
    client, _ = api
    response = client.post(
        "/auth/register",
        json={"email": "Renter@Rentverse.test", "password": PASSWORD, "full_name": "Renter"},
    )
    assert response.status_code == 201
    assert _extract_success_data(response)["email"] == "renter@rentverse.test"

    response = client.post("/auth/login", json={"email": "renter@rentverse.test", "password": PASSWORD})
    assert response.status_code == 200
    data = _extract_success_data(response)
    assert data["status"] == "authenticated"
    assert data["token_type"] == "bearer"

    me = client.get("/auth/me", headers=_bearer(data["access_token"]))
    assert me.status_code == 200
    me_data = _extract_success_data(me)
    assert me_data["role"] == "user"
    assert me_data["unread_alerts"] >= 1

    devices = client.get("/auth/devices", headers=_bearer(data["access_token"]))
    assert len(_extract_success_data(devices)["items"]) == 1


def test_wrong_password_is_vague_and_unknown_email_matches(api):
    client, SessionLocal = api
    with SessionLocal() as db:
        db.add(_make_user(email="tenant@rentverse.test"))
        db.commit()

    wrong = client.post("/auth/login", json={"email": "tenant@rentverse.test", "password": "bad-pass-1"})
    unknown = client.post("/auth/login", json={"email": "ghost@rentverse.test", "password": "bad-pass-1"})
    assert wrong.status_code == unknown.status_code == 401
    assert _extract_error_payload(wrong)["error"]["message"] == _extract_error_payload(unknown)["error"]["message"]

    with SessionLocal() as db:
        results = sorted(row.result for row in db.query(LoginHistory).all())
    assert results == ["invalid_password", "unknown_account"]


def test_lockout_returns_429_with_retry_after(api):
    client, SessionLocal = api
    with SessionLocal() as db:
        db.add(_make_user(email="tenant@rentverse.test"))
        db.commit()

    statuses = [
        client.post("/auth/login", json={"email": "tenant@rentverse.test", "password": "bad-pass-1"}).status_code
        for _ in range(5)
    ]
    assert statuses == [401, 401, 401, 401, 429]

    response = client.post("/auth/login", json={"email": "tenant@rentverse.test", "password": PASSWORD})
    assert response.status_code == 429
    payload = _extract_error_payload(response)
    assert payload["error"]["code"] == "http_429"
    assert 0 < payload["error"]["details"]["retry_after_seconds"] <= 900
    assert int(response.headers["Retry-After"]) > 0


def test_mfa_enable_and_login_with_dev_code(api, monkeypatch):
    monkeypatch.setenv("AUTH_DEV_SHOW_CODE", "true")
    client, SessionLocal = api
    with SessionLocal() as db:
        db.add(_make_user(email="tenant@rentverse.test"))
        db.commit()
    headers = _auth_header("tenant@rentverse.test")

    started = _extract_success_data(client.post("/auth/mfa/enable", headers=headers))
    assert started["code_sent"] is False
    confirmed = client.post("/auth/mfa/enable/verify", headers=headers, json={"code": started["dev_code"]})
    assert _extract_success_data(confirmed)["mfa_enabled"] is True

    login = client.post("/auth/login", json={"email": "tenant@rentverse.test", "password": PASSWORD})
    challenge = _extract_success_data(login)
    assert challenge["status"] == "mfa_required"
    assert "access_token" not in challenge

    bad = client.post("/auth/verify-otp", json={"challenge_id": challenge["challenge_id"], "code": "abcdef"})
    assert bad.status_code == 400
    assert _extract_error_payload(bad)["error"]["details"]["attempts_remaining"] == 4

    verified = client.post(
        "/auth/verify-otp",
        json={"challenge_id": challenge["challenge_id"], "code": challenge["dev_code"]},
    )
    assert verified.status_code == 200
    assert _extract_success_data(verified)["access_token"]

    replay = client.post(
        "/auth/verify-otp",
        json={"challenge_id": challenge["challenge_id"], "code": challenge["dev_code"]},
    )
    assert replay.status_code == 400
    assert _extract_error_payload(replay)["error"]["details"]["reason"] == "expired"


def test_logout_revokes_token(api):
    client, SessionLocal = api
    with SessionLocal() as db:
        db.add(_make_user(email="tenant@rentverse.test"))
        db.commit()
    headers = _auth_header("tenant@rentverse.test")

    assert client.post("/auth/logout", headers=headers).status_code == 200
    response = client.get("/auth/me", headers=headers)
    assert response.status_code == 401
    assert _extract_error_payload(response)["error"]["code"] == "http_401"


def test_stale_token_version_is_rejected(api):
    client, SessionLocal = api
    with SessionLocal() as db:
        db.add(_make_user(email="tenant@rentverse.test", token_version=2))
        db.commit()

    response = client.get("/auth/me", headers=_auth_header("tenant@rentverse.test", token_version=1))
    assert response.status_code == 401


def test_admin_endpoint_forbidden_for_regular_user(api):
    client, SessionLocal = api
    with SessionLocal() as db:
        db.add(_make_user(email="tenant@rentverse.test"))
        db.commit()

    response = client.get("/admin/security/statistics", headers=_auth_header("tenant@rentverse.test"))
    assert response.status_code == 403
    payload = _extract_error_payload(response)
    assert payload["error"]["code"] == "http_403"


def test_admin_can_review_and_unlock(api):
    client, SessionLocal = api
    with SessionLocal() as db:
        db.add_all([
            _make_user(email="admin@rentverse.test", role="admin"),
            _make_user(email="tenant@rentverse.test"),
        ])
        db.commit()
        tenant_id = db.query(User).filter(User.email == "tenant@rentverse.test").one().id
    headers = _auth_header("admin@rentverse.test", role="admin")

    for _ in range(5):
        client.post("/auth/login", json={"email": "tenant@rentverse.test", "password": "bad-pass-1"})

    stats = _extract_success_data(client.get("/admin/security/statistics", headers=headers))
    assert stats["last_24h"]["failed_logins"] == 5
    assert stats["locked_accounts"] == 1
    assert stats["alerts_by_type"]["ACCOUNT_LOCKED"] == 1

    history = client.get("/admin/security/login-history?success=false&page_size=2", headers=headers)
    payload = history.json()
    assert payload["meta"]["total"] == 5
    assert len(payload["data"]["items"]) == 2

    at_risk = _extract_success_data(client.get("/admin/security/users-at-risk", headers=headers))
    assert [u["email"] for u in at_risk["items"]] == ["tenant@rentverse.test"]
    assert at_risk["items"][0]["is_locked"] is True

    snapshot = _extract_success_data(client.get(f"/admin/security/users/{tenant_id}/risk-snapshot", headers=headers))
    assert snapshot["is_locked"] is True
    assert snapshot["failed_attempts"] == 5

    assert client.post(f"/admin/security/users/{tenant_id}/unlock", headers=headers).status_code == 200
    response = client.post("/auth/login", json={"email": "tenant@rentverse.test", "password": PASSWORD})
    assert _extract_success_data(response)["status"] == "authenticated"


def test_validation_error_envelope(api):
    client, _ = api
    response = client.post("/auth/login", json={"email": "tenant@rentverse.test"})
    assert response.status_code == 422
    payload = _extract_error_payload(response)
    assert payload["error"]["code"] == "validation_error"


def test_login_rate_limit_per_client_ip(api):
    client, _ = api
    for _ in range(LOGIN_LIMIT):
        response = client.post("/auth/login", json={"email": "ghost@rentverse.test", "password": "bad-pass-1"})
        assert response.status_code == 401

    response = client.post("/auth/login", json={"email": "ghost@rentverse.test", "password": "bad-pass-1"})
    assert response.status_code == 429
    assert _extract_error_payload(response)["error"]["message"] == "Too many requests. Try again later."


def test_error_envelope_echoes_request_id(api):
    client, _ = api
    response = client.post(
        "/auth/login",
        json={"email": "ghost@rentverse.test", "password": "bad-pass-1"},
        headers={"X-Request-ID": "req-login-1"},
    )
    assert response.status_code == 401
    assert response.headers["X-Request-ID"] == "req-login-1"
    assert _extract_error_payload(response)["request_id"] == "req-login-1"


def test_cors_origins_from_env(monkeypatch):
    from app.main import _cors_origins

    monkeypatch.setenv("CORS_ORIGINS", " https://rentverse.test , ,https://admin.rentverse.test")
    assert _cors_origins() == ["https://rentverse.test", "https://admin.rentverse.test"]

    monkeypatch.setenv("CORS_ORIGINS", " , ")
    assert _cors_origins() == ["*"]
