from datetime import timedelta

import pytest

from app.core.alerts import AlertType
from app.core.errors import CodeExpired, CodeInvalid, InvalidCredentials
from app.core.security import verify_password
from app.db.models.security_alert import SecurityAlert
from app.services.account_security import (
    change_password,
    confirm_disable_mfa,
    confirm_enable_mfa,
    reset_password,
    start_code_challenge,
)
from app.services.accounts import RegistrationError, register_user
from conftest import NOW, PASSWORD


def _capture(box: list):
    return lambda email, code, purpose, minutes: box.append(code) or True


def _alert_types(db, user_id):
    return {a.alert_type for a in db.query(SecurityAlert).filter(SecurityAlert.user_id == user_id)}


def test_register_user_normalizes_and_rejects_duplicates(db_session):
    user = register_user(db_session, email="  New.Tenant@Rentverse.TEST ", password="long-enough-1", now=NOW)
    assert user.email == "new.tenant@rentverse.test"
    assert verify_password("long-enough-1", user.hashed_password)
    with pytest.raises(RegistrationError):
        register_user(db_session, email="new.tenant@rentverse.test", password="long-enough-1", now=NOW)
    with pytest.raises(RegistrationError):
        register_user(db_session, email="not-an-email", password="long-enough-1", now=NOW)
    with pytest.raises(RegistrationError):
        register_user(db_session, email="short@rentverse.test", password="short", now=NOW)


def test_enable_then_disable_mfa(db_session, make_user, policy):
    user = make_user()
    codes: list[str] = []

    _, sent = start_code_challenge(db_session, user, "enable_mfa", NOW, policy, send_code=_capture(codes))
    assert sent is True
    confirm_enable_mfa(db_session, user, codes[-1], NOW + timedelta(minutes=1), policy, send_alert=lambda *a: True)
    assert user.mfa_enabled is True
    assert user.mfa_verified_at == NOW + timedelta(minutes=1)

    start_code_challenge(db_session, user, "disable_mfa", NOW, policy, send_code=_capture(codes))
    with pytest.raises(CodeInvalid):
        confirm_disable_mfa(db_session, user, "not-it", NOW, policy)
    confirm_disable_mfa(db_session, user, codes[-1], NOW, policy, send_alert=lambda *a: True)
    assert user.mfa_enabled is False
    assert {AlertType.MFA_ENABLED.value, AlertType.MFA_DISABLED.value} <= _alert_types(db_session, user.id)


def test_change_password_requires_current_and_bumps_token_version(db_session, make_user):
    user = make_user()
    with pytest.raises(InvalidCredentials):
        change_password(db_session, user, "wrong-current", "brand-new-pass", NOW)

    change_password(db_session, user, PASSWORD, "brand-new-pass", NOW, send_alert=lambda *a: True)
    assert user.token_version == 1
    assert verify_password("brand-new-pass", user.hashed_password)
    assert AlertType.PASSWORD_CHANGED.value in _alert_types(db_session, user.id)


def test_reset_password_with_emailed_code(db_session, make_user, policy):
    user = make_user()
    codes: list[str] = []
    start_code_challenge(db_session, user, "password_reset", NOW, policy, send_code=_capture(codes))

    with pytest.raises(CodeExpired):
        reset_password(db_session, user, codes[-1], "reset-pass-123", NOW + timedelta(minutes=10), policy)

    start_code_challenge(db_session, user, "password_reset", NOW, policy, send_code=_capture(codes))
    reset_password(db_session, user, codes[-1], "reset-pass-123", NOW, policy, send_alert=lambda *a: True)
    assert verify_password("reset-pass-123", user.hashed_password)
    assert user.token_version == 1
