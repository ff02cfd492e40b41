from datetime import timedelta

import pytest

from app.core.errors import CodeExhausted, CodeExpired, CodeInvalid
from app.core.security import hash_one_time_code
from app.db.models.one_time_code import OneTimeCode
from app.services.login_flow import LoginContext, LoginOutcome, VerifyOutcome, attempt_login, verify_one_time_code
from app.services.one_time_codes import get_latest_unspent_code, issue_code, verify_code, verify_latest_code
from conftest import NOW, PASSWORD

CTX = LoginContext(ip="198.51.100.7", user_agent="Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) Safari/605.1")


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


def _active_codes(db, user_id, purpose):
    return (
        db.query(OneTimeCode)
        .filter(
            OneTimeCode.user_id == user_id,
            OneTimeCode.purpose == purpose,
            OneTimeCode.used_at.is_(None),
            OneTimeCode.invalidated_at.is_(None),
            OneTimeCode.expires_at > NOW,
        )
        .all()
    )


def test_code_is_stored_salted_and_hashed(db_session, make_user, policy):
    user = make_user()
    issued = issue_code(db_session, user, "login", NOW, policy)
    assert len(issued.plaintext) == policy.otp_length
    assert issued.plaintext.isdigit()
    assert issued.record.code_hash != issued.plaintext
    assert issued.record.code_hash == hash_one_time_code(issued.plaintext, issued.record.code_salt)
    assert issued.record.expires_at == NOW + timedelta(minutes=5)


def test_issuing_new_code_invalidates_prior_one(db_session, make_user, policy):
    user = make_user()
    first = issue_code(db_session, user, "login", NOW, policy)
    second = issue_code(db_session, user, "login", NOW + timedelta(seconds=30), policy)

    active = _active_codes(db_session, user.id, "login")
    assert [c.id for c in active] == [second.record.id]

    db_session.refresh(first.record)
    with pytest.raises(CodeExpired):
        verify_code(db_session, first.record, first.plaintext, NOW + timedelta(minutes=1), policy)


def test_codes_for_other_purposes_stay_active(db_session, make_user, policy):
    user = make_user()
    reset = issue_code(db_session, user, "password_reset", NOW, policy)
    issue_code(db_session, user, "login", NOW, policy)
    assert get_latest_unspent_code(db_session, user.id, "password_reset").id == reset.record.id


def test_expired_code_is_rejected_even_when_correct(db_session, make_user, policy):
    user = make_user()
    issued = issue_code(db_session, user, "login", NOW, policy)
    with pytest.raises(CodeExpired):
        verify_code(db_session, issued.record, issued.plaintext, NOW + timedelta(minutes=5), policy)
    db_session.refresh(issued.record)
    assert issued.record.used_at is None


def test_correct_code_is_single_use(db_session, make_user, policy):
    user = make_user()
    issued = issue_code(db_session, user, "login", NOW, policy)
    record = verify_code(db_session, issued.record, issued.plaintext, NOW + timedelta(minutes=1), policy)
    assert record.used_at == NOW + timedelta(minutes=1)
    with pytest.raises(CodeExpired):
        verify_code(db_session, issued.record, issued.plaintext, NOW + timedelta(minutes=2), policy)


def test_wrong_guesses_count_down_then_exhaust(db_session, make_user, policy):
    user = make_user()
    issued = issue_code(db_session, user, "login", NOW, policy)
    wrong = _wrong(issued.plaintext)

    remaining = []
    for _ in range(policy.otp_max_attempts - 1):
        with pytest.raises(CodeInvalid) as exc_info:
            verify_code(db_session, issued.record, wrong, NOW, policy)
        remaining.append(exc_info.value.attempts_remaining)
    assert remaining == [4, 3, 2, 1]

    with pytest.raises(CodeExhausted):
        verify_code(db_session, issued.record, wrong, NOW, policy)
    with pytest.raises(CodeExhausted):
        verify_code(db_session, issued.record, issued.plaintext, NOW, policy)
    db_session.refresh(issued.record)
    assert issued.record.invalidated_at == NOW


def test_verify_latest_code_without_active_code_is_expired(db_session, make_user, policy):
    user = make_user()
    with pytest.raises(CodeExpired):
        verify_latest_code(db_session, user, "enable_mfa", "123456", NOW, policy)


def test_mfa_login_issues_challenge_and_verifies(db_session, make_user, policy):
    user = make_user(mfa_enabled=True)
    sent = []

    result = attempt_login(
        db_session,
        user.email,
        PASSWORD,
        CTX,
        now=NOW,
        policy=policy,
        send_code=lambda email, code, purpose, minutes: sent.append((email, code, purpose)) or True,
    )
    assert result.outcome == LoginOutcome.MFA_REQUIRED
    assert result.access_token is None
    assert result.code_sent is True
    assert result.dev_code is None
    assert sent and sent[0][0] == user.email and sent[0][2] == "login"

    verified = verify_one_time_code(
        db_session,
        result.challenge_id,
        sent[0][1],
        CTX,
        now=NOW + timedelta(minutes=1),
        policy=policy,
        send_alert=lambda *a: True,
    )
    assert verified.outcome == VerifyOutcome.VERIFIED
    assert verified.access_token


def test_mfa_challenge_after_expiry_returns_expired(db_session, make_user, policy):
    user = make_user(mfa_enabled=True)
    sent = []
    result = attempt_login(
        db_session,
        user.email,
        PASSWORD,
        CTX,
        now=NOW,
        policy=policy,
        send_code=lambda email, code, purpose, minutes: sent.append(code) or True,
    )

    verified = verify_one_time_code(
        db_session, result.challenge_id, sent[0], CTX, now=NOW + timedelta(minutes=6), policy=policy
    )
    assert verified.outcome == VerifyOutcome.EXPIRED
    assert verified.access_token is None


def test_mfa_challenge_wrong_code_reports_remaining_attempts(db_session, make_user, policy):
    user = make_user(mfa_enabled=True)
    sent = []
    result = attempt_login(
        db_session,
        user.email,
        PASSWORD,
        CTX,
        now=NOW,
        policy=policy,
        send_code=lambda email, code, purpose, minutes: sent.append(code) or True,
    )

    verified = verify_one_time_code(db_session, result.challenge_id, _wrong(sent[0]), CTX, now=NOW, policy=policy)
    assert verified.outcome == VerifyOutcome.INVALID
    assert verified.attempts_remaining == 4


def test_unknown_challenge_is_expired(db_session, policy):
    verified = verify_one_time_code(db_session, 9999, "123456", CTX, now=NOW, policy=policy)
    assert verified.outcome == VerifyOutcome.EXPIRED


def test_expired_latest_code_does_not_touch_other_purposes(db_session, make_user, policy):
    user = make_user()
    stale = issue_code(db_session, user, "enable_mfa", NOW, policy)
    fresh = issue_code(db_session, user, "password_reset", NOW + timedelta(minutes=10), policy)
    later = NOW + timedelta(minutes=11)

    assert get_latest_unspent_code(db_session, user.id, "enable_mfa").id == stale.record.id
    with pytest.raises(CodeExpired):
        verify_latest_code(db_session, user, "enable_mfa", stale.plaintext, later, policy)

    record = verify_latest_code(db_session, user, "password_reset", fresh.plaintext, later, policy)
    assert record.id == fresh.record.id
    assert record.used_at == later
