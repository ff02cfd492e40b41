import pytest

from app.core.admin_sync import parse_admin_emails, sync_admin_users
from app.core.security import verify_password
from app.db.models.user import User
from conftest import NOW


def test_parse_admin_emails_normalizes_and_dedupes():
    assert parse_admin_emails(" Ops@Rentverse.test, ops@rentverse.test ,,root@rentverse.test") == [
        "ops@rentverse.test",
        "root@rentverse.test",
    ]


def test_sync_creates_promotes_and_demotes(db_session, make_user):
    stale = make_user("former@rentverse.test", role="admin")
    tenant = make_user("tenant@rentverse.test")

    result = sync_admin_users(db_session, ["tenant@rentverse.test", "new@rentverse.test"], "bootstrap-pass", now=NOW)

    assert (result.created, result.promoted, result.demoted) == (1, 1, 1)
    db_session.refresh(stale)
    db_session.refresh(tenant)
    assert stale.role == "user"
    assert stale.token_version == 1
    assert tenant.role == "admin"

    created = db_session.query(User).filter(User.email == "new@rentverse.test").one()
    assert created.role == "admin"
    assert verify_password("bootstrap-pass", created.hashed_password)


def test_sync_without_password_skips_missing_accounts(db_session):
    result = sync_admin_users(db_session, ["ghost@rentverse.test"], None, now=NOW)
    assert result.skipped_create_without_password == 1
    assert db_session.query(User).count() == 0


def test_sync_rejects_invalid_emails(db_session):
    with pytest.raises(ValueError):
        sync_admin_users(db_session, ["not-an-email"], "bootstrap-pass", now=NOW)
