from app.db.models.auth_attempt import AuthAttempt
from app.db.models.login_history import LoginHistory
from app.db.models.one_time_code import OneTimeCode
from app.db.models.revoked_token import RevokedToken
from app.db.models.security_alert import SecurityAlert
from app.db.models.user import User
from app.db.models.user_device import UserDevice

__all__ = [
    "AuthAttempt",
    "LoginHistory",
    "OneTimeCode",
    "RevokedToken",
    "SecurityAlert",
    "User",
    "UserDevice",
]
