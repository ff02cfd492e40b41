import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)).strip())
    except ValueError:
        return default


@dataclass(frozen=True)
class SecurityPolicy:
    max_login_attempts: int = 5
    lockout_minutes: int = 15
    otp_length: int = 6
    otp_expire_minutes: int = 5
    otp_max_attempts: int = 5
    failure_window_minutes: int = 15
    ip_failure_window_minutes: int = 60
    alert_failure_window_minutes: int = 5
    alert_failure_threshold: int = 3
    login_history_retention_days: int = 90


def get_security_policy() -> SecurityPolicy:
    return SecurityPolicy(
        max_login_attempts=_env_int("MAX_LOGIN_ATTEMPTS", 5),
        lockout_minutes=_env_int("LOCKOUT_MINUTES", 15),
        otp_length=_env_int("OTP_LENGTH", 6),
        otp_expire_minutes=_env_int("OTP_EXPIRE_MINUTES", 5),
        otp_max_attempts=_env_int("OTP_MAX_ATTEMPTS", 5),
        failure_window_minutes=_env_int("FAILURE_WINDOW_MINUTES", 15),
        ip_failure_window_minutes=_env_int("IP_FAILURE_WINDOW_MINUTES", 60),
        alert_failure_window_minutes=_env_int("ALERT_FAILURE_WINDOW_MINUTES", 5),
        alert_failure_threshold=_env_int("ALERT_FAILURE_THRESHOLD", 3),
        login_history_retention_days=_env_int("LOGIN_HISTORY_RETENTION_DAYS", 90),
    )
