"""Error taxonomy for the login-security subsystem.

Components raise these; the login flow turns them into explicit outcomes and
the routers turn outcomes into HTTP responses. Messages are deliberately vague
so callers cannot tell whether an account exists.
"""

from datetime import datetime


class LoginSecurityError(Exception):
    message = "Authentication failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class InvalidCredentials(LoginSecurityError):
    message = "Invalid credentials"


class AccountLocked(LoginSecurityError):
    message = "Account temporarily locked. Try again later."

    def __init__(self, locked_until: datetime, retry_after_seconds: int) -> None:
        super().__init__()
        self.locked_until = locked_until
        self.retry_after_seconds = retry_after_seconds


class CodeInvalid(LoginSecurityError):
    message = "Invalid code"

    def __init__(self, attempts_remaining: int) -> None:
        super().__init__()
        self.attempts_remaining = attempts_remaining


class CodeExpired(LoginSecurityError):
    message = "Code expired or already used. Request a new one."


class CodeExhausted(LoginSecurityError):
    message = "Too many invalid attempts. Request a new code."


class NotificationDeliveryFailed(Exception):
    """Raised by notification senders. Never allowed to change a security verdict."""
