import logging
import os
import smtplib
from email.message import EmailMessage

from app.core.errors import NotificationDeliveryFailed

logger = logging.getLogger(__name__)

OTP_SUBJECTS: dict[str, str] = {
    "login": "Your Rentverse login code",
    "password_reset": "Your Rentverse password reset code",
    "enable_mfa": "Confirm two-factor authentication",
    "disable_mfa": "Confirm disabling two-factor authentication",
}


def smtp_configured() -> bool:
    return bool(os.getenv("SMTP_HOST") and os.getenv("SMTP_USER") and os.getenv("SMTP_PASSWORD"))


def send_email(to_email: str, subject: str, body: str) -> bool:
    """Send a plain-text email.

    Returns False when SMTP is not configured. Raises
    ``NotificationDeliveryFailed`` when the SMTP settings are unusable or the
    server rejects or drops the message.
    """
    host = os.getenv("SMTP_HOST")
    user = os.getenv("SMTP_USER")
    password = os.getenv("SMTP_PASSWORD")
    sender = os.getenv("SMTP_FROM", user or "")
    use_tls = os.getenv("SMTP_USE_TLS", "true").lower() == "true"

    if not host or not user or not password or not sender:
        return False

    try:
        port = int(os.getenv("SMTP_PORT", "587"))
    except ValueError as exc:
        raise NotificationDeliveryFailed(f"Invalid SMTP_PORT: {exc}") from exc

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to_email
    msg.set_content(body)

    try:
        with smtplib.SMTP(host, port, timeout=10) as server:
            if use_tls:
                server.starttls()
            server.login(user, password)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as exc:
        raise NotificationDeliveryFailed(f"SMTP delivery to {to_email} failed: {exc}") from exc

    logger.info("email_sent to=%s subject=%s", to_email, subject)
    return True


def send_one_time_code_email(email: str, code: str, purpose: str, expire_minutes: int) -> bool:
    subject = OTP_SUBJECTS.get(purpose, "Your Rentverse verification code")
    body = (
        f"Your verification code is: {code}\n"
        f"The code expires in {expire_minutes} minutes.\n"
        "If you did not request this code, you can ignore this email."
    )
    return send_email(email, subject, body)


def send_security_alert_email(email: str, title: str, message: str, meta: dict | None) -> bool:
    lines = [message, ""]
    for label, key in (("IP address", "ip"), ("Device", "device"), ("Time (UTC)", "at")):
        value = (meta or {}).get(key)
        if value:
            lines.append(f"{label}: {value}")
    lines.append("")
    lines.append("If this was you, no action is needed. Otherwise change your password immediately.")
    return send_email(email, f"Security alert: {title}", "\n".join(lines))
