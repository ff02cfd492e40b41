from enum import Enum

ALERT_SEVERITY_INFO = "info"
ALERT_SEVERITY_WARNING = "warning"
ALERT_SEVERITY_DANGER = "danger"


class AlertType(str, Enum):
    NEW_DEVICE = "NEW_DEVICE"
    MULTIPLE_FAILURES = "MULTIPLE_FAILURES"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    SUSPICIOUS_TIMING = "SUSPICIOUS_TIMING"
    MULTIPLE_LOCATIONS = "MULTIPLE_LOCATIONS"
    MFA_ENABLED = "MFA_ENABLED"
    MFA_DISABLED = "MFA_DISABLED"


ALERT_CATALOG: dict[AlertType, dict] = {
    AlertType.NEW_DEVICE: {
        "title": "New Device Login Detected",
        "severity": ALERT_SEVERITY_WARNING,
        "send_email": True,
    },
    AlertType.MULTIPLE_FAILURES: {
        "title": "Multiple Failed Login Attempts",
        "severity": ALERT_SEVERITY_DANGER,
        "send_email": True,
    },
    AlertType.ACCOUNT_LOCKED: {
        "title": "Account Temporarily Locked",
        "severity": ALERT_SEVERITY_DANGER,
        "send_email": True,
    },
    AlertType.PASSWORD_CHANGED: {
        "title": "Password Changed",
        "severity": ALERT_SEVERITY_WARNING,
        "send_email": True,
    },
    AlertType.SUSPICIOUS_TIMING: {
        "title": "Unusual Login Time Detected",
        "severity": ALERT_SEVERITY_INFO,
        "send_email": False,
    },
    AlertType.MULTIPLE_LOCATIONS: {
        "title": "Logins From Multiple Locations",
        "severity": ALERT_SEVERITY_WARNING,
        "send_email": True,
    },
    AlertType.MFA_ENABLED: {
        "title": "Two-Factor Authentication Enabled",
        "severity": ALERT_SEVERITY_INFO,
        "send_email": True,
    },
    AlertType.MFA_DISABLED: {
        "title": "Two-Factor Authentication Disabled",
        "severity": ALERT_SEVERITY_WARNING,
        "send_email": True,
    },
}


def alert_catalog_payload() -> dict:
    return {
        "alerts": [
            {
                "type": alert_type.value,
                "title": meta["title"],
                "severity": meta["severity"],
                "emailed": meta["send_email"],
            }
            for alert_type, meta in ALERT_CATALOG.items()
        ]
    }
