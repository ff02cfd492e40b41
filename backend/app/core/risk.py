"""Login risk scoring.

The score is a heuristic sum of fixed buckets, capped at 100. It has no state
and makes no queries; ``app.services.risk`` collects the inputs.
"""

from typing import Literal

NEW_DEVICE_POINTS = 30
FAILURE_POINTS_EACH = 10
FAILURE_POINTS_MAX = 30
UNUSUAL_HOUR_POINTS = 15
UNUSUAL_HOUR_START = 2
UNUSUAL_HOUR_END = 5
SUSPICIOUS_IP_POINTS = 25
SUSPICIOUS_IP_FAILURES = 5
MAX_RISK_SCORE = 100

MEDIUM_RISK_SCORE = 30
HIGH_RISK_SCORE = 50

RiskLevel = Literal["low", "medium", "high"]


def is_unusual_hour(hour: int) -> bool:
    return UNUSUAL_HOUR_START <= hour <= UNUSUAL_HOUR_END


def calculate_risk_score(*, is_new_device: bool, recent_failures: int, hour: int, ip_failures: int) -> int:
    """Score a login attempt from 0 to 100.

    ``recent_failures`` counts this account's failures in the short window,
    ``ip_failures`` counts failures from the client IP across all accounts,
    ``hour`` is the hour of day (0-23) of the attempt.
    """
    score = 0
    if is_new_device:
        score += NEW_DEVICE_POINTS
    score += min(max(recent_failures, 0) * FAILURE_POINTS_EACH, FAILURE_POINTS_MAX)
    if is_unusual_hour(hour):
        score += UNUSUAL_HOUR_POINTS
    if ip_failures > SUSPICIOUS_IP_FAILURES:
        score += SUSPICIOUS_IP_POINTS
    return min(score, MAX_RISK_SCORE)


def risk_level(score: int) -> RiskLevel:
    if score >= HIGH_RISK_SCORE:
        return "high"
    if score >= MEDIUM_RISK_SCORE:
        return "medium"
    return "low"
