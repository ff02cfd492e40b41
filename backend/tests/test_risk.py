import pytest

from app.core.risk import calculate_risk_score, is_unusual_hour, risk_level


def test_new_device_at_night_with_two_failures_scores_65():
    score = calculate_risk_score(is_new_device=True, recent_failures=2, hour=3, ip_failures=0)
    assert score == 65


def test_known_device_daytime_clean_history_scores_zero():
    assert calculate_risk_score(is_new_device=False, recent_failures=0, hour=14, ip_failures=0) == 0


def test_failure_bucket_is_capped_at_30():
    assert calculate_risk_score(is_new_device=False, recent_failures=3, hour=12, ip_failures=0) == 30
    assert calculate_risk_score(is_new_device=False, recent_failures=40, hour=12, ip_failures=0) == 30


def test_ip_failures_only_count_above_five():
    assert calculate_risk_score(is_new_device=False, recent_failures=0, hour=12, ip_failures=5) == 0
    assert calculate_risk_score(is_new_device=False, recent_failures=0, hour=12, ip_failures=6) == 25


def test_total_score_never_exceeds_100():
    score = calculate_risk_score(is_new_device=True, recent_failures=10, hour=4, ip_failures=100)
    assert score == 100


@pytest.mark.parametrize("hour,expected", [(1, False), (2, True), (5, True), (6, False), (0, False), (23, False)])
def test_unusual_hour_bounds(hour, expected):
    assert is_unusual_hour(hour) is expected


def test_score_is_deterministic():
    inputs = {"is_new_device": True, "recent_failures": 1, "hour": 4, "ip_failures": 7}
    scores = {calculate_risk_score(**inputs) for _ in range(20)}
    assert scores == {80}


def test_risk_level_thresholds():
    assert risk_level(0) == "low"
    assert risk_level(30) == "medium"
    assert risk_level(50) == "high"
