"""
SLP SAFETY — Scoring Rule Table Tests
======================================
Tests: Safety Culture Index deltas, Predictive Risk, 30-Day Forecast,
       clamping, grade / level bands
"""

import itertools

import pytest

from app.metrics.rules import (
    ScoreInputs,
    control_grade,
    culture_grade,
    forecast_level,
    lead_lag_recommendation,
    predictive_risk_score,
    risk_level,
    safety_culture_index,
    thirty_day_forecast,
)


class TestSafetyCultureIndex:

    def test_baseline_is_70(self):
        result = safety_culture_index(ScoreInputs())
        assert result.score == 70
        assert result.applied == ()

    def test_six_incidents_is_55(self):
        assert safety_culture_index(ScoreInputs(incident_count=6)).score == 55

    @pytest.mark.parametrize("field,value,expected", [
        ("safe_ratio", 10, 80),
        ("safe_ratio", 9.9, 77),
        ("safe_ratio", 5, 77),
        ("safe_ratio", 3, 75),
        ("safe_ratio", 2.9, 70),
        ("job_stop_rate", 50, 80),
        ("job_stop_rate", 25, 75),
        ("job_stop_rate", 24, 70),
        ("near_miss_count", 10, 80),
        ("near_miss_count", 5, 75),
        ("near_miss_count", 4, 70),
        ("incident_count", 5, 55),
        ("incident_count", 1, 65),
        ("sif_rate", 30, 60),
        ("sif_rate", 29, 70),
        ("open_sail", 5, 60),
        ("open_sail", 1, 67),
    ])
    def test_single_family_deltas(self, field, value, expected):
        assert safety_culture_index(ScoreInputs(**{field: value})).score == expected

    def test_families_stack(self):
        inputs = ScoreInputs(safe_ratio=12, job_stop_rate=60, near_miss_count=12)
        result = safety_culture_index(inputs)
        assert result.score == 100
        assert [a.family for a in result.applied] == ["safe_ratio", "job_stop_rate", "near_miss_reporting"]

    def test_only_first_rule_in_family_fires(self):
        result = safety_culture_index(ScoreInputs(safe_ratio=20))
        assert len(result.applied) == 1
        assert result.applied[0].delta == 10

    def test_worst_case_stays_in_range(self):
        inputs = ScoreInputs(incident_count=50, sif_rate=100, open_sail=50)
        result = safety_culture_index(inputs)
        assert result.raw == 35
        assert result.score == 35

    def test_best_case_reaches_ceiling(self):
        inputs = ScoreInputs(safe_ratio=50, job_stop_rate=100, near_miss_count=100)
        result = safety_culture_index(inputs)
        assert result.raw == 100
        assert result.score == 100


class TestPredictiveRisk:

    def test_baseline_is_zero(self):
        assert predictive_risk_score(ScoreInputs()).score == 0

    def test_at_risk_imbalance(self):
        assert predictive_risk_score(ScoreInputs(safe_obs=2, at_risk_obs=3)).score == 15

    @pytest.mark.parametrize("open_sail,expected", [(1, 5), (5, 15), (10, 25), (19, 25), (20, 30), (45, 30)])
    def test_open_sail_tiers(self, open_sail, expected):
        result = predictive_risk_score(ScoreInputs(open_sail=open_sail))
        assert result.score == expected
        assert len(result.applied) == 1

    def test_staleness_tiers(self):
        assert predictive_risk_score(ScoreInputs(days_since_last_submission=7)).score == 8
        assert predictive_risk_score(ScoreInputs(days_since_last_submission=14)).score == 15
        assert predictive_risk_score(ScoreInputs(days_since_last_submission=999)).score == 25

    def test_worst_case_clamped_to_100(self):
        inputs = ScoreInputs(open_sail=20, sif_rate=80, safe_obs=0, at_risk_obs=10,
                             days_since_last_submission=999, incident_count=9)
        result = predictive_risk_score(inputs)
        assert result.raw == 125
        assert result.score == 100


class TestForecast:

    def test_baseline_is_30(self):
        assert thirty_day_forecast(ScoreInputs()).score == 30

    def test_staleness_strictly_over_seven(self):
        assert thirty_day_forecast(ScoreInputs(days_since_last_submission=7)).score == 30
        assert thirty_day_forecast(ScoreInputs(days_since_last_submission=8)).score == 45

    def test_open_sail_strictly_over_three(self):
        assert thirty_day_forecast(ScoreInputs(open_sail=3)).score == 30
        assert thirty_day_forecast(ScoreInputs(open_sail=4)).score == 40

    def test_at_risk_over_half_of_safe(self):
        assert thirty_day_forecast(ScoreInputs(safe_obs=10, at_risk_obs=5)).score == 30
        assert thirty_day_forecast(ScoreInputs(safe_obs=10, at_risk_obs=6)).score == 40

    def test_leading_volume_reduces(self):
        assert thirty_day_forecast(ScoreInputs(total_leading=20)).score == 22
        assert thirty_day_forecast(ScoreInputs(total_leading=50)).score == 15


class TestClampProperty:

    EXTREMES = {
        "safe_ratio": (0, 1000),
        "job_stop_rate": (0, 100),
        "near_miss_count": (0, 10000),
        "incident_count": (0, 10000),
        "sif_rate": (0, 100),
        "open_sail": (0, 10000),
        "safe_obs": (0, 10000),
        "at_risk_obs": (0, 10000),
        "days_since_last_submission": (0, 999),
        "total_leading": (0, 10000),
    }

    def test_all_scores_within_range(self):
        keys = list(self.EXTREMES)
        for combo in itertools.product(*(self.EXTREMES[k] for k in keys)):
            inputs = ScoreInputs(**dict(zip(keys, combo)))
            for fn in (safety_culture_index, predictive_risk_score, thirty_day_forecast):
                assert 0 <= fn(inputs).score <= 100


class TestBands:

    @pytest.mark.parametrize("score,grade", [(85, "A"), (84, "B"), (70, "B"), (55, "C"), (40, "D"), (39, "F")])
    def test_culture_grade(self, score, grade):
        assert culture_grade(score) == grade

    @pytest.mark.parametrize("score,level", [(70, "Critical"), (50, "High"), (30, "Moderate"), (10, "Low"), (9, "Minimal")])
    def test_risk_level(self, score, level):
        assert risk_level(score) == level

    @pytest.mark.parametrize("score,level", [(70, "Critical"), (50, "High"), (30, "Elevated"), (29, "Low")])
    def test_forecast_level(self, score, level):
        assert forecast_level(score) == level

    def test_control_grade(self):
        assert [control_grade(s) for s in (80, 60, 40, 39)] == ["Excellent", "Good", "Fair", "Poor"]

    def test_lead_lag_recommendation(self):
        assert [lead_lag_recommendation(r) for r in (10, 5, 2, 1.9)] == [
            "Excellent", "Good", "Needs Improvement", "Critical"]
