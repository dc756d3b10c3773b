# ============================================================================
# SLP SAFETY - Scoring Rule Tables
# ============================================================================
# Heuristic scores are data: a baseline plus ordered rule families.
# Within a family the first matching rule fires (an if/elif chain);
# families stack additively.  The result is clamped to [0, 100].
#
#   Safety Culture Index   baseline 70   higher = better
#   Predictive Risk Score  baseline 0    higher = worse
#   30-Day Forecast        baseline 30   higher = worse
# ============================================================================

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

SCORE_MIN = 0
SCORE_MAX = 100


@dataclass(frozen=True)
class ScoreInputs:
    """Scalar inputs the rule tables read."""
    safe_ratio: float = 0
    job_stop_rate: int = 0
    near_miss_count: int = 0
    incident_count: int = 0
    sif_rate: int = 0
    open_sail: int = 0
    safe_obs: int = 0
    at_risk_obs: int = 0
    days_since_last_submission: int = 0
    total_leading: int = 0


@dataclass(frozen=True)
class Rule:
    label: str
    predicate: Callable[[ScoreInputs], bool]
    delta: int


@dataclass(frozen=True)
class RuleFamily:
    name: str
    rules: Tuple[Rule, ...]

    def evaluate(self, inputs: ScoreInputs) -> Optional[Rule]:
        for rule in self.rules:
            if rule.predicate(inputs):
                return rule
        return None


@dataclass(frozen=True)
class AppliedRule:
    family: str
    label: str
    delta: int

    def to_dict(self) -> Dict:
        return {"family": self.family, "label": self.label, "delta": self.delta}


@dataclass(frozen=True)
class ScoreResult:
    score: int
    raw: int
    applied: Tuple[AppliedRule, ...] = field(default_factory=tuple)


def clamp(value: float, low: int = SCORE_MIN, high: int = SCORE_MAX) -> int:
    return int(max(low, min(high, round(value))))


def apply_rules(baseline: int, families: Sequence[RuleFamily], inputs: ScoreInputs) -> ScoreResult:
    """Run every family against *inputs* and clamp the total."""
    total = baseline
    applied: List[AppliedRule] = []
    for family in families:
        rule = family.evaluate(inputs)
        if rule is None:
            continue
        total += rule.delta
        applied.append(AppliedRule(family.name, rule.label, rule.delta))
    return ScoreResult(score=clamp(total), raw=total, applied=tuple(applied))


# ----------------------------------------------------------------------------
# Safety Culture Index
# ----------------------------------------------------------------------------

CULTURE_BASELINE = 70

CULTURE_INDEX_RULES: Tuple[RuleFamily, ...] = (
    RuleFamily("safe_ratio", (
        Rule("ratio >= 10", lambda m: m.safe_ratio >= 10, 10),
        Rule("ratio >= 5", lambda m: m.safe_ratio >= 5, 7),
        Rule("ratio >= 3", lambda m: m.safe_ratio >= 3, 5),
    )),
    RuleFamily("job_stop_rate", (
        Rule("job-stop rate >= 50%", lambda m: m.job_stop_rate >= 50, 10),
        Rule("job-stop rate >= 25%", lambda m: m.job_stop_rate >= 25, 5),
    )),
    RuleFamily("near_miss_reporting", (
        Rule("near misses >= 10", lambda m: m.near_miss_count >= 10, 10),
        Rule("near misses >= 5", lambda m: m.near_miss_count >= 5, 5),
    )),
    RuleFamily("incidents", (
        Rule("incidents >= 5", lambda m: m.incident_count >= 5, -15),
        Rule("incidents >= 1", lambda m: m.incident_count >= 1, -5),
    )),
    RuleFamily("sif_rate", (
        Rule("SIF rate >= 30%", lambda m: m.sif_rate >= 30, -10),
    )),
    RuleFamily("open_sail", (
        Rule("open SAIL >= 5", lambda m: m.open_sail >= 5, -10),
        Rule("open SAIL >= 1", lambda m: m.open_sail >= 1, -3),
    )),
)

# ----------------------------------------------------------------------------
# Predictive Risk Score
# ----------------------------------------------------------------------------

RISK_BASELINE = 0

PREDICTIVE_RISK_RULES: Tuple[RuleFamily, ...] = (
    RuleFamily("open_sail", (
        Rule("open SAIL >= 20", lambda m: m.open_sail >= 20, 30),
        Rule("open SAIL >= 10", lambda m: m.open_sail >= 10, 25),
        Rule("open SAIL >= 5", lambda m: m.open_sail >= 5, 15),
        Rule("open SAIL >= 1", lambda m: m.open_sail >= 1, 5),
    )),
    RuleFamily("sif_rate", (
        Rule("SIF rate >= 30%", lambda m: m.sif_rate >= 30, 25),
        Rule("SIF rate >= 20%", lambda m: m.sif_rate >= 20, 20),
        Rule("SIF rate >= 10%", lambda m: m.sif_rate >= 10, 10),
        Rule("SIF rate >= 5%", lambda m: m.sif_rate >= 5, 5),
    )),
    RuleFamily("at_risk_imbalance", (
        Rule("at-risk exceeds safe", lambda m: m.at_risk_obs > m.safe_obs, 15),
    )),
    RuleFamily("staleness", (
        Rule("no activity in 30+ days", lambda m: m.days_since_last_submission >= 30, 25),
        Rule("no activity in 14+ days", lambda m: m.days_since_last_submission >= 14, 15),
        Rule("no activity in 7+ days", lambda m: m.days_since_last_submission >= 7, 8),
    )),
    RuleFamily("incidents", (
        Rule("incidents >= 5", lambda m: m.incident_count >= 5, 30),
        Rule("incidents >= 3", lambda m: m.incident_count >= 3, 20),
        Rule("incidents >= 1", lambda m: m.incident_count >= 1, 10),
    )),
)

# ----------------------------------------------------------------------------
# 30-Day Forecast
# ----------------------------------------------------------------------------

FORECAST_BASELINE = 30

FORECAST_RULES: Tuple[RuleFamily, ...] = (
    RuleFamily("staleness", (
        Rule("no activity in over 7 days", lambda m: m.days_since_last_submission > 7, 15),
    )),
    RuleFamily("open_sail_backlog", (
        Rule("open SAIL > 3", lambda m: m.open_sail > 3, 10),
    )),
    RuleFamily("at_risk_imbalance", (
        Rule("at-risk > 50% of safe", lambda m: m.at_risk_obs > m.safe_obs * 0.5, 10),
    )),
    RuleFamily("leading_volume", (
        Rule("leading activity >= 50", lambda m: m.total_leading >= 50, -15),
        Rule("leading activity >= 20", lambda m: m.total_leading >= 20, -8),
    )),
)


def safety_culture_index(inputs: ScoreInputs) -> ScoreResult:
    return apply_rules(CULTURE_BASELINE, CULTURE_INDEX_RULES, inputs)


def predictive_risk_score(inputs: ScoreInputs) -> ScoreResult:
    return apply_rules(RISK_BASELINE, PREDICTIVE_RISK_RULES, inputs)


def thirty_day_forecast(inputs: ScoreInputs) -> ScoreResult:
    return apply_rules(FORECAST_BASELINE, FORECAST_RULES, inputs)


# ----------------------------------------------------------------------------
# Grade / level bands  (threshold, label), checked top-down
# ----------------------------------------------------------------------------

CULTURE_GRADES = ((85, "A"), (70, "B"), (55, "C"), (40, "D"))
RISK_LEVELS = ((70, "Critical"), (50, "High"), (30, "Moderate"), (10, "Low"))
FORECAST_LEVELS = ((70, "Critical"), (50, "High"), (30, "Elevated"))
CONTROL_GRADES = ((80, "Excellent"), (60, "Good"), (40, "Fair"))
LEAD_LAG_BANDS = ((10, "Excellent"), (5, "Good"), (2, "Needs Improvement"))


def band(value: float, bands: Sequence[Tuple[float, str]], default: str) -> str:
    for threshold, label in bands:
        if value >= threshold:
            return label
    return default


def culture_grade(score: int) -> str:
    return band(score, CULTURE_GRADES, "F")


def risk_level(score: int) -> str:
    return band(score, RISK_LEVELS, "Minimal")


def forecast_level(score: int) -> str:
    return band(score, FORECAST_LEVELS, "Low")


def control_grade(score: int) -> str:
    return band(score, CONTROL_GRADES, "Poor")


def lead_lag_recommendation(ratio: float) -> str:
    return band(ratio, LEAD_LAG_BANDS, "Critical")
