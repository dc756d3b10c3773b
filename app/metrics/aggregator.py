# ============================================================================
# SLP SAFETY - Metrics Aggregator
# ============================================================================
# Pure derivation of a company scorecard from its raw event records.
#
#   derive_metrics(CompanyRecords, now) -> MetricsBundle
#
# No I/O and no shared state: every call reads its inputs and returns a
# fresh frozen bundle.  Each rule below is a named function so it can be
# tested on its own; derive_metrics only wires them together.
# ============================================================================

import logging
import math
from collections import Counter
from dataclasses import asdict, dataclass, field, fields as dataclass_fields, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .fields import (
    CONTROL_FIELDS,
    ENERGY_FIELDS,
    HAZARD_RISK_FIELDS,
    INCIDENT_DATE_FIELDS,
    LOCATION_FIELDS,
    SAIL_DUE_FIELDS,
    SUBMITTER_FIELDS,
    TIMESTAMP_FIELDS,
    first_present,
    is_yes,
    normalize_name,
    parse_timestamp,
    record_timestamp,
)
from .rules import (
    AppliedRule,
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

logger = logging.getLogger("metrics.aggregator")

Record = Dict[str, Any]

# Life-Saving-Rules audit categories, key -> display label
LSR_AUDIT_LABELS: Dict[str, str] = {
    "confined_space": "Confined Space",
    "driving": "Driving",
    "energy_isolation": "Energy Isolation",
    "fall_protection": "Fall Protection",
    "lifting_operations": "Lifting Operations",
    "line_of_fire": "Line of Fire",
    "work_permits": "Work Permits",
}

DEFAULT_CLOSED_INCIDENT_STATUSES: Tuple[str, ...] = ("Closed", "Approved")
OPEN_SAIL_STATUSES: Tuple[str, ...] = ("Open", "In Progress", "Pending")

LSR_ISSUE_VALUES = ("Needs Improvement", "No")
LSR_METADATA_FIELDS = frozenset({
    "id",
    "created_at",
    "updated_at",
    "date",
    "audit_date",
    "auditor",
    "auditor_name",
    "auditor_id",
    "company",
    "company_name",
    "client_company",
    "client",
    "location",
    "location_name",
    "location_id",
    "photo_url",
    "improvement_notes",
    "opportunities_for_improvement",
    "comments",
})
LSR_COMPLIANCE_TARGET = 80

TIER1_KEYWORDS = ("elimination", "substitution", "engineering")
TIER2_KEYWORDS = ("guard", "loto", "barrier", "administrative")
CONTROL_DEFAULT_SCORE = 50

NO_ACTIVITY_DAYS = 999
OPEN_ITEMS_LIMIT = 5
HIGH_PRIORITY_VALUES = ("critical", "high")

# Equipment inspection forms, key -> display label
INSPECTION_LABELS: Dict[str, str] = {
    "fire_extinguisher": "Fire Ext.",
    "eyewash": "Eyewash",
    "first_aid": "First Aid",
    "aed": "AED",
    "ladder": "Ladders",
    "harness": "Harness",
    "lanyard": "Lanyard/SRL",
    "shackle": "Shackles",
    "sling": "Slings",
    "wire_rope": "Wire Rope",
    "chain_hoist": "Chain Hoist",
    "vehicle": "Vehicles",
    "forklift": "Forklifts",
    "crane": "Cranes",
    "heavy_equipment": "Heavy Equip",
    "scaffold": "Scaffolds",
}

# (upper bound in days, bucket name); open items older than the last bound are "over_90_days"
AGING_BUCKETS: Tuple[Tuple[int, str], ...] = ((30, "days_0_30"), (60, "days_31_60"), (90, "days_61_90"))

TREND_FLAT = "flat"
TREND_UP = "up"
TREND_DOWN = "down"


# ============================================================================
# Input / output types
# ============================================================================

@dataclass
class CompanyRecords:
    """Raw record arrays for one company over one window.

    ``open_incidents`` / ``open_sail_items`` carry the all-time backlog when
    the caller fetched it separately; when left as None the open counts are
    taken from the in-window ``incidents`` / ``sail_items``.
    ``inspections`` is keyed like INSPECTION_LABELS.
    """
    company_name: str = ""
    incidents: List[Record] = field(default_factory=list)
    bbs_observations: List[Record] = field(default_factory=list)
    near_misses: List[Record] = field(default_factory=list)
    hazard_ids: List[Record] = field(default_factory=list)
    thas: List[Record] = field(default_factory=list)
    safety_meetings: List[Record] = field(default_factory=list)
    toolbox_meetings: List[Record] = field(default_factory=list)
    hse_contacts: List[Record] = field(default_factory=list)
    lsr_audits: Dict[str, List[Record]] = field(default_factory=dict)
    property_damage: List[Record] = field(default_factory=list)
    sail_items: List[Record] = field(default_factory=list)
    inspections: Dict[str, List[Record]] = field(default_factory=dict)
    open_incidents: Optional[List[Record]] = None
    open_sail_items: Optional[List[Record]] = None


@dataclass(frozen=True)
class ControlHierarchy:
    score: int
    grade: str
    tier1: int = 0
    tier2: int = 0
    tier3: int = 0
    classified: int = 0
    defaulted: bool = False

    def percent(self, tier_count: int) -> int:
        if self.classified == 0:
            return 0
        return round_half_up(tier_count / self.classified * 100)


@dataclass(frozen=True)
class LsrIssue:
    audit_type: str
    field: str
    value: str
    record_id: Any = None
    location: Optional[str] = None


@dataclass(frozen=True)
class LsrCategoryCompliance:
    audit_type: str
    label: str
    total: int
    compliant: int
    compliance_rate: int


@dataclass(frozen=True)
class LsrCompliance:
    overall: int
    by_category: Tuple[LsrCategoryCompliance, ...] = ()
    critical_gaps: Tuple[str, ...] = ()


@dataclass(frozen=True)
class LeadingIndicators:
    bbs: int = 0
    thas: int = 0
    safety_meetings: int = 0
    toolbox_meetings: int = 0
    hse_contacts: int = 0
    hazard_ids: int = 0
    good_catches: int = 0
    lsr_audits: int = 0

    @property
    def total(self) -> int:
        return (self.bbs + self.thas + self.safety_meetings + self.toolbox_meetings
                + self.hse_contacts + self.hazard_ids + self.good_catches + self.lsr_audits)


@dataclass(frozen=True)
class LaggingIndicators:
    total_incidents: int = 0
    open_incidents: int = 0
    closed_incidents: int = 0
    open_sail: int = 0
    property_damage: int = 0
    sail_overdue: int = 0

    @property
    def total(self) -> int:
        # Open SAIL is tracked but is not a lagging event.
        return self.total_incidents + self.property_damage


@dataclass(frozen=True)
class AgingBuckets:
    """Open incidents and SAIL items counted by days open."""
    days_0_30: int = 0
    days_31_60: int = 0
    days_61_90: int = 0
    over_90_days: int = 0
    undated: int = 0

    @property
    def over_30_days(self) -> int:
        return self.days_31_60 + self.days_61_90 + self.over_90_days


@dataclass(frozen=True)
class NearMissSplit:
    total: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    inconsistent: bool = False


@dataclass(frozen=True)
class Engagement:
    unique_submitters: int = 0
    employee_count: Optional[int] = None
    participation_rate: Optional[int] = None


@dataclass(frozen=True)
class OpenItem:
    source: str
    record_id: Any
    description: str
    status: str
    priority: Optional[str]
    opened_at: Optional[str]
    days_open: Optional[int]


@dataclass(frozen=True)
class FocusArea:
    source: str
    category: str
    issue: str
    count: int
    severity: str
    top_location: Optional[str] = None


@dataclass(frozen=True)
class Trend:
    """Change of one metric against the previous window of the same length."""
    current: float
    previous: float
    direction: str
    percent: int
    good_direction: str

    @property
    def improving(self) -> bool:
        return self.direction == self.good_direction


@dataclass(frozen=True)
class MetricTrends:
    safe_ratio: Trend
    sif_rate: Trend
    at_risk_behaviors: Trend
    leading_total: Trend
    incidents: Trend


@dataclass(frozen=True)
class MonthlyCost:
    month: str
    label: str
    total: float
    direct: float
    indirect: float


@dataclass(frozen=True)
class TrueCost:
    """Incident cost roll-up: totals plus the last twelve months with data."""
    total: float = 0.0
    average: float = 0.0
    count: int = 0
    monthly_trend: Tuple[MonthlyCost, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class MetricsBundle:
    company_name: str
    generated_at: str

    total_bbs: int
    safe_obs: int
    at_risk_obs: int
    job_stops: int
    safe_ratio: float
    job_stop_rate: int

    sif_flagged: int
    sif_total: int
    sif_rate: int
    energy_sources: Tuple[Tuple[str, int], ...]
    control_hierarchy: ControlHierarchy

    lsr_issues: Tuple[LsrIssue, ...]
    lsr_compliance: LsrCompliance

    leading: LeadingIndicators
    lagging: LaggingIndicators
    lead_lag_ratio: float
    lead_lag_recommendation: str

    near_miss: NearMissSplit
    engagement: Engagement
    days_since_last_submission: int
    engagement_status: str

    safety_culture_index: int
    culture_grade: str
    culture_factors: Tuple[AppliedRule, ...]
    predictive_risk_score: int
    risk_level: str
    risk_factors: Tuple[AppliedRule, ...]
    forecast_30_day: int
    forecast_level: str
    forecast_factors: Tuple[AppliedRule, ...]

    open_items: Tuple[OpenItem, ...]
    areas_needing_focus: Tuple[FocusArea, ...]

    aging: AgingBuckets = AgingBuckets()
    inspection_counts: Tuple[Tuple[str, int], ...] = ()
    trends: Optional[MetricTrends] = None

    @property
    def total_inspections(self) -> int:
        return sum(count for _, count in self.inspection_counts)

    @property
    def total_leading(self) -> int:
        return self.leading.total

    @property
    def total_lagging(self) -> int:
        return self.lagging.total

    @property
    def near_miss_total(self) -> int:
        return self.near_miss.total

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["energy_sources"] = dict(self.energy_sources)
        d["leading"]["total"] = self.leading.total
        d["lagging"]["total"] = self.lagging.total
        d["aging"]["over_30_days"] = self.aging.over_30_days
        d["inspection_counts"] = dict(self.inspection_counts)
        d["total_inspections"] = self.total_inspections
        if self.trends is not None:
            for name, trend in d["trends"].items():
                trend["improving"] = getattr(self.trends, name).improving
        ch = self.control_hierarchy
        d["control_hierarchy"]["percent"] = {
            "tier1": ch.percent(ch.tier1),
            "tier2": ch.percent(ch.tier2),
            "tier3": ch.percent(ch.tier3),
        }
        return d


# ============================================================================
# Numeric helpers
# ============================================================================

def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative values (not banker's rounding)."""
    return int(math.floor(value + 0.5))


def round_tenth(value: float) -> float:
    return math.floor(value * 10 + 0.5) / 10


def percent(part: int, whole: int) -> int:
    """Whole-number percentage; 0 when *whole* is 0."""
    if whole <= 0:
        return 0
    return round_half_up(part / whole * 100)


def _status(record: Record) -> Optional[str]:
    value = record.get("status")
    return value.strip() if isinstance(value, str) else value


def _top_location(records: Iterable[Record]) -> Optional[str]:
    counts = Counter()
    for r in records:
        loc = first_present(r, LOCATION_FIELDS)
        if loc is not None:
            counts[str(loc)] += 1
    if not counts:
        return None
    return counts.most_common(1)[0][0]


def _sif_flagged(record: Record) -> bool:
    return record.get("stky_event") == "Yes" or is_yes(record.get("sif_potential"))


# ============================================================================
# 1-3. BBS observations
# ============================================================================

def bbs_split(bbs: Sequence[Record]) -> Tuple[int, int, int]:
    """Return (safe, at_risk, job_stops)."""
    safe = sum(1 for b in bbs if b.get("observation_type") == "Safe")
    at_risk = sum(1 for b in bbs if b.get("observation_type") == "At-Risk")
    job_stops = sum(1 for b in bbs if is_yes(b.get("job_stop")))
    return safe, at_risk, job_stops


def safe_at_risk_ratio(safe: int, at_risk: int) -> float:
    """safe/at_risk to one decimal; the raw safe count when at_risk is 0."""
    if at_risk > 0:
        return round_tenth(safe / at_risk)
    return float(safe)


def job_stop_rate(job_stops: int, total_bbs: int) -> int:
    return percent(job_stops, total_bbs)


# ============================================================================
# 4-6. SIF potential, energy sources, control hierarchy
# ============================================================================

def sif_potential(records: Sequence[Record]) -> Tuple[int, int, int]:
    """Return (flagged, total, rate) over the BBS + near-miss + hazard-ID union."""
    flagged = sum(1 for r in records if _sif_flagged(r))
    return flagged, len(records), percent(flagged, len(records))


def energy_source_tally(records: Sequence[Record]) -> Tuple[Tuple[str, int], ...]:
    """Count by energy source; unlabeled records are left out."""
    counts = Counter()
    for r in records:
        source = first_present(r, ENERGY_FIELDS)
        if source is not None:
            counts[str(source).strip()] += 1
    return tuple(sorted(counts.items(), key=lambda kv: (-kv[1], kv[0])))


def classify_control(value: Any) -> Optional[int]:
    """Hierarchy tier (1-3) of a control description; None when absent."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    lowered = text.lower()
    if any(k in lowered for k in TIER1_KEYWORDS):
        return 1
    if any(k in lowered for k in TIER2_KEYWORDS):
        return 2
    return 3


def control_hierarchy_score(records: Sequence[Record]) -> ControlHierarchy:
    tiers = Counter()
    for r in records:
        tier = classify_control(first_present(r, CONTROL_FIELDS))
        if tier is not None:
            tiers[tier] += 1
    classified = sum(tiers.values())
    if classified == 0:
        return ControlHierarchy(score=CONTROL_DEFAULT_SCORE, grade="N/A", defaulted=True)
    weighted = (tiers[1] * 100 + tiers[2] * 60 + tiers[3] * 30) / classified
    score = round_half_up(weighted)
    return ControlHierarchy(
        score=score,
        grade=control_grade(score),
        tier1=tiers[1],
        tier2=tiers[2],
        tier3=tiers[3],
        classified=classified,
    )


# ============================================================================
# 7. Life-Saving-Rules audits
# ============================================================================

def audit_issues(audit_type: str, record: Record) -> List[LsrIssue]:
    """Every non-metadata field answered "Needs Improvement" or "No"."""
    issues = []
    location = first_present(record, LOCATION_FIELDS)
    for key, value in record.items():
        if key in LSR_METADATA_FIELDS:
            continue
        if isinstance(value, str) and value in LSR_ISSUE_VALUES:
            issues.append(LsrIssue(audit_type, key, value, record.get("id"), location))
    return issues


def detect_lsr_issues(lsr_audits: Mapping[str, Sequence[Record]]) -> Tuple[LsrIssue, ...]:
    issues: List[LsrIssue] = []
    for audit_type, records in lsr_audits.items():
        for record in records:
            issues.extend(audit_issues(audit_type, record))
    return tuple(issues)


def lsr_compliance(lsr_audits: Mapping[str, Sequence[Record]]) -> LsrCompliance:
    by_category = []
    gaps = []
    total_audits = 0
    total_compliant = 0
    for audit_type, records in lsr_audits.items():
        if not records:
            continue
        compliant = sum(1 for r in records if not audit_issues(audit_type, r))
        rate = percent(compliant, len(records))
        label = LSR_AUDIT_LABELS.get(audit_type, audit_type)
        by_category.append(LsrCategoryCompliance(audit_type, label, len(records), compliant, rate))
        if rate < LSR_COMPLIANCE_TARGET:
            gaps.append(label)
        total_audits += len(records)
        total_compliant += compliant
    overall = percent(total_compliant, total_audits) if total_audits else 100
    return LsrCompliance(overall=overall, by_category=tuple(by_category), critical_gaps=tuple(gaps))


# ============================================================================
# 8-10. Leading / lagging indicators
# ============================================================================

def is_open_incident(record: Record, closed_statuses: Iterable[str] = DEFAULT_CLOSED_INCIDENT_STATUSES) -> bool:
    """Open by exclusion: anything not in the closed set, including unknown or missing status."""
    return _status(record) not in set(closed_statuses)


def is_open_sail(record: Record) -> bool:
    return _status(record) in OPEN_SAIL_STATUSES


def leading_indicators(records: CompanyRecords) -> LeadingIndicators:
    return LeadingIndicators(
        bbs=len(records.bbs_observations),
        thas=len(records.thas),
        safety_meetings=len(records.safety_meetings),
        toolbox_meetings=len(records.toolbox_meetings),
        hse_contacts=len(records.hse_contacts),
        hazard_ids=len(records.hazard_ids),
        good_catches=len(records.near_misses),
        lsr_audits=sum(len(v) for v in records.lsr_audits.values()),
    )


def open_incident_records(records: CompanyRecords, closed_statuses: Iterable[str]) -> List[Record]:
    source = records.open_incidents if records.open_incidents is not None else records.incidents
    closed = tuple(closed_statuses)
    return [r for r in source if is_open_incident(r, closed)]


def open_sail_records(records: CompanyRecords) -> List[Record]:
    source = records.open_sail_items if records.open_sail_items is not None else records.sail_items
    return [r for r in source if is_open_sail(r)]


def sail_overdue(open_sail: Sequence[Record], now: datetime) -> int:
    """Open SAIL items whose due date is before today.  No due date, not overdue."""
    today = now.astimezone(timezone.utc).date()
    count = 0
    for r in open_sail:
        due = record_timestamp(r, SAIL_DUE_FIELDS)
        if due is not None and due.date() < today:
            count += 1
    return count


def lagging_indicators(
    records: CompanyRecords,
    closed_statuses: Iterable[str] = DEFAULT_CLOSED_INCIDENT_STATUSES,
    now: Optional[datetime] = None,
) -> LaggingIndicators:
    if now is None:
        now = datetime.now(timezone.utc)
    closed = tuple(closed_statuses)
    open_sail = open_sail_records(records)
    return LaggingIndicators(
        total_incidents=len(records.incidents),
        open_incidents=len(open_incident_records(records, closed)),
        closed_incidents=sum(1 for r in records.incidents if not is_open_incident(r, closed)),
        open_sail=len(open_sail),
        property_damage=len(records.property_damage),
        sail_overdue=sail_overdue(open_sail, now),
    )


def lead_lag_ratio(total_leading: int, total_lagging: int) -> float:
    if total_lagging > 0:
        return round_tenth(total_leading / total_lagging)
    return float(total_leading)


# ============================================================================
# 11. Near-miss severity
# ============================================================================

def near_miss_split(near_misses: Sequence[Record]) -> NearMissSplit:
    total = len(near_misses)
    high = sum(1 for n in near_misses if is_yes(n.get("sif_potential")) or n.get("severity") == "High")
    medium = sum(1 for n in near_misses if n.get("severity") == "Medium")
    low = total - high - medium
    if low < 0:
        logger.warning(
            "Near-miss severity overlap: total=%d high=%d medium=%d (low clamped to 0)",
            total, high, medium,
        )
    return NearMissSplit(total=total, high=high, medium=medium, low=max(low, 0), inconsistent=low < 0)


# ============================================================================
# 12-13. Engagement and recency
# ============================================================================

def _engagement_sources(records: CompanyRecords) -> Tuple[Sequence[Record], ...]:
    return (
        records.bbs_observations,
        records.thas,
        records.safety_meetings,
        records.hazard_ids,
        records.near_misses,
    )


def unique_submitters(records: CompanyRecords) -> int:
    names = set()
    for source in _engagement_sources(records):
        for r in source:
            key = normalize_name(first_present(r, SUBMITTER_FIELDS))
            if key:
                names.add(key)
    return len(names)


def engagement(records: CompanyRecords, employee_census: Optional[Mapping[str, int]] = None) -> Engagement:
    submitters = unique_submitters(records)
    employee_count = None
    if employee_census:
        employee_count = employee_census.get(records.company_name)
    rate = None
    if employee_count:
        rate = percent(submitters, employee_count)
    return Engagement(unique_submitters=submitters, employee_count=employee_count, participation_rate=rate)


def days_since_last_submission(records: CompanyRecords, now: datetime) -> int:
    latest = None
    for source in _engagement_sources(records):
        for r in source:
            ts = record_timestamp(r, TIMESTAMP_FIELDS)
            if ts is not None and (latest is None or ts > latest):
                latest = ts
    if latest is None:
        return NO_ACTIVITY_DAYS
    return max(0, math.floor((now - latest).total_seconds() / 86400))


def engagement_status(days: int) -> str:
    if days >= NO_ACTIVITY_DAYS:
        return "no-data"
    if days >= 30:
        return "critical"
    if days >= 14:
        return "warning"
    if days >= 7:
        return "moderate"
    return "active"


# ============================================================================
# 17. Open-items aging
# ============================================================================

def _open_item(source: str, record: Record, date_fields: Sequence[str],
               description_fields: Sequence[str], now: datetime) -> OpenItem:
    opened = record_timestamp(record, date_fields)
    days_open = None
    if opened is not None:
        days_open = max(0, math.floor((now - opened).total_seconds() / 86400))
    description = first_present(record, description_fields) or "N/A"
    return OpenItem(
        source=source,
        record_id=record.get("id"),
        description=str(description),
        status=_status(record) or "Open",
        priority=record.get("priority"),
        opened_at=opened.isoformat() if opened else None,
        days_open=days_open,
    )


def _open_item_list(open_incidents: Sequence[Record], open_sail: Sequence[Record],
                    now: datetime) -> List[OpenItem]:
    items = [
        _open_item("Incident", r, INCIDENT_DATE_FIELDS,
                   ("brief_description", "detailed_description", "description"), now)
        for r in open_incidents
    ]
    items.extend(
        _open_item("SAIL", r, ("created_at", "date"),
                   ("action_description", "description"), now)
        for r in open_sail
    )
    return items


def open_items_aging(open_incidents: Sequence[Record], open_sail: Sequence[Record],
                     now: datetime, limit: int = OPEN_ITEMS_LIMIT) -> Tuple[OpenItem, ...]:
    """Oldest open incidents and SAIL items, days-open descending.

    Items without a usable date sort after every dated item.
    """
    items = _open_item_list(open_incidents, open_sail, now)
    items.sort(key=lambda i: (i.days_open is None, -(i.days_open or 0)))
    return tuple(items[:limit])


def aging_buckets(open_incidents: Sequence[Record], open_sail: Sequence[Record],
                  now: datetime) -> AgingBuckets:
    counts = Counter()
    for item in _open_item_list(open_incidents, open_sail, now):
        if item.days_open is None:
            counts["undated"] += 1
            continue
        for bound, name in AGING_BUCKETS:
            if item.days_open <= bound:
                counts[name] += 1
                break
        else:
            counts["over_90_days"] += 1
    return AgingBuckets(**counts)


# ============================================================================
# 18. Areas needing focus
# ============================================================================

def _is_high_priority(value: Any) -> bool:
    return isinstance(value, str) and value.strip().lower() in HIGH_PRIORITY_VALUES


def areas_needing_focus(open_sail: Sequence[Record], near_misses: Sequence[Record],
                        lsr_issues: Sequence[LsrIssue], hazard_ids: Sequence[Record]) -> Tuple[FocusArea, ...]:
    areas: List[FocusArea] = []

    urgent_sail = [s for s in open_sail if _is_high_priority(s.get("priority"))]
    if urgent_sail:
        n = len(urgent_sail)
        areas.append(FocusArea(
            source="SAIL",
            category="Corrective Actions",
            issue=f"{n} critical/high-priority SAIL item(s) still open",
            count=n,
            severity="high",
            top_location=_top_location(urgent_sail),
        ))

    sif_near_misses = [r for r in near_misses if _sif_flagged(r)]
    if sif_near_misses:
        n = len(sif_near_misses)
        areas.append(FocusArea(
            source="Near Miss",
            category="SIF Potential",
            issue=f"{n} near miss(es) with serious injury/fatality potential",
            count=n,
            severity="high",
            top_location=_top_location(sif_near_misses),
        ))

    if lsr_issues:
        n = len(lsr_issues)
        locations = Counter(i.location for i in lsr_issues if i.location)
        areas.append(FocusArea(
            source="LSR Audit",
            category="Life-Saving Rules",
            issue=f"{n} LSR audit finding(s) marked Needs Improvement or No",
            count=n,
            severity="high" if n > 3 else "medium",
            top_location=locations.most_common(1)[0][0] if locations else None,
        ))

    risky_hazards = [h for h in hazard_ids if _is_high_priority(first_present(h, HAZARD_RISK_FIELDS))]
    if risky_hazards:
        n = len(risky_hazards)
        areas.append(FocusArea(
            source="Hazard ID",
            category="High-Risk Hazards",
            issue=f"{n} high-risk hazard report(s) identified",
            count=n,
            severity="high" if n >= 3 else "medium",
            top_location=_top_location(risky_hazards),
        ))

    areas.sort(key=lambda a: (a.severity != "high", -a.count))
    return tuple(areas)


# ============================================================================
# 19. Equipment inspections
# ============================================================================

def inspection_counts(inspections: Mapping[str, Sequence[Record]]) -> Tuple[Tuple[str, int], ...]:
    """(type, count) in INSPECTION_LABELS order; every type is present."""
    return tuple((key, len(inspections.get(key) or ())) for key in INSPECTION_LABELS)


# ============================================================================
# 20. Period-over-period trends
# ============================================================================

def trend(current: float, previous: float, good_direction: str) -> Trend:
    """Direction and whole-number percent change from *previous* to *current*.

    Growth from zero reports 100%.
    """
    if current == previous:
        return Trend(current, previous, TREND_FLAT, 0, good_direction)
    direction = TREND_UP if current > previous else TREND_DOWN
    if previous == 0:
        change = 100
    else:
        change = round_half_up(abs(current - previous) / abs(previous) * 100)
    return Trend(current, previous, direction, change, good_direction)


def metric_trends(current: MetricsBundle, previous: MetricsBundle) -> MetricTrends:
    return MetricTrends(
        safe_ratio=trend(current.safe_ratio, previous.safe_ratio, TREND_UP),
        sif_rate=trend(current.sif_rate, previous.sif_rate, TREND_DOWN),
        at_risk_behaviors=trend(current.at_risk_obs, previous.at_risk_obs, TREND_DOWN),
        leading_total=trend(current.total_leading, previous.total_leading, TREND_UP),
        incidents=trend(current.lagging.total_incidents, previous.lagging.total_incidents, TREND_DOWN),
    )


# ============================================================================
# 21. Location filter
# ============================================================================

def _location_key(record: Record) -> Optional[str]:
    value = first_present(record, LOCATION_FIELDS)
    if value is None:
        return None
    return str(value).strip().lower()


def records_at_location(records: CompanyRecords, location: Optional[str]) -> CompanyRecords:
    """Copy of *records* keeping only rows recorded at *location*.

    Matching ignores case and surrounding space.  Rows with no location
    are dropped.  A blank *location* returns *records* as-is.
    """
    if not location or not location.strip():
        return records
    wanted = location.strip().lower()

    def keep(rows):
        if rows is None:
            return None
        return [r for r in rows if _location_key(r) == wanted]

    values = {}
    for f in dataclass_fields(records):
        value = getattr(records, f.name)
        if isinstance(value, dict):
            values[f.name] = {k: keep(v) for k, v in value.items()}
        elif isinstance(value, list) or value is None:
            values[f.name] = keep(value)
        else:
            values[f.name] = value
    return CompanyRecords(**values)


def known_locations(records: CompanyRecords) -> Tuple[str, ...]:
    """Distinct location names across every record list, sorted case-insensitively."""
    seen: Dict[str, str] = {}
    for f in dataclass_fields(records):
        value = getattr(records, f.name)
        if isinstance(value, dict):
            groups = list(value.values())
        elif isinstance(value, list):
            groups = [value]
        else:
            continue
        for rows in groups:
            for r in rows:
                key = _location_key(r)
                if key and key not in seen:
                    seen[key] = str(first_present(r, LOCATION_FIELDS)).strip()
    return tuple(seen[k] for k in sorted(seen))


# ============================================================================
# 22. TrueCost
# ============================================================================

TRUE_COST_MONTHS = 12


def _money(value: Any) -> float:
    """Cost columns arrive as numbers or numeric strings; anything else is 0."""
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return 0.0
    return amount if math.isfinite(amount) else 0.0


def _cost_incident(row: Record) -> Record:
    incident = row.get("incidents") or {}
    if isinstance(incident, list):
        incident = incident[0] if incident else {}
    return incident


def true_cost(costs: Sequence[Record], months: int = TRUE_COST_MONTHS) -> TrueCost:
    """Total, average and monthly trend over incident cost rows.

    Each row carries its incident under ``incidents``; the incident date
    places the row in a month.  Rows without one still count toward the
    total and average.
    """
    total = sum(_money(c.get("total_all_costs")) for c in costs)
    by_month: Dict[str, Dict[str, Any]] = {}
    for c in costs:
        when = parse_timestamp(_cost_incident(c).get("incident_date"))
        if when is None:
            continue
        bucket = by_month.setdefault(when.strftime("%Y-%m"), {
            "label": when.strftime("%b %y"), "total": 0.0, "direct": 0.0, "indirect": 0.0,
        })
        bucket["total"] += _money(c.get("total_all_costs"))
        bucket["direct"] += _money(c.get("total_direct_costs"))
        bucket["indirect"] += _money(c.get("total_indirect_costs"))

    trend_rows = tuple(
        MonthlyCost(
            month=key,
            label=by_month[key]["label"],
            total=round(by_month[key]["total"], 2),
            direct=round(by_month[key]["direct"], 2),
            indirect=round(by_month[key]["indirect"], 2),
        )
        for key in sorted(by_month)[-months:]
    )
    count = len(costs)
    return TrueCost(
        total=round(total, 2),
        average=round(total / count, 2) if count else 0.0,
        count=count,
        monthly_trend=trend_rows,
    )


# ============================================================================
# Entry point
# ============================================================================

def derive_metrics(
    records: CompanyRecords,
    now: Optional[datetime] = None,
    employee_census: Optional[Mapping[str, int]] = None,
    closed_incident_statuses: Iterable[str] = DEFAULT_CLOSED_INCIDENT_STATUSES,
    previous: Optional[CompanyRecords] = None,
) -> MetricsBundle:
    """Compute the full scorecard for one company.

    *previous* holds the same company's records for the window just before
    this one; when given, the bundle carries trends against it.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    closed = tuple(closed_incident_statuses)

    safe, at_risk, job_stops = bbs_split(records.bbs_observations)
    total_bbs = len(records.bbs_observations)
    ratio = safe_at_risk_ratio(safe, at_risk)
    stop_rate = job_stop_rate(job_stops, total_bbs)

    hazard_union = list(records.bbs_observations) + list(records.near_misses) + list(records.hazard_ids)
    sif_flagged, sif_total, sif_rate = sif_potential(hazard_union)

    lsr_issues = detect_lsr_issues(records.lsr_audits)
    leading = leading_indicators(records)
    lagging = lagging_indicators(records, closed, now)
    ll_ratio = lead_lag_ratio(leading.total, lagging.total)
    near_miss = near_miss_split(records.near_misses)
    days_idle = days_since_last_submission(records, now)

    inputs = ScoreInputs(
        safe_ratio=ratio,
        job_stop_rate=stop_rate,
        near_miss_count=near_miss.total,
        incident_count=lagging.total_incidents,
        sif_rate=sif_rate,
        open_sail=lagging.open_sail,
        safe_obs=safe,
        at_risk_obs=at_risk,
        days_since_last_submission=days_idle,
        total_leading=leading.total,
    )
    culture = safety_culture_index(inputs)
    risk = predictive_risk_score(inputs)
    forecast = thirty_day_forecast(inputs)

    open_incidents = open_incident_records(records, closed)
    open_sail = open_sail_records(records)

    bundle = MetricsBundle(
        company_name=records.company_name,
        generated_at=now.isoformat(),
        total_bbs=total_bbs,
        safe_obs=safe,
        at_risk_obs=at_risk,
        job_stops=job_stops,
        safe_ratio=ratio,
        job_stop_rate=stop_rate,
        sif_flagged=sif_flagged,
        sif_total=sif_total,
        sif_rate=sif_rate,
        energy_sources=energy_source_tally(hazard_union),
        control_hierarchy=control_hierarchy_score(hazard_union),
        lsr_issues=lsr_issues,
        lsr_compliance=lsr_compliance(records.lsr_audits),
        leading=leading,
        lagging=lagging,
        lead_lag_ratio=ll_ratio,
        lead_lag_recommendation=lead_lag_recommendation(ll_ratio),
        near_miss=near_miss,
        engagement=engagement(records, employee_census),
        days_since_last_submission=days_idle,
        engagement_status=engagement_status(days_idle),
        safety_culture_index=culture.score,
        culture_grade=culture_grade(culture.score),
        culture_factors=culture.applied,
        predictive_risk_score=risk.score,
        risk_level=risk_level(risk.score),
        risk_factors=risk.applied,
        forecast_30_day=forecast.score,
        forecast_level=forecast_level(forecast.score),
        forecast_factors=forecast.applied,
        open_items=open_items_aging(open_incidents, open_sail, now),
        areas_needing_focus=areas_needing_focus(open_sail, records.near_misses, lsr_issues, records.hazard_ids),
        aging=aging_buckets(open_incidents, open_sail, now),
        inspection_counts=inspection_counts(records.inspections),
    )
    if previous is None:
        return bundle
    prior = derive_metrics(previous, now, employee_census, closed)
    return replace(bundle, trends=metric_trends(bundle, prior))
