# ============================================================================
# SLP SAFETY - Field Aliasing
# ============================================================================
# Source tables were built by different forms over several years, so one
# logical attribute can live under several column names.  Each logical
# field is an ordered tuple of candidate keys; the first key holding a
# non-empty value wins.
# ============================================================================

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

# Company association is OR across every alias, not first-present.
COMPANY_FIELDS: Tuple[str, ...] = ("company", "company_name", "client_company", "client")

TIMESTAMP_FIELDS: Tuple[str, ...] = (
    "created_at",
    "observation_date",
    "submission_date",
    "meeting_date",
    "report_date",
    "date",
)

SUBMITTER_FIELDS: Tuple[str, ...] = (
    "submitted_by",
    "submitter_name",
    "observer_name",
    "reporter_name",
    "reported_by",
    "employee_name",
    "name",
)

ENERGY_FIELDS: Tuple[str, ...] = ("energy_source", "energy_type")
CONTROL_FIELDS: Tuple[str, ...] = ("direct_control", "control_type")
LOCATION_FIELDS: Tuple[str, ...] = ("location", "location_name")
INCIDENT_DATE_FIELDS: Tuple[str, ...] = ("incident_date", "created_at", "date")
SAIL_DATE_FIELDS: Tuple[str, ...] = ("created_at", "date", "due_date")
SAIL_DUE_FIELDS: Tuple[str, ...] = ("due_date", "target_date", "target_completion_date")
HAZARD_RISK_FIELDS: Tuple[str, ...] = ("risk_level", "severity", "priority")

_DATE_FORMATS = [
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
]


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def first_present(record: Dict[str, Any], candidates: Iterable[str]) -> Any:
    """Return the value of the first candidate key with a non-empty value."""
    for key in candidates:
        value = record.get(key)
        if not _is_empty(value):
            return value
    return None


def matches_company(record: Dict[str, Any], company_name: str) -> bool:
    """True when any company alias on the record equals *company_name*."""
    return any(record.get(key) == company_name for key in COMPANY_FIELDS)


def is_yes(value: Any) -> bool:
    """Boolean flag columns arrive as real booleans or as the string "Yes"."""
    return value is True or value == "Yes"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp into an aware UTC datetime.

    Naive values are taken as UTC.  Anything unparseable returns None and
    the record is treated as having no timestamp.
    """
    if _is_empty(value):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            parsed = None
            for fmt in _DATE_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
            if parsed is None:
                return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def record_timestamp(record: Dict[str, Any], candidates: Iterable[str] = TIMESTAMP_FIELDS) -> Optional[datetime]:
    """Timestamp from the first non-empty alias; None if that value is malformed."""
    return parse_timestamp(first_present(record, candidates))


def normalize_name(value: Any) -> Optional[str]:
    """Case-insensitive, whitespace-trimmed identity key for a person."""
    if _is_empty(value):
        return None
    return " ".join(str(value).split()).lower()
