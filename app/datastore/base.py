# ============================================================================
# SLP SAFETY - Record Store Interface
# ============================================================================
# The hosted backend owns every table.  This module names the tables the
# scorecard reads (the category catalog) and the narrow interface the
# rest of the application queries them through.
# ============================================================================

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple

from app.metrics.aggregator import INSPECTION_LABELS, LSR_AUDIT_LABELS
from app.metrics.fields import COMPANY_FIELDS

Record = Dict[str, Any]

INCLUDE = "include"
EXCLUDE = "exclude"


class DataStoreError(Exception):
    """A query against the record store failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TokenNotFound(DataStoreError):
    """No view token with that value exists."""


class AuthenticationError(Exception):
    """Email/password sign-in was rejected."""


@dataclass(frozen=True)
class RecordCategory:
    """One source table: where it lives and how to filter it.

    ``hosted_columns`` names the company alias columns that exist on the
    hosted table; the backend rejects filters on unknown columns, so the
    hosted query ORs over these only.  Which company a row belongs to is
    otherwise decided by ``matches_company`` across every alias.
    """
    key: str
    table: str
    date_field: str = "created_at"
    hosted_columns: Tuple[str, ...] = ("company", "company_name", "client_company")


INCIDENTS = RecordCategory("incidents", "incidents", "incident_date", ("company_name",))
SAIL_ITEMS = RecordCategory("sail_items", "sail_log", "created_at", ("company", "company_name"))
BBS_OBSERVATIONS = RecordCategory("bbs_observations", "bbs_observations")
NEAR_MISSES = RecordCategory("near_misses", "good_catch_near_miss")
HAZARD_IDS = RecordCategory("hazard_ids", "hazard_id_reports")
THAS = RecordCategory("thas", "tha_submissions")
SAFETY_MEETINGS = RecordCategory("safety_meetings", "safety_meetings")
TOOLBOX_MEETINGS = RecordCategory("toolbox_meetings", "toolbox_meetings")
HSE_CONTACTS = RecordCategory("hse_contacts", "hse_contacts", "created_at", COMPANY_FIELDS)
PROPERTY_DAMAGE = RecordCategory("property_damage", "property_damage_reports")

LSR_CATEGORIES: Dict[str, RecordCategory] = {
    audit_type: RecordCategory(f"lsr_{audit_type}", f"lsr_{audit_type}_audits", "created_at", COMPANY_FIELDS)
    for audit_type in LSR_AUDIT_LABELS
}

INSPECTION_CATEGORIES: Dict[str, RecordCategory] = {
    kind: RecordCategory(f"inspection_{kind}", f"{kind}_inspections", "created_at", COMPANY_FIELDS)
    for kind in INSPECTION_LABELS
}

# Cost rows, each joined to its incident (company, location, date)
INCIDENT_COSTS_TABLE = "incident_costs"

# Window-filtered categories, in fetch order
WINDOW_CATEGORIES: Tuple[RecordCategory, ...] = (
    INCIDENTS,
    SAIL_ITEMS,
    BBS_OBSERVATIONS,
    NEAR_MISSES,
    HAZARD_IDS,
    THAS,
    SAFETY_MEETINGS,
    TOOLBOX_MEETINGS,
    HSE_CONTACTS,
    PROPERTY_DAMAGE,
) + tuple(LSR_CATEGORIES.values()) + tuple(INSPECTION_CATEGORIES.values())

CATEGORIES: Dict[str, RecordCategory] = {c.key: c for c in WINDOW_CATEGORIES}


@dataclass
class ViewToken:
    token: str
    company_name: str
    is_active: bool = True
    last_accessed: Optional[str] = None


def date_bounds(date_from: date, date_to: date) -> Tuple[str, str]:
    """Inclusive ISO bounds; the end date runs through its final second."""
    return date_from.isoformat(), f"{date_to.isoformat()}T23:59:59"


class RecordStore(ABC):
    """Query interface over the hosted tables."""

    @abstractmethod
    def fetch_records(self, category: RecordCategory, company_name: str,
                      date_from: date, date_to: date) -> List[Record]:
        """Records of one company dated within [date_from, date_to]."""

    @abstractmethod
    def fetch_open_records(self, category: RecordCategory, company_name: str,
                           statuses: Iterable[str], mode: str = INCLUDE) -> List[Record]:
        """All-time records whose status is in (include) or not in (exclude) *statuses*."""

    @abstractmethod
    def fetch_incident_costs(self, company_name: str, location: Optional[str] = None,
                             year: Optional[int] = None) -> List[Record]:
        """Cost rows for one company's incidents, each carrying its incident
        under ``incidents``; optionally limited to one location and to
        incidents dated in *year*."""

    @abstractmethod
    def lookup_token(self, token: str) -> ViewToken:
        """Raise TokenNotFound when the token is unknown."""

    @abstractmethod
    def touch_token(self, token: str) -> None:
        """Stamp the token's last-accessed time."""

    @abstractmethod
    def active_recipients(self) -> Dict[str, List[str]]:
        """Company name -> report recipient addresses, in stored order."""

    @abstractmethod
    def sign_in(self, email: str, password: str) -> str:
        """Verify credentials and return the canonical email address."""

    def list_companies(self) -> List[str]:
        return sorted(self.active_recipients().keys())
