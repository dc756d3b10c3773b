# ============================================================================
# SLP SAFETY - In-Memory Record Store
# ============================================================================
# Dict-backed store used by the test suite and for local demo runs.
# Rows match a company on any alias column (see matches_company), a
# superset of what the hosted per-table filters can express.
# ============================================================================

from datetime import date, datetime, timezone
from typing import Dict, Iterable, List, Optional

from app.metrics.fields import matches_company, parse_timestamp

from .base import (
    EXCLUDE,
    INCIDENT_COSTS_TABLE,
    INCLUDE,
    AuthenticationError,
    Record,
    RecordCategory,
    RecordStore,
    TokenNotFound,
    ViewToken,
    date_bounds,
)


class InMemoryRecordStore(RecordStore):

    def __init__(
        self,
        tables: Optional[Dict[str, List[Record]]] = None,
        tokens: Optional[Dict[str, ViewToken]] = None,
        recipients: Optional[List[Record]] = None,
        users: Optional[Dict[str, str]] = None,
    ):
        self.tables: Dict[str, List[Record]] = tables or {}
        self.tokens: Dict[str, ViewToken] = tokens or {}
        self.recipients: List[Record] = recipients or []
        self.users: Dict[str, str] = users or {}

    def add(self, category: RecordCategory, *records: Record) -> None:
        self.tables.setdefault(category.table, []).extend(records)

    def add_costs(self, *rows: Record) -> None:
        self.tables.setdefault(INCIDENT_COSTS_TABLE, []).extend(rows)

    def _rows(self, category: RecordCategory) -> List[Record]:
        return self.tables.get(category.table, [])

    def fetch_records(self, category: RecordCategory, company_name: str,
                      date_from: date, date_to: date) -> List[Record]:
        start, end = (parse_timestamp(b) for b in date_bounds(date_from, date_to))
        result = []
        for row in self._rows(category):
            if not matches_company(row, company_name):
                continue
            ts = parse_timestamp(row.get(category.date_field))
            if ts is None or ts < start or ts > end:
                continue
            result.append(dict(row))
        return result

    def fetch_open_records(self, category: RecordCategory, company_name: str,
                           statuses: Iterable[str], mode: str = INCLUDE) -> List[Record]:
        wanted = set(statuses)
        result = []
        for row in self._rows(category):
            if not matches_company(row, company_name):
                continue
            in_set = row.get("status") in wanted
            if (mode == INCLUDE and in_set) or (mode == EXCLUDE and not in_set):
                result.append(dict(row))
        return result

    def fetch_incident_costs(self, company_name: str, location: Optional[str] = None,
                             year: Optional[int] = None) -> List[Record]:
        wanted_location = location.strip().lower() if location else None
        result = []
        for row in self.tables.get(INCIDENT_COSTS_TABLE, []):
            incident = row.get("incidents") or {}
            if incident.get("company_name") != company_name:
                continue
            if wanted_location is not None:
                if str(incident.get("location_name") or "").strip().lower() != wanted_location:
                    continue
            if year is not None:
                ts = parse_timestamp(incident.get("incident_date"))
                if ts is None or ts.year != year:
                    continue
            result.append(dict(row))
        return result

    def lookup_token(self, token: str) -> ViewToken:
        found = self.tokens.get(token)
        if found is None:
            raise TokenNotFound(token)
        return found

    def touch_token(self, token: str) -> None:
        found = self.lookup_token(token)
        found.last_accessed = datetime.now(timezone.utc).isoformat()

    def active_recipients(self) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = {}
        for row in self.recipients:
            if not row.get("is_active", True):
                continue
            grouped.setdefault(row["company_name"], []).append(row["email"])
        return grouped

    def sign_in(self, email: str, password: str) -> str:
        key = (email or "").strip().lower()
        if not key or self.users.get(key) != password:
            raise AuthenticationError("Invalid login credentials")
        return key
