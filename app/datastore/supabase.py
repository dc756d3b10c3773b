# ============================================================================
# SLP SAFETY - Hosted Record Store (Supabase / PostgREST)
# ============================================================================
# Plain HTTPS against the REST and auth endpoints:
#   GET   {url}/rest/v1/<table>?select=*&or=(...)&created_at=gte....
#   PATCH {url}/rest/v1/company_view_tokens?token=eq....
#   POST  {url}/auth/v1/token?grant_type=password
# ============================================================================

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .base import (
    EXCLUDE,
    INCIDENT_COSTS_TABLE,
    INCLUDE,
    AuthenticationError,
    DataStoreError,
    Record,
    RecordCategory,
    RecordStore,
    TokenNotFound,
    ViewToken,
    date_bounds,
)

logger = logging.getLogger("datastore.supabase")

TOKENS_TABLE = "company_view_tokens"
RECIPIENTS_TABLE = "email_recipients"
COST_SELECT = (
    "total_all_costs,total_direct_costs,total_indirect_costs,entry_date,incident_id,"
    "incidents!inner(company_name,location_name,incident_date)"
)

# Characters PostgREST treats as syntax inside or=()/in.() lists
_RESERVED = set(',.:()"\\ ')


def quote_value(value: str) -> str:
    """Quote a filter value for use inside a PostgREST list expression."""
    text = str(value)
    if not any(ch in _RESERVED for ch in text):
        return text
    escaped = text.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def company_filter(category: RecordCategory, company_name: str) -> Tuple[str, str]:
    """(param, value) matching any of the category's company columns."""
    fields = category.hosted_columns
    if len(fields) == 1:
        return fields[0], f"eq.{company_name}"
    inner = ",".join(f"{f}.eq.{quote_value(company_name)}" for f in fields)
    return "or", f"({inner})"


def status_list(statuses: Iterable[str]) -> str:
    return "(" + ",".join(quote_value(s) for s in statuses) + ")"


class SupabaseRecordStore(RecordStore):
    """Record store backed by a Supabase project."""

    def __init__(self, url: str, api_key: str, timeout: float = 30):
        self.url = (url or "").rstrip("/")
        self.api_key = api_key or ""
        self.timeout = timeout

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    def _request(
        self,
        method: str,
        path: str,
        params: Sequence[Tuple[str, str]] = (),
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        if not self.url or not self.api_key:
            raise DataStoreError("Supabase URL/key not configured")

        query = urllib.parse.urlencode(list(params), safe="(),.:*\"", quote_via=urllib.parse.quote)
        full_url = f"{self.url}{path}" + (f"?{query}" if query else "")
        data = json.dumps(body).encode("utf-8") if body is not None else None

        req = urllib.request.Request(full_url, data=data, headers=self._headers(headers), method=method)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as e:
            error_body = e.read().decode(errors="replace") if e.fp else str(e)
            raise DataStoreError(f"{method} {path} returned {e.code}: {error_body}", status=e.code) from e
        except urllib.error.URLError as e:
            raise DataStoreError(f"{method} {path} failed: {e.reason}") from e

        if not raw:
            return None
        try:
            return json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise DataStoreError(f"{method} {path} returned invalid JSON") from e

    def _select(self, table: str, params: List[Tuple[str, str]]) -> List[Record]:
        rows = self._request("GET", f"/rest/v1/{table}", params)
        if not isinstance(rows, list):
            raise DataStoreError(f"Unexpected response shape from {table}")
        return rows

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def fetch_records(self, category: RecordCategory, company_name: str,
                      date_from: date, date_to: date) -> List[Record]:
        start, end = date_bounds(date_from, date_to)
        params = [
            ("select", "*"),
            company_filter(category, company_name),
            (category.date_field, f"gte.{start}"),
            (category.date_field, f"lte.{end}"),
            ("order", f"{category.date_field}.desc"),
        ]
        return self._select(category.table, params)

    def fetch_open_records(self, category: RecordCategory, company_name: str,
                           statuses: Iterable[str], mode: str = INCLUDE) -> List[Record]:
        statuses = list(statuses)
        params = [("select", "*")]
        company_param, company_value = company_filter(category, company_name)

        if mode == INCLUDE:
            params.append((company_param, company_value))
            params.append(("status", f"in.{status_list(statuses)}"))
        elif mode == EXCLUDE:
            # NULL status is open; a bare not.in would drop it
            status_expr = f"status.is.null,status.not.in.{status_list(statuses)}"
            if company_param == "or":
                params.append(("and", f"(or{company_value},or({status_expr}))"))
            else:
                params.append((company_param, company_value))
                params.append(("or", f"({status_expr})"))
        else:
            raise ValueError(f"Unknown status mode: {mode}")

        return self._select(category.table, params)

    def fetch_incident_costs(self, company_name: str, location: Optional[str] = None,
                             year: Optional[int] = None) -> List[Record]:
        params = [
            ("select", COST_SELECT),
            ("incidents.company_name", f"eq.{company_name}"),
        ]
        if location:
            params.append(("incidents.location_name", f"ilike.{location}"))
        if year is not None:
            params.append(("incidents.incident_date", f"gte.{year:04d}-01-01"))
            params.append(("incidents.incident_date", f"lte.{year:04d}-12-31"))
        return self._select(INCIDENT_COSTS_TABLE, params)

    # ------------------------------------------------------------------
    # View tokens
    # ------------------------------------------------------------------

    def lookup_token(self, token: str) -> ViewToken:
        rows = self._select(TOKENS_TABLE, [
            ("select", "token,company_name,is_active,last_accessed"),
            ("token", f"eq.{token}"),
            ("limit", "1"),
        ])
        if not rows:
            raise TokenNotFound(token)
        row = rows[0]
        return ViewToken(
            token=row.get("token", token),
            company_name=row.get("company_name") or "",
            is_active=bool(row.get("is_active")),
            last_accessed=row.get("last_accessed"),
        )

    def touch_token(self, token: str) -> None:
        self._request(
            "PATCH",
            f"/rest/v1/{TOKENS_TABLE}",
            [("token", f"eq.{token}")],
            body={"last_accessed": datetime.now(timezone.utc).isoformat()},
            headers={"Prefer": "return=minimal"},
        )

    # ------------------------------------------------------------------
    # Recipients
    # ------------------------------------------------------------------

    def active_recipients(self) -> Dict[str, List[str]]:
        rows = self._select(RECIPIENTS_TABLE, [
            ("select", "company_name,email"),
            ("is_active", "eq.true"),
            ("order", "company_name.asc"),
        ])
        grouped: Dict[str, List[str]] = {}
        for row in rows:
            company = row.get("company_name")
            email = row.get("email")
            if company and email:
                grouped.setdefault(company, []).append(email)
        return grouped

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    def sign_in(self, email: str, password: str) -> str:
        try:
            data = self._request(
                "POST",
                "/auth/v1/token",
                [("grant_type", "password")],
                body={"email": email, "password": password},
            )
        except DataStoreError as e:
            if e.status in (400, 401):
                raise AuthenticationError("Invalid login credentials") from e
            raise
        user = (data or {}).get("user") or {}
        canonical = user.get("email") or email
        logger.info("Signed in %s", canonical)
        return canonical.strip().lower()
