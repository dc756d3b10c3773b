# ============================================================================
# SLP SAFETY - Weekly Report Renderer
# ============================================================================
# Renders one company's weekly scorecard into a self-contained HTML email
# (inline <style>, no external assets) plus a plain-text alternative.
# Templates live in templates/email/.
# ============================================================================

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from jinja2 import Environment, FileSystemLoader, select_autoescape

from app.metrics import CompanyRecords, MetricsBundle
from app.metrics.aggregator import open_sail_records
from app.metrics.fields import LOCATION_FIELDS, first_present, parse_timestamp

logger = logging.getLogger("reporting.renderer")

TEMPLATES_DIR = Path(__file__).resolve().parents[2] / "templates"

OPEN_SAIL_ROWS = 10
HAZARD_ROWS = 5
BBS_ROWS = 8


def fmt_date(value: Any, fmt: str = "%m/%d/%Y") -> str:
    """Render a stored timestamp as a date; blank when missing or malformed."""
    ts = parse_timestamp(value)
    return ts.strftime(fmt) if ts else ""


def truncate(value: Any, length: int) -> str:
    text = "" if value is None else str(value)
    return text if len(text) <= length else text[:length] + "..."


def _build_env() -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        autoescape=select_autoescape(["html"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )
    env.filters["fmt_date"] = fmt_date
    env.filters["truncate_text"] = truncate
    return env


_env: Optional[Environment] = None


def get_env() -> Environment:
    global _env
    if _env is None:
        _env = _build_env()
    return _env


# ---------------------------------------------------------------------------
# Display rows
# ---------------------------------------------------------------------------

def _location(record: Dict[str, Any]) -> str:
    return str(first_present(record, LOCATION_FIELDS) or "N/A")


def incident_rows(incidents: Sequence[Dict[str, Any]]) -> List[Dict[str, str]]:
    return [
        {
            "date": fmt_date(i.get("incident_date") or i.get("created_at")),
            "description": i.get("brief_description") or truncate(i.get("detailed_description"), 80) or "N/A",
            "status": i.get("status") or "Open",
            "closed": (i.get("status") or "").lower() == "closed",
        }
        for i in incidents
    ]


def sail_rows(open_sail: Sequence[Dict[str, Any]]) -> List[Dict[str, str]]:
    return [
        {
            "date": fmt_date(s.get("created_at")),
            "description": truncate(s.get("action_description") or s.get("description"), 50) or "N/A",
            "priority": s.get("priority") or "Normal",
            "status": s.get("status") or "Open",
        }
        for s in open_sail[:OPEN_SAIL_ROWS]
    ]


def hazard_rows(hazards: Sequence[Dict[str, Any]]) -> List[Dict[str, str]]:
    return [
        {
            "date": fmt_date(h.get("created_at")),
            "location": _location(h),
            "hazard": truncate(h.get("hazard_description") or h.get("description"), 60) or "N/A",
        }
        for h in hazards[:HAZARD_ROWS]
    ]


def bbs_rows(bbs: Sequence[Dict[str, Any]]) -> List[Dict[str, str]]:
    return [
        {
            "date": fmt_date(b.get("observation_date") or b.get("created_at")),
            "location": _location(b),
            "type": b.get("observation_type") or "N/A",
            "safe": b.get("observation_type") == "Safe",
            "category": b.get("behavior_category") or b.get("category") or "N/A",
        }
        for b in bbs[:BBS_ROWS]
    ]


def near_miss_rows(near_misses: Sequence[Dict[str, Any]]) -> List[Dict[str, str]]:
    return [
        {
            "date": fmt_date(g.get("created_at")),
            "location": _location(g),
            "description": truncate(g.get("description") or g.get("event_description"), 70) or "N/A",
        }
        for g in near_misses
    ]


def alert_level(metrics: MetricsBundle) -> str:
    if metrics.lagging.open_incidents > 0:
        return "danger"
    if metrics.lagging.open_sail > 0:
        return "warning"
    return "success"


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def weekly_subject(company_name: str, date_range: Dict[str, str]) -> str:
    return (
        f"Weekly Safety Report - {company_name} "
        f"({date_range['startFormatted']} - {date_range['endFormatted']})"
    )


def build_context(
    records: CompanyRecords,
    metrics: MetricsBundle,
    date_range: Dict[str, str],
    dashboard_url: str = "",
) -> Dict[str, Any]:
    open_sail = open_sail_records(records)
    return {
        "company": records.company_name,
        "m": metrics,
        "date_range": date_range,
        "dashboard_url": dashboard_url,
        "alert": alert_level(metrics),
        "open_items_total": metrics.lagging.open_sail + metrics.lagging.open_incidents,
        "sail_this_week": len(records.sail_items),
        "incident_rows": incident_rows(records.incidents),
        "sail_rows": sail_rows(open_sail),
        "sail_overflow": max(0, len(open_sail) - OPEN_SAIL_ROWS),
        "hazard_rows": hazard_rows(records.hazard_ids),
        "bbs_rows": bbs_rows(records.bbs_observations),
        "bbs_overflow": max(0, len(records.bbs_observations) - BBS_ROWS),
        "near_miss_rows": near_miss_rows(records.near_misses),
    }


def render_weekly_report(
    records: CompanyRecords,
    metrics: MetricsBundle,
    date_range: Dict[str, str],
    dashboard_url: str = "",
) -> str:
    """HTML body of one company's weekly email."""
    template = get_env().get_template("email/weekly_report.html")
    return template.render(**build_context(records, metrics, date_range, dashboard_url))


def render_weekly_text(
    records: CompanyRecords,
    metrics: MetricsBundle,
    date_range: Dict[str, str],
    dashboard_url: str = "",
) -> str:
    """Plain-text alternative for mail clients that block HTML."""
    template = get_env().get_template("email/weekly_report.txt")
    return template.render(**build_context(records, metrics, date_range, dashboard_url))
