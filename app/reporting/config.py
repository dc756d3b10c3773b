# ============================================================================
# SLP SAFETY - Configuration Management
# ============================================================================
# Database-backed configuration with type casting and defaults.
# Deployment secrets may come from the environment, which always wins
# over stored values.  All schedule times use the configured timezone
# (America/Anchorage by default).
# ============================================================================

import json
import logging
import os
from datetime import datetime
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import get_db, AuditRepository

logger = logging.getLogger("reporting.config")

ALASKA = ZoneInfo("America/Anchorage")

# Default configuration values: key -> (default, value_type, category)
DEFAULT_CONFIG = {
    # Timezone
    "timezone": ("America/Anchorage", "string", "general"),

    # Scheduler state
    "scheduler_enabled": (False, "bool", "scheduler"),
    "scheduler_was_running": (False, "bool", "scheduler"),

    # Weekly report schedule
    "report_day_of_week": ("mon", "string", "schedule"),
    "report_time": ("06:00", "string", "schedule"),
    "report_window_days": (7, "int", "schedule"),

    # Batch pacing
    "inter_company_delay_seconds": (1.5, "float", "delivery"),
    "delivery_max_retries": (2, "int", "delivery"),
    "delivery_retry_delay_seconds": (5.0, "float", "delivery"),

    # Record store
    "supabase_url": ("", "string", "datastore"),
    "supabase_key": ("", "string", "datastore"),
    "fetch_timeout_seconds": (30, "int", "datastore"),

    # Email configuration
    "email_provider": ("resend", "string", "email"),
    "resend_api_key": ("", "string", "email"),
    "smtp_host": ("smtp.gmail.com", "string", "email"),
    "smtp_port": (587, "int", "email"),
    "smtp_user": ("", "string", "email"),
    "smtp_pass": ("", "string", "email"),
    "from_email": ("reports@slpalaska.com", "string", "email"),
    "from_name": ("SLP Alaska Safety", "string", "email"),
    "report_bcc": ([], "json", "email"),
    "test_mode": (False, "bool", "email"),
    "test_recipient": ("", "string", "email"),

    # Scorecard
    "employee_census": ({}, "json", "metrics"),
    "open_incident_closed_statuses": (["Closed", "Approved"], "json", "metrics"),
    "dashboard_url": ("https://slp-safety.vercel.app", "string", "metrics"),
    "dashboard_window_days": (30, "int", "metrics"),

    # Access
    "session_secret": ("change-me", "string", "access"),
    "company_access_rules": ([
        {"match": "slpalaska.com", "company": "ALL", "type": "domain"},
        {"match": "chosencorp.com", "company": "Chosen Construction", "type": "domain"},
        {"match": "magtecalaska.com", "company": "MagTec Alaska", "type": "domain"},
        {"match": "pollard", "company": "Pollard Wireline", "type": "keyword"},
        {"match": "ake-line.com", "company": "AKE-Line", "type": "domain"},
        {"match": "yjosllc.com", "company": "Yellowjacket", "type": "domain"},
        {"match": "gbr", "company": "GBR Equipment", "type": "keyword"},
    ], "json", "access"),
}

# Environment variables that override stored values
ENV_OVERRIDES = {
    "supabase_url": "SUPABASE_URL",
    "supabase_key": "SUPABASE_KEY",
    "resend_api_key": "RESEND_API_KEY",
    "session_secret": "SAFETY_SESSION_SECRET",
}

SECRET_SUFFIXES = ("_key", "_pass", "_secret")

TRUTHY = ("true", "1", "yes", "on")


def _decode(raw: Optional[str], value_type: str) -> Any:
    """Stored text -> typed value.  Unparseable numbers and JSON decode to zero / empty."""
    if raw is None:
        return None
    if value_type == "bool":
        return raw.strip().lower() in TRUTHY
    if value_type in ("int", "float"):
        number = int if value_type == "int" else float
        try:
            return number(raw)
        except ValueError:
            return number()
    if value_type == "json":
        try:
            return json.loads(raw)
        except ValueError:
            return {}
    return raw


def _encode(value: Any, value_type: str) -> str:
    if value is None:
        return ""
    if value_type == "bool":
        return "true" if value else "false"
    if value_type == "json":
        return json.dumps(value)
    return str(value)


def _infer_type(value: Any) -> str:
    # bool first: it is a subclass of int
    for py_type, value_type in ((bool, "bool"), (int, "int"), (float, "float"), ((dict, list), "json")):
        if isinstance(value, py_type):
            return value_type
    return "string"


class ReportingConfig:
    """
    Typed settings stored in the ReportingConfig table.

    Values are read through a process-wide cache seeded from
    DEFAULT_CONFIG; every change is written through to sqlite and
    recorded in the audit log.
    """

    _cache: Dict[str, Any] = {}
    _cache_loaded: bool = False

    @classmethod
    def _ensure_cache(cls):
        if cls._cache_loaded:
            return
        cls._cache = {key: spec[0] for key, spec in DEFAULT_CONFIG.items()}
        conn = get_db()
        for row in conn.execute("SELECT key, value, value_type FROM ReportingConfig"):
            cls._cache[row["key"]] = _decode(row["value"], row["value_type"])
        conn.close()
        cls._cache_loaded = True

    @staticmethod
    def _from_env(key: str) -> Optional[Any]:
        raw = os.environ.get(ENV_OVERRIDES.get(key, ""), "")
        if not raw:
            return None
        spec = DEFAULT_CONFIG.get(key)
        return _decode(raw, spec[1] if spec else "string")

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        override = cls._from_env(key)
        if override is not None:
            return override
        cls._ensure_cache()
        return cls._cache.get(key, default)

    @classmethod
    def set(cls, key: str, value: Any, value_type: str = None,
            category: str = "general", user: str = None) -> bool:
        """Store *value* under *key*; known keys keep their declared type and category."""
        cls._ensure_cache()
        if value_type is None:
            if key in DEFAULT_CONFIG:
                _, value_type, category = DEFAULT_CONFIG[key]
            else:
                value_type = _infer_type(value)

        previous = cls._cache.get(key)
        conn = get_db()
        conn.execute(
            """INSERT INTO ReportingConfig (key, value, value_type, category, updated_by)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET
                   value = excluded.value,
                   value_type = excluded.value_type,
                   category = excluded.category,
                   updated_by = excluded.updated_by,
                   updated_at = CURRENT_TIMESTAMP""",
            (key, _encode(value, value_type), value_type, category, user),
        )
        conn.commit()
        conn.close()
        cls._cache[key] = value

        if previous != value:
            masked = key.endswith(SECRET_SUFFIXES)
            AuditRepository.log(
                action="config_changed",
                category="config",
                user_name=user,
                old_value="***" if masked else str(previous),
                new_value="***" if masked else str(value),
                details=f"Changed {key}",
            )
        return True

    @classmethod
    def get_all(cls, category: str = None) -> Dict[str, Any]:
        """All values, or only the declared keys of one category."""
        cls._ensure_cache()
        if category is None:
            return dict(cls._cache)
        return {
            key: cls._cache.get(key, spec[0])
            for key, spec in DEFAULT_CONFIG.items()
            if spec[2] == category
        }

    @classmethod
    def reset_cache(cls):
        cls._cache = {}
        cls._cache_loaded = False

    @classmethod
    def init_defaults(cls):
        """Write any declared key missing from the table; existing rows are left alone."""
        conn = get_db()
        conn.executemany(
            """INSERT OR IGNORE INTO ReportingConfig (key, value, value_type, category)
               VALUES (?, ?, ?, ?)""",
            [
                (key, _encode(default, value_type), value_type, category)
                for key, (default, value_type, category) in DEFAULT_CONFIG.items()
            ],
        )
        conn.commit()
        conn.close()
        cls.reset_cache()


def get_config(key: str, default: Any = None) -> Any:
    return ReportingConfig.get(key, default)


def set_config(key: str, value: Any, user: str = None) -> bool:
    return ReportingConfig.set(key, value, user=user)


def get_all_config() -> Dict[str, Any]:
    return ReportingConfig.get_all()


# ============================================================================
# Time helpers
# ============================================================================

def get_timezone() -> ZoneInfo:
    """The configured zone; unknown names fall back to Alaska time."""
    name = get_config("timezone", "America/Anchorage")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, using America/Anchorage", name)
        return ALASKA


def get_local_now() -> datetime:
    return datetime.now(get_timezone())


def format_time_for_display(dt: datetime = None) -> str:
    """'YYYY-mm-dd HH:MM:SS TZ' in the configured zone; naive values are taken as local."""
    tz = get_timezone()
    if dt is None:
        dt = datetime.now(tz)
    elif dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz)
    else:
        dt = dt.astimezone(tz)
    return dt.strftime("%Y-%m-%d %H:%M:%S %Z")


def parse_time_input(time_str: str) -> tuple:
    """'HH:MM' -> (hour, minute); anything unparseable means 06:00."""
    try:
        hour, minute = time_str.split(":")[:2]
        return (int(hour), int(minute))
    except (AttributeError, ValueError):
        return (6, 0)
