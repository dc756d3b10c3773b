# ============================================================================
# SLP SAFETY - Reporting Models & Database Schema
# ============================================================================
# Local bookkeeping for the report job: configuration, run history,
# per-company delivery records and the audit log.  The safety data itself
# lives in the hosted record store, not here.
# ============================================================================

import json
import os
import sqlite3
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

DB_PATH = Path(os.environ.get("SAFETY_DB_PATH", "safety.db"))

_SCHEMA_READY_FOR: Optional[str] = None


# ============================================================================
# Database Schema
# ============================================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS ReportingConfig (
    id INTEGER PRIMARY KEY,
    key TEXT UNIQUE NOT NULL,
    value TEXT,
    value_type TEXT DEFAULT 'string',
    category TEXT DEFAULT 'general',
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_by TEXT
);

CREATE TABLE IF NOT EXISTS ReportAuditLog (
    id INTEGER PRIMARY KEY,
    timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    action TEXT NOT NULL,
    category TEXT DEFAULT 'general',
    user_id TEXT,
    user_name TEXT,
    old_value TEXT,
    new_value TEXT,
    details TEXT,
    ip_address TEXT
);

CREATE TABLE IF NOT EXISTS report_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    report_type TEXT NOT NULL DEFAULT 'weekly',
    title TEXT,
    date_from TEXT,
    date_to TEXT,
    created_by TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    completed_at TIMESTAMP,
    status TEXT DEFAULT 'running',
    companies_processed INTEGER DEFAULT 0,
    summary_json TEXT DEFAULT '{}',
    error_text TEXT
);

CREATE TABLE IF NOT EXISTS report_deliveries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    report_run_id INTEGER REFERENCES report_runs(id) ON DELETE CASCADE,
    company_name TEXT NOT NULL,
    channel TEXT NOT NULL DEFAULT 'email',
    recipients_json TEXT DEFAULT '[]',
    status TEXT DEFAULT 'pending',
    attempts INTEGER DEFAULT 0,
    provider_message_id TEXT,
    error_text TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_report_runs_created ON report_runs(created_at);
CREATE INDEX IF NOT EXISTS idx_report_deliveries_run ON report_deliveries(report_run_id);
CREATE INDEX IF NOT EXISTS idx_audit_log_action ON ReportAuditLog(action);
CREATE INDEX IF NOT EXISTS idx_audit_log_timestamp ON ReportAuditLog(timestamp);
"""


def init_database():
    """Initialize the reporting database tables."""
    global _SCHEMA_READY_FOR
    conn = sqlite3.connect(str(DB_PATH))
    conn.executescript(SCHEMA_SQL)
    conn.commit()
    conn.close()
    _SCHEMA_READY_FOR = str(DB_PATH)


def get_db():
    """Get database connection with row factory."""
    if _SCHEMA_READY_FOR != str(DB_PATH):
        init_database()
    conn = sqlite3.connect(str(DB_PATH))
    conn.row_factory = sqlite3.Row
    return conn


def _loads(text: Optional[str], fallback: Any) -> Any:
    if not text:
        return fallback
    try:
        return json.loads(text)
    except ValueError:
        return fallback


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class ReportRun:
    id: Optional[int] = None
    report_type: str = "weekly"
    title: str = ""
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    created_by: str = ""
    created_at: Optional[str] = None
    completed_at: Optional[str] = None
    status: str = "running"
    companies_processed: int = 0
    summary_json: str = "{}"
    error_text: Optional[str] = None

    def to_dict(self):
        d = asdict(self)
        d["summary"] = _loads(d.pop("summary_json"), {})
        return d


@dataclass
class ReportDelivery:
    id: Optional[int] = None
    report_run_id: Optional[int] = None
    company_name: str = ""
    channel: str = "email"
    recipients_json: str = "[]"
    status: str = "pending"
    attempts: int = 0
    provider_message_id: Optional[str] = None
    error_text: Optional[str] = None
    created_at: Optional[str] = None

    def to_dict(self):
        d = asdict(self)
        d["recipients"] = _loads(d.pop("recipients_json"), [])
        return d


# ============================================================================
# Repositories
# ============================================================================

class RunRepository:
    @staticmethod
    def create(run: ReportRun) -> int:
        conn = get_db()
        cur = conn.execute(
            """INSERT INTO report_runs
               (report_type, title, date_from, date_to, created_by, status)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (run.report_type, run.title, run.date_from, run.date_to, run.created_by, run.status),
        )
        conn.commit()
        rid = cur.lastrowid
        conn.close()
        return rid

    @staticmethod
    def get_by_id(run_id: int) -> Optional[ReportRun]:
        conn = get_db()
        row = conn.execute("SELECT * FROM report_runs WHERE id = ?", (run_id,)).fetchone()
        conn.close()
        return ReportRun(**dict(row)) if row else None

    @staticmethod
    def get_recent(limit: int = 50) -> List[ReportRun]:
        conn = get_db()
        rows = conn.execute(
            "SELECT * FROM report_runs ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        conn.close()
        return [ReportRun(**dict(r)) for r in rows]

    @staticmethod
    def complete(run_id: int, status: str, summary: Dict[str, Any],
                 companies_processed: int = 0, error: str = None):
        conn = get_db()
        conn.execute(
            """UPDATE report_runs
               SET status = ?, summary_json = ?, companies_processed = ?, error_text = ?,
                   completed_at = CURRENT_TIMESTAMP
               WHERE id = ?""",
            (status, json.dumps(summary, default=str), companies_processed, error, run_id))
        conn.commit()
        conn.close()


class DeliveryRepository:
    @staticmethod
    def create(d: ReportDelivery) -> int:
        conn = get_db()
        cur = conn.execute(
            """INSERT INTO report_deliveries
               (report_run_id, company_name, channel, recipients_json, status)
               VALUES (?, ?, ?, ?, ?)""",
            (d.report_run_id, d.company_name, d.channel, d.recipients_json, d.status),
        )
        conn.commit()
        did = cur.lastrowid
        conn.close()
        return did

    @staticmethod
    def update_status(delivery_id: int, status: str, attempts: int = 0,
                      error: str = None, msg_id: str = None):
        conn = get_db()
        conn.execute(
            """UPDATE report_deliveries
               SET status = ?, attempts = ?, error_text = ?, provider_message_id = ?
               WHERE id = ?""",
            (status, attempts, error, msg_id, delivery_id))
        conn.commit()
        conn.close()

    @staticmethod
    def get_for_run(run_id: int) -> List[ReportDelivery]:
        conn = get_db()
        rows = conn.execute(
            "SELECT * FROM report_deliveries WHERE report_run_id = ? ORDER BY id", (run_id,)).fetchall()
        conn.close()
        return [ReportDelivery(**dict(r)) for r in rows]


class AuditRepository:
    @staticmethod
    def log(action, category="general", user_id=None, user_name=None,
            old_value=None, new_value=None, details=None, ip_address=None):
        conn = get_db()
        conn.execute(
            """INSERT INTO ReportAuditLog
               (action, category, user_id, user_name, old_value, new_value, details, ip_address)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (action, category, user_id, user_name, old_value, new_value, details, ip_address))
        conn.commit()
        conn.close()

    @staticmethod
    def get_recent(limit=100, category=None):
        conn = get_db()
        if category:
            rows = conn.execute(
                "SELECT * FROM ReportAuditLog WHERE category = ? ORDER BY id DESC LIMIT ?",
                (category, limit)).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM ReportAuditLog ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        conn.close()
        return [dict(r) for r in rows]
