# ============================================================================
# SLP SAFETY - Weekly Report Engine
# ============================================================================
# Fetches each company's records, derives its scorecard, renders the
# weekly email and delivers it.
#
#   fetch_company_records  fan-out/fan-in over every record category
#   company_metrics        records + MetricsBundle for the dashboard views,
#                          trended against the window before, optionally
#                          narrowed to one location or calendar year
#   company_true_cost      incident cost roll-up for the dashboard
#   run_weekly_reports     the scheduled batch: one email per company,
#                          drained through a RateLimitedQueue
#
# Failure model
# -------------
#   one category fetch fails   -> that category is empty, warning logged
#   one company's send fails   -> error outcome for that company, loop goes on
#   recipient list unavailable -> whole batch fails with {success: False}
# ============================================================================

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from app.datastore import EXCLUDE, INCLUDE, DataStoreError, RecordStore, get_store
from app.datastore.base import (
    BBS_OBSERVATIONS,
    HAZARD_IDS,
    HSE_CONTACTS,
    INCIDENTS,
    INSPECTION_CATEGORIES,
    LSR_CATEGORIES,
    NEAR_MISSES,
    PROPERTY_DAMAGE,
    SAFETY_MEETINGS,
    SAIL_ITEMS,
    THAS,
    TOOLBOX_MEETINGS,
)
from app.metrics import CompanyRecords, MetricsBundle, TrueCost, derive_metrics, true_cost
from app.metrics.aggregator import (
    DEFAULT_CLOSED_INCIDENT_STATUSES,
    OPEN_SAIL_STATUSES,
    records_at_location,
)

from .config import get_config, get_local_now
from .delivery import DeliveryChannel, DeliveryError, DeliveryResult, EmailDelivery
from .models import (
    AuditRepository,
    DeliveryRepository,
    ReportDelivery,
    ReportRun,
    RunRepository,
)
from .renderer import render_weekly_report, render_weekly_text, weekly_subject
from .throttle import RateLimitedQueue

logger = logging.getLogger("reporting.engine")

MAX_FETCH_WORKERS = 8

# Informational categories: a failing fetch never fails a strict fetch
SOFT_FIELDS = frozenset({"inspections"})

# CompanyRecords attribute -> category fetched over the window
WINDOW_FIELDS = (
    ("incidents", INCIDENTS),
    ("sail_items", SAIL_ITEMS),
    ("bbs_observations", BBS_OBSERVATIONS),
    ("near_misses", NEAR_MISSES),
    ("hazard_ids", HAZARD_IDS),
    ("thas", THAS),
    ("safety_meetings", SAFETY_MEETINGS),
    ("toolbox_meetings", TOOLBOX_MEETINGS),
    ("hse_contacts", HSE_CONTACTS),
    ("property_damage", PROPERTY_DAMAGE),
)


class ReportSetupError(Exception):
    """The batch cannot start (recipient directory unavailable, bad config)."""


# ============================================================================
# Window / outcome types
# ============================================================================

@dataclass(frozen=True)
class ReportWindow:
    start: date
    end: date

    @staticmethod
    def _label(d: date) -> str:
        return d.strftime("%b %d, %Y")

    def to_dict(self) -> Dict[str, str]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "startFormatted": self._label(self.start),
            "endFormatted": self._label(self.end),
        }

    def previous(self) -> "ReportWindow":
        """The window of the same length ending the day before this one starts."""
        end = self.start - timedelta(days=1)
        return ReportWindow(start=end - (self.end - self.start), end=end)


def report_window(now: datetime, days: int = 7) -> ReportWindow:
    """The *days* days ending today; the end date is inclusive through 23:59:59."""
    end = now.date()
    return ReportWindow(start=end - timedelta(days=days), end=end)


def year_window(year: int) -> ReportWindow:
    return ReportWindow(start=date(year, 1, 1), end=date(year, 12, 31))


@dataclass
class CompanyOutcome:
    company: str
    status: str
    recipients: int = 0
    message_id: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status == "sent"

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {
                "company": self.company,
                "status": self.status,
                "recipients": self.recipients,
                "id": self.message_id,
            }
        return {"company": self.company, "status": self.status, "error": self.error}


# ============================================================================
# Engine
# ============================================================================

class ReportEngine:
    """Orchestrates record fetching, scoring, rendering and delivery.

    ``store`` and ``channel`` default to the configured record store and
    email channel.  ``sleep`` / ``clock`` pace retries and the
    inter-company delay; tests pass fakes.
    """

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        channel: Optional[DeliveryChannel] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self.channel = channel or EmailDelivery()
        self._sleep = sleep
        self._clock = clock

    @property
    def store(self) -> RecordStore:
        return self._store or get_store()

    # ------------------------------------------------------------------ #
    # Fetch
    # ------------------------------------------------------------------ #

    @staticmethod
    def closed_incident_statuses() -> Tuple[str, ...]:
        statuses = get_config("open_incident_closed_statuses")
        if not statuses:
            return DEFAULT_CLOSED_INCIDENT_STATUSES
        return tuple(statuses)

    def _fetch_tasks(self, company: str, date_from: date, date_to: date,
                     include_open: bool) -> Dict[Tuple[str, str], Callable[[], List[Dict]]]:
        store = self.store
        tasks: Dict[Tuple[str, str], Callable[[], List[Dict]]] = {}

        for attr, category in WINDOW_FIELDS:
            tasks[(attr, category.key)] = (
                lambda c=category: store.fetch_records(c, company, date_from, date_to)
            )
        for audit_type, category in LSR_CATEGORIES.items():
            tasks[("lsr_audits", audit_type)] = (
                lambda c=category: store.fetch_records(c, company, date_from, date_to)
            )
        for kind, category in INSPECTION_CATEGORIES.items():
            tasks[("inspections", kind)] = (
                lambda c=category: store.fetch_records(c, company, date_from, date_to)
            )
        if include_open:
            closed = self.closed_incident_statuses()
            tasks[("open_incidents", INCIDENTS.key)] = (
                lambda: store.fetch_open_records(INCIDENTS, company, closed, EXCLUDE)
            )
            tasks[("open_sail_items", SAIL_ITEMS.key)] = (
                lambda: store.fetch_open_records(SAIL_ITEMS, company, OPEN_SAIL_STATUSES, INCLUDE)
            )
        return tasks

    def fetch_company_records(
        self,
        company: str,
        date_from: date,
        date_to: date,
        include_open: bool = True,
        strict: bool = False,
    ) -> CompanyRecords:
        """Fetch every category for one company in parallel.

        With ``strict`` False a failing category becomes an empty list; with
        ``strict`` True the first failure is raised after all fetches finish.
        Inspection categories degrade to empty lists either way.
        """
        tasks = self._fetch_tasks(company, date_from, date_to, include_open)
        records = CompanyRecords(company_name=company)
        first_error: Optional[Exception] = None

        with ThreadPoolExecutor(max_workers=min(MAX_FETCH_WORKERS, len(tasks))) as pool:
            futures = {key: pool.submit(fn) for key, fn in tasks.items()}

        for (attr, label), future in futures.items():
            try:
                rows = future.result()
            except Exception as e:
                logger.warning("Fetch %s for %s failed: %s", label, company, e)
                if first_error is None and attr not in SOFT_FIELDS:
                    first_error = e
                rows = []
            if attr in ("lsr_audits", "inspections"):
                getattr(records, attr)[label] = rows
            else:
                setattr(records, attr, rows)

        if strict and first_error is not None:
            raise first_error
        return records

    # ------------------------------------------------------------------ #
    # Derive
    # ------------------------------------------------------------------ #

    def derive(self, records: CompanyRecords, now: Optional[datetime] = None,
               previous: Optional[CompanyRecords] = None) -> MetricsBundle:
        return derive_metrics(
            records,
            now=now,
            employee_census=get_config("employee_census") or {},
            closed_incident_statuses=self.closed_incident_statuses(),
            previous=previous,
        )

    def company_metrics(
        self,
        company: str,
        days: Optional[int] = None,
        now: Optional[datetime] = None,
        strict: bool = True,
        location: Optional[str] = None,
        year: Optional[int] = None,
    ) -> Tuple[CompanyRecords, MetricsBundle]:
        """Records and scorecard for the dashboard views.

        The window is the last *days* days, or the calendar *year* when one
        is given.  Trends compare against the window just before it (the
        previous year for a *year* window).  The returned records cover
        every location; the scorecard only *location* when one is given.
        """
        if now is None:
            now = get_local_now()
        if year is not None:
            window, prior_window = year_window(year), year_window(year - 1)
        else:
            if days is None:
                days = get_config("dashboard_window_days", 30)
            window = report_window(now, days)
            prior_window = window.previous()

        records = self.fetch_company_records(company, window.start, window.end, strict=strict)
        previous = self.fetch_company_records(
            company, prior_window.start, prior_window.end, include_open=False, strict=strict)
        metrics = self.derive(
            records_at_location(records, location),
            now,
            previous=records_at_location(previous, location),
        )
        return records, metrics

    def company_true_cost(self, company: str, location: Optional[str] = None,
                          year: Optional[int] = None) -> TrueCost:
        """Incident cost roll-up; an unavailable cost table reads as no costs."""
        try:
            costs = self.store.fetch_incident_costs(company, location=location, year=year)
        except DataStoreError as e:
            logger.warning("Incident costs for %s unavailable: %s", company, e)
            return TrueCost()
        return true_cost(costs)

    # ------------------------------------------------------------------ #
    # Deliver
    # ------------------------------------------------------------------ #

    def resolve_recipients(self, emails: List[str]) -> List[str]:
        """Test mode sends only to the reviewer; live mode appends the BCC list."""
        if get_config("test_mode", False):
            reviewer = get_config("test_recipient")
            if not reviewer:
                raise ReportSetupError("test_mode is on but test_recipient is empty")
            return [reviewer]
        result = list(emails)
        for extra in get_config("report_bcc") or []:
            if extra not in result:
                result.append(extra)
        return result

    def send_with_retry(
        self,
        recipients: List[str],
        subject: str,
        body_html: str,
        body_text: Optional[str] = None,
    ) -> DeliveryResult:
        """Send once plus up to ``delivery_max_retries`` retries."""
        max_retries = max(0, int(get_config("delivery_max_retries", 2)))
        retry_delay = float(get_config("delivery_retry_delay_seconds", 5.0))
        last_error: Optional[DeliveryError] = None

        for attempt in range(max_retries + 1):
            if attempt > 0:
                logger.info("Delivery retry %d/%d to %s", attempt, max_retries, recipients)
                self._sleep(retry_delay)
            try:
                result = self.channel.send(recipients, subject, body_html, body_text)
                result.attempts = attempt + 1
                return result
            except DeliveryError as e:
                logger.error("Delivery attempt %d failed: %s", attempt + 1, e)
                last_error = e

        raise DeliveryError(
            f"{last_error} (after {max_retries + 1} attempts)",
            result=DeliveryResult(
                success=False,
                recipients=list(recipients),
                channel=self.channel.channel_name,
                error=str(last_error),
                attempts=max_retries + 1,
            ),
        )

    def process_company(
        self,
        company: str,
        emails: List[str],
        window: ReportWindow,
        now: datetime,
        run_id: Optional[int] = None,
    ) -> CompanyOutcome:
        """Fetch, score, render and send one company's report.

        Any failure, bookkeeping included, becomes an error outcome for this
        company only.
        """
        recipients: List[str] = []
        delivery_id = None
        try:
            recipients = self.resolve_recipients(emails)
            if run_id is not None:
                delivery_id = DeliveryRepository.create(ReportDelivery(
                    report_run_id=run_id,
                    company_name=company,
                    channel=self.channel.channel_name,
                    recipients_json=json.dumps(recipients),
                ))
            records = self.fetch_company_records(company, window.start, window.end)
            metrics = self.derive(records, now)
            date_range = window.to_dict()
            dashboard_url = get_config("dashboard_url", "")
            html = render_weekly_report(records, metrics, date_range, dashboard_url)
            text = render_weekly_text(records, metrics, date_range, dashboard_url)
            result = self.send_with_retry(recipients, weekly_subject(company, date_range), html, text)
        except DeliveryError as e:
            attempts = e.result.attempts if e.result else 1
            return self._failed(company, str(e), attempts, delivery_id)
        except Exception as e:
            logger.exception("Report for %s failed", company)
            return self._failed(company, str(e), 0, delivery_id)

        if delivery_id is not None:
            try:
                DeliveryRepository.update_status(
                    delivery_id, "sent", attempts=result.attempts, msg_id=result.message_id)
            except Exception:
                logger.exception("Could not record delivery %s for %s", delivery_id, company)
        logger.info("Weekly report sent for %s to %d recipient(s)", company, len(recipients))
        AuditRepository.log(
            action="report_sent",
            category="reports",
            details=f"{company}: {len(recipients)} recipient(s), id={result.message_id}",
        )
        return CompanyOutcome(
            company=company,
            status="sent",
            recipients=len(recipients),
            message_id=result.message_id,
            attempts=result.attempts,
        )

    @staticmethod
    def _failed(company: str, error: str, attempts: int, delivery_id: Optional[int]) -> CompanyOutcome:
        logger.error("Weekly report for %s failed: %s", company, error)
        if delivery_id is not None:
            try:
                DeliveryRepository.update_status(delivery_id, "failed", attempts=attempts, error=error)
            except Exception:
                logger.exception("Could not record delivery %s for %s", delivery_id, company)
        AuditRepository.log(
            action="report_failed",
            category="reports",
            details=f"{company}: {error}",
        )
        return CompanyOutcome(company=company, status="error", error=error, attempts=attempts)

    # ------------------------------------------------------------------ #
    # Batch
    # ------------------------------------------------------------------ #

    def _load_recipients(self) -> Dict[str, List[str]]:
        try:
            return self.store.active_recipients()
        except DataStoreError as e:
            raise ReportSetupError(f"Could not load report recipients: {e}") from e

    def run_weekly_reports(self, created_by: str = "scheduler", now: Optional[datetime] = None) -> Dict[str, Any]:
        """Send the weekly report to every company with active recipients.

        Returns ``{success, runId, dateRange, companiesProcessed, results}``
        or ``{success: False, error}`` when the batch cannot start.
        """
        if now is None:
            now = get_local_now()
        window = report_window(now, get_config("report_window_days", 7))
        date_range = window.to_dict()

        run_id = RunRepository.create(ReportRun(
            report_type="weekly",
            title=f"Weekly Safety Reports {date_range['startFormatted']} - {date_range['endFormatted']}",
            date_from=date_range["start"],
            date_to=date_range["end"],
            created_by=created_by,
        ))
        logger.info("Weekly report batch %d started by %s for %s..%s",
                    run_id, created_by, date_range["start"], date_range["end"])
        AuditRepository.log(
            action="report_batch_started",
            category="reports",
            user_name=created_by,
            details=f"Run {run_id}: {date_range['start']}..{date_range['end']}",
        )

        try:
            companies = self._load_recipients()
            if get_config("test_mode", False) and not get_config("test_recipient"):
                raise ReportSetupError("test_mode is on but test_recipient is empty")
        except ReportSetupError as e:
            logger.error("Weekly report batch %d aborted: %s", run_id, e)
            summary = {"success": False, "runId": run_id, "error": str(e)}
            RunRepository.complete(run_id, "failed", summary, error=str(e))
            AuditRepository.log(
                action="report_batch_failed",
                category="reports",
                user_name=created_by,
                details=f"Run {run_id}: {e}",
            )
            return summary

        queue = RateLimitedQueue(
            interval=float(get_config("inter_company_delay_seconds", 1.5)),
            items=companies.items(),
            clock=self._clock,
            sleep=self._sleep,
        )
        outcomes: List[CompanyOutcome] = queue.drain(
            lambda item: self.process_company(item[0], item[1], window, now, run_id)
        )

        failed = sum(1 for o in outcomes if not o.ok)
        summary = {
            "success": True,
            "runId": run_id,
            "dateRange": date_range,
            "testMode": bool(get_config("test_mode", False)),
            "companiesProcessed": len(outcomes),
            "results": [o.to_dict() for o in outcomes],
        }
        status = "completed" if failed == 0 else "completed_with_errors"
        RunRepository.complete(run_id, status, summary, companies_processed=len(outcomes))

        logger.info("Weekly report batch %d finished: %d sent, %d failed",
                    run_id, len(outcomes) - failed, failed)
        AuditRepository.log(
            action="report_batch_completed",
            category="reports",
            user_name=created_by,
            details=f"Run {run_id}: {len(outcomes) - failed} sent, {failed} failed",
        )
        return summary


# ============================================================================
# Singleton
# ============================================================================

_engine: Optional[ReportEngine] = None


def get_engine() -> ReportEngine:
    """Return the module-level ReportEngine singleton."""
    global _engine
    if _engine is None:
        _engine = ReportEngine()
    return _engine


def set_engine(engine: Optional[ReportEngine]) -> None:
    global _engine
    _engine = engine
