# ============================================================================
# SLP SAFETY - Weekly Report Scheduler (APScheduler-based)
# ============================================================================
# One cron job fires the weekly batch, Monday 06:00 Alaska time unless
# report_day_of_week / report_time say otherwise.  Whether the job was
# running is persisted so a restart picks up where it left off.
# ============================================================================

import logging
import threading
from typing import Any, Dict, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from .config import (
    format_time_for_display,
    get_config,
    get_local_now,
    get_timezone,
    parse_time_input,
    set_config,
)
from .models import AuditRepository

logger = logging.getLogger("reporting.scheduler")

WEEKLY_JOB_ID = "weekly_safety_reports"


class ReportScheduler:
    """
    Process-wide owner of the BackgroundScheduler.

    The APScheduler instance is created but not started; it
    only starts once ``scheduler_enabled`` is set and start() is called.
    """

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return
        self._initialized = True
        self._running = False
        self._last_result: Optional[Dict[str, Any]] = None

        self._scheduler = BackgroundScheduler(
            timezone=get_timezone(),
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                # runs up to an hour late still fire
                "misfire_grace_time": 3600,
            },
        )
        self._scheduler.add_listener(self._job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

    def _job_listener(self, event):
        if event.exception is None:
            logger.info("Job %s finished", event.job_id)
            return
        logger.error("Job %s raised: %s", event.job_id, event.exception)
        AuditRepository.log(
            action="scheduler_job_error",
            category="scheduler",
            details=f"{event.job_id}: {event.exception}",
        )

    # ------------------------------------------------------------------
    # Weekly job
    # ------------------------------------------------------------------

    def build_trigger(self) -> CronTrigger:
        """Cron trigger for the configured weekday and HH:MM, in the configured zone."""
        day = get_config("report_day_of_week", "mon") or "mon"
        hour, minute = parse_time_input(get_config("report_time", "06:00"))
        return CronTrigger(day_of_week=day, hour=hour, minute=minute, timezone=get_timezone())

    def _run_scheduled_batch(self):
        from .engine import get_engine

        logger.info("Scheduled weekly report batch starting")
        self._last_result = get_engine().run_weekly_reports(created_by="scheduler")
        if not self._last_result.get("success"):
            logger.error("Scheduled weekly report batch failed: %s", self._last_result.get("error"))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, user: str = None) -> bool:
        """Schedule the weekly job.  False when scheduling is disabled in config."""
        if not get_config("scheduler_enabled", False):
            logger.warning("scheduler_enabled is off; not starting")
            return False
        if self._running:
            return True

        self._scheduler.add_job(
            self._run_scheduled_batch,
            trigger=self.build_trigger(),
            id=WEEKLY_JOB_ID,
            replace_existing=True,
        )
        if self._scheduler.running:
            self._scheduler.resume()
        else:
            self._scheduler.start()
        self._running = True
        set_config("scheduler_was_running", True, user=user)

        next_run = self.get_next_report_time()
        logger.info("Weekly report scheduler started; next run %s", next_run)
        AuditRepository.log(
            action="scheduler_started",
            category="scheduler",
            user_name=user,
            details=f"Next run: {next_run}",
        )
        return True

    def stop(self, user: str = None) -> bool:
        if not self._running:
            return True
        if self._scheduler.running:
            self._scheduler.pause()
        self._running = False
        set_config("scheduler_was_running", False, user=user)

        logger.info("Weekly report scheduler paused at %s", format_time_for_display())
        AuditRepository.log(action="scheduler_stopped", category="scheduler", user_name=user)
        return True

    def shutdown(self):
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._running = False

    def is_running(self) -> bool:
        return self._running and self._scheduler.running

    # ------------------------------------------------------------------
    # Manual trigger / status
    # ------------------------------------------------------------------

    def run_now(self, user: str = None) -> Dict[str, Any]:
        """Run the weekly batch in the caller's thread and return its summary."""
        from .engine import get_engine

        logger.info("Weekly report batch triggered manually by %s", user)
        AuditRepository.log(action="report_manual_trigger", category="scheduler", user_name=user)
        self._last_result = get_engine().run_weekly_reports(created_by=user or "manual")
        return self._last_result

    def get_next_report_time(self) -> Optional[str]:
        if not self.is_running():
            return None
        job = self._scheduler.get_job(WEEKLY_JOB_ID)
        if job is None or job.next_run_time is None:
            return None
        return format_time_for_display(job.next_run_time)

    def get_status(self) -> Dict[str, Any]:
        return {
            "enabled": get_config("scheduler_enabled", False),
            "running": self.is_running(),
            "current_time": format_time_for_display(get_local_now()),
            "timezone": str(get_timezone()),
            "report_day_of_week": get_config("report_day_of_week", "mon"),
            "report_time": get_config("report_time", "06:00"),
            "next_report": self.get_next_report_time(),
            "last_result": self._last_result,
        }


# ============================================================================
# Singleton access + initialization
# ============================================================================

_scheduler_instance: Optional[ReportScheduler] = None


def get_scheduler() -> ReportScheduler:
    global _scheduler_instance
    if _scheduler_instance is None:
        _scheduler_instance = ReportScheduler()
    return _scheduler_instance


def init_scheduler() -> ReportScheduler:
    """Startup hook: resume the schedule if it was running at the last shutdown."""
    scheduler = get_scheduler()
    if not get_config("scheduler_enabled", False):
        logger.info("Weekly report scheduler disabled")
    elif get_config("scheduler_was_running", False):
        logger.info("Resuming weekly report scheduler")
        scheduler.start(user="system")
    else:
        logger.info("Weekly report scheduler enabled but idle until started")
    return scheduler
