"""
SLP SAFETY — Configuration & Scheduler Tests
=============================================
Tests: typed config storage, environment overrides, secret masking in the
       audit log, timezone helpers, weekly cron trigger, scheduler gating
"""

from datetime import datetime

from app.reporting.config import (
    ReportingConfig,
    format_time_for_display,
    get_all_config,
    get_config,
    get_timezone,
    parse_time_input,
    set_config,
)
from app.reporting.models import AuditRepository
from app.reporting.scheduler import get_scheduler


class TestReportingConfig:

    def test_defaults(self):
        assert get_config("report_window_days") == 7
        assert get_config("inter_company_delay_seconds") == 1.5
        assert get_config("open_incident_closed_statuses") == ["Closed", "Approved"]
        assert get_config("missing", "fallback") == "fallback"

    def test_values_round_trip_through_database(self):
        set_config("delivery_max_retries", 4)
        set_config("test_mode", True)
        set_config("employee_census", {"Acme": 40})
        ReportingConfig.reset_cache()
        assert get_config("delivery_max_retries") == 4
        assert get_config("test_mode") is True
        assert get_config("employee_census") == {"Acme": 40}

    def test_env_overrides_stored_value(self, monkeypatch):
        set_config("resend_api_key", "stored")
        monkeypatch.setenv("RESEND_API_KEY", "from-env")
        assert get_config("resend_api_key") == "from-env"

    def test_change_audited(self):
        set_config("report_time", "07:30", user="admin")
        entry = AuditRepository.get_recent(1, "config")[0]
        assert entry["details"] == "Changed report_time"
        assert entry["old_value"] == "06:00"
        assert entry["new_value"] == "07:30"
        assert entry["user_name"] == "admin"

    def test_secrets_masked_in_audit(self):
        set_config("smtp_pass", "hunter2")
        entry = AuditRepository.get_recent(1, "config")[0]
        assert entry["new_value"] == "***"

    def test_unchanged_value_not_audited(self):
        set_config("report_day_of_week", "mon")
        assert AuditRepository.get_recent(10, "config") == []

    def test_init_defaults_keeps_existing(self):
        set_config("report_window_days", 14)
        ReportingConfig.init_defaults()
        assert get_config("report_window_days") == 14

    def test_get_all(self):
        assert "resend_api_key" in get_all_config()
        assert set(ReportingConfig.get_all("schedule")) == {
            "report_day_of_week", "report_time", "report_window_days"}


class TestTimeHelpers:

    def test_timezone(self):
        assert str(get_timezone()) == "America/Anchorage"

    def test_unknown_timezone_falls_back(self):
        set_config("timezone", "Mars/Olympus")
        assert str(get_timezone()) == "America/Anchorage"

    def test_parse_time_input(self):
        assert parse_time_input("06:00") == (6, 0)
        assert parse_time_input("18:45") == (18, 45)
        assert parse_time_input("garbage") == (6, 0)
        assert parse_time_input(None) == (6, 0)

    def test_format_naive_as_local(self):
        assert format_time_for_display(datetime(2026, 1, 12, 6, 0)) == "2026-01-12 06:00:00 AKST"


class TestScheduler:

    def test_weekly_trigger_default(self):
        trigger = get_scheduler().build_trigger()
        fields = {f.name: str(f) for f in trigger.fields}
        assert fields["day_of_week"] == "mon"
        assert fields["hour"] == "6"
        assert fields["minute"] == "0"
        assert str(trigger.timezone) == "America/Anchorage"

    def test_weekly_trigger_from_config(self):
        set_config("report_day_of_week", "fri")
        set_config("report_time", "14:30")
        fields = {f.name: str(f) for f in get_scheduler().build_trigger().fields}
        assert (fields["day_of_week"], fields["hour"], fields["minute"]) == ("fri", "14", "30")

    def test_start_requires_enabled(self):
        scheduler = get_scheduler()
        assert scheduler.start(user="test") is False
        assert scheduler.is_running() is False
        assert scheduler.get_status()["next_report"] is None

    def test_run_now_uses_engine(self, engine, store, channel):
        store.recipients.append({"company_name": "Acme", "email": "a@acme.com", "is_active": True})
        result = get_scheduler().run_now(user="admin@slpalaska.com")
        assert result["success"] is True
        assert len(channel.sent) == 1
        assert get_scheduler().get_status()["last_result"]["runId"] == result["runId"]
        actions = [e["action"] for e in AuditRepository.get_recent(10, "scheduler")]
        assert "report_manual_trigger" in actions
