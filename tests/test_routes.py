"""
SLP SAFETY — HTTP Route Tests
==============================
Tests: sign-in and company access, signed-in dashboard, token-gated view,
       metrics JSON, admin-only reporting API
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.datastore import DataStoreError, ViewToken
from app.datastore.base import BBS_OBSERVATIONS, THAS
from app.reporting.models import AuditRepository

from tests.conftest import FakeChannel, config_set, iso, sign_in

ADMIN = "ops@slpalaska.com"
CLIENT_USER = "dana@chosencorp.com"
CLIENT_COMPANY = "Chosen Construction"


def recent():
    return iso(datetime.now(timezone.utc) - timedelta(days=1))


def audit_actions(category="access"):
    return [e["action"] for e in AuditRepository.get_recent(50, category)]


# ============================================================================
# Sign-in
# ============================================================================

class TestLogin:

    def test_login_page(self, client):
        r = client.get("/login")
        assert r.status_code == 200
        assert 'name="password"' in r.text

    def test_success_redirects_home(self, client, store):
        r = sign_in(client, store, CLIENT_USER)
        assert r.status_code == 303
        assert r.headers["location"] == "/"
        assert "login" in audit_actions()

    def test_email_normalized(self, client, store):
        store.users[CLIENT_USER] = "pw123456"
        r = client.post("/login", data={"email": "  Dana@ChosenCorp.com ", "password": "pw123456"},
                        follow_redirects=False)
        assert r.status_code == 303

    def test_bad_password(self, client, store):
        store.users[CLIENT_USER] = "right"
        r = client.post("/login", data={"email": CLIENT_USER, "password": "wrong"},
                        follow_redirects=False)
        assert r.status_code == 401
        assert "Invalid email or password" in r.text

    def test_unknown_domain_denied(self, client, store):
        r = sign_in(client, store, "someone@example.com")
        assert r.status_code == 403
        assert "Your email domain is not authorized" in r.text
        assert "login_denied" in audit_actions()
        # No session was created.
        assert client.get("/", follow_redirects=False).status_code == 302

    def test_backend_unavailable(self, client, store, monkeypatch):
        def down(email, password):
            raise DataStoreError("auth down", status=503)

        monkeypatch.setattr(store, "sign_in", down)
        r = client.post("/login", data={"email": CLIENT_USER, "password": "x"}, follow_redirects=False)
        assert r.status_code == 503

    def test_login_page_redirects_when_signed_in(self, client, store):
        sign_in(client, store, CLIENT_USER)
        r = client.get("/login", follow_redirects=False)
        assert r.status_code == 302
        assert r.headers["location"] == "/"

    def test_logout_clears_session(self, client, store):
        sign_in(client, store, CLIENT_USER)
        r = client.get("/logout", follow_redirects=False)
        assert r.headers["location"] == "/login"
        assert client.get("/", follow_redirects=False).status_code == 302

    def test_access_rules_from_config(self, client, store):
        config_set("company_access_rules", [{"match": "example.com", "company": "Example Co", "type": "domain"}])
        assert sign_in(client, store, "someone@example.com").status_code == 303
        assert sign_in(client, store, CLIENT_USER).status_code == 403


# ============================================================================
# Signed-in dashboard
# ============================================================================

class TestDashboard:

    def test_requires_session(self, client):
        r = client.get("/", follow_redirects=False)
        assert r.status_code == 302
        assert r.headers["location"] == "/login"

    def test_client_sees_own_company(self, client, store):
        store.add(THAS, {"company": CLIENT_COMPANY, "submitted_by": "Dana", "created_at": recent()})
        sign_in(client, store, CLIENT_USER)
        r = client.get("/")
        assert r.status_code == 200
        assert CLIENT_COMPANY in r.text
        assert "Predictive Risk" in r.text
        assert '<select id="company"' not in r.text

    def test_client_cannot_switch_company(self, client, store):
        sign_in(client, store, CLIENT_USER)
        r = client.get("/", params={"company": "MagTec Alaska"})
        assert r.status_code == 200
        assert "MagTec Alaska" not in r.text

    def test_admin_picks_company(self, client, store):
        store.recipients.extend([
            {"company_name": "Beta", "email": "b@beta.com", "is_active": True},
            {"company_name": "Acme", "email": "a@acme.com", "is_active": True},
        ])
        sign_in(client, store, ADMIN)

        r = client.get("/")
        assert r.status_code == 200
        assert '<option value="Acme" selected' in r.text

        r = client.get("/", params={"company": "Beta"})
        assert '<option value="Beta" selected' in r.text

    def test_admin_without_companies(self, client, store):
        sign_in(client, store, ADMIN)
        r = client.get("/")
        assert r.status_code == 200
        assert "No company selected." in r.text

    def test_load_failure_shows_error_not_partial(self, client, store, monkeypatch):
        sign_in(client, store, CLIENT_USER)

        def boom(category, company_name, date_from, date_to):
            if category is BBS_OBSERVATIONS:
                raise DataStoreError("bbs unavailable")
            return []

        monkeypatch.setattr(store, "fetch_records", boom)
        r = client.get("/")
        assert r.status_code == 500
        assert "An error occurred loading the dashboard" in r.text
        assert "Predictive Risk" not in r.text

    def test_location_and_year_filters(self, client, store):
        store.add(THAS,
                  {"company": CLIENT_COMPANY, "location": "Kenai", "created_at": recent()},
                  {"company": CLIENT_COMPANY, "location": "Prudhoe Bay", "created_at": recent()})
        sign_in(client, store, CLIENT_USER)

        r = client.get("/", params={"location": "Kenai", "year": ""})
        assert r.status_code == 200
        assert '<option value="Kenai" selected' in r.text
        assert '<option value="Prudhoe Bay" >' in r.text
        assert "Inspections (0)" in r.text
        assert "True Cost" in r.text

        this_year = datetime.now(timezone.utc).year
        r = client.get("/", params={"year": str(this_year - 1)})
        assert r.status_code == 200
        assert f"Calendar year {this_year - 1}" in r.text

    def test_true_cost_shown(self, client, store):
        store.add_costs({"total_all_costs": 12500, "total_direct_costs": 10000, "total_indirect_costs": 2500,
                         "incidents": {"company_name": CLIENT_COMPANY, "incident_date": recent()}})
        sign_in(client, store, CLIENT_USER)
        r = client.get("/")
        assert "$12,500" in r.text
        assert "Incident Cost Trend" in r.text


# ============================================================================
# Token-gated view
# ============================================================================

class TestTokenView:

    def test_valid_token(self, client, store):
        store.tokens["tok-1"] = ViewToken("tok-1", "Acme")
        store.add(BBS_OBSERVATIONS, {"company": "Acme", "observation_type": "Safe", "created_at": recent()})
        r = client.get("/view/tok-1")
        assert r.status_code == 200
        assert "Acme" in r.text
        assert store.tokens["tok-1"].last_accessed is not None

    def test_unknown_token(self, client, store):
        r = client.get("/view/missing")
        assert r.status_code == 404
        assert "Invalid or expired access link" in r.text
        assert "view_token_denied" in audit_actions()

    def test_inactive_token(self, client, store):
        store.tokens["tok-2"] = ViewToken("tok-2", "Acme", is_active=False)
        r = client.get("/view/tok-2")
        assert r.status_code == 403
        assert "This access link has been deactivated" in r.text
        assert store.tokens["tok-2"].last_accessed is None

    def test_lookup_failure(self, client, store, monkeypatch):
        def down(token):
            raise DataStoreError("view_tokens unavailable")

        monkeypatch.setattr(store, "lookup_token", down)
        r = client.get("/view/tok-1")
        assert r.status_code == 500
        assert "An error occurred loading the dashboard" in r.text

    def test_touch_failure_still_renders(self, client, store, monkeypatch):
        store.tokens["tok-3"] = ViewToken("tok-3", "Acme")

        def down(token):
            raise DataStoreError("write refused")

        monkeypatch.setattr(store, "touch_token", down)
        assert client.get("/view/tok-3").status_code == 200

    def test_metrics_failure(self, client, store, monkeypatch):
        store.tokens["tok-4"] = ViewToken("tok-4", "Acme")

        def down(category, company_name, statuses, mode="include"):
            raise DataStoreError("sail_log unavailable")

        monkeypatch.setattr(store, "fetch_open_records", down)
        r = client.get("/view/tok-4")
        assert r.status_code == 500

    def test_no_session_needed(self, client, store):
        store.tokens["tok-5"] = ViewToken("tok-5", "Acme")
        assert client.get("/view/tok-5", follow_redirects=False).status_code == 200


# ============================================================================
# Metrics JSON
# ============================================================================

class TestMetricsApi:

    def test_requires_session(self, client):
        r = client.get("/api/metrics")
        assert r.status_code == 401
        assert r.json()["ok"] is False

    def test_own_company(self, client, store):
        store.add(BBS_OBSERVATIONS,
                  {"company": CLIENT_COMPANY, "observation_type": "Safe", "created_at": recent()},
                  {"company": CLIENT_COMPANY, "observation_type": "At-Risk", "created_at": recent()})
        sign_in(client, store, CLIENT_USER)
        body = client.get("/api/metrics").json()
        assert body["ok"] is True
        assert body["company"] == CLIENT_COMPANY
        assert body["metrics"]["total_bbs"] == 2
        assert body["metrics"]["safe_obs"] == 1

    def test_other_company_forbidden(self, client, store):
        sign_in(client, store, CLIENT_USER)
        r = client.get("/api/metrics", params={"company": "MagTec Alaska"})
        assert r.status_code == 403

    def test_admin_requires_company(self, client, store):
        sign_in(client, store, ADMIN)
        assert client.get("/api/metrics").status_code == 400
        r = client.get("/api/metrics", params={"company": "Acme", "days": 7})
        assert r.status_code == 200
        assert r.json()["company"] == "Acme"

    def test_days_bounds(self, client, store):
        sign_in(client, store, ADMIN)
        assert client.get("/api/metrics", params={"company": "Acme", "days": 0}).status_code == 422

    def test_filters_trends_and_true_cost(self, client, store):
        store.add(BBS_OBSERVATIONS,
                  {"company": CLIENT_COMPANY, "location": "Kenai", "observation_type": "Safe", "created_at": recent()},
                  {"company": CLIENT_COMPANY, "location": "Nikiski", "observation_type": "Safe", "created_at": recent()})
        store.add_costs({"total_all_costs": 800,
                         "incidents": {"company_name": CLIENT_COMPANY, "location_name": "Kenai",
                                       "incident_date": recent()}})
        sign_in(client, store, CLIENT_USER)

        body = client.get("/api/metrics", params={"location": "kenai"}).json()
        assert body["filters"] == {"location": "kenai", "year": None, "days": None}
        assert body["metrics"]["total_bbs"] == 1
        assert body["metrics"]["trends"]["leading_total"]["direction"] == "up"
        assert body["metrics"]["trends"]["leading_total"]["improving"] is True
        assert body["true_cost"]["total"] == 800.0

        body = client.get("/api/metrics", params={"year": 2001}).json()
        assert body["metrics"]["total_bbs"] == 0
        assert body["true_cost"]["count"] == 0

    def test_year_bounds(self, client, store):
        sign_in(client, store, CLIENT_USER)
        assert client.get("/api/metrics", params={"year": 1999}).status_code == 422

    def test_store_failure(self, client, store, monkeypatch):
        sign_in(client, store, CLIENT_USER)

        def down(category, company_name, date_from, date_to):
            raise DataStoreError("incidents unavailable")

        monkeypatch.setattr(store, "fetch_records", down)
        assert client.get("/api/metrics").status_code == 502


# ============================================================================
# Reporting API
# ============================================================================

class TestReportingApi:

    @pytest.mark.parametrize("method,path", [
        ("post", "/api/reports/weekly/run"),
        ("get", "/api/reports/history"),
        ("get", "/api/reports/run/1"),
        ("get", "/api/reports/scheduler/status"),
        ("post", "/api/reports/scheduler/stop"),
        ("get", "/api/reports/audit"),
    ])
    def test_client_users_refused(self, client, store, method, path):
        sign_in(client, store, CLIENT_USER)
        r = getattr(client, method)(path)
        assert r.status_code == 403
        assert r.json()["error"] == "Admin access required"

    def test_anonymous_refused(self, client):
        assert client.get("/api/reports/history").status_code == 403

    def test_run_now_and_history(self, client, store, channel):
        store.recipients.append({"company_name": "Acme", "email": "a@acme.com", "is_active": True})
        sign_in(client, store, ADMIN)

        r = client.post("/api/reports/weekly/run")
        assert r.status_code == 200
        summary = r.json()
        assert summary["success"] is True
        assert summary["results"][0]["status"] == "sent"
        assert len(channel.sent) == 1

        history = client.get("/api/reports/history").json()
        assert history["count"] == 1
        assert history["history"][0]["created_by"] == ADMIN

        detail = client.get(f"/api/reports/run/{summary['runId']}").json()
        assert detail["run"]["status"] == "completed"
        assert detail["deliveries"][0]["company_name"] == "Acme"

    def test_run_now_sends_outside_event_loop(self, client, store, engine):
        loops_seen = []

        class LoopAwareChannel(FakeChannel):
            def send(self, recipients, subject, body_html, body_text=None, **kwargs):
                try:
                    asyncio.get_running_loop()
                    loops_seen.append(True)
                except RuntimeError:
                    loops_seen.append(False)
                return super().send(recipients, subject, body_html, body_text, **kwargs)

        engine.channel = LoopAwareChannel()
        store.recipients.append({"company_name": "Acme", "email": "a@acme.com", "is_active": True})
        sign_in(client, store, ADMIN)

        r = client.post("/api/reports/weekly/run")

        assert r.status_code == 200
        assert r.json()["results"][0]["status"] == "sent"
        assert loops_seen == [False]

    def test_run_now_setup_failure(self, client, store):
        config_set("test_mode", True)
        sign_in(client, store, ADMIN)
        r = client.post("/api/reports/weekly/run")
        assert r.status_code == 500
        assert r.json()["success"] is False

    def test_history_status_filter(self, client, store):
        sign_in(client, store, ADMIN)
        client.post("/api/reports/weekly/run")
        assert client.get("/api/reports/history", params={"status": "failed"}).json()["count"] == 0
        assert client.get("/api/reports/history", params={"status": "completed"}).json()["count"] == 1

    def test_missing_run(self, client, store):
        sign_in(client, store, ADMIN)
        assert client.get("/api/reports/run/999").status_code == 404

    def test_scheduler_status(self, client, store):
        sign_in(client, store, ADMIN)
        status = client.get("/api/reports/scheduler/status").json()
        assert status["enabled"] is False
        assert status["timezone"] == "America/Anchorage"
        assert status["report_day_of_week"] == "mon"
        assert status["report_time"] == "06:00"

    def test_audit_log(self, client, store):
        sign_in(client, store, ADMIN)
        entries = client.get("/api/reports/audit", params={"category": "access"}).json()["entries"]
        assert entries[0]["action"] == "login"
        assert entries[0]["user_name"] == ADMIN


class TestPing:

    def test_ping(self, client):
        body = client.get("/api/ping").json()
        assert body["ok"] is True
        assert "time" in body
