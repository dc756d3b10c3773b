# ============================================================================
# SLP SAFETY - Dashboard Routes
# ============================================================================
# Browser-facing pages:
#
#   GET/POST /login        email + password sign-in, company access check
#   GET      /logout
#   GET      /             scorecard for the signed-in user's company
#                          (admins pick any company via ?company=;
#                          ?location= and ?year= narrow the scorecard)
#   GET      /view/{token} token-gated scorecard, no sign-in
#   GET      /api/metrics  scorecard as JSON (session required)
#
# Session keys: email, company, is_admin.
# A scorecard is shown whole or not at all; any data-load failure
# renders the denial page instead of a partial dashboard.
# ============================================================================

import logging
from typing import List, Optional

from fastapi import APIRouter, Form, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from app.datastore import AuthenticationError, DataStoreError, TokenNotFound, get_store
from app.metrics.aggregator import known_locations
from app.reporting.config import get_config, get_local_now
from app.reporting.engine import get_engine
from app.reporting.models import AuditRepository

from .access import get_company_access

logger = logging.getLogger("dashboard.routes")

INVALID_LOGIN = "Invalid email or password. Please try again."
NOT_AUTHORIZED = (
    "Access denied. Your email domain is not authorized. "
    "Please contact SLP Alaska for access."
)
SIGN_IN_UNAVAILABLE = "Sign-in is temporarily unavailable. Please try again later."
TOKEN_INVALID = "Invalid or expired access link"
TOKEN_INACTIVE = "This access link has been deactivated"
LOAD_FAILED = "An error occurred loading the dashboard"

# Calendar years offered by the year filter, counting back from this one
FILTER_YEARS = 3
MIN_YEAR, MAX_YEAR = 2000, 2100


def parse_year(value: Optional[str]) -> Optional[int]:
    """Year filter from a form select; blank or out-of-range means the rolling window."""
    if not value or not value.strip().isdigit():
        return None
    year = int(value)
    return year if MIN_YEAR <= year <= MAX_YEAR else None


def register_dashboard_routes(app, templates):
    """Attach the dashboard pages to *app*, rendering with *templates*."""
    router = APIRouter(tags=["dashboard"])

    def _denied(request: Request, message: str, status_code: int):
        return templates.TemplateResponse(
            request, "denied.html", {"message": message}, status_code=status_code)

    def _filter_years() -> List[int]:
        this_year = get_local_now().year
        return [this_year - i for i in range(FILTER_YEARS)]

    def _company_list() -> List[str]:
        try:
            return get_store().list_companies()
        except DataStoreError as e:
            logger.warning("Could not load company list: %s", e)
            return []

    # ------------------------------------------------------------------
    # Sign-in
    # ------------------------------------------------------------------

    @router.get("/login", response_class=HTMLResponse)
    async def login_page(request: Request):
        if request.session.get("email"):
            return RedirectResponse("/", status_code=302)
        return templates.TemplateResponse(request, "login.html", {"error": None, "email": ""})

    @router.post("/login", response_class=HTMLResponse)
    def login_submit(request: Request, email: str = Form(...), password: str = Form(...)):
        email = email.strip().lower()

        def _fail(message: str, status_code: int):
            return templates.TemplateResponse(
                request, "login.html", {"error": message, "email": email}, status_code=status_code)

        try:
            signed_in = get_store().sign_in(email, password)
        except AuthenticationError as e:
            logger.info("Sign-in refused for %s: %s", email, e)
            return _fail(INVALID_LOGIN, 401)
        except DataStoreError as e:
            logger.error("Sign-in backend error for %s: %s", email, e)
            return _fail(SIGN_IN_UNAVAILABLE, 503)

        access = get_company_access(signed_in, get_config("company_access_rules") or [])
        if access is None:
            logger.warning("Authenticated but unauthorized: %s", signed_in)
            AuditRepository.log(
                action="login_denied",
                category="access",
                user_name=signed_in,
                details="No company access rule matched",
            )
            return _fail(NOT_AUTHORIZED, 403)

        request.session.clear()
        request.session["email"] = access.email
        request.session["company"] = access.company
        request.session["is_admin"] = access.is_admin
        AuditRepository.log(
            action="login",
            category="access",
            user_name=access.email,
            details=f"company={access.company}",
        )
        return RedirectResponse("/", status_code=303)

    @router.get("/logout")
    async def logout(request: Request):
        request.session.clear()
        return RedirectResponse("/login", status_code=302)

    # ------------------------------------------------------------------
    # Signed-in scorecard
    # ------------------------------------------------------------------

    @router.get("/", response_class=HTMLResponse)
    def dashboard(
        request: Request,
        company: Optional[str] = Query(None),
        location: Optional[str] = Query(None),
        year: Optional[str] = Query(None),
    ):
        email = request.session.get("email")
        if not email:
            return RedirectResponse("/login", status_code=302)

        year = parse_year(year)
        location = (location or "").strip() or None
        is_admin = bool(request.session.get("is_admin"))
        companies: List[str] = []
        if is_admin:
            companies = _company_list()
            selected = company or (companies[0] if companies else None)
        else:
            selected = request.session.get("company")

        context = {
            "email": email,
            "is_admin": is_admin,
            "companies": companies,
            "company": selected,
            "window_days": get_config("dashboard_window_days", 30),
            "m": None,
            "location": location or "",
            "locations": [],
            "year": year,
            "years": _filter_years(),
            "tc": None,
        }
        if not selected:
            return templates.TemplateResponse(request, "dashboard.html", context)

        try:
            engine = get_engine()
            records, metrics = engine.company_metrics(
                selected, strict=True, location=location, year=year)
            cost = engine.company_true_cost(selected, location=location, year=year)
        except Exception:
            logger.exception("Dashboard load failed for %s", selected)
            return _denied(request, LOAD_FAILED, 500)

        context["m"] = metrics
        context["tc"] = cost
        context["locations"] = known_locations(records)
        return templates.TemplateResponse(request, "dashboard.html", context)

    # ------------------------------------------------------------------
    # Token-gated view
    # ------------------------------------------------------------------

    @router.get("/view/{token}", response_class=HTMLResponse)
    def token_view(request: Request, token: str):
        store = get_store()
        try:
            view_token = store.lookup_token(token)
        except TokenNotFound:
            AuditRepository.log(action="view_token_denied", category="access", details="not found")
            return _denied(request, TOKEN_INVALID, 404)
        except DataStoreError as e:
            logger.error("Token lookup failed: %s", e)
            return _denied(request, LOAD_FAILED, 500)

        if not view_token.is_active:
            AuditRepository.log(
                action="view_token_denied",
                category="access",
                details=f"inactive token for {view_token.company_name}",
            )
            return _denied(request, TOKEN_INACTIVE, 403)

        try:
            store.touch_token(token)
        except DataStoreError as e:
            logger.warning("Could not record token access for %s: %s", view_token.company_name, e)

        try:
            engine = get_engine()
            _, metrics = engine.company_metrics(view_token.company_name, strict=True)
            cost = engine.company_true_cost(view_token.company_name)
        except Exception:
            logger.exception("Token view load failed for %s", view_token.company_name)
            return _denied(request, LOAD_FAILED, 500)

        return templates.TemplateResponse(request, "company_view.html", {
            "company": view_token.company_name,
            "window_days": get_config("dashboard_window_days", 30),
            "m": metrics,
            "tc": cost,
        })

    # ------------------------------------------------------------------
    # JSON
    # ------------------------------------------------------------------

    @router.get("/api/metrics")
    def metrics_json(
        request: Request,
        company: Optional[str] = Query(None),
        days: Optional[int] = Query(None, ge=1, le=365),
        location: Optional[str] = Query(None),
        year: Optional[int] = Query(None, ge=MIN_YEAR, le=MAX_YEAR),
    ):
        if not request.session.get("email"):
            return JSONResponse({"ok": False, "error": "Not signed in"}, status_code=401)

        if request.session.get("is_admin"):
            selected = company
        else:
            selected = request.session.get("company")
            if company and company != selected:
                return JSONResponse({"ok": False, "error": "Not authorized for that company"}, status_code=403)
        if not selected:
            return JSONResponse({"ok": False, "error": "company is required"}, status_code=400)
        location = (location or "").strip() or None

        try:
            engine = get_engine()
            _, metrics = engine.company_metrics(
                selected, days=days, strict=True, location=location, year=year)
            cost = engine.company_true_cost(selected, location=location, year=year)
        except DataStoreError as e:
            logger.error("Metrics load failed for %s: %s", selected, e)
            return JSONResponse({"ok": False, "error": LOAD_FAILED}, status_code=502)

        return {
            "ok": True,
            "company": selected,
            "filters": {"location": location, "year": year, "days": days},
            "metrics": metrics.to_dict(),
            "true_cost": cost.to_dict(),
        }

    app.include_router(router)
    logger.info("Dashboard routes registered")
