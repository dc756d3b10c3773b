# ============================================================================
# SLP SAFETY - Reporting API Routes
# ============================================================================
# JSON endpoints for the weekly report batch under /api/reports:
#
#   POST /weekly/run            run the batch now
#   GET  /history               recent runs with their deliveries
#   GET  /run/{run_id}          one run with its deliveries
#   GET  /scheduler/status      scheduler state and next fire time
#   POST /scheduler/start|stop  scheduler control
#   GET  /audit                 audit log
#
# Every endpoint requires an admin session (see app.dashboard.routes).
# Registration via register_reporting_routes(app).
# ============================================================================

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from .config import set_config
from .models import AuditRepository, DeliveryRepository, RunRepository
from .scheduler import get_scheduler

logger = logging.getLogger("reporting.routes")

router = APIRouter(prefix="/api/reports", tags=["reports"])


# ============================================================================
# Helpers
# ============================================================================

def _get_user(request: Request) -> Optional[str]:
    """The signed-in email, if any."""
    return request.session.get("email")


def _admin_denied(request: Request) -> Optional[JSONResponse]:
    """A 403 response unless the session belongs to an admin."""
    if not request.session.get("is_admin"):
        logger.warning("Reporting API refused for %s", _get_user(request) or "anonymous")
        return JSONResponse({"ok": False, "error": "Admin access required"}, status_code=403)
    return None


# ============================================================================
# Batch endpoints
# ============================================================================

@router.post("/weekly/run")
def run_weekly(request: Request):
    """Run the weekly batch immediately and return its summary."""
    denied = _admin_denied(request)
    if denied:
        return denied
    result = get_scheduler().run_now(user=_get_user(request))
    status_code = 200 if result.get("success") else 500
    return JSONResponse(result, status_code=status_code)


@router.get("/history")
def report_history(
    request: Request,
    limit: int = Query(20, ge=1, le=200, description="Max runs"),
    status: Optional[str] = Query(None, description="Filter by status"),
):
    """List recent report runs."""
    denied = _admin_denied(request)
    if denied:
        return denied
    runs = RunRepository.get_recent(limit=limit)
    if status:
        runs = [r for r in runs if r.status == status]
    return {
        "history": [r.to_dict() for r in runs],
        "count": len(runs),
    }


@router.get("/run/{run_id}")
def get_run_detail(request: Request, run_id: int):
    """One report run including its per-company delivery records."""
    denied = _admin_denied(request)
    if denied:
        return denied
    run = RunRepository.get_by_id(run_id)
    if not run:
        raise HTTPException(status_code=404, detail=f"Report run {run_id} not found")
    deliveries = DeliveryRepository.get_for_run(run_id)
    return {
        "run": run.to_dict(),
        "deliveries": [d.to_dict() for d in deliveries],
    }


# ============================================================================
# Scheduler control
# ============================================================================

@router.get("/scheduler/status")
def scheduler_status(request: Request):
    denied = _admin_denied(request)
    if denied:
        return denied
    return get_scheduler().get_status()


@router.post("/scheduler/start")
def scheduler_start(request: Request):
    """Enable and start the weekly schedule."""
    denied = _admin_denied(request)
    if denied:
        return denied
    user = _get_user(request)
    set_config("scheduler_enabled", True, user=user)
    scheduler = get_scheduler()
    if scheduler.start(user=user):
        return {"ok": True, "message": "Scheduler started", "status": scheduler.get_status()}
    return {"ok": False, "error": "Failed to start scheduler"}


@router.post("/scheduler/stop")
def scheduler_stop(request: Request):
    """Pause the weekly schedule."""
    denied = _admin_denied(request)
    if denied:
        return denied
    scheduler = get_scheduler()
    if scheduler.stop(user=_get_user(request)):
        return {"ok": True, "message": "Scheduler stopped", "status": scheduler.get_status()}
    return {"ok": False, "error": "Failed to stop scheduler"}


# ============================================================================
# Audit
# ============================================================================

@router.get("/audit")
def get_audit_log(request: Request, limit: int = 100, category: Optional[str] = None):
    denied = _admin_denied(request)
    if denied:
        return denied
    return {"entries": AuditRepository.get_recent(limit, category)}


# ============================================================================
# Registration function
# ============================================================================

def register_reporting_routes(app):
    """Include the /api/reports router in the FastAPI application."""
    app.include_router(router)
    logger.info("Reporting routes registered")
