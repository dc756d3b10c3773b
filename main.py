# ============================================================================
# SLP SAFETY - Application Entry Point
# ============================================================================
# FastAPI app: session middleware, templates, startup/shutdown hooks and
# route registration.
#
#   uvicorn main:app --host 0.0.0.0 --port 8000
# ============================================================================

import logging
import os
from pathlib import Path

from fastapi import FastAPI
from fastapi.templating import Jinja2Templates
from starlette.middleware.sessions import SessionMiddleware

from app.dashboard import register_dashboard_routes
from app.metrics import INSPECTION_LABELS
from app.reporting import register_reporting_routes
from app.reporting.config import ReportingConfig, get_config, get_local_now
from app.reporting.models import init_database
from app.reporting.scheduler import get_scheduler, init_scheduler

# ================================================================
# PATHS / LOGGING
# ================================================================

BASE_DIR = Path(__file__).resolve().parent
TEMPLATES_DIR = BASE_DIR / "templates"

logging.basicConfig(
    level=os.environ.get("SAFETY_LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("main")

# ================================================================
# FASTAPI APP
# ================================================================

app = FastAPI(title="SLP Alaska Safety Dashboard")
app.add_middleware(
    SessionMiddleware,
    secret_key=get_config("session_secret", "change-me"),
    max_age=60 * 60 * 12,
)

templates = Jinja2Templates(directory=str(TEMPLATES_DIR))
templates.env.globals["inspection_labels"] = INSPECTION_LABELS


@app.on_event("startup")
async def _startup():
    init_database()
    ReportingConfig.init_defaults()
    if get_config("session_secret") == "change-me":
        logger.warning("session_secret is the default; set SAFETY_SESSION_SECRET")
    init_scheduler()
    logger.info("SLP safety backend started")


@app.on_event("shutdown")
async def _shutdown():
    get_scheduler().shutdown()
    logger.info("SLP safety backend stopped")


@app.get("/api/ping")
async def ping():
    return {"ok": True, "time": get_local_now().isoformat()}


register_dashboard_routes(app, templates)
register_reporting_routes(app)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
