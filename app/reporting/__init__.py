# ============================================================================
# SLP SAFETY - Weekly Reporting
# ============================================================================
# Scheduled weekly safety report per company.
#
# Features:
#   - Timezone-aware weekly schedule (APScheduler)
#   - Email delivery (Resend, SMTP fallback) with retry
#   - Rate-limited batch, one company at a time
#   - Run / delivery history and audit logging
#   - Database-backed configuration
# ============================================================================

from .config import ReportingConfig, get_config, set_config
from .engine import ReportEngine, get_engine, set_engine
from .routes import register_reporting_routes
from .scheduler import ReportScheduler, get_scheduler, init_scheduler

__version__ = "1.0.0"
__all__ = [
    "ReportingConfig",
    "get_config",
    "set_config",
    "ReportEngine",
    "get_engine",
    "set_engine",
    "ReportScheduler",
    "get_scheduler",
    "init_scheduler",
    "register_reporting_routes",
]
