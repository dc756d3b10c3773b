# ============================================================================
# SLP SAFETY - Dashboard
# ============================================================================
# Sign-in gated and token gated company scorecards.
# ============================================================================

from .access import CompanyAccess, get_company_access
from .routes import register_dashboard_routes

__all__ = [
    "CompanyAccess",
    "get_company_access",
    "register_dashboard_routes",
]
