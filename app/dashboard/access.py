# ============================================================================
# SLP SAFETY - Company Access Rules
# ============================================================================
# Maps a signed-in email address to the company whose scorecard it may
# see.  Rules are checked in order; the first match wins.
#
#   domain   email ends with "@<match>"
#   keyword  <match> appears anywhere in the email
#
# A rule whose company is "ALL" grants admin access (any company).
# ============================================================================

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

logger = logging.getLogger("dashboard.access")

ADMIN_COMPANY = "ALL"


@dataclass(frozen=True)
class CompanyAccess:
    company: str
    is_admin: bool
    email: str


def get_company_access(email: Optional[str], rules: Iterable[Dict[str, Any]]) -> Optional[CompanyAccess]:
    """Return the access granted to *email*, or None when no rule matches."""
    if not email:
        return None

    email_lower = email.strip().lower()

    for rule in rules:
        match = str(rule.get("match") or "").lower()
        if not match:
            continue
        company = rule.get("company")
        rule_type = rule.get("type", "domain")

        if rule_type == "domain":
            if email_lower.endswith("@" + match):
                return CompanyAccess(company=company, is_admin=company == ADMIN_COMPANY, email=email_lower)
        elif rule_type == "keyword":
            if match in email_lower:
                return CompanyAccess(company=company, is_admin=False, email=email_lower)
        else:
            logger.warning("Ignoring access rule with unknown type %r", rule_type)

    return None
