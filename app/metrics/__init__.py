# ============================================================================
# SLP SAFETY - Metrics
# ============================================================================
# Pure scorecard derivation: field aliasing, rule tables, aggregator.
# ============================================================================

from .aggregator import (
    CompanyRecords,
    MetricsBundle,
    TrueCost,
    INSPECTION_LABELS,
    LSR_AUDIT_LABELS,
    DEFAULT_CLOSED_INCIDENT_STATUSES,
    derive_metrics,
    true_cost,
)
from .fields import matches_company

__all__ = [
    "CompanyRecords",
    "MetricsBundle",
    "TrueCost",
    "INSPECTION_LABELS",
    "LSR_AUDIT_LABELS",
    "DEFAULT_CLOSED_INCIDENT_STATUSES",
    "derive_metrics",
    "true_cost",
    "matches_company",
]
