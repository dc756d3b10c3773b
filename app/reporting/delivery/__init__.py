# ============================================================================
# SLP SAFETY - Report Delivery Module
# ============================================================================
# Email delivery through Resend, with SMTP as the fallback provider.
# ============================================================================

from .base import DeliveryChannel, DeliveryError, DeliveryResult
from .email import EmailDelivery

__all__ = [
    "DeliveryChannel",
    "DeliveryError",
    "DeliveryResult",
    "EmailDelivery",
]
