# ============================================================================
# SLP SAFETY - Base Delivery Channel
# ============================================================================

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, List


@dataclass
class DeliveryResult:
    """Result of a delivery attempt."""
    success: bool
    recipients: List[str] = field(default_factory=list)
    channel: str = "email"
    message_id: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 1


class DeliveryError(Exception):
    """The provider did not accept the message."""

    def __init__(self, message: str, result: Optional[DeliveryResult] = None):
        super().__init__(message)
        self.result = result


class DeliveryChannel(ABC):
    """Abstract base class for delivery channels."""

    channel_name: str = "base"

    @abstractmethod
    def send(
        self,
        recipients: List[str],
        subject: str,
        body_html: str,
        body_text: Optional[str] = None,
        **kwargs,
    ) -> DeliveryResult:
        """Send one message to every address in *recipients*.

        Returns a successful DeliveryResult or raises DeliveryError.
        """
        pass
