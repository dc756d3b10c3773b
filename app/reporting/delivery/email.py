# ============================================================================
# SLP SAFETY - Email Delivery Channel
# ============================================================================
# Supports Resend (preferred) and SMTP fallback.  One message per
# company, addressed to the whole recipient list.
# ============================================================================

import json
import logging
import smtplib
import urllib.request
import urllib.error
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Optional, List

from .base import DeliveryChannel, DeliveryError, DeliveryResult
from ..config import get_config

logger = logging.getLogger("reporting.delivery.email")

RESEND_API_URL = "https://api.resend.com"


class EmailDelivery(DeliveryChannel):
    """Email delivery using Resend or SMTP."""

    channel_name = "email"

    def _sender(self) -> str:
        from_email = get_config("from_email", "reports@slpalaska.com")
        from_name = get_config("from_name", "SLP Alaska Safety")
        return f"{from_name} <{from_email}>"

    def send(
        self,
        recipients: List[str],
        subject: str,
        body_html: str,
        body_text: Optional[str] = None,
        **kwargs,
    ) -> DeliveryResult:
        """Send email."""
        if not recipients:
            raise DeliveryError("No recipients")

        provider = get_config("email_provider", "resend")

        if provider == "resend":
            return self._send_resend(recipients, subject, body_html, body_text)
        else:
            return self._send_smtp(recipients, subject, body_html, body_text)

    def build_resend_payload(
        self,
        recipients: List[str],
        subject: str,
        body_html: str,
        body_text: Optional[str] = None,
    ) -> dict:
        payload = {
            "from": self._sender(),
            "to": list(recipients),
            "subject": subject,
            "html": body_html,
        }
        if body_text:
            payload["text"] = body_text
        return payload

    def _send_resend(
        self,
        recipients: List[str],
        subject: str,
        body_html: str,
        body_text: Optional[str] = None,
    ) -> DeliveryResult:
        """Send email via Resend."""
        api_key = get_config("resend_api_key")

        if not api_key:
            logger.info(
                "Resend disabled: would send email to=%s subject=%r body_len=%d",
                recipients, subject, len(body_html),
            )
            raise DeliveryError("Resend API key not configured")

        payload = self.build_resend_payload(recipients, subject, body_html, body_text)

        try:
            req = urllib.request.Request(
                f"{RESEND_API_URL}/emails",
                data=json.dumps(payload).encode("utf-8"),
                headers={
                    "Authorization": f"Bearer {api_key}",
                    "Content-Type": "application/json",
                },
                method="POST",
            )

            with urllib.request.urlopen(req, timeout=30) as resp:
                status = resp.getcode()
                body = resp.read().decode("utf-8") or "{}"

        except urllib.error.HTTPError as e:
            error_body = e.read().decode() if e.fp else str(e)
            logger.error(f"Resend error for {recipients}: {error_body}")
            raise DeliveryError(f"Resend error {e.code}: {error_body}") from e
        except (urllib.error.URLError, OSError) as e:
            logger.error(f"Email send failed for {recipients}: {e}")
            raise DeliveryError(str(e)) from e

        if status not in (200, 201, 202):
            raise DeliveryError(f"Resend returned status {status}")

        try:
            data = json.loads(body)
        except ValueError:
            data = {}

        logger.info(f"Email sent via Resend to {len(recipients)} recipient(s)")
        return DeliveryResult(
            success=True,
            recipients=list(recipients),
            channel="email",
            message_id=data.get("id"),
        )

    def _send_smtp(
        self,
        recipients: List[str],
        subject: str,
        body_html: str,
        body_text: Optional[str] = None,
    ) -> DeliveryResult:
        """Send email via SMTP."""
        host = get_config("smtp_host", "smtp.gmail.com")
        port = get_config("smtp_port", 587)
        user = get_config("smtp_user")
        password = get_config("smtp_pass")
        from_email = get_config("from_email") or user

        if not user or not password:
            logger.info(
                "SMTP disabled: would send email to=%s subject=%r body_len=%d",
                recipients, subject, len(body_html),
            )
            raise DeliveryError("SMTP not configured")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self._sender()
        msg["To"] = ", ".join(recipients)

        if body_text:
            msg.attach(MIMEText(body_text, "plain"))
        msg.attach(MIMEText(body_html, "html"))

        try:
            server = smtplib.SMTP(host, port)
            server.starttls()
            server.login(user, password)
            server.sendmail(from_email, list(recipients), msg.as_string())
            server.quit()
        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"SMTP auth failed: {e}")
            raise DeliveryError("SMTP authentication failed") from e
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP send failed: {e}")
            raise DeliveryError(str(e)) from e

        logger.info(f"Email sent via SMTP to {len(recipients)} recipient(s)")
        return DeliveryResult(
            success=True,
            recipients=list(recipients),
            channel="email",
        )
