import os
import asyncio
import logging
from typing import Optional

import resend

from .errors import NotConfigured, UpstreamError

logger = logging.getLogger(__name__)


class EmailClient:
    """Outbound email through the Resend API."""

    def __init__(self) -> None:
        self.api_key = os.getenv("RESEND_API_KEY")
        self.from_address = os.getenv("EMAIL_FROM")

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.from_address)

    async def send(self, to: str, subject: str, html: str, text: Optional[str] = None) -> str:
        """Send one email and return the provider's message id.

        Raises NotConfigured without credentials and UpstreamError when the
        provider does not confirm the send.
        """
        if not self.configured:
            raise NotConfigured("Email provider not configured")
        resend.api_key = self.api_key
        params = {
            "from": self.from_address,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if text:
            params["text"] = text
        try:
            response = await asyncio.to_thread(resend.Emails.send, params)
        except Exception as e:
            logger.error(f"Resend error sending to {to}: {e}")
            raise UpstreamError(f"Email send failed: {e}") from e
        email_id = response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
        if not email_id:
            raise UpstreamError("Email provider did not confirm the send")
        logger.info(f"Email {email_id} sent to {to}")
        return email_id
