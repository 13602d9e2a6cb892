import asyncio
from typing import Optional, Dict, Any

import resend

from app.core.config import settings
from app.core.logging_config import get_logger

logger = get_logger("mailer_resend")

resend.api_key = settings.RESEND_API_KEY


class EmailError(Exception):
    """Raised when a message cannot be rendered or Resend does not accept it."""

    def __init__(
        self, message: str, status_code: Optional[int] = None, permanent: bool = False
    ):
        super().__init__(message)
        self.status_code = status_code
        self._permanent = permanent

    @property
    def permanent(self) -> bool:
        """4xx rejections (bad address, unverified sender) will not succeed on retry."""
        if self._permanent:
            return True
        return self.status_code is not None and 400 <= self.status_code < 500 and self.status_code != 429


async def send_email(
    subject: str,
    recipient: str,
    html_content: Optional[str] = None,
    text_content: Optional[str] = None,
    reply_to: Optional[str] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """
    Send one customer email through Resend.

    The SDK call is blocking, so it runs in a worker thread to keep the
    delivery loop from stalling the scheduler. Replies go to support unless
    ``reply_to`` says otherwise.

    Raises:
        EmailError: carrying the HTTP status when Resend reported one
    """
    if not settings.RESEND_API_KEY:
        raise EmailError("RESEND_API_KEY not configured")

    params: resend.Emails.SendParams = {
        "from": settings.RESEND_FROM_EMAIL,
        "to": [recipient],
        "subject": subject,
        "reply_to": [reply_to or settings.SUPPORT_EMAIL],
    }
    if html_content:
        params["html"] = html_content
    if text_content:
        params["text"] = text_content
    if tags:
        # Resend expects a list of {name, value} pairs
        params["tags"] = [{"name": k, "value": v} for k, v in tags.items()]

    try:
        response = await asyncio.to_thread(resend.Emails.send, params)
    except Exception as e:
        status_code = getattr(e, "status_code", None)
        if status_code is not None:
            raise EmailError(f"Resend API error ({status_code}): {e}", status_code=status_code) from e
        raise EmailError(f"Failed to send email: {e}") from e

    if not response or not response.get("id"):
        raise EmailError("Invalid response from Resend API - no email ID returned")

    logger.debug(f"Resend accepted email {response['id']} for {recipient}")
    return response
