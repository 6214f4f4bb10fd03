import asyncio
import os
import resend
from firebase_functions import logger
from firebase_functions.params import SecretParam

from errors import DeliveryFailure

"""Resend email helper using Firebase Functions Gen 2 SecretParam.

Initialize Resend once and reuse it for the life of the process.
"""

# Declare the secret as a parameter per Firebase Gen 2 docs
RESEND_API_KEY = SecretParam('RESEND_API_KEY')

# In-memory cache (persists for the relay process / warm function instances)
_CACHED_API_KEY: str | None = None
_RESEND_INITIALIZED = False


def _mask(value: str, show: int = 6) -> str:
    if not value:
        return "<none>"
    if len(value) <= show:
        return "*" * len(value)
    return value[:show] + "*" * (len(value) - show)


def get_resend_api_key():
    # Try SecretParam, then env
    try:
        val = RESEND_API_KEY.value  # Populated only if function declares run_with.secrets
        if val:
            return val
    except Exception:
        # SecretParam not available in this context
        pass
    return os.getenv('RESEND_API_KEY')


def _ensure_resend_initialized():
    global _CACHED_API_KEY, _RESEND_INITIALIZED
    if _RESEND_INITIALIZED and _CACHED_API_KEY:
        return
    key = get_resend_api_key()
    if not key:
        raise ValueError("RESEND_API_KEY is missing. Attach it via run_with.secrets or set env var.")
    _CACHED_API_KEY = key
    resend.api_key = key
    _RESEND_INITIALIZED = True
    logger.debug(f"Resend initialized with API key: {_mask(key)}")


def send_email(
    from_addr,
    to,
    subject,
    html=None,
    text=None,
    reply_to=None,
):
    """Sends one email through Resend; raises DeliveryFailure on any error."""
    if not html and not text:
        raise ValueError("Either html or text is required")
    recipients = ", ".join(to) if isinstance(to, list) else str(to)
    try:
        _ensure_resend_initialized()
    except ValueError as e:
        raise DeliveryFailure(recipients, str(e)) from e
    params = {
        "from": from_addr,
        "to": to,
        "subject": subject,
    }
    if html:
        params["html"] = html
    if text:
        params["text"] = text
    if reply_to:
        params["reply_to"] = reply_to
    try:
        email = resend.Emails.send(params)
    except Exception as e:
        raise DeliveryFailure(recipients, str(e)) from e
    logger.debug(f"Email sent: {email}")
    return email


class ResendMailer:
    """Mail collaborator: `send()` reports success or failure as a bool."""

    def __init__(self, from_addr: str):
        self.from_addr = from_addr

    async def send(self, to: str, subject: str, *, html: str | None = None, text: str | None = None) -> bool:
        try:
            await asyncio.to_thread(send_email, self.from_addr, [to], subject, html=html, text=text)
        except DeliveryFailure as e:
            logger.error(str(e))
            return False
        return True
