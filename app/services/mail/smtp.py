from __future__ import annotations

import logging
import re
from email.message import EmailMessage
from typing import Optional

import aiosmtplib

from core.models import SendEmailRequest, User
from .errors import EmailSendError

logger = logging.getLogger(__name__)

_DANGEROUS_BLOCKS = re.compile(
    r"<(script|style|iframe|object|embed)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL
)
_DANGEROUS_TAGS = re.compile(r"<(script|style|iframe|object|embed)\b[^>]*/?>", re.IGNORECASE)
_EVENT_HANDLERS = re.compile(r"\s+on[a-z]+\s*=\s*(\"[^\"]*\"|'[^']*'|[^\s>]+)", re.IGNORECASE)
_SCRIPT_URLS = re.compile(
    r"(\s(?:href|src|action|formaction)\s*=\s*)([\"'])\s*(?:javascript|vbscript):.*?\2",
    re.IGNORECASE | re.DOTALL,
)


def sanitize_html(html: Optional[str]) -> Optional[str]:
    """Strip active content from user supplied HTML before it goes on the wire."""
    if html is None:
        return None
    cleaned = _DANGEROUS_BLOCKS.sub("", html)
    cleaned = _DANGEROUS_TAGS.sub("", cleaned)
    cleaned = _EVENT_HANDLERS.sub("", cleaned)
    return _SCRIPT_URLS.sub(r'\1\2#\2', cleaned)


def build_message(sender: str, request: SendEmailRequest) -> EmailMessage:
    message = EmailMessage()
    message["From"] = sender
    message["To"] = ", ".join(request.to)
    if request.cc:
        message["Cc"] = ", ".join(request.cc)
    # Bcc recipients stay out of the headers; they are passed to the envelope only.
    message["Subject"] = request.subject
    message.set_content(request.text or "")
    html = sanitize_html(request.html)
    if html:
        message.add_alternative(html, subtype="html")
    return message


class SmtpSender:
    def __init__(self, timeout: float = 30.0) -> None:
        self._timeout = timeout

    async def send(self, user: User, request: SendEmailRequest) -> None:
        message = build_message(user.email_username, request)
        recipients = [*request.to, *request.cc, *request.bcc]
        try:
            await aiosmtplib.send(
                message,
                recipients=recipients,
                hostname=user.email_host,
                port=user.smtp_port,
                username=user.email_username,
                password=user.email_password,
                use_tls=user.email_secure,
                timeout=self._timeout,
            )
        except (aiosmtplib.SMTPException, OSError) as exc:
            logger.error("SMTP delivery failed for user %s: %s", user.id, exc)
            raise EmailSendError(f"Failed to send email: {exc}") from exc
        logger.info("Sent email for user %s to %d recipient(s)", user.id, len(recipients))
