"""Thin layer over the stdlib ``email`` package turning raw RFC 822 bytes into fields."""

from __future__ import annotations

import datetime as dt
import email
from dataclasses import dataclass, field
from email import policy
from email.message import EmailMessage
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any, Optional

ADDRESS_HEADERS = ("To", "Cc", "Bcc")


@dataclass
class ParsedHeaders:
    message_id: Optional[str] = None
    sender: str = ""
    to: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    subject: Optional[str] = None
    date: Optional[dt.datetime] = None


@dataclass
class ParsedBody:
    text: Optional[str] = None
    html: Optional[str] = None
    attachments: Optional[list[dict[str, Any]]] = None


@dataclass
class ParsedMessage:
    headers: ParsedHeaders
    body: ParsedBody


def parse_headers(raw: bytes) -> ParsedHeaders:
    message = email.message_from_bytes(raw, policy=policy.default)
    return _headers_from(message)


def parse_body(raw: bytes) -> ParsedBody:
    message = email.message_from_bytes(raw, policy=policy.default)
    return _body_from(message)


def parse_message(raw: bytes) -> ParsedMessage:
    message = email.message_from_bytes(raw, policy=policy.default)
    return ParsedMessage(headers=_headers_from(message), body=_body_from(message))


def _headers_from(message: EmailMessage) -> ParsedHeaders:
    message_id = message.get("Message-ID")
    subject = message.get("Subject")
    return ParsedHeaders(
        message_id=str(message_id).strip() if message_id else None,
        sender=str(message.get("From") or ""),
        to=_addresses(message, "To"),
        cc=_addresses(message, "Cc"),
        bcc=_addresses(message, "Bcc"),
        subject=str(subject) if subject is not None else None,
        date=parse_date(message.get("Date")),
    )


def _addresses(message: EmailMessage, header: str) -> list[str]:
    values = message.get_all(header) or []
    if not values:
        return []
    return [addr for _, addr in getaddresses([str(value) for value in values]) if addr]


def parse_date(value: Any) -> Optional[dt.datetime]:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(str(value))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)


def _body_from(message: EmailMessage) -> ParsedBody:
    text: Optional[str] = None
    html: Optional[str] = None
    attachments: list[dict[str, Any]] = []

    for part in message.walk():
        if part.get_content_maintype() == "multipart":
            continue
        if part.get_content_disposition() == "attachment" or part.get_filename():
            payload = part.get_payload(decode=True) or b""
            attachments.append(
                {
                    "filename": part.get_filename(),
                    "content_type": part.get_content_type(),
                    "size": len(payload),
                }
            )
            continue
        content_type = part.get_content_type()
        if content_type == "text/plain" and text is None:
            text = _decode_part(part)
        elif content_type == "text/html" and html is None:
            html = _decode_part(part)

    return ParsedBody(text=text, html=html, attachments=attachments or None)


def _decode_part(part: EmailMessage) -> str:
    payload = part.get_payload(decode=True)
    if payload is None:
        return ""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")
