from __future__ import annotations

import asyncio
import imaplib
import logging
import re
from typing import Callable, Iterable, Iterator, Optional, Union

from core.models import EmailRecord, GetEmailsRequest, User
from .base import AdapterKind, FetchedBatch, MailboxAdapter, check_credential_bundle, page_offset
from .errors import MailConnectionError, MailTransportError
from .mime import ParsedBody, parse_body, parse_headers
from .writer import DeduplicatingWriter

logger = logging.getLogger(__name__)

# Headers and full source in one round trip, without setting \Seen.
FETCH_ITEMS = "(BODY.PEEK[HEADER.FIELDS (MESSAGE-ID FROM TO CC BCC SUBJECT DATE)] BODY.PEEK[])"

_SEQUENCE_PREFIX = re.compile(rb"^\s*(\d+)\s+\(")

ImapClient = Union[imaplib.IMAP4, imaplib.IMAP4_SSL]
ImapClientFactory = Callable[[str, int, bool, float], ImapClient]


def open_imap(host: str, port: int, secure: bool, timeout: float) -> ImapClient:
    if secure:
        return imaplib.IMAP4_SSL(host, port, timeout=timeout)
    return imaplib.IMAP4(host, port, timeout=timeout)


def sequence_window(total: int, page: int, limit: int) -> tuple[int, int]:
    """Sequence numbers grow with arrival order, so page 1 is the top of the range."""
    skip = (page - 1) * limit
    return max(1, total - skip - limit + 1), max(1, total - skip)


def iter_fetched_messages(data: Iterable[Union[tuple[bytes, bytes], bytes, None]]) -> Iterator[tuple[int, dict[str, bytes]]]:
    """Group an imaplib FETCH response per message.

    Each message is yielded once its closing parenthesis has been seen, in the
    order the server completed them.
    """
    sequence: Optional[int] = None
    parts: dict[str, bytes] = {}
    for item in data:
        if isinstance(item, tuple):
            prefix, literal = item[0], item[1]
            match = _SEQUENCE_PREFIX.match(prefix)
            if match:
                if sequence is not None:
                    yield sequence, parts
                sequence, parts = int(match.group(1)), {}
            if sequence is None:
                continue
            section = "header" if b"HEADER.FIELDS" in prefix.upper() else "body"
            parts[section] = literal
        elif isinstance(item, bytes) and sequence is not None and item.rstrip().endswith(b")"):
            yield sequence, parts
            sequence, parts = None, {}
    if sequence is not None:
        yield sequence, parts


def _quote_mailbox(name: str) -> str:
    if name.startswith('"') or not re.search(r'[\s"\\()]', name):
        return name
    return '"' + name.replace("\\", "\\\\").replace('"', '\\"') + '"'


class ImapAdapter(MailboxAdapter[ImapClient]):
    kind = AdapterKind.IMAP

    def __init__(
        self,
        writer: DeduplicatingWriter,
        client_factory: ImapClientFactory = open_imap,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(writer)
        self._client_factory = client_factory
        self._timeout = timeout

    def check_configuration(self, user: User) -> None:
        check_credential_bundle(user)

    async def connect(self, user: User) -> ImapClient:
        try:
            return await asyncio.to_thread(
                self._client_factory, user.email_host, user.imap_port, user.email_secure, self._timeout
            )
        except (OSError, imaplib.IMAP4.error) as exc:
            raise MailConnectionError(str(exc)) from exc

    async def authenticate(self, session: ImapClient, user: User) -> None:
        try:
            await asyncio.to_thread(session.login, user.email_username, user.email_password)
        except (OSError, imaplib.IMAP4.error) as exc:
            raise MailConnectionError(str(exc)) from exc

    async def fetch_page(self, session: ImapClient, user: User, request: GetEmailsRequest) -> FetchedBatch:
        try:
            return await asyncio.to_thread(self._fetch_blocking, session, user.id, request)
        except MailTransportError:
            raise
        except (OSError, imaplib.IMAP4.error) as exc:
            raise MailTransportError(f"IMAP fetch failed: {exc}") from exc

    async def teardown(self, session: ImapClient) -> None:
        try:
            await asyncio.to_thread(session.logout)
        except (OSError, imaplib.IMAP4.error) as exc:
            logger.debug("IMAP logout failed: %s", exc)

    def _fetch_blocking(self, client: ImapClient, user_id: str, request: GetEmailsRequest) -> FetchedBatch:
        folder = request.folder
        status, data = client.select(_quote_mailbox(folder), readonly=True)
        if status != "OK":
            raise MailTransportError(f"Unable to open mailbox '{folder}'.")
        total = int(data[0]) if data and data[0] else 0
        if total == 0:
            return FetchedBatch(records=[], total=0)

        start, end = sequence_window(total, request.page, request.limit)
        logger.debug("IMAP %s: fetching %d:%d of %d (skip=%d)", folder, start, end, total, page_offset(request))
        status, data = client.fetch(f"{start}:{end}", FETCH_ITEMS)
        if status != "OK":
            raise MailTransportError(f"Unable to fetch messages {start}:{end} from '{folder}'.")

        records: list[EmailRecord] = []
        for sequence, parts in iter_fetched_messages(data or []):
            record = self._build_record(sequence, parts, user_id, folder)
            if record is not None:
                records.append(record)
        return FetchedBatch(records=records, total=total)

    @staticmethod
    def _build_record(sequence: int, parts: dict[str, bytes], user_id: str, folder: str) -> Optional[EmailRecord]:
        try:
            headers = parse_headers(parts.get("header") or parts.get("body") or b"")
            body = parse_body(parts["body"]) if "body" in parts else ParsedBody()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Skipping IMAP message %d in %s: %s", sequence, folder, exc)
            return None
        return EmailRecord(
            message_id=headers.message_id,
            sender=headers.sender,
            to=headers.to,
            cc=headers.cc,
            bcc=headers.bcc,
            subject=headers.subject,
            text=body.text,
            html=body.html,
            received_at=headers.date,
            folder=folder,
            user_id=user_id,
            attachments=body.attachments,
        )
