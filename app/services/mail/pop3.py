from __future__ import annotations

import asyncio
import logging
import poplib
from typing import Callable, Optional, Union

from core.models import EmailPage, EmailRecord, GetEmailsRequest, User
from .base import AdapterKind, FetchedBatch, MailboxAdapter
from .errors import EmailConfigurationError, MailConnectionError, Pop3LoginFailed, Pop3StatFailed
from .mime import parse_message
from .writer import DeduplicatingWriter

logger = logging.getLogger(__name__)

# POP3 has no folders; everything it serves lands here.
POP3_FOLDER = "INBOX"

Pop3Client = Union[poplib.POP3, poplib.POP3_SSL]
Pop3ClientFactory = Callable[[str, int, bool, float], Pop3Client]


def open_pop3(host: str, port: int, secure: bool, timeout: float) -> Pop3Client:
    if secure:
        return poplib.POP3_SSL(host, port, timeout=timeout)
    return poplib.POP3(host, port, timeout=timeout)


def index_window(total: int, page: int, limit: int) -> tuple[int, int]:
    """1-based ``start..end`` for the page; ``end`` may run past ``total``."""
    start = (page - 1) * limit + 1
    return start, start + limit - 1


class Pop3Adapter(MailboxAdapter[Pop3Client]):
    kind = AdapterKind.POP3

    REQUIRED_FIELDS = ("email_host", "pop3_port", "email_username", "email_password")

    def __init__(
        self,
        writer: DeduplicatingWriter,
        client_factory: Pop3ClientFactory = open_pop3,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(writer)
        self._client_factory = client_factory
        self._timeout = timeout

    def check_configuration(self, user: User) -> None:
        if any(not getattr(user, name) for name in self.REQUIRED_FIELDS):
            raise EmailConfigurationError("POP3 configuration is incomplete")

    async def connect(self, user: User) -> Pop3Client:
        try:
            return await asyncio.to_thread(
                self._client_factory, user.email_host, user.pop3_port, user.email_secure, self._timeout
            )
        except (OSError, poplib.error_proto) as exc:
            raise MailConnectionError(str(exc)) from exc

    async def authenticate(self, session: Pop3Client, user: User) -> None:
        def login() -> None:
            session.user(user.email_username)
            session.pass_(user.email_password)

        try:
            await asyncio.to_thread(login)
        except (OSError, poplib.error_proto) as exc:
            raise Pop3LoginFailed(f"POP3 login failed: {_describe(exc)}") from exc

    async def fetch_page(self, session: Pop3Client, user: User, request: GetEmailsRequest) -> FetchedBatch:
        return await asyncio.to_thread(self._fetch_blocking, session, user.id, request)

    async def teardown(self, session: Pop3Client) -> None:
        try:
            await asyncio.to_thread(session.quit)
        except (OSError, poplib.error_proto) as exc:
            logger.debug("POP3 QUIT failed: %s", exc)

    def persist(self, user: User, request: GetEmailsRequest, batch: FetchedBatch) -> EmailPage:
        try:
            self.writer.save(batch.records, user.id)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to persist pop3 emails for user %s: %s", user.id, exc)
        _, end = index_window(batch.total, request.page, request.limit)
        return EmailPage(emails=batch.records, total=batch.total, has_more=end < batch.total)

    def _fetch_blocking(self, client: Pop3Client, user_id: str, request: GetEmailsRequest) -> FetchedBatch:
        try:
            total, _size = client.stat()
        except (OSError, poplib.error_proto) as exc:
            raise Pop3StatFailed(f"POP3 STAT failed: {_describe(exc)}") from exc
        if total == 0:
            return FetchedBatch(records=[], total=0)

        start, end = index_window(total, request.page, request.limit)
        records: list[EmailRecord] = []
        # One RETR at a time; a failed or unparsable message still advances the cursor.
        for index in range(start, min(end, total) + 1):
            record = self._retrieve(client, index, user_id)
            if record is not None:
                records.append(record)
        return FetchedBatch(records=records, total=total)

    @staticmethod
    def _retrieve(client: Pop3Client, index: int, user_id: str) -> Optional[EmailRecord]:
        try:
            _response, lines, _octets = client.retr(index)
        except (OSError, poplib.error_proto) as exc:
            logger.warning("Failed to retrieve POP3 message %d: %s", index, _describe(exc))
            return None
        try:
            parsed = parse_message(b"\r\n".join(lines) + b"\r\n")
        except Exception as exc:  # noqa: BLE001
            logger.warning("Skipping unparsable POP3 message %d: %s", index, exc)
            return None
        headers, body = parsed.headers, parsed.body
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
            folder=POP3_FOLDER,
            user_id=user_id,
            attachments=body.attachments,
        )


def _describe(exc: Exception) -> str:
    if exc.args and isinstance(exc.args[0], bytes):
        return exc.args[0].decode("utf-8", errors="replace")
    return str(exc)
