"""Common shape of the mailbox adapters (Graph, IMAP, POP3)."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Generic, TypeVar

from core.models import EmailPage, EmailRecord, GetEmailsRequest, User
from services.storage import EmailRepository
from .errors import EmailConfigurationError
from .writer import DeduplicatingWriter

logger = logging.getLogger(__name__)

SessionT = TypeVar("SessionT")

# Every transport checks the whole bundle, not only its own fields.
CREDENTIAL_BUNDLE = ("email_host", "imap_port", "pop3_port", "smtp_port", "email_username", "email_password")


class AdapterKind(str, Enum):
    GRAPH = "graph"
    IMAP = "imap"
    POP3 = "pop3"


def check_credential_bundle(user: User) -> None:
    if any(not getattr(user, name) for name in CREDENTIAL_BUNDLE):
        raise EmailConfigurationError("Email configuration is incomplete")


def has_more(page: int, limit: int, total: int) -> bool:
    return (page - 1) * limit + limit < total


def page_offset(request: GetEmailsRequest) -> int:
    return (request.page - 1) * request.limit


@dataclass
class FetchedBatch:
    """What one transport session produced: normalised records plus the mailbox size."""

    records: list[EmailRecord] = field(default_factory=list)
    total: int = 0


class MailboxAdapter(ABC, Generic[SessionT]):
    """One retrieval transport behind ``connect/authenticate/fetch_page/teardown``.

    :meth:`fetch` drives the session and always tears it down, whatever the
    outcome. Records are persisted only after the connection is released.
    """

    kind: ClassVar[AdapterKind]

    def __init__(self, writer: DeduplicatingWriter) -> None:
        self.writer = writer

    @property
    def emails(self) -> EmailRepository:
        return self.writer.emails

    async def fetch(self, user: User, request: GetEmailsRequest) -> EmailPage:
        self.check_configuration(user)
        session = await self.connect(user)
        try:
            await self.authenticate(session, user)
            batch = await self.fetch_page(session, user, request)
        finally:
            await self.teardown(session)

        if batch.total == 0:
            return EmailPage(emails=[], total=0, has_more=False)
        return self.persist(user, request, batch)

    @abstractmethod
    def check_configuration(self, user: User) -> None:
        """Raise ``EmailConfigurationError`` when the user's settings cannot work."""

    @abstractmethod
    async def connect(self, user: User) -> SessionT:
        ...

    @abstractmethod
    async def authenticate(self, session: SessionT, user: User) -> None:
        ...

    @abstractmethod
    async def fetch_page(self, session: SessionT, user: User, request: GetEmailsRequest) -> FetchedBatch:
        ...

    @abstractmethod
    async def teardown(self, session: SessionT) -> None:
        """Release the session. Must not raise."""

    def persist(self, user: User, request: GetEmailsRequest, batch: FetchedBatch) -> EmailPage:
        """Save the batch and answer with the stored rows, newest first.

        When saving fails the transient records are returned instead.
        """
        emails = batch.records
        try:
            self.writer.save(batch.records, user.id)
            emails = self._reload(user.id, batch.records, request)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to persist %s emails for user %s: %s", self.kind.value, user.id, exc)
        return EmailPage(emails=emails, total=batch.total, has_more=has_more(request.page, request.limit, batch.total))

    def _reload(self, user_id: str, records: list[EmailRecord], request: GetEmailsRequest) -> list[EmailRecord]:
        message_ids = [record.message_id for record in records if record.message_id]
        folder = records[0].folder if records else request.folder
        where: dict[str, Any] = {
            "user_id": user_id,
            "folder": folder,
            "message_id": {"in": message_ids},
        }
        return self.emails.find_many(where, order_by=("received_at", "desc"), take=request.limit)
