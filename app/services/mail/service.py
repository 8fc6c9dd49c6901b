from __future__ import annotations

import datetime as dt
import logging
import sqlite3
from typing import Any, Callable, Optional

from core.config import Settings
from core.models import (
    EmailConfig,
    EmailPage,
    EmailProviderType,
    EmailRecord,
    GetEmailsRequest,
    MailFolder,
    SendEmailRequest,
    User,
)
from services.storage import MailStorage, RecordNotFound
from .base import AdapterKind, MailboxAdapter, check_credential_bundle, has_more, page_offset
from .errors import (
    EmailNotFound,
    RetrievalMethodNotEnabled,
    SendMethodNotEnabled,
)
from .graph import GraphAdapter, GraphAuthProvider
from .imap import ImapAdapter
from .pop3 import Pop3Adapter
from .smtp import SmtpSender, sanitize_html
from .writer import DeduplicatingWriter, GraphDeduplicatingWriter

logger = logging.getLogger(__name__)

# Fields an EmailConfig maps straight onto the user row.
_CONFIG_FIELDS = (
    "email_host",
    "imap_port",
    "pop3_port",
    "smtp_port",
    "email_username",
    "email_secure",
    "imap_enabled",
    "smtp_enabled",
    "pop3_enabled",
)


def microsoft_token_writer(storage: MailStorage) -> Callable[[User, dict[str, Any]], None]:
    """Persist a rotated Microsoft refresh token onto the user row."""

    def save(user: User, tokens: dict[str, Any]) -> None:
        try:
            storage.users.update({"id": user.id}, {"microsoft_tokens": tokens})
        except (RecordNotFound, sqlite3.Error) as exc:
            logger.error("Failed to store refreshed Microsoft tokens for user %s: %s", user.id, exc)
            return
        logger.info("Stored refreshed Microsoft tokens for user %s", user.id)

    return save


class EmailService:
    """Per-user mail configuration, sending, fetching and local mailbox operations."""

    def __init__(
        self,
        storage: MailStorage,
        graph: GraphAdapter,
        imap: ImapAdapter,
        pop3: Pop3Adapter,
        smtp: SmtpSender,
        writer: DeduplicatingWriter,
    ) -> None:
        self.storage = storage
        self.graph = graph
        self.smtp = smtp
        self.writer = writer
        self._adapters: dict[AdapterKind, MailboxAdapter[Any]] = {
            AdapterKind.GRAPH: graph,
            AdapterKind.IMAP: imap,
            AdapterKind.POP3: pop3,
        }

    @classmethod
    def from_settings(cls, storage: MailStorage, settings: Settings) -> "EmailService":
        writer = DeduplicatingWriter(storage.emails)
        timeout = float(settings.mail_timeout_seconds)
        return cls(
            storage,
            graph=GraphAdapter(
                GraphDeduplicatingWriter(storage.emails),
                GraphAuthProvider(settings.microsoft, on_tokens_refreshed=microsoft_token_writer(storage)),
            ),
            imap=ImapAdapter(writer, timeout=timeout),
            pop3=Pop3Adapter(writer, timeout=timeout),
            smtp=SmtpSender(timeout=timeout),
            writer=writer,
        )

    # -- configuration -----------------------------------------------------------

    def get_user_email_config(self, user_id: str) -> EmailConfig:
        return self._to_config(self._get_user(user_id))

    def update_user_email_config(self, user_id: str, config: EmailConfig) -> EmailConfig:
        self._get_user(user_id)
        data: dict[str, Any] = {
            name: getattr(config, name) for name in _CONFIG_FIELDS if name in config.model_fields_set
        }
        if "email_password" in config.model_fields_set:
            data["email_password"] = config.email_password
        data["microsoft_graph_enabled"] = config.provider_type == EmailProviderType.MICROSOFT_GRAPH
        updated = self.storage.users.update({"id": user_id}, data)
        logger.info("Updated email configuration for user %s", user_id)
        return self._to_config(updated)

    # -- sending -----------------------------------------------------------------

    async def send_email(self, user_id: str, request: SendEmailRequest) -> EmailRecord:
        user = self._get_user(user_id)
        if user.microsoft_graph_enabled:
            return await self.graph.send(user, request)

        if not user.smtp_enabled:
            raise SendMethodNotEnabled("SMTP not enabled")
        check_credential_bundle(user)

        await self.smtp.send(user, request)
        return self.writer.create_sent(
            EmailRecord(
                sender=user.email_username,
                to=request.to,
                cc=request.cc,
                bcc=request.bcc,
                subject=request.subject,
                text=request.text,
                html=sanitize_html(request.html),
                is_sent=True,
                sent_at=dt.datetime.now(dt.timezone.utc),
                folder="SENT",
                user_id=user.id,
            )
        )

    # -- retrieval ---------------------------------------------------------------

    @staticmethod
    def select_adapter(user: User) -> AdapterKind:
        """Graph wins over IMAP, IMAP over POP3."""
        if user.microsoft_graph_enabled:
            return AdapterKind.GRAPH
        if user.imap_enabled:
            return AdapterKind.IMAP
        if user.pop3_enabled:
            return AdapterKind.POP3
        raise RetrievalMethodNotEnabled("No email retrieval method enabled")

    async def fetch_emails(self, user_id: str, request: Optional[GetEmailsRequest] = None) -> EmailPage:
        request = request or GetEmailsRequest()
        user = self._get_user(user_id)
        kind = self.select_adapter(user)
        logger.info(
            "Fetching %s page %d (limit %d) for user %s via %s",
            request.folder,
            request.page,
            request.limit,
            user_id,
            kind.value,
        )
        return await self._adapters[kind].fetch(user, request)

    def get_emails_from_database(self, user_id: str, request: Optional[GetEmailsRequest] = None) -> EmailPage:
        request = request or GetEmailsRequest()
        self._get_user(user_id)
        where = {"user_id": user_id, "folder": request.folder, "is_deleted": False}
        total = self.storage.emails.count(where)
        emails = self.storage.emails.find_many(
            where,
            order_by=[("received_at", "desc"), ("created_at", "desc")],
            skip=page_offset(request),
            take=request.limit,
        )
        return EmailPage(emails=emails, total=total, has_more=has_more(request.page, request.limit, total))

    # -- local mailbox operations ------------------------------------------------

    def mark_email_as_read(self, user_id: str, email_id: str) -> EmailRecord:
        self._get_owned_email(user_id, email_id)
        return self.storage.emails.update({"id": email_id}, {"is_read": True})

    def mark_email_as_deleted(self, user_id: str, email_id: str) -> EmailRecord:
        self._get_owned_email(user_id, email_id)
        return self.storage.emails.update({"id": email_id}, {"is_deleted": True})

    def move_email_to_folder(self, user_id: str, email_id: str, folder: str) -> EmailRecord:
        self._get_owned_email(user_id, email_id)
        return self.storage.emails.update({"id": email_id}, {"folder": folder})

    # -- Microsoft Graph passthroughs ---------------------------------------------

    async def get_mail_folders(self, user_id: str) -> list[MailFolder]:
        return await self.graph.list_folders(self._get_user(user_id))

    async def get_email_details(self, user_id: str, message_id: str) -> EmailRecord:
        record = await self.graph.get_email_details(self._get_user(user_id), message_id)
        if record is None:
            raise EmailNotFound(f"Email with id {message_id} not found")
        return record

    async def validate_graph_configuration(self, user_id: str) -> None:
        await self.graph.validate(self._get_user(user_id))

    # -- helpers -----------------------------------------------------------------

    def _get_user(self, user_id: str) -> User:
        user = self.storage.users.find_unique({"id": user_id})
        if user is None or user.is_deleted:
            raise EmailNotFound(f"User with id {user_id} not found")
        return user

    def _get_owned_email(self, user_id: str, email_id: str) -> EmailRecord:
        record = self.storage.emails.find_first({"id": email_id, "user_id": user_id})
        if record is None:
            raise EmailNotFound(f"Email with id {email_id} not found")
        return record

    @staticmethod
    def _to_config(user: User) -> EmailConfig:
        return EmailConfig(
            email_host=user.email_host,
            imap_port=user.imap_port,
            pop3_port=user.pop3_port,
            smtp_port=user.smtp_port,
            email_username=user.email_username,
            email_password=user.email_password,
            email_secure=user.email_secure,
            imap_enabled=user.imap_enabled,
            smtp_enabled=user.smtp_enabled,
            pop3_enabled=user.pop3_enabled,
            provider_type=(
                EmailProviderType.MICROSOFT_GRAPH if user.microsoft_graph_enabled else EmailProviderType.STANDARD
            ),
        )
