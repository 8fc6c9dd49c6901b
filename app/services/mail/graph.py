from __future__ import annotations

import asyncio
import datetime as dt
import logging
import re
import time
from contextlib import asynccontextmanager, contextmanager
from typing import Any, AsyncIterator, Callable, Iterator, Optional, Union

import msal
from azure.core.credentials import AccessToken
from azure.core.exceptions import ClientAuthenticationError
from kiota_abstractions.api_error import APIError
from kiota_abstractions.base_request_configuration import RequestConfiguration
from markdownify import markdownify
from msgraph import GraphServiceClient
from msgraph.generated.models.body_type import BodyType
from msgraph.generated.models.email_address import EmailAddress
from msgraph.generated.models.item_body import ItemBody
from msgraph.generated.models.message import Message
from msgraph.generated.models.recipient import Recipient
from msgraph.generated.users.item.mail_folders.item.messages.messages_request_builder import (
    MessagesRequestBuilder,
)
from msgraph.generated.users.item.mail_folders.mail_folders_request_builder import (
    MailFoldersRequestBuilder,
)
from msgraph.generated.users.item.messages.item.message_item_request_builder import (
    MessageItemRequestBuilder,
)
from msgraph.generated.users.item.send_mail.send_mail_post_request_body import (
    SendMailPostRequestBody,
)

from core.config import MicrosoftSettings
from core.models import EmailRecord, GetEmailsRequest, MailFolder, SendEmailRequest, User
from .base import AdapterKind, FetchedBatch, MailboxAdapter, page_offset
from .errors import EmailConfigurationError, GraphAuthError, GraphRequestError
from .writer import GraphDeduplicatingWriter

logger = logging.getLogger(__name__)

# Token acquisition retries and the kiota pipeline log every HTTP exchange at INFO.
logging.getLogger("azure.core.pipeline.policies.http_logging_policy").setLevel(logging.WARNING)

APP_SCOPES: list[str] = ["https://graph.microsoft.com/.default"]
DELEGATED_SCOPES: list[str] = ["User.Read", "Mail.ReadWrite", "Mail.Send"]

DEFAULT_FOLDER = "inbox"
JUNK_FOLDERS = frozenset({"junk", "junkemail"})
SENT_FOLDER = "sentitems"

LIST_FIELDS = [
    "id",
    "subject",
    "bodyPreview",
    "from",
    "toRecipients",
    "ccRecipients",
    "bccRecipients",
    "receivedDateTime",
    "sentDateTime",
    "hasAttachments",
    "isRead",
    "isDraft",
]
DETAIL_FIELDS = LIST_FIELDS + ["body"]
FOLDER_FIELDS = ["id", "displayName", "totalItemCount", "unreadItemCount"]

MsalApp = Union[msal.ConfidentialClientApplication, msal.PublicClientApplication]
TokenSaver = Callable[[User, dict[str, Any]], None]


class GraphAuthProvider:
    """
    Obtains Graph bearer tokens with MSAL.

    ``client_credentials`` mode uses the application's own identity against
    ``/users/{mailbox}``; ``delegated`` mode redeems the refresh token stored on
    the user after their Microsoft sign-in and talks to ``/me``.
    """

    def __init__(
        self,
        settings: MicrosoftSettings,
        app: Optional[MsalApp] = None,
        on_tokens_refreshed: Optional[TokenSaver] = None,
    ) -> None:
        self.settings = settings
        self._app = app
        # Called with the user and their updated token dict whenever MSAL rotates the refresh token.
        self.on_tokens_refreshed = on_tokens_refreshed

    @property
    def is_configured(self) -> bool:
        return self.settings.is_configured

    @property
    def delegated(self) -> bool:
        return self.settings.auth_mode == "delegated"

    def _get_app(self) -> MsalApp:
        if self._app is None:
            if self.settings.client_secret:
                self._app = msal.ConfidentialClientApplication(
                    client_id=self.settings.client_id,
                    client_credential=self.settings.client_secret,
                    authority=self.settings.authority,
                )
            else:
                self._app = msal.PublicClientApplication(
                    client_id=self.settings.client_id,
                    authority=self.settings.authority,
                )
        return self._app

    def acquire_token(self, user: User) -> dict[str, Any]:
        if not self.is_configured:
            raise GraphAuthError("Microsoft Graph is not configured.")
        app = self._get_app()
        if self.delegated:
            result = self._acquire_delegated(app, user)
        else:
            if not isinstance(app, msal.ConfidentialClientApplication):
                raise GraphAuthError("Client credentials flow requires MICROSOFT_CLIENT_SECRET.")
            result = app.acquire_token_for_client(scopes=APP_SCOPES)

        if not result or "access_token" not in result:
            description = (result or {}).get("error_description") or "no access token returned"
            raise GraphAuthError(f"Token error: {description}")
        return result

    def _acquire_delegated(self, app: MsalApp, user: User) -> Optional[dict[str, Any]]:
        """Serve from MSAL's cache when it already holds the account, else redeem the stored refresh token."""
        accounts = app.get_accounts(username=user.email)
        if accounts:
            result = app.acquire_token_silent(DELEGATED_SCOPES, account=accounts[0])
            if result and "access_token" in result:
                return result

        tokens = user.microsoft_tokens or {}
        refresh_token = tokens.get("refresh_token") or tokens.get("refreshToken")
        if not refresh_token:
            raise GraphAuthError("No Microsoft refresh token stored for this user. Please sign in again.")
        result = app.acquire_token_by_refresh_token(refresh_token, scopes=DELEGATED_SCOPES)
        rotated = (result or {}).get("refresh_token")
        if rotated and rotated != refresh_token:
            self._store_refresh_token(user, tokens, rotated)
        return result

    def _store_refresh_token(self, user: User, tokens: dict[str, Any], refresh_token: str) -> None:
        key = "refresh_token" if "refresh_token" in tokens else "refreshToken"
        updated = {**tokens, key: refresh_token}
        user.microsoft_tokens = updated
        if self.on_tokens_refreshed is not None:
            self.on_tokens_refreshed(user, updated)


class MsalCredential:
    """
    Adapts :class:`GraphAuthProvider` to the Azure Core TokenCredential protocol
    expected by GraphServiceClient.
    """

    def __init__(self, provider: GraphAuthProvider, user: User):
        self._provider = provider
        self._user = user

    async def get_token(self, *scopes, **kwargs) -> AccessToken:
        # MSAL's HTTP calls are blocking.
        result = await asyncio.to_thread(self._provider.acquire_token, self._user)
        expires_in = int(result.get("expires_in", 3600))
        return AccessToken(result["access_token"], int(time.time()) + expires_in)

    async def close(self) -> None:
        """Required by Azure Core/Kiota."""


class GraphMailbox:
    """The handful of Graph mail endpoints this service uses, bound to one mailbox."""

    def __init__(self, client: GraphServiceClient, root: Any, credential: MsalCredential) -> None:
        self._client = client
        self._root = root
        self._credential = credential

    @classmethod
    def open(cls, provider: GraphAuthProvider, user: User) -> "GraphMailbox":
        credential = MsalCredential(provider, user)
        scopes = DELEGATED_SCOPES if provider.delegated else APP_SCOPES
        client = GraphServiceClient(credentials=credential, scopes=scopes)
        if provider.delegated:
            root = client.me
        else:
            root = client.users.by_user_id(user.email_username or user.email)
        return cls(client, root, credential)

    async def verify(self) -> None:
        await self._credential.get_token(*APP_SCOPES)

    async def count_messages(self, folder: str) -> int:
        config = RequestConfiguration()
        config.headers.add("ConsistencyLevel", "eventual")
        count = await self._root.mail_folders.by_mail_folder_id(folder).messages.count.get(
            request_configuration=config
        )
        return int(count or 0)

    async def list_messages(self, folder: str, top: int, skip: int) -> list[Message]:
        query = MessagesRequestBuilder.MessagesRequestBuilderGetQueryParameters(
            select=LIST_FIELDS,
            top=top,
            skip=skip,
            orderby=["receivedDateTime DESC"],
        )
        response = await self._root.mail_folders.by_mail_folder_id(folder).messages.get(
            request_configuration=RequestConfiguration(query_parameters=query)
        )
        return list(response.value or []) if response else []

    async def get_message(self, message_id: str) -> Optional[Message]:
        query = MessageItemRequestBuilder.MessageItemRequestBuilderGetQueryParameters(select=DETAIL_FIELDS)
        return await self._root.messages.by_message_id(message_id).get(
            request_configuration=RequestConfiguration(query_parameters=query)
        )

    async def list_folders(self) -> list[Any]:
        query = MailFoldersRequestBuilder.MailFoldersRequestBuilderGetQueryParameters(select=FOLDER_FIELDS)
        response = await self._root.mail_folders.get(
            request_configuration=RequestConfiguration(query_parameters=query)
        )
        return list(response.value or []) if response else []

    async def send_mail(self, message: Message) -> None:
        body = SendMailPostRequestBody(message=message, save_to_sent_items=True)
        await self._root.send_mail.post(body)

    async def close(self) -> None:
        await self._credential.close()


MailboxFactory = Callable[[User], GraphMailbox]


def graph_folder(folder: Optional[str]) -> str:
    if not folder or folder.upper() == "INBOX":
        return DEFAULT_FOLDER
    return folder


def _address(recipient: Any) -> str:
    email_address = getattr(recipient, "email_address", None)
    return (getattr(email_address, "address", None) or "") if email_address else ""


def _addresses(recipients: Any) -> list[str]:
    return [address for address in (_address(r) for r in recipients or []) if address]


def _html_body(message: Any) -> Optional[str]:
    body = getattr(message, "body", None)
    return getattr(body, "content", None) if body else None


def render_body_text(content: Optional[str], content_type: Any | None = None) -> Optional[str]:
    if not content:
        return None
    if _looks_like_html(content_type, content):
        return markdownify(content, heading_style="ATX", strip=["script", "style"]).strip()
    return content


def _looks_like_html(content_type: Any | None, content: str) -> bool:
    if content_type is not None:
        raw = getattr(content_type, "value", content_type)
        if "html" in str(raw).lower():
            return True
    return bool(re.search(r"<\w+[^>]*>", content))


def normalise_message(message: Any, user_id: str, folder: str) -> EmailRecord:
    lowered = folder.lower()
    return EmailRecord(
        message_id=message.id,
        sender=_address(message.from_),
        to=_addresses(message.to_recipients),
        cc=_addresses(message.cc_recipients),
        bcc=_addresses(message.bcc_recipients),
        subject=message.subject or None,
        text=message.body_preview or None,
        html=_html_body(message),
        received_at=message.received_date_time,
        sent_at=getattr(message, "sent_date_time", None),
        folder=folder,
        user_id=user_id,
        is_read=bool(message.is_read),
        is_draft=bool(message.is_draft),
        is_spam=lowered in JUNK_FOLDERS,
        is_sent=lowered == SENT_FOLDER,
        # [] flags "has attachments, not downloaded yet"; None means none.
        attachments=[] if message.has_attachments else None,
    )


def _api_message(exc: Exception) -> str:
    error = getattr(exc, "error", None)
    return getattr(error, "message", None) or getattr(exc, "message", None) or str(exc)


@contextmanager
def graph_errors(action: str) -> Iterator[None]:
    try:
        yield
    except APIError as exc:
        logger.error("Microsoft Graph request to %s failed: %s", action, _api_message(exc))
        raise GraphRequestError(f"Failed to {action} via Microsoft Graph: {_api_message(exc)}") from exc
    except ClientAuthenticationError as exc:
        raise GraphAuthError(f"Microsoft Graph authentication failed: {exc}") from exc


class GraphAdapter(MailboxAdapter[GraphMailbox]):
    kind = AdapterKind.GRAPH

    def __init__(
        self,
        writer: GraphDeduplicatingWriter,
        auth: GraphAuthProvider,
        mailbox_factory: Optional[MailboxFactory] = None,
    ) -> None:
        super().__init__(writer)
        self.auth = auth
        self._mailbox_factory = mailbox_factory or (lambda user: GraphMailbox.open(self.auth, user))

    def check_configuration(self, user: User) -> None:
        if not self.auth.is_configured:
            raise EmailConfigurationError("Microsoft Graph is not configured")

    async def connect(self, user: User) -> GraphMailbox:
        return self._mailbox_factory(user)

    async def authenticate(self, session: GraphMailbox, user: User) -> None:
        with graph_errors("authenticate"):
            await session.verify()

    async def fetch_page(self, session: GraphMailbox, user: User, request: GetEmailsRequest) -> FetchedBatch:
        folder = graph_folder(request.folder)
        with graph_errors("fetch emails"):
            # Two round trips: the count can drift from the page under concurrent changes.
            total = await session.count_messages(folder)
            if total == 0:
                return FetchedBatch(records=[], total=0)
            messages = await session.list_messages(folder, top=request.limit, skip=page_offset(request))
        return FetchedBatch(records=[normalise_message(m, user.id, folder) for m in messages], total=total)

    async def teardown(self, session: GraphMailbox) -> None:
        await session.close()

    @asynccontextmanager
    async def mailbox(self, user: User) -> AsyncIterator[GraphMailbox]:
        self.check_configuration(user)
        session = await self.connect(user)
        try:
            yield session
        finally:
            await self.teardown(session)

    async def send(self, user: User, request: SendEmailRequest) -> EmailRecord:
        message = Message(
            subject=request.subject,
            body=ItemBody(content_type=BodyType.Html, content=request.html or request.text or ""),
            to_recipients=[_recipient(address) for address in request.to],
            cc_recipients=[_recipient(address) for address in request.cc],
            bcc_recipients=[_recipient(address) for address in request.bcc],
        )
        async with self.mailbox(user) as session:
            with graph_errors("send email"):
                await session.send_mail(message)

        return self.writer.create_sent(
            EmailRecord(
                sender=user.email_username or user.email,
                to=request.to,
                cc=request.cc,
                bcc=request.bcc,
                subject=request.subject,
                text=request.text,
                html=request.html,
                is_sent=True,
                sent_at=dt.datetime.now(dt.timezone.utc),
                folder="SENT",
                user_id=user.id,
            )
        )

    async def list_folders(self, user: User) -> list[MailFolder]:
        async with self.mailbox(user) as session:
            with graph_errors("get mail folders"):
                folders = await session.list_folders()
        return [
            MailFolder(
                id=folder.id,
                display_name=folder.display_name,
                total_item_count=folder.total_item_count or 0,
                unread_item_count=folder.unread_item_count or 0,
            )
            for folder in folders
        ]

    async def get_email_details(self, user: User, message_id: str) -> Optional[EmailRecord]:
        """Fetch the full body, store it and mark the local copy read.

        Returns ``None`` when Graph has no such message.
        """
        async with self.mailbox(user) as session:
            with graph_errors("get email details"):
                message = await session.get_message(message_id)
        if message is None:
            return None

        html = _html_body(message)
        existing = self.emails.find_first({"message_id": message.id, "user_id": user.id})
        if existing is not None:
            changes: dict[str, Any] = {"html": html, "is_read": True}
            if not existing.text:
                changes["text"] = render_body_text(html, getattr(message.body, "content_type", None))
            return self.emails.update({"id": existing.id}, changes)

        record = normalise_message(message, user.id, DEFAULT_FOLDER)
        record.is_read = True
        record.is_spam = False
        record.is_sent = False
        return self.emails.create(self.writer.as_row(record, user.id))

    async def validate(self, user: User) -> None:
        if not user.microsoft_graph_enabled:
            raise EmailConfigurationError("Microsoft Graph is not enabled for this user")
        try:
            async with self.mailbox(user) as session:
                with graph_errors("authenticate"):
                    await session.verify()
        except GraphAuthError as exc:
            logger.error("Microsoft Graph authentication failed for user %s: %s", user.id, exc)
            raise GraphAuthError("Microsoft Graph authentication failed") from exc


def _recipient(address: str) -> Recipient:
    return Recipient(email_address=EmailAddress(address=address))
