from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class User(BaseModel):
    """A stored user row, including the email credential bundle.

    ``email_password`` is plaintext here: the storage middleware decrypts it on
    every read and encrypts it on every write.
    """

    id: str
    email: str
    password: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Role = Role.USER
    microsoft_id: Optional[str] = None
    microsoft_tokens: Optional[dict[str, Any]] = None
    is_deleted: bool = False

    email_host: Optional[str] = None
    email_username: Optional[str] = None
    email_password: Optional[str] = None
    imap_port: Optional[int] = None
    pop3_port: Optional[int] = None
    smtp_port: Optional[int] = None
    email_secure: bool = True
    imap_enabled: bool = False
    pop3_enabled: bool = False
    smtp_enabled: bool = False
    microsoft_graph_enabled: bool = False

    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None


class UserSummary(BaseModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Role = Role.USER
    microsoft_id: Optional[str] = None
    email_host: Optional[str] = None
    email_username: Optional[str] = None
    imap_enabled: bool = False
    pop3_enabled: bool = False
    smtp_enabled: bool = False
    microsoft_graph_enabled: bool = False
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None


class UserCreate(BaseModel):
    email: str = Field(min_length=3)
    password: str = Field(min_length=6)
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class UserUpdate(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = Field(default=None, min_length=6)
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class MicrosoftProfile(BaseModel):
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    microsoft_id: str
    tokens: Optional[dict[str, Any]] = None


class EmailProviderType(str, Enum):
    STANDARD = "standard"
    MICROSOFT_GRAPH = "microsoft_graph"


class EmailConfig(BaseModel):
    """Outward view of a user's email configuration.

    The password is accepted on input and available to the service, but it is
    never serialised back to a client.
    """

    email_host: Optional[str] = None
    imap_port: Optional[int] = Field(default=None, ge=1, le=65535)
    pop3_port: Optional[int] = Field(default=None, ge=1, le=65535)
    smtp_port: Optional[int] = Field(default=None, ge=1, le=65535)
    email_username: Optional[str] = None
    email_password: Optional[str] = Field(default=None, exclude=True)
    email_secure: Optional[bool] = None
    imap_enabled: Optional[bool] = None
    smtp_enabled: Optional[bool] = None
    pop3_enabled: Optional[bool] = None
    provider_type: EmailProviderType = EmailProviderType.STANDARD


class GetEmailsRequest(BaseModel):
    folder: str = "INBOX"
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)


class SendEmailRequest(BaseModel):
    to: list[str] = Field(min_length=1)
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    subject: str = Field(min_length=1)
    text: Optional[str] = None
    html: Optional[str] = None


class MoveEmailRequest(BaseModel):
    folder: str = Field(min_length=1)


class EmailRecord(BaseModel):
    """A normalised email. ``id`` stays ``None`` until the row is persisted."""

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    message_id: Optional[str] = None
    sender: str = Field(default="", alias="from")
    to: list[str] = Field(default_factory=list)
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    subject: Optional[str] = None
    text: Optional[str] = None
    html: Optional[str] = None
    received_at: Optional[dt.datetime] = None
    sent_at: Optional[dt.datetime] = None
    folder: str = "INBOX"
    user_id: str
    is_read: bool = False
    is_flagged: bool = False
    is_deleted: bool = False
    is_spam: bool = False
    is_draft: bool = False
    is_sent: bool = False
    # [] means "has attachments, details not fetched"; None means "no attachments".
    attachments: Optional[list[Any]] = None
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None


class EmailPage(BaseModel):
    emails: list[EmailRecord] = Field(default_factory=list)
    total: int = 0
    has_more: bool = False


class MailFolder(BaseModel):
    id: str
    display_name: Optional[str] = None
    total_item_count: int = 0
    unread_item_count: int = 0


class HealthResponse(BaseModel):
    status: Literal["ok", "degraded"]
    database: Literal["online", "offline"]
    users: int = 0
    emails: int = 0
    graph_configured: bool = False
    message: Optional[str] = None
