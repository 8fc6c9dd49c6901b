"""Mail configuration, sending and multi-protocol retrieval."""

from .base import AdapterKind, MailboxAdapter
from .errors import (
    EmailConfigurationError,
    EmailNotFound,
    EmailSendError,
    EmailServiceError,
    GraphAuthError,
    GraphRequestError,
    MailConnectionError,
    MailTransportError,
    Pop3LoginFailed,
    Pop3StatFailed,
    RetrievalMethodNotEnabled,
    SendMethodNotEnabled,
)
from .graph import GraphAdapter, GraphAuthProvider
from .imap import ImapAdapter
from .pop3 import Pop3Adapter
from .service import EmailService
from .smtp import SmtpSender
from .writer import DeduplicatingWriter, GraphDeduplicatingWriter

__all__ = [
    "AdapterKind",
    "DeduplicatingWriter",
    "EmailConfigurationError",
    "EmailNotFound",
    "EmailSendError",
    "EmailService",
    "EmailServiceError",
    "GraphAdapter",
    "GraphAuthError",
    "GraphAuthProvider",
    "GraphDeduplicatingWriter",
    "GraphRequestError",
    "ImapAdapter",
    "MailConnectionError",
    "MailTransportError",
    "MailboxAdapter",
    "Pop3Adapter",
    "Pop3LoginFailed",
    "Pop3StatFailed",
    "RetrievalMethodNotEnabled",
    "SendMethodNotEnabled",
    "SmtpSender",
]
