from __future__ import annotations


class EmailServiceError(Exception):
    """Base error for email service issues."""


class EmailNotFound(EmailServiceError):
    """Raised when a user or an email record is missing."""


class RetrievalMethodNotEnabled(EmailNotFound):
    """Raised when none of Graph, IMAP or POP3 is enabled for the user."""


class SendMethodNotEnabled(EmailNotFound):
    """Raised when neither Graph nor SMTP is enabled for the user."""


class EmailConfigurationError(EmailServiceError):
    """Raised when host, ports or credentials are missing."""


class MailTransportError(EmailServiceError):
    """Base error for failures reported by a mail server or the Graph API."""


class MailConnectionError(MailTransportError):
    """Raised when connecting or logging in to a mail server fails."""


class Pop3LoginFailed(MailTransportError):
    """Raised when the POP3 server rejects USER/PASS."""


class Pop3StatFailed(MailTransportError):
    """Raised when the POP3 STAT command fails."""


class EmailSendError(MailTransportError):
    """Raised when an outgoing message could not be delivered."""


class GraphRequestError(MailTransportError):
    """Raised when a Microsoft Graph request fails."""


class GraphAuthError(MailTransportError):
    """Raised when no Microsoft Graph token can be obtained."""
