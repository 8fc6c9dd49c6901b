"""Storage service for users and their mailboxes."""

from pathlib import Path

from .base import StorageBase
from .emails import EMAIL_CONTENT_FIELDS, EmailRepository
from .middleware import CredentialEncryptionMiddleware, Middleware, QueryParams
from .repository import RecordNotFound, Repository
from .users import UserRepository


class MailStorage(StorageBase):
    """
    Storage handling user accounts, their email credential bundles and the
    locally persisted copies of fetched and sent mail.
    """

    def __init__(self, db_path: Path) -> None:
        super().__init__(db_path)
        self.users = UserRepository(self)
        self.emails = EmailRepository(self)


# Export the class properly
__all__ = [
    "EMAIL_CONTENT_FIELDS",
    "CredentialEncryptionMiddleware",
    "EmailRepository",
    "MailStorage",
    "Middleware",
    "QueryParams",
    "RecordNotFound",
    "Repository",
    "StorageBase",
    "UserRepository",
]
