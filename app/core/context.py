from __future__ import annotations

from services.encryption import EncryptionEngine
from services.mail import EmailService
from services.storage import CredentialEncryptionMiddleware, MailStorage
from services.users import UsersService
from .config import settings

encryption_engine = EncryptionEngine(settings.encryption.to_config())

storage = MailStorage(settings.db_path)
storage.use(CredentialEncryptionMiddleware(encryption_engine))

email_service = EmailService.from_settings(storage, settings)
users_service = UsersService(storage, cache_ttl=settings.user_cache_ttl_seconds)


def get_storage() -> MailStorage:
    return storage


def get_encryption_engine() -> EncryptionEngine:
    return encryption_engine


def get_email_service() -> EmailService:
    return email_service


def get_users_service() -> UsersService:
    return users_service
