"""Pytest configuration and fixtures for the mail service tests."""

import os
import tempfile

# Settings are read once at import time; point them at a throwaway runtime root first.
os.environ.setdefault("ENV", "test")
os.environ["MAIL_RUNTIME_ROOT"] = tempfile.mkdtemp(prefix="mail-service-tests-")
os.environ["MAIL_SERVICE_LOG_TO_FILE"] = "false"
os.environ.setdefault("ENCRYPTION_KEY", "test-master-key")
os.environ.setdefault("ENCRYPTION_SALT", "test-salt")

import pytest  # noqa: E402

from services.encryption import EncryptionConfig, EncryptionEngine  # noqa: E402
from services.storage import CredentialEncryptionMiddleware, MailStorage  # noqa: E402


@pytest.fixture
def engine():
    """Engine with a fixed key and salt so ciphertexts are comparable across fixtures."""
    return EncryptionEngine(EncryptionConfig(master_key="k1", salt="unit-salt"))


@pytest.fixture
def storage(tmp_path, engine):
    store = MailStorage(tmp_path / "mail.sqlite")
    store.use(CredentialEncryptionMiddleware(engine))
    return store


@pytest.fixture
def make_user(storage):
    """Create a stored user with a complete credential bundle; keyword overrides win."""

    def _make(**overrides):
        data = {
            "email": "ada@example.com",
            "password": "not-a-real-hash",
            "first_name": "Ada",
            "last_name": "Lovelace",
            "email_host": "mail.example.com",
            "email_username": "ada@example.com",
            "email_password": "s3cret",
            "imap_port": 993,
            "pop3_port": 995,
            "smtp_port": 465,
            "email_secure": True,
        }
        data.update(overrides)
        return storage.users.create(data)

    return _make
