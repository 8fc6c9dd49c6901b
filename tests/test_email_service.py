"""Tests for EmailService: dispatch, send rules, configuration and local mailbox operations."""

from __future__ import annotations

import datetime as dt
from unittest.mock import MagicMock

import pytest

from core.models import EmailConfig, EmailPage, EmailProviderType, EmailRecord, GetEmailsRequest, SendEmailRequest
from services.mail import (
    AdapterKind,
    DeduplicatingWriter,
    EmailConfigurationError,
    EmailNotFound,
    EmailService,
    GraphAdapter,
    ImapAdapter,
    Pop3Adapter,
    RetrievalMethodNotEnabled,
    SendMethodNotEnabled,
    SmtpSender,
)


def _service(storage) -> EmailService:
    return EmailService(
        storage,
        graph=MagicMock(spec=GraphAdapter),
        imap=MagicMock(spec=ImapAdapter),
        pop3=MagicMock(spec=Pop3Adapter),
        smtp=MagicMock(spec=SmtpSender),
        writer=DeduplicatingWriter(storage.emails),
    )


def _request(**overrides) -> SendEmailRequest:
    data = {"to": ["carol@example.com"], "subject": "Hi", "text": "Hello"}
    data.update(overrides)
    return SendEmailRequest(**data)


@pytest.mark.parametrize(
    ("flags", "expected"),
    [
        ({"microsoft_graph_enabled": True, "imap_enabled": True, "pop3_enabled": True}, AdapterKind.GRAPH),
        ({"imap_enabled": True, "pop3_enabled": True}, AdapterKind.IMAP),
        ({"pop3_enabled": True}, AdapterKind.POP3),
    ],
)
def test_select_adapter_priority(make_user, flags, expected) -> None:
    assert EmailService.select_adapter(make_user(**flags)) is expected


def test_select_adapter_without_any_method(make_user) -> None:
    with pytest.raises(RetrievalMethodNotEnabled):
        EmailService.select_adapter(make_user())


async def test_fetch_dispatches_to_selected_adapter(storage, make_user) -> None:
    service = _service(storage)
    user = make_user(imap_enabled=True, pop3_enabled=True)
    service._adapters[AdapterKind.IMAP].fetch.return_value = EmailPage(total=7)

    page = await service.fetch_emails(user.id, GetEmailsRequest(page=1, limit=5))

    assert page.total == 7
    service._adapters[AdapterKind.IMAP].fetch.assert_awaited_once()
    service._adapters[AdapterKind.POP3].fetch.assert_not_awaited()


async def test_fetch_for_unknown_user(storage) -> None:
    with pytest.raises(EmailNotFound):
        await _service(storage).fetch_emails("missing")


async def test_fetch_for_soft_deleted_user(storage, make_user) -> None:
    user = make_user(imap_enabled=True, is_deleted=True)
    with pytest.raises(EmailNotFound):
        await _service(storage).fetch_emails(user.id)


async def test_send_without_any_method_touches_no_transport(storage, make_user) -> None:
    service = _service(storage)
    user = make_user()

    with pytest.raises(SendMethodNotEnabled, match="SMTP not enabled"):
        await service.send_email(user.id, _request())
    service.smtp.send.assert_not_awaited()
    service.graph.send.assert_not_awaited()


async def test_graph_send_ignores_smtp_bundle(storage, make_user) -> None:
    service = _service(storage)
    user = make_user(microsoft_graph_enabled=True, email_host=None, smtp_port=None)
    service.graph.send.return_value = EmailRecord(user_id=user.id, folder="SENT", is_sent=True)

    record = await service.send_email(user.id, _request())

    assert record.is_sent is True
    service.graph.send.assert_awaited_once()
    service.smtp.send.assert_not_awaited()


async def test_smtp_send_requires_full_bundle(storage, make_user) -> None:
    service = _service(storage)
    user = make_user(smtp_enabled=True, pop3_port=None)

    with pytest.raises(EmailConfigurationError):
        await service.send_email(user.id, _request())
    service.smtp.send.assert_not_awaited()


async def test_smtp_send_stores_sanitised_copy(storage, make_user) -> None:
    service = _service(storage)
    user = make_user(smtp_enabled=True)
    request = _request(bcc=["hidden@example.com"], html='<p onclick="x()">Hi</p><script>bad()</script>')

    record = await service.send_email(user.id, request)

    service.smtp.send.assert_awaited_once()
    assert record.id is not None
    assert record.folder == "SENT"
    assert record.is_sent is True
    assert record.sender == user.email_username
    assert record.bcc == ["hidden@example.com"]
    assert record.html == "<p>Hi</p>"


def test_update_config_sets_only_given_fields(storage, make_user, engine) -> None:
    service = _service(storage)
    user = make_user(imap_enabled=True)

    config = service.update_user_email_config(
        user.id,
        EmailConfig(smtp_port=587, email_password="new-secret", provider_type=EmailProviderType.STANDARD),
    )

    stored = storage.users.find_unique({"id": user.id})
    assert stored.smtp_port == 587
    assert stored.imap_port == 993
    assert stored.imap_enabled is True
    assert stored.email_password == "new-secret"
    assert config.provider_type is EmailProviderType.STANDARD
    assert "email_password" not in config.model_dump()


def test_update_config_toggles_graph_from_provider_type(storage, make_user) -> None:
    service = _service(storage)
    user = make_user()

    service.update_user_email_config(user.id, EmailConfig(provider_type=EmailProviderType.MICROSOFT_GRAPH))
    assert storage.users.find_unique({"id": user.id}).microsoft_graph_enabled is True

    service.update_user_email_config(user.id, EmailConfig())
    assert storage.users.find_unique({"id": user.id}).microsoft_graph_enabled is False


def test_get_config_for_unknown_user(storage) -> None:
    with pytest.raises(EmailNotFound):
        _service(storage).get_user_email_config("missing")


def _store(storage, user_id: str, n: int, **overrides) -> EmailRecord:
    data = {
        "user_id": user_id,
        "folder": "INBOX",
        "message_id": f"<db-{n}@x>",
        "received_at": dt.datetime(2024, 2, 1, n, tzinfo=dt.timezone.utc),
    }
    data.update(overrides)
    return storage.emails.create(data)


def test_database_listing_hides_deleted_and_pages(storage, make_user) -> None:
    service = _service(storage)
    user = make_user()
    for n in range(1, 6):
        _store(storage, user.id, n)
    _store(storage, user.id, 9, is_deleted=True)
    _store(storage, user.id, 10, folder="SENT")

    page = service.get_emails_from_database(user.id, GetEmailsRequest(folder="INBOX", page=1, limit=2))

    assert page.total == 5
    assert page.has_more is True
    assert [e.message_id for e in page.emails] == ["<db-5@x>", "<db-4@x>"]

    last = service.get_emails_from_database(user.id, GetEmailsRequest(folder="INBOX", page=3, limit=2))
    assert [e.message_id for e in last.emails] == ["<db-1@x>"]
    assert last.has_more is False


def test_mark_read_delete_and_move(storage, make_user) -> None:
    service = _service(storage)
    user = make_user()
    row = _store(storage, user.id, 1)

    assert service.mark_email_as_read(user.id, row.id).is_read is True
    assert service.move_email_to_folder(user.id, row.id, "Archive").folder == "Archive"
    assert service.mark_email_as_deleted(user.id, row.id).is_deleted is True


def test_local_operations_require_ownership(storage, make_user) -> None:
    service = _service(storage)
    owner = make_user()
    other = make_user(email="eve@example.com")
    row = _store(storage, owner.id, 1)

    with pytest.raises(EmailNotFound):
        service.mark_email_as_read(other.id, row.id)
    with pytest.raises(EmailNotFound):
        service.move_email_to_folder(owner.id, "missing", "Archive")
    assert storage.emails.find_unique({"id": row.id}).is_read is False


async def test_missing_graph_details_raise_not_found(storage, make_user) -> None:
    service = _service(storage)
    user = make_user(microsoft_graph_enabled=True)
    service.graph.get_email_details.return_value = None

    with pytest.raises(EmailNotFound):
        await service.get_email_details(user.id, "AAMk-x")
