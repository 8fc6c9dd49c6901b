"""Tests for POP3 retrieval against an in-memory POP3 client."""

from __future__ import annotations

import poplib
from unittest.mock import patch

import pytest

from core.models import GetEmailsRequest
from services.mail import (
    DeduplicatingWriter,
    EmailConfigurationError,
    Pop3Adapter,
    Pop3LoginFailed,
    Pop3StatFailed,
)
from services.mail import pop3 as pop3_module
from services.mail.pop3 import index_window


def _lines(n: int) -> list[bytes]:
    return [
        f"Message-ID: <pop-{n}@example.com>".encode(),
        b"From: bob@example.com",
        b"To: ada@example.com, Carol <carol@example.com>",
        f"Subject: POP {n}".encode(),
        f"Date: Tue, 02 Jan 2024 0{n}:00:00 +0000".encode(),
        b"",
        f"Body {n}".encode(),
    ]


class FakePop3:
    def __init__(
        self,
        messages: list[list[bytes]],
        *,
        fail_pass: bool = False,
        fail_stat: bool = False,
        broken: frozenset[int] = frozenset(),
    ) -> None:
        self.messages = messages
        self.fail_pass = fail_pass
        self.fail_stat = fail_stat
        self.broken = broken
        self.retrieved: list[int] = []
        self.quit_called = False

    def user(self, username):
        return b"+OK"

    def pass_(self, password):
        if self.fail_pass:
            raise poplib.error_proto(b"-ERR [AUTH] Authentication failed.")
        return b"+OK"

    def stat(self):
        if self.fail_stat:
            raise poplib.error_proto(b"-ERR maildrop locked")
        return len(self.messages), sum(len(b"".join(m)) for m in self.messages)

    def retr(self, index):
        self.retrieved.append(index)
        if index in self.broken:
            raise poplib.error_proto(b"-ERR no such message")
        lines = self.messages[index - 1]
        return b"+OK", lines, len(b"".join(lines))

    def quit(self):
        self.quit_called = True
        return b"+OK bye"


def _adapter(storage, client: FakePop3) -> Pop3Adapter:
    return Pop3Adapter(DeduplicatingWriter(storage.emails), client_factory=lambda *args: client)


def test_index_window_is_oldest_first() -> None:
    assert index_window(3, 1, 10) == (1, 10)
    assert index_window(25, 2, 10) == (11, 20)


async def test_fetch_returns_messages_and_quits(storage, make_user) -> None:
    user = make_user(pop3_enabled=True)
    client = FakePop3([_lines(n) for n in range(1, 4)])

    page = await _adapter(storage, client).fetch(user, GetEmailsRequest(page=1, limit=10))

    assert page.total == 3
    assert page.has_more is False
    assert [e.message_id for e in page.emails] == [f"<pop-{n}@example.com>" for n in range(1, 4)]
    assert page.emails[0].to == ["ada@example.com", "carol@example.com"]
    assert all(e.folder == "INBOX" for e in page.emails)
    assert client.retrieved == [1, 2, 3]
    assert client.quit_called is True
    assert storage.emails.count({"user_id": user.id}) == 3


async def test_has_more_when_window_ends_before_total(storage, make_user) -> None:
    user = make_user(pop3_enabled=True)
    client = FakePop3([_lines(n) for n in range(1, 6)])

    page = await _adapter(storage, client).fetch(user, GetEmailsRequest(page=1, limit=2))

    assert page.has_more is True
    assert client.retrieved == [1, 2]


async def test_failed_retrieval_is_skipped(storage, make_user) -> None:
    user = make_user(pop3_enabled=True)
    client = FakePop3([_lines(n) for n in range(1, 4)], broken=frozenset({2}))

    page = await _adapter(storage, client).fetch(user, GetEmailsRequest())

    assert [e.message_id for e in page.emails] == ["<pop-1@example.com>", "<pop-3@example.com>"]
    assert client.retrieved == [1, 2, 3]


async def test_login_failure_quits_and_raises(storage, make_user) -> None:
    user = make_user(pop3_enabled=True)
    client = FakePop3([_lines(1)], fail_pass=True)

    with pytest.raises(Pop3LoginFailed) as excinfo:
        await _adapter(storage, client).fetch(user, GetEmailsRequest())
    assert "Authentication failed" in str(excinfo.value)
    assert client.quit_called is True
    assert client.retrieved == []


async def test_stat_failure_quits_and_raises(storage, make_user) -> None:
    user = make_user(pop3_enabled=True)
    client = FakePop3([_lines(1)], fail_stat=True)

    with pytest.raises(Pop3StatFailed):
        await _adapter(storage, client).fetch(user, GetEmailsRequest())
    assert client.quit_called is True


async def test_empty_maildrop_returns_empty_page(storage, make_user) -> None:
    user = make_user(pop3_enabled=True)
    client = FakePop3([])

    page = await _adapter(storage, client).fetch(user, GetEmailsRequest())

    assert page.emails == [] and page.total == 0 and page.has_more is False
    assert client.retrieved == []


async def test_only_pop3_fields_are_required(storage, make_user) -> None:
    user = make_user(pop3_enabled=True, imap_port=None, smtp_port=None)
    client = FakePop3([_lines(1)])

    page = await _adapter(storage, client).fetch(user, GetEmailsRequest())
    assert page.total == 1

    missing = make_user(email="x@example.com", pop3_enabled=True, pop3_port=None)
    with pytest.raises(EmailConfigurationError):
        await _adapter(storage, client).fetch(missing, GetEmailsRequest())


async def test_unparsable_message_is_skipped(storage, make_user) -> None:
    user = make_user(pop3_enabled=True)
    client = FakePop3([_lines(n) for n in range(1, 4)])
    real_parse_message = pop3_module.parse_message

    def parse_message(raw: bytes):
        if b"Body 2" in raw:
            raise ValueError("truncated multipart")
        return real_parse_message(raw)

    with patch.object(pop3_module, "parse_message", side_effect=parse_message):
        page = await _adapter(storage, client).fetch(user, GetEmailsRequest(page=1, limit=10))

    assert client.retrieved == [1, 2, 3]
    assert page.total == 3
    assert [e.message_id for e in page.emails] == ["<pop-1@example.com>", "<pop-3@example.com>"]
    assert storage.emails.count({"user_id": user.id}) == 2


async def test_save_failure_returns_fetched_records(storage, make_user) -> None:
    user = make_user(pop3_enabled=True)
    client = FakePop3([_lines(n) for n in range(1, 6)])
    adapter = _adapter(storage, client)

    with patch.object(adapter.writer, "save", side_effect=RuntimeError("db down")):
        page = await adapter.fetch(user, GetEmailsRequest(page=1, limit=2))

    assert page.total == 5
    assert page.has_more is True
    assert [e.message_id for e in page.emails] == ["<pop-1@example.com>", "<pop-2@example.com>"]
    assert client.quit_called is True
    assert storage.emails.count({"user_id": user.id}) == 0
