"""Tests for the sqlite repositories and the credential encryption middleware."""

from __future__ import annotations

import datetime as dt
import sqlite3

import pytest

from services.storage import MailStorage, QueryParams, RecordNotFound


def _raw_password(storage: MailStorage, user_id: str) -> str:
    conn = sqlite3.connect(storage.db_path)
    try:
        return conn.execute("SELECT email_password FROM users WHERE id = ?", (user_id,)).fetchone()[0]
    finally:
        conn.close()


def test_password_is_encrypted_at_rest(storage, make_user, engine) -> None:
    user = make_user(email_password="s3cret")

    stored = _raw_password(storage, user.id)
    assert stored != "s3cret"
    assert ":" in stored
    assert engine.decrypt(stored) == "s3cret"


def test_write_result_is_decrypted(make_user) -> None:
    user = make_user(email_password="s3cret")
    assert user.email_password == "s3cret"


def test_reads_are_decrypted(storage, make_user) -> None:
    user = make_user(email_password="s3cret")

    assert storage.users.find_unique({"id": user.id}).email_password == "s3cret"
    assert storage.users.find_first({"email": user.email}).email_password == "s3cret"
    assert [u.email_password for u in storage.users.find_many({"id": user.id})] == ["s3cret"]


def test_update_encrypts_new_password(storage, make_user, engine) -> None:
    user = make_user()

    updated = storage.users.update({"id": user.id}, {"email_password": "rotated"})

    assert updated.email_password == "rotated"
    assert engine.decrypt(_raw_password(storage, user.id)) == "rotated"


def test_update_without_password_leaves_ciphertext_alone(storage, make_user) -> None:
    user = make_user()
    before = _raw_password(storage, user.id)

    storage.users.update({"id": user.id}, {"first_name": "Augusta"})

    assert _raw_password(storage, user.id) == before


def test_upsert_encrypts_both_branches(storage, engine) -> None:
    created = storage.users.upsert(
        {"email": "new@example.com"},
        create={"email_password": "first"},
        update={"email_password": "second"},
    )
    assert created.email_password == "first"
    assert engine.decrypt(_raw_password(storage, created.id)) == "first"

    updated = storage.users.upsert(
        {"email": "new@example.com"},
        create={"email_password": "first"},
        update={"email_password": "second"},
    )
    assert updated.id == created.id
    assert engine.decrypt(_raw_password(storage, created.id)) == "second"


def test_unreadable_ciphertext_reads_as_none(storage, make_user) -> None:
    user = make_user()
    conn = sqlite3.connect(storage.db_path)
    conn.execute("UPDATE users SET email_password = 'garbage' WHERE id = ?", (user.id,))
    conn.commit()
    conn.close()

    assert storage.users.find_unique({"id": user.id}).email_password is None


def test_other_models_pass_through_untouched(storage, make_user) -> None:
    user = make_user()
    seen: list[QueryParams] = []

    def spy(params, call_next):
        seen.append(params)
        return call_next(params)

    storage.use(spy)
    storage.emails.create({"user_id": user.id, "folder": "INBOX", "subject": "hello"})

    assert seen[-1].model == "Email"
    assert seen[-1].args["data"]["subject"] == "hello"


def test_middlewares_run_in_registration_order(storage) -> None:
    calls: list[str] = []

    def first(params, call_next):
        calls.append("first")
        return call_next(params)

    def second(params, call_next):
        calls.append("second")
        return call_next(params)

    storage.use(first)
    storage.use(second)
    storage.users.count()

    assert calls == ["first", "second"]


def test_update_missing_row_raises(storage) -> None:
    with pytest.raises(RecordNotFound):
        storage.users.update({"id": "missing"}, {"first_name": "x"})


def test_email_rows_round_trip_lists_and_datetimes(storage, make_user) -> None:
    user = make_user()
    received = dt.datetime(2024, 5, 1, 12, 30, tzinfo=dt.timezone.utc)

    row = storage.emails.create(
        {
            "user_id": user.id,
            "folder": "INBOX",
            "message_id": "<m1@example.com>",
            "sender": "bob@example.com",
            "to": ["ada@example.com"],
            "received_at": received,
            "attachments": [],
        }
    )

    assert row.sender == "bob@example.com"
    assert row.to == ["ada@example.com"]
    assert row.cc == [] and row.bcc == []
    assert row.attachments == []
    assert row.received_at == received
    assert row.is_read is False


def test_find_many_filters_orders_and_pages(storage, make_user) -> None:
    user = make_user()
    base = dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc)
    for day in range(5):
        storage.emails.create(
            {
                "user_id": user.id,
                "folder": "INBOX",
                "message_id": f"<m{day}@x>",
                "received_at": base + dt.timedelta(days=day),
            }
        )

    rows = storage.emails.find_many(
        {"user_id": user.id, "message_id": {"in": ["<m1@x>", "<m3@x>", "<m4@x>"]}},
        order_by=("received_at", "desc"),
        skip=1,
        take=1,
    )
    assert [r.message_id for r in rows] == ["<m3@x>"]
    assert storage.emails.count({"user_id": user.id, "message_id": {"not": "<m0@x>"}}) == 4
    assert storage.emails.find_many({"message_id": {"in": []}}) == []


def test_unknown_column_is_rejected(storage) -> None:
    with pytest.raises(ValueError):
        storage.users.find_first({"nope": 1})


def test_ping_reports_database_online(storage) -> None:
    assert storage.ping() is True
