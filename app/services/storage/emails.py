"""Email storage operations."""

from __future__ import annotations

from typing import Any

from core.models import EmailRecord

from .repository import Repository

# Fields copied from a normalised record into a new row; id and timestamps are store-assigned.
EMAIL_CONTENT_FIELDS = (
    "message_id",
    "sender",
    "to",
    "cc",
    "bcc",
    "subject",
    "text",
    "html",
    "received_at",
    "sent_at",
    "folder",
    "user_id",
    "is_read",
    "is_flagged",
    "is_deleted",
    "is_spam",
    "is_draft",
    "is_sent",
    "attachments",
)


class EmailRepository(Repository[EmailRecord]):
    model_name = "Email"
    table = "emails"
    model = EmailRecord
    columns = ("id",) + EMAIL_CONTENT_FIELDS + ("created_at", "updated_at")
    json_columns = frozenset({"to", "cc", "bcc", "attachments"})
    bool_columns = frozenset({"is_read", "is_flagged", "is_deleted", "is_spam", "is_draft", "is_sent"})
    datetime_columns = frozenset({"received_at", "sent_at", "created_at", "updated_at"})

    def _defaults(self) -> dict[str, Any]:
        return {"to": [], "cc": [], "bcc": []}

    @staticmethod
    def to_row(record: EmailRecord) -> dict[str, Any]:
        data = record.model_dump(include=set(EMAIL_CONTENT_FIELDS))
        data["cc"] = data.get("cc") or []
        data["bcc"] = data.get("bcc") or []
        return data
