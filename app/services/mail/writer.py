"""Persist normalised mail, storing each provider message at most once per user."""

from __future__ import annotations

import logging
from typing import Iterable

from core.models import EmailRecord
from services.storage import EmailRepository

logger = logging.getLogger(__name__)


class DeduplicatingWriter:
    """Check-then-insert on ``(message_id, user_id)``.

    The existence check and the insert are separate statements, so two
    overlapping fetches of the same mailbox can both insert a row. The
    ``emails`` table has no uniqueness constraint to catch that.
    """

    create_without_message_id = False

    def __init__(self, emails: EmailRepository) -> None:
        self.emails = emails

    def save(self, records: Iterable[EmailRecord], user_id: str) -> None:
        created = 0
        for record in records:
            if not record.message_id:
                if self.create_without_message_id:
                    self.emails.create(self.as_row(record, user_id))
                    created += 1
                continue
            existing = self.emails.find_first({"message_id": record.message_id, "user_id": user_id})
            if existing is not None:
                self._on_existing(existing, record)
                continue
            self.emails.create(self.as_row(record, user_id))
            created += 1
        if created:
            logger.info("Stored %d new email(s) for user %s", created, user_id)

    def create_sent(self, record: EmailRecord) -> EmailRecord:
        """Direct-send path: always inserts, there is nothing to deduplicate against."""
        return self.emails.create(self.as_row(record, record.user_id))

    def _on_existing(self, existing: EmailRecord, incoming: EmailRecord) -> None:
        return None

    @staticmethod
    def as_row(record: EmailRecord, user_id: str) -> dict:
        row = EmailRepository.to_row(record)
        row["user_id"] = user_id
        return row


class GraphDeduplicatingWriter(DeduplicatingWriter):
    """Graph variant: known messages get their mutable flags refreshed instead of being skipped."""

    MUTABLE_FLAGS = ("is_read", "is_flagged", "is_deleted", "is_spam")
    create_without_message_id = True

    def _on_existing(self, existing: EmailRecord, incoming: EmailRecord) -> None:
        self.emails.update(
            {"id": existing.id},
            {flag: getattr(incoming, flag) for flag in self.MUTABLE_FLAGS},
        )
