"""User storage operations."""

from __future__ import annotations

from core.models import User

from .repository import Repository


class UserRepository(Repository[User]):
    model_name = "User"
    table = "users"
    model = User
    columns = (
        "id",
        "email",
        "password",
        "first_name",
        "last_name",
        "role",
        "microsoft_id",
        "microsoft_tokens",
        "is_deleted",
        "email_host",
        "email_username",
        "email_password",
        "imap_port",
        "pop3_port",
        "smtp_port",
        "email_secure",
        "imap_enabled",
        "pop3_enabled",
        "smtp_enabled",
        "microsoft_graph_enabled",
        "created_at",
        "updated_at",
    )
    json_columns = frozenset({"microsoft_tokens"})
    bool_columns = frozenset(
        {
            "is_deleted",
            "email_secure",
            "imap_enabled",
            "pop3_enabled",
            "smtp_enabled",
            "microsoft_graph_enabled",
        }
    )
