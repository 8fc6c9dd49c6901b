"""Base storage class handling connection, schema and the query middleware chain."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator

from .middleware import Middleware, QueryParams

logger = logging.getLogger(__name__)

_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA temp_store=MEMORY;",
    "PRAGMA foreign_keys=ON;",
    # Set busy timeout to reduce lock contention errors
    "PRAGMA busy_timeout=5000;",  # 5 seconds
)


class StorageBase:
    """Owns the sqlite database and runs every repository call through the middleware chain."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._middlewares: list[Middleware] = []
        self._ensure_schema()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            for pragma in _SQLITE_PRAGMAS:
                conn.execute(pragma)
            yield conn
            conn.commit()
        finally:
            conn.close()

    def use(self, middleware: Middleware) -> None:
        """Append a middleware; the first registered runs outermost."""
        self._middlewares.append(middleware)

    def dispatch(self, params: QueryParams, operation: Callable[[QueryParams], Any]) -> Any:
        def call(index: int, current: QueryParams) -> Any:
            if index == len(self._middlewares):
                return operation(current)
            return self._middlewares[index](current, lambda nxt: call(index + 1, nxt))

        return call(0, params)

    def ping(self) -> bool:
        try:
            with self.connect() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error as exc:
            logger.warning("Database ping failed: %s", exc)
            return False

    def _ensure_schema(self) -> None:
        with self.connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    password TEXT,
                    first_name TEXT,
                    last_name TEXT,
                    role TEXT NOT NULL DEFAULT 'USER',
                    microsoft_id TEXT,
                    microsoft_tokens TEXT,
                    is_deleted INTEGER NOT NULL DEFAULT 0,
                    email_host TEXT,
                    email_username TEXT,
                    email_password TEXT,
                    imap_port INTEGER,
                    pop3_port INTEGER,
                    smtp_port INTEGER,
                    email_secure INTEGER NOT NULL DEFAULT 1,
                    imap_enabled INTEGER NOT NULL DEFAULT 0,
                    pop3_enabled INTEGER NOT NULL DEFAULT 0,
                    smtp_enabled INTEGER NOT NULL DEFAULT 0,
                    microsoft_graph_enabled INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_users_email ON users(email);
                CREATE INDEX IF NOT EXISTS idx_users_microsoft_id ON users(microsoft_id);

                -- No UNIQUE(user_id, message_id): deduplication is a check-then-insert in the writer.
                CREATE TABLE IF NOT EXISTS emails (
                    id TEXT PRIMARY KEY,
                    message_id TEXT,
                    sender TEXT NOT NULL DEFAULT '',
                    "to" TEXT NOT NULL DEFAULT '[]',
                    cc TEXT NOT NULL DEFAULT '[]',
                    bcc TEXT NOT NULL DEFAULT '[]',
                    subject TEXT,
                    text TEXT,
                    html TEXT,
                    received_at TEXT,
                    sent_at TEXT,
                    folder TEXT NOT NULL,
                    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    is_flagged INTEGER NOT NULL DEFAULT 0,
                    is_deleted INTEGER NOT NULL DEFAULT 0,
                    is_spam INTEGER NOT NULL DEFAULT 0,
                    is_draft INTEGER NOT NULL DEFAULT 0,
                    is_sent INTEGER NOT NULL DEFAULT 0,
                    attachments TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_emails_user_message ON emails(user_id, message_id);
                CREATE INDEX IF NOT EXISTS idx_emails_user_folder ON emails(user_id, folder, received_at);
                """
            )
