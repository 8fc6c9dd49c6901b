from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import threading
from typing import Any, Callable, Optional, TypeVar

from cachetools import TTLCache

from core.models import MicrosoftProfile, User, UserCreate, UserSummary, UserUpdate
from services.storage import MailStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")

_HASH_ALGORITHM = "pbkdf2_sha256"
_HASH_ITERATIONS = 260_000

ALL_USERS_KEY = "users:all"


class UserServiceError(Exception):
    """Base error for user service issues."""


class UserNotFound(UserServiceError):
    """Raised when a user is missing or soft-deleted."""


class UserConflict(UserServiceError):
    """Raised when an email address is already taken."""


class InvalidCredentials(UserServiceError):
    """Raised when an email/password pair does not match."""


def hash_password(password: str, *, iterations: int = _HASH_ITERATIONS) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("ascii"), iterations)
    return f"{_HASH_ALGORITHM}${iterations}${salt}${digest.hex()}"


def verify_password(password: str, encoded: Optional[str]) -> bool:
    if not encoded:
        return False
    try:
        algorithm, iterations, salt, expected = encoded.split("$", 3)
        rounds = int(iterations)
    except ValueError:
        return False
    if algorithm != _HASH_ALGORITHM:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("ascii"), rounds)
    return hmac.compare_digest(digest.hex(), expected)


def to_summary(user: User) -> UserSummary:
    return UserSummary.model_validate(user.model_dump(exclude={"password", "email_password", "microsoft_tokens"}))


class UsersService:
    """
    Account management. Lookups are served from a short-lived in-process cache
    that every write invalidates.
    """

    def __init__(self, storage: MailStorage, cache_ttl: int = 300, cache_size: int = 1024) -> None:
        self.storage = storage
        self._cache: TTLCache = TTLCache(maxsize=cache_size, ttl=max(cache_ttl, 1))
        self._cache_lock = threading.Lock()
        self._cache_enabled = cache_ttl > 0

    # -- cache helpers -------------------------------------------------------------

    def _cached(self, key: str, loader: Callable[[], T]) -> T:
        if self._cache_enabled:
            with self._cache_lock:
                if key in self._cache:
                    return self._cache[key]
        value = loader()
        if self._cache_enabled and value is not None:
            with self._cache_lock:
                self._cache[key] = value
        return value

    def _invalidate(self, *keys: Optional[str]) -> None:
        with self._cache_lock:
            for key in keys:
                if key:
                    self._cache.pop(key, None)

    # -- queries -----------------------------------------------------------------

    def find_all(self) -> list[UserSummary]:
        return self._cached(
            ALL_USERS_KEY,
            lambda: [to_summary(user) for user in self.storage.users.find_many({"is_deleted": False})],
        )

    def find_one(self, user_id: str) -> UserSummary:
        def load() -> UserSummary:
            user = self.storage.users.find_first({"id": user_id, "is_deleted": False})
            if user is None:
                raise UserNotFound(f"User with ID {user_id} not found")
            return to_summary(user)

        return self._cached(f"user:{user_id}", load)

    def find_by_email(self, email: str) -> Optional[User]:
        """Full record, password hash included, for credential checks."""
        return self._cached(
            f"user:email:{email}",
            lambda: self.storage.users.find_first({"email": email, "is_deleted": False}),
        )

    def find_by_microsoft_id(self, microsoft_id: str) -> Optional[User]:
        return self._cached(
            f"user:microsoftId:{microsoft_id}",
            lambda: self.storage.users.find_first({"microsoft_id": microsoft_id, "is_deleted": False}),
        )

    # -- writes ------------------------------------------------------------------

    def create(self, payload: UserCreate) -> UserSummary:
        self._ensure_email_available(payload.email)
        user = self.storage.users.create(
            {
                "email": payload.email,
                "password": hash_password(payload.password),
                "first_name": payload.first_name,
                "last_name": payload.last_name,
            }
        )
        self._invalidate(ALL_USERS_KEY, f"user:email:{payload.email}")
        logger.info("Created user %s", user.id)
        return to_summary(user)

    def update(self, user_id: str, payload: UserUpdate) -> UserSummary:
        current = self.find_one(user_id)
        data: dict[str, Any] = payload.model_dump(exclude_unset=True)
        if data.get("password"):
            data["password"] = hash_password(data["password"])
        if data.get("email") and data["email"] != current.email:
            self._ensure_email_available(data["email"])
        updated = self.storage.users.update({"id": user_id}, data)
        self._invalidate(
            f"user:{user_id}",
            f"user:email:{current.email}",
            f"user:email:{data['email']}" if data.get("email") else None,
            ALL_USERS_KEY,
        )
        return to_summary(updated)

    def remove(self, user_id: str) -> dict[str, str]:
        user = self.find_one(user_id)
        self.storage.users.update({"id": user_id}, {"is_deleted": True})
        self._invalidate(
            f"user:{user_id}",
            f"user:email:{user.email}",
            f"user:microsoftId:{user.microsoft_id}" if user.microsoft_id else None,
            ALL_USERS_KEY,
        )
        logger.info("Soft-deleted user %s", user_id)
        return {"message": "User deleted successfully"}

    def update_microsoft_info(
        self,
        user_id: str,
        microsoft_id: Optional[str] = None,
        tokens: Optional[dict[str, Any]] = None,
    ) -> User:
        current = self.find_one(user_id)
        data: dict[str, Any] = {}
        if microsoft_id is not None:
            data["microsoft_id"] = microsoft_id
        if tokens is not None:
            data["microsoft_tokens"] = tokens
        updated = self.storage.users.update({"id": user_id}, data)
        self._invalidate(
            f"user:{user_id}",
            f"user:email:{current.email}",
            f"user:microsoftId:{microsoft_id}" if microsoft_id else None,
            ALL_USERS_KEY,
        )
        return updated

    def create_microsoft_user(self, profile: MicrosoftProfile) -> User:
        self._ensure_email_available(profile.email)
        # Microsoft users sign in through OAuth; the local password is never handed out.
        user = self.storage.users.create(
            {
                "email": profile.email,
                "first_name": profile.first_name,
                "last_name": profile.last_name,
                "password": hash_password(secrets.token_hex(8)),
                "microsoft_id": profile.microsoft_id,
                "microsoft_tokens": profile.tokens,
            }
        )
        self._invalidate(ALL_USERS_KEY, f"user:email:{profile.email}", f"user:microsoftId:{profile.microsoft_id}")
        return user

    # -- authentication flows ----------------------------------------------------

    def validate_user(self, email: str, password: str) -> UserSummary:
        user = self.find_by_email(email)
        if user is None or not verify_password(password, user.password):
            raise InvalidCredentials("Invalid credentials")
        return to_summary(user)

    def validate_or_create_microsoft_user(self, profile: MicrosoftProfile) -> User:
        user = self.find_by_microsoft_id(profile.microsoft_id)
        if user is not None:
            return user
        user = self.find_by_email(profile.email)
        if user is not None:
            return self.update_microsoft_info(user.id, profile.microsoft_id, profile.tokens)
        return self.create_microsoft_user(profile)

    def _ensure_email_available(self, email: str) -> None:
        if self.storage.users.find_first({"email": email, "is_deleted": False}) is not None:
            raise UserConflict("Email already in use")
