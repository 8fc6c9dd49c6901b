from .service import (
    InvalidCredentials,
    UserConflict,
    UserNotFound,
    UserServiceError,
    UsersService,
    hash_password,
    to_summary,
    verify_password,
)

__all__ = [
    "InvalidCredentials",
    "UserConflict",
    "UserNotFound",
    "UserServiceError",
    "UsersService",
    "hash_password",
    "to_summary",
    "verify_password",
]
