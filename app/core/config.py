from __future__ import annotations

import os
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from services.encryption import EncryptionConfig

# Running from source: 3 levels up from app/core/config.py
_resource_root = Path(__file__).resolve().parent.parent.parent

# Determine environment mode (e.g., 'dev', 'prod', 'test')
# Default to 'dev' if ENV system environment variable is not set
_env_mode = os.getenv("ENV", "dev")

# Later files override earlier ones; real environment variables win over both.
_env_files = [
    str(_resource_root / ".env"),
    str(_resource_root / f".env.{_env_mode}"),
]

_common_config = SettingsConfigDict(
    env_file=tuple(_env_files),
    env_file_encoding="utf-8",
    case_sensitive=False,
    extra="ignore",
    env_ignore_empty=True,
)

# Generated once per process when no salt is configured. Ciphertexts written with a
# generated salt cannot be read after a restart, so production must set ENCRYPTION_SALT.
_process_salt = secrets.token_hex(16)


class EncryptionSettings(BaseSettings):
    """Master secret and key-derivation parameters for stored email passwords."""
    model_config = _common_config

    key: str = Field(default="default-encryption-key", alias="ENCRYPTION_KEY")
    salt: Optional[str] = Field(default=None, alias="ENCRYPTION_SALT")
    iterations: int = Field(default=10_000, ge=10_000, alias="ENCRYPTION_ITERATIONS")

    def to_config(self) -> EncryptionConfig:
        return EncryptionConfig(
            master_key=self.key,
            salt=self.salt or _process_salt,
            iterations=self.iterations,
        )


class MicrosoftSettings(BaseSettings):
    """Microsoft identity platform application registration."""
    model_config = _common_config

    client_id: Optional[str] = Field(default=None, alias="MICROSOFT_CLIENT_ID")
    client_secret: Optional[str] = Field(default=None, alias="MICROSOFT_CLIENT_SECRET")
    tenant_id: Optional[str] = Field(default=None, alias="MICROSOFT_TENANT_ID")
    auth_mode: Literal["client_credentials", "delegated"] = Field(
        default="client_credentials", alias="MICROSOFT_GRAPH_AUTH_MODE"
    )

    @property
    def authority(self) -> str:
        return f"https://login.microsoftonline.com/{self.tenant_id or 'common'}"

    @property
    def is_configured(self) -> bool:
        if self.auth_mode == "delegated":
            return bool(self.client_id)
        return bool(self.client_id and self.client_secret and self.tenant_id)


class Settings(BaseSettings):
    """Main application settings with automatic .env file loading."""
    model_config = _common_config

    env: str = _env_mode
    resource_root: Path = _resource_root

    runtime_root: Path = Field(default=Path.home() / ".mail-service", alias="MAIL_RUNTIME_ROOT")
    db_name: str = Field(default="mail.sqlite", alias="MAIL_DB_NAME")
    main_host: str = Field(default="127.0.0.1", alias="MAIL_SERVICE_HOST")
    main_port: int = Field(default=8890, alias="MAIL_SERVICE_PORT")

    encryption: EncryptionSettings = Field(default_factory=EncryptionSettings)
    microsoft: MicrosoftSettings = Field(default_factory=MicrosoftSettings)

    user_cache_ttl_seconds: int = Field(default=300, ge=0, alias="MAIL_USER_CACHE_TTL")
    mail_timeout_seconds: int = Field(default=30, ge=1, alias="MAIL_TIMEOUT_SECONDS")

    # Logging settings
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_to_file: bool = Field(default=True, alias="MAIL_SERVICE_LOG_TO_FILE")

    @field_validator("log_level")
    @classmethod
    def _normalise_log_level(cls, value: str) -> str:
        return value.upper()

    @property
    def db_path(self) -> Path:
        self.runtime_root.mkdir(parents=True, exist_ok=True)
        return self.runtime_root / self.db_name

    @property
    def log_dir(self) -> Path:
        return self.runtime_root / "logs"

    @property
    def is_dev(self) -> bool:
        return self.env == "dev"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
