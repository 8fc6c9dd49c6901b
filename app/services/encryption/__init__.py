"""At-rest encryption for stored credentials."""

from .engine import EncryptionConfig, EncryptionConfigError, EncryptionEngine

__all__ = ["EncryptionConfig", "EncryptionConfigError", "EncryptionEngine"]
