"""
Symmetric encryption for credentials stored at rest.

Two blob formats are understood:

* current: ``hex(iv) + ":" + base64(ciphertext)`` where the ciphertext is
  AES-256-CBC with PKCS7 padding under a key derived from the master secret
  with PBKDF2-HMAC-SHA256.
* legacy: ``base64("Salted__" + salt + ciphertext)``, the OpenSSL passphrase
  format written before IVs were stored alongside the value. Its key and IV
  come from the raw master secret through ``EVP_BytesToKey`` (MD5).

Neither ``encrypt`` nor ``decrypt`` raises; failures are logged and reported
as ``None`` so a damaged credential never breaks account management.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

KEY_LENGTH = 32
IV_LENGTH = 16
MIN_ITERATIONS = 10_000

_SEPARATOR = ":"
_LEGACY_MAGIC = b"Salted__"
_LEGACY_SALT_LENGTH = 8


class EncryptionConfigError(ValueError):
    """Raised when the engine is constructed with unusable parameters."""


@dataclass(frozen=True)
class EncryptionConfig:
    master_key: str
    salt: str
    iterations: int = MIN_ITERATIONS

    def __post_init__(self) -> None:
        if not self.master_key:
            raise EncryptionConfigError("Encryption master key must not be empty")
        if not self.salt:
            raise EncryptionConfigError("Encryption salt must not be empty")
        if self.iterations < MIN_ITERATIONS:
            raise EncryptionConfigError(
                f"Key derivation needs at least {MIN_ITERATIONS} iterations, got {self.iterations}"
            )


def derive_key(config: EncryptionConfig) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=config.salt.encode("utf-8"),
        iterations=config.iterations,
    )
    return kdf.derive(config.master_key.encode("utf-8"))


def _evp_bytes_to_key(passphrase: bytes, salt: bytes) -> tuple[bytes, bytes]:
    """OpenSSL EVP_BytesToKey with MD5 and a single round, as used by passphrase AES."""
    derived = b""
    block = b""
    while len(derived) < KEY_LENGTH + IV_LENGTH:
        block = hashlib.md5(block + passphrase + salt).digest()
        derived += block
    return derived[:KEY_LENGTH], derived[KEY_LENGTH:KEY_LENGTH + IV_LENGTH]


def _cbc_encrypt(key: bytes, iv: bytes, plaintext: bytes) -> bytes:
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def _cbc_decrypt(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    return unpadder.update(padded) + unpadder.finalize()


class EncryptionEngine:
    """Encrypts and decrypts single string values with a per-call random IV."""

    def __init__(self, config: EncryptionConfig) -> None:
        self._config = config
        self._key = derive_key(config)

    @property
    def config(self) -> EncryptionConfig:
        return self._config

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        if plaintext is None:
            return None
        try:
            iv = os.urandom(IV_LENGTH)
            ciphertext = _cbc_encrypt(self._key, iv, plaintext.encode("utf-8"))
            return f"{iv.hex()}{_SEPARATOR}{base64.b64encode(ciphertext).decode('ascii')}"
        except Exception as exc:  # noqa: BLE001
            logger.error("Encryption error: %s", exc)
            return None

    def decrypt(self, blob: Optional[str]) -> Optional[str]:
        if blob is None:
            return None
        try:
            iv_hex, separator, payload = blob.partition(_SEPARATOR)
            if not separator:
                decrypted = self._decrypt_legacy(blob)
            else:
                iv = bytes.fromhex(iv_hex)
                if len(iv) != IV_LENGTH:
                    raise ValueError("invalid IV length")
                ciphertext = base64.b64decode(payload, validate=True)
                decrypted = _cbc_decrypt(self._key, iv, ciphertext).decode("utf-8")
            if not decrypted:
                raise ValueError("Decryption failed - invalid data or key")
            return decrypted
        except Exception as exc:  # noqa: BLE001
            logger.error("Decryption error: invalid data or key (%s: %s)", type(exc).__name__, exc)
            return None

    def encrypt_legacy(self, plaintext: str) -> str:
        """Produce a blob in the pre-IV passphrase format. Only kept for reading old rows back in tests and tooling."""
        salt = os.urandom(_LEGACY_SALT_LENGTH)
        key, iv = _evp_bytes_to_key(self._config.master_key.encode("utf-8"), salt)
        ciphertext = _cbc_encrypt(key, iv, plaintext.encode("utf-8"))
        return base64.b64encode(_LEGACY_MAGIC + salt + ciphertext).decode("ascii")

    def _decrypt_legacy(self, blob: str) -> str:
        raw = base64.b64decode(blob, validate=True)
        if not raw.startswith(_LEGACY_MAGIC):
            raise ValueError("legacy blob is missing its salt header")
        salt = raw[len(_LEGACY_MAGIC):len(_LEGACY_MAGIC) + _LEGACY_SALT_LENGTH]
        ciphertext = raw[len(_LEGACY_MAGIC) + _LEGACY_SALT_LENGTH:]
        if len(salt) != _LEGACY_SALT_LENGTH or not ciphertext:
            raise ValueError("legacy blob is truncated")
        key, iv = _evp_bytes_to_key(self._config.master_key.encode("utf-8"), salt)
        return _cbc_decrypt(key, iv, ciphertext).decode("utf-8")
